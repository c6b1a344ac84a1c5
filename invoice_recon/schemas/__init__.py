"""
Data models for invoices, purchase orders, ledger rows and results.
"""
