"""
Pipeline stages for one reconciliation run.

normalizer -> matching -> resolution -> confidence -> lifecycle
"""
