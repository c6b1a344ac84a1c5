"""
Per-invoice serialization.

Runs for different invoices proceed concurrently; a second run for an
invoice that is already locked fails fast instead of queueing.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from invoice_recon.exceptions import ConcurrentRunInProgress
from invoice_recon.utils.logging import setup_logging


logger = setup_logging(__name__)


class InvoiceLockRegistry:
    """One asyncio.Lock per invoice id, held only while an operation runs."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _lock_for(self, invoice_id: str) -> asyncio.Lock:
        lock = self._locks.get(invoice_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[invoice_id] = lock
        return lock

    def is_locked(self, invoice_id: str) -> bool:
        lock = self._locks.get(invoice_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, invoice_id: str) -> AsyncIterator[None]:
        """
        Hold the invoice lock for the body of an ``async with``.

        Raises:
            ConcurrentRunInProgress: another operation holds the lock
        """
        lock = self._lock_for(invoice_id)
        # Check and acquire happen without an await in between
        if lock.locked():
            logger.warning(f"Lock contention on invoice {invoice_id}")
            raise ConcurrentRunInProgress(invoice_id)

        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            # Contenders fail fast and never wait, so a released lock is unused
            if not lock.locked() and self._locks.get(invoice_id) is lock:
                del self._locks[invoice_id]
