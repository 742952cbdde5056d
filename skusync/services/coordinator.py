"""Sync coordinator — the single owner of pass exclusivity and per-SKU locks.

    slot = coordinator.claim_pass()        # raises SyncInProgress if busy
    try:
        ...
    finally:
        slot.release()

    async with coordinator.sku_lock("ABC-001"):
        ...

claim_pass() takes the slot synchronously, so on one event loop two
triggers can never both get past it. Callers claim the slot *before*
creating a job row, so a rejected trigger leaves no trace in the ledger.
The slot object can be handed to a background task, which releases it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from ..errors import SyncInProgress


class PassSlot:
    def __init__(self, coordinator: "SyncCoordinator"):
        self._coordinator = coordinator
        self.job_id: Optional[str] = None
        self.released = False

    def attach(self, job_id: str) -> None:
        self.job_id = job_id
        self._coordinator._running_job_id = job_id

    def release(self) -> None:
        if not self.released:
            self.released = True
            self._coordinator._release()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.release()
        return False


class SyncCoordinator:
    def __init__(self):
        self._running = False
        self._running_job_id: Optional[str] = None
        self._sku_locks: dict[str, asyncio.Lock] = {}
        self._stop = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def running_job_id(self) -> Optional[str]:
        return self._running_job_id

    def claim_pass(self) -> PassSlot:
        if self._running:
            raise SyncInProgress(self._running_job_id)
        self._running = True
        self._stop.clear()
        return PassSlot(self)

    def _release(self) -> None:
        self._running = False
        self._running_job_id = None
        self._stop.clear()

    # ── Stop signal ──────────────────────────────────────────────────

    def request_stop(self) -> bool:
        """Ask the running pass to stop before its next item. False if idle."""
        if not self._running:
            return False
        self._stop.set()
        return True

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # ── Per-SKU mutex ────────────────────────────────────────────────

    @asynccontextmanager
    async def sku_lock(self, sku: str):
        lock = self._sku_locks.get(sku)
        if lock is None:
            lock = self._sku_locks[sku] = asyncio.Lock()
        async with lock:
            yield

    def is_locked(self, sku: str) -> bool:
        lock = self._sku_locks.get(sku)
        return bool(lock and lock.locked())
