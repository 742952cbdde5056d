"""Reconciliation engine — converges inventory and price between platforms.

Called by: routers/sync.py (manual triggers), scheduler.py (full pass),
services/webhook_service.py (webhook actions).

A pass, per active mapping:
  1. read both platforms (live, never cached across passes)
  2. target stock = min(marketplace qty, storefront available), unless one
     side's snapshot is stale, in which case the fresher side wins
  3. target price = calculate_target_price(marketplace price, rate, margin)
  4. write only where |current - target| exceeds the configured tolerance

Only one pass runs at a time (SyncInProgress otherwise). Passes and webhook
actions serialize per SKU. An item failure never aborts the pass; the job
only fails when its own bookkeeping fails.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from loguru import logger

from ..config import settings as default_settings
from ..connectors.base import MARKETPLACE, STOREFRONT, InventorySnapshot, PlatformState
from ..errors import (
    ExchangeRateUnavailable,
    PersistenceError,
    PlatformError,
    SkuSyncError,
    ValidationError,
)
from ..models import SkuMapping, SyncJob
from ..pricing import calculate_target_price
from .broadcaster import INVENTORY_UPDATE, PRICE_UPDATE, SYNC_COMPLETED, SYNC_STARTED, Broadcaster
from .coordinator import PassSlot, SyncCoordinator
from .mapping_service import normalize_sku

PASS_KINDS = ("full", "manual", "partial")
ACTION_KINDS = ("inventory_delta", "inventory_level", "price")


@dataclass
class WebhookAction:
    """A normalized platform event the engine can act on."""

    sku: str
    origin: str  # MARKETPLACE or STOREFRONT
    kind: str  # one of ACTION_KINDS
    quantity: Optional[int] = None  # delta or absolute available level
    price: Optional[Decimal] = None
    external_ref: Optional[str] = None


@dataclass
class ItemOutcome:
    sku: str
    status: str  # success | failed | skipped
    errors: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    writes: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def target_inventory(
    marketplace: InventorySnapshot, storefront: InventorySnapshot, now: datetime, stale_after_seconds: float
) -> int:
    """min(marketplace qty, storefront available); a stale side defers to the fresh one."""
    stale_after = timedelta(seconds=stale_after_seconds)
    m_stale = now - marketplace.as_of > stale_after
    s_stale = now - storefront.as_of > stale_after
    if m_stale and not s_stale:
        return max(storefront.available, 0)
    if s_stale and not m_stale:
        return max(marketplace.quantity, 0)
    return max(min(marketplace.quantity, storefront.available), 0)


class SyncEngine:
    def __init__(
        self,
        marketplace,
        storefront,
        mappings,
        rates,
        ledger,
        coordinator: Optional[SyncCoordinator] = None,
        broadcaster: Optional[Broadcaster] = None,
        config=None,
        clock=_utcnow,
    ):
        self.marketplace = marketplace
        self.storefront = storefront
        self.mappings = mappings
        self.rates = rates
        self.ledger = ledger
        self.coordinator = coordinator or SyncCoordinator()
        self.broadcaster = broadcaster or Broadcaster()
        self.settings = config or default_settings
        self._clock = clock
        self._background: Optional[asyncio.Task] = None

    # ═══════════════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ═══════════════════════════════════════════════════════════════════

    async def trigger_full_sync(self, triggered_by: str = "scheduler", wait: bool = True) -> SyncJob:
        return await self._start_pass("full", None, triggered_by, wait)

    async def trigger_manual_sync(
        self, skus: Optional[list[str]] = None, triggered_by: str = "manual", wait: bool = True
    ) -> SyncJob:
        if skus is not None:
            skus = [s for s in skus if s and s.strip()]
            if not skus:
                raise ValidationError("skus must not be empty when given")
            return await self._start_pass("partial", skus, triggered_by, wait)
        return await self._start_pass("manual", None, triggered_by, wait)

    async def sync_one(self, sku: str, triggered_by: str = "manual") -> SyncJob:
        mapping = self.mappings.active_mapping(sku)
        return await self._start_pass("partial", [mapping.sku], triggered_by, wait=True)

    def request_stop(self) -> bool:
        stopped = self.coordinator.request_stop()
        if stopped:
            logger.info("Stop requested for running sync pass", job_id=self.coordinator.running_job_id)
        return stopped

    def get_status(self) -> dict:
        last = self.ledger.latest_job(kinds=PASS_KINDS, finished_only=True)
        return {
            "running": self.coordinator.is_running,
            "runningJobId": self.coordinator.running_job_id,
            "stopRequested": self.coordinator.stop_requested,
            "lastJob": last.to_dict() if last else None,
            "mappings": self.mappings.status_counts(),
        }

    async def wait_idle(self) -> None:
        """Await the background pass, if any."""
        if self._background is not None:
            await asyncio.gather(self._background, return_exceptions=True)

    # ═══════════════════════════════════════════════════════════════════
    #  PASS
    # ═══════════════════════════════════════════════════════════════════

    async def _start_pass(self, kind: str, skus: Optional[list[str]], triggered_by: str, wait: bool) -> SyncJob:
        slot = self.coordinator.claim_pass()
        try:
            job = self.ledger.create_job(kind, triggered_by=triggered_by, skus=skus)
        except BaseException:
            slot.release()
            raise
        slot.attach(job.job_id)
        logger.info("Sync pass started", job_id=job.job_id, kind=kind, triggered_by=triggered_by)
        if wait:
            return await self._run_pass(job, skus, slot)
        self._background = asyncio.create_task(self._run_pass(job, skus, slot))
        return job

    async def _run_pass(self, job: SyncJob, skus: Optional[list[str]], slot: PassSlot) -> SyncJob:
        try:
            try:
                mappings = self.mappings.all_active(skus)
                outcomes = self._unknown_skus(skus, mappings)
                job = self.ledger.start_job(job.job_id, total_items=len(mappings) + len(outcomes))
            except PersistenceError as e:
                return self._fail(job, e.message)

            self.broadcaster.publish(SYNC_STARTED, {"jobId": job.job_id, "type": job.kind, "total": job.total_items})
            deadline = time.monotonic() + self.settings.pass_timeout_seconds
            rate, rate_error = self._load_rate()

            try:
                outcomes += await self._run_workers(mappings, job.job_id, deadline, rate, rate_error)
            except PersistenceError as e:
                return self._fail(job, e.message)

            errors = self._error_entries(outcomes)
            counts = {s: sum(1 for o in outcomes if o.status == s) for s in ("success", "failed", "skipped")}
            try:
                job = self.ledger.complete_job(
                    job.job_id, counts["success"], counts["failed"], counts["skipped"], errors
                )
            except PersistenceError as e:
                return self._fail(job, e.message, errors)
            self.broadcaster.publish(SYNC_COMPLETED, job.to_dict())
            return job
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Sync pass crashed", job_id=job.job_id)
            self._fail(job, f"{e.__class__.__name__}: {e}")
            raise
        finally:
            slot.release()

    def _unknown_skus(self, skus: Optional[list[str]], mappings: list[SkuMapping]) -> list[ItemOutcome]:
        """Requested SKUs with no active mapping are reported as skipped."""
        if skus is None:
            return []
        found = {m.sku for m in mappings}
        missing = sorted({normalize_sku(s) for s in skus} - found)
        return [ItemOutcome(sku=s, status="skipped", errors=["MAPPING_NOT_FOUND: no active mapping"]) for s in missing]

    async def _run_workers(self, mappings, job_id: str, deadline: float, rate, rate_error) -> list[ItemOutcome]:
        queue: asyncio.Queue = asyncio.Queue()
        for m in mappings:
            queue.put_nowait(m)
        outcomes: list[ItemOutcome] = []
        aborted: list[PersistenceError] = []

        async def worker():
            while True:
                try:
                    mapping = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                reason = self._skip_reason(deadline, aborted)
                if reason:
                    outcomes.append(ItemOutcome(sku=mapping.sku, status="skipped", errors=[reason]))
                    continue
                try:
                    outcomes.append(await self._reconcile_item(mapping, job_id, deadline, rate, rate_error))
                except PersistenceError as e:
                    aborted.append(e)
                except Exception as e:
                    try:
                        outcomes.append(self._item_crashed(mapping, e, job_id))
                    except PersistenceError as pe:
                        aborted.append(pe)

        workers = max(1, min(self.settings.sync_worker_count, len(mappings) or 1))
        await asyncio.gather(*(worker() for _ in range(workers)))
        if aborted:
            raise aborted[0]
        return outcomes

    def _item_crashed(self, mapping: SkuMapping, error: Exception, job_id: str) -> ItemOutcome:
        """Record an error that escaped item reconciliation as that item's failure."""
        if isinstance(error, SkuSyncError):
            message = f"{error.code}: {error.message}"
        else:
            logger.exception("Unexpected error reconciling item", sku=mapping.sku, job_id=job_id)
            message = f"UNEXPECTED_ERROR: {error.__class__.__name__}: {error}"
        outcome = ItemOutcome(sku=mapping.sku, status="failed", errors=[message])
        return self._finish_item(mapping, outcome, job_id)

    def _skip_reason(self, deadline: float, aborted: list) -> Optional[str]:
        if aborted:
            return "SKIPPED: pass aborted"
        if self.coordinator.stop_requested:
            return "SKIPPED: stop requested"
        if time.monotonic() >= deadline:
            return "SKIPPED: pass timeout"
        return None

    def _load_rate(self):
        try:
            return self.rates.current_rate(), None
        except ExchangeRateUnavailable as e:
            logger.warning("No valid exchange rate, prices will not be synced", reason=e.message)
            return None, e

    def _fail(self, job: SyncJob, reason: str, errors: Optional[list] = None) -> SyncJob:
        logger.error("Sync job failed", job_id=job.job_id, reason=reason)
        failed = self.ledger.fail_job(job.job_id, reason, errors)
        self.broadcaster.publish(SYNC_COMPLETED, failed.to_dict())
        return failed

    @staticmethod
    def _error_entries(outcomes: list[ItemOutcome]) -> list[dict]:
        ts = _utcnow().isoformat()
        entries = []
        for o in outcomes:
            for msg in o.errors + o.notes:
                entries.append({"sku": o.sku, "error": msg, "timestamp": ts})
        return entries

    # ═══════════════════════════════════════════════════════════════════
    #  ITEM RECONCILIATION
    # ═══════════════════════════════════════════════════════════════════

    def target_inventory(self, marketplace: InventorySnapshot, storefront: InventorySnapshot, now: datetime) -> int:
        return target_inventory(marketplace, storefront, now, self.settings.inventory_stale_after_seconds)

    async def _read_both(self, mapping: SkuMapping, deadline: float):
        results = await asyncio.gather(
            self.marketplace.read_state(mapping.marketplace_product_ref, deadline),
            self.storefront.read_state(mapping.variant_ref, deadline),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException) and not isinstance(r, PlatformError):
                raise r
        return results

    async def _reconcile_item(self, mapping: SkuMapping, job_id: str, deadline: float, rate, rate_error) -> ItemOutcome:
        outcome = ItemOutcome(sku=mapping.sku, status="success")
        async with self.coordinator.sku_lock(mapping.sku):
            m_state, s_state = await self._read_both(mapping, deadline)
            read_errors = [r for r in (m_state, s_state) if isinstance(r, PlatformError)]
            if read_errors:
                outcome.errors = [f"{e.code}: {e.message}" for e in read_errors]
                return self._finish_item(mapping, outcome, job_id)

            now = self._clock()
            self.mappings.record_last_known(
                mapping.sku,
                now,
                marketplace_qty=m_state.inventory.quantity,
                storefront_qty=s_state.inventory.quantity,
                storefront_committed=s_state.inventory.committed,
                marketplace_price=m_state.price,
                storefront_price=s_state.price,
            )

            target = self.target_inventory(m_state.inventory, s_state.inventory, now)
            await self._converge_inventory(mapping, job_id, deadline, outcome, target, m_state, s_state)
            if rate_error is not None:
                outcome.notes.append(f"PRICE_SKIPPED: {rate_error.message}")
            else:
                await self._converge_price(mapping, job_id, deadline, outcome, rate.rate, m_state.price, s_state.price)
        return self._finish_item(mapping, outcome, job_id)

    async def _converge_inventory(
        self,
        mapping: SkuMapping,
        job_id: str,
        deadline: float,
        outcome: ItemOutcome,
        target: int,
        m_state: Optional[PlatformState],
        s_state: Optional[PlatformState],
    ) -> None:
        tolerance = self.settings.inventory_tolerance
        if m_state is not None and abs(m_state.inventory.quantity - target) > tolerance:
            await self._write_inventory(
                self.marketplace, MARKETPLACE, mapping, mapping.marketplace_product_ref,
                m_state.inventory.quantity, target, job_id, deadline, outcome,
            )
        if s_state is not None and abs(s_state.inventory.available - target) > tolerance:
            await self._write_inventory(
                self.storefront, STOREFRONT, mapping, mapping.variant_ref,
                s_state.inventory.available, target, job_id, deadline, outcome,
            )

    async def _converge_price(
        self,
        mapping: SkuMapping,
        job_id: str,
        deadline: float,
        outcome: ItemOutcome,
        rate: Decimal,
        source_price: Optional[Decimal],
        current: Optional[Decimal],
    ) -> None:
        if source_price is None:
            outcome.notes.append("PRICE_SKIPPED: marketplace price missing")
            return
        try:
            target = calculate_target_price(source_price, rate, mapping.price_margin)
        except ValidationError as e:
            outcome.errors.append(f"{e.code}: {e.message}")
            return
        if current is not None and abs(current - target) <= self.settings.price_tolerance:
            return
        try:
            await self.storefront.write_price(mapping.variant_ref, target, deadline)
        except PlatformError as e:
            outcome.errors.append(f"{e.code}: {e.message}")
            self.ledger.log_activity(
                "price_update", mapping.sku, STOREFRONT, job_id, success=False, message=e.message
            )
            return
        outcome.writes += 1
        self.ledger.log_activity(
            "price_update",
            mapping.sku,
            STOREFRONT,
            job_id,
            message=f"{current} -> {target}",
            details={"previous": str(current) if current is not None else None, "price": str(target),
                     "sourcePrice": str(source_price), "rate": str(rate), "margin": str(mapping.price_margin)},
        )
        self.broadcaster.publish(
            PRICE_UPDATE,
            {"sku": mapping.sku, "platform": STOREFRONT, "previous": str(current) if current is not None else None,
             "price": str(target), "jobId": job_id},
        )

    async def _write_inventory(
        self, client, platform: str, mapping: SkuMapping, ref: str,
        previous: int, target: int, job_id: str, deadline: float, outcome: ItemOutcome,
    ) -> bool:
        try:
            await client.write_inventory(ref, target, deadline)
        except PlatformError as e:
            outcome.errors.append(f"{e.code}: {e.message}")
            self.ledger.log_activity(
                "inventory_update", mapping.sku, platform, job_id, success=False, message=e.message
            )
            return False
        outcome.writes += 1
        self.ledger.log_activity(
            "inventory_update",
            mapping.sku,
            platform,
            job_id,
            message=f"{previous} -> {target}",
            details={"previous": previous, "quantity": target},
        )
        self.broadcaster.publish(
            INVENTORY_UPDATE,
            {"sku": mapping.sku, "platform": platform, "previous": previous, "quantity": target, "jobId": job_id},
        )
        return True

    def _finish_item(self, mapping: SkuMapping, outcome: ItemOutcome, job_id: str) -> ItemOutcome:
        now = self._clock()
        if outcome.errors:
            outcome.status = "failed"
            self.mappings.mark_sync_result(mapping.sku, "error", now, "; ".join(outcome.errors))
            logger.warning("Sync item failed", sku=mapping.sku, job_id=job_id, errors=outcome.errors)
        elif outcome.notes:
            self.mappings.mark_sync_result(mapping.sku, "pending", now, "; ".join(outcome.notes))
        else:
            self.mappings.mark_sync_result(mapping.sku, "synced", now)
        return outcome

    # ═══════════════════════════════════════════════════════════════════
    #  WEBHOOK ACTIONS
    # ═══════════════════════════════════════════════════════════════════

    async def apply_webhook_action(self, action: WebhookAction, triggered_by: str = "webhook") -> SyncJob:
        """Apply one webhook-derived correction as its own job.

        Does not take the global pass slot; only the SKU's mutex.
        """
        if action.origin not in (MARKETPLACE, STOREFRONT) or action.kind not in ACTION_KINDS:
            raise ValidationError(f"Unsupported webhook action {action.origin}/{action.kind}")
        if action.kind == "price" and action.origin != MARKETPLACE:
            raise ValidationError("Only marketplace price changes are propagated")
        mapping = self.mappings.active_mapping(action.sku)
        job = self.ledger.create_job("webhook", triggered_by=triggered_by, skus=[mapping.sku])
        try:
            self.ledger.start_job(job.job_id, total_items=1)
            deadline = time.monotonic() + self.settings.pass_timeout_seconds
            outcome = await self._apply_action(mapping.sku, action, job.job_id, deadline)
            return self.ledger.complete_job(
                job.job_id,
                success=1 if outcome.status == "success" else 0,
                failed=1 if outcome.status == "failed" else 0,
                skipped=1 if outcome.status == "skipped" else 0,
                errors=self._error_entries([outcome]),
            )
        except PersistenceError as e:
            return self._fail(job, e.message)
        except Exception as e:
            logger.exception("Webhook action crashed", job_id=job.job_id, sku=mapping.sku)
            self._fail(job, f"{e.__class__.__name__}: {e}")
            raise

    async def _apply_action(self, sku: str, action: WebhookAction, job_id: str, deadline: float) -> ItemOutcome:
        outcome = ItemOutcome(sku=sku, status="success")
        async with self.coordinator.sku_lock(sku):
            # Re-read under the lock; a pass may have updated last-known state
            mapping = self.mappings.find_by_sku(sku)
            if mapping is None or not mapping.active:
                outcome.status = "skipped"
                outcome.notes.append("SKIPPED: mapping deactivated")
                return outcome
            try:
                if action.kind == "price":
                    await self._apply_price_action(mapping, action, job_id, deadline, outcome)
                else:
                    await self._apply_inventory_action(mapping, action, job_id, deadline, outcome)
            except PlatformError as e:
                outcome.errors.append(f"{e.code}: {e.message}")
        return self._finish_item(mapping, outcome, job_id)

    async def _origin_available(self, mapping: SkuMapping, action: WebhookAction, deadline: float) -> int:
        """The originating platform's stock after the event."""
        if action.kind == "inventory_level":
            return int(action.quantity)
        if action.origin == MARKETPLACE:
            last = mapping.last_marketplace_qty
        elif mapping.last_storefront_qty is not None:
            last = mapping.last_storefront_qty - (mapping.last_storefront_committed or 0)
        else:
            last = None
        if last is not None:
            return last + int(action.quantity or 0)
        # No last-known state: the live figure already includes the event
        client = self.marketplace if action.origin == MARKETPLACE else self.storefront
        ref = mapping.marketplace_product_ref if action.origin == MARKETPLACE else mapping.variant_ref
        snapshot = (await client.read_state(ref, deadline)).inventory
        return snapshot.quantity if action.origin == MARKETPLACE else snapshot.available

    async def _apply_inventory_action(
        self, mapping: SkuMapping, action: WebhookAction, job_id: str, deadline: float, outcome: ItemOutcome
    ) -> None:
        target = max(await self._origin_available(mapping, action, deadline), 0)
        now = self._clock()
        if action.origin == MARKETPLACE:
            other = await self.storefront.read_state(mapping.variant_ref, deadline)
            self.mappings.record_last_known(
                mapping.sku, now, marketplace_qty=target,
                storefront_qty=other.inventory.quantity, storefront_committed=other.inventory.committed,
            )
            await self._converge_inventory(mapping, job_id, deadline, outcome, target, None, other)
        else:
            other = await self.marketplace.read_state(mapping.marketplace_product_ref, deadline)
            committed = mapping.last_storefront_committed or 0
            self.mappings.record_last_known(
                mapping.sku, now, marketplace_qty=other.inventory.quantity,
                storefront_qty=target + committed, storefront_committed=committed,
            )
            await self._converge_inventory(mapping, job_id, deadline, outcome, target, other, None)

    async def _apply_price_action(
        self, mapping: SkuMapping, action: WebhookAction, job_id: str, deadline: float, outcome: ItemOutcome
    ) -> None:
        source_price = action.price
        if source_price is None:
            source_price = (await self.marketplace.read_state(mapping.marketplace_product_ref, deadline)).price
        try:
            rate = self.rates.current_rate()
        except ExchangeRateUnavailable as e:
            outcome.notes.append(f"PRICE_SKIPPED: {e.message}")
            return
        current = (await self.storefront.read_state(mapping.variant_ref, deadline)).price
        self.mappings.record_last_known(
            mapping.sku, self._clock(), marketplace_price=source_price, storefront_price=current
        )
        await self._converge_price(mapping, job_id, deadline, outcome, rate.rate, source_price, current)
