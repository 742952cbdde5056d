"""Webhook pipeline — verify, log, normalize and queue platform callbacks.

Usage:
    pipeline.verify_shopify(raw_body, request.headers["X-Shopify-Hmac-Sha256"])
    result = pipeline.receive("shopify", topic, webhook_id, payload)   # logs + enqueues
    asyncio.create_task(pipeline.run())                                # consumer

Flow: the HTTP handler verifies the signature and calls receive(), which
writes the webhook log row, drops replays (same platform + external id) and
enqueues normalized WebhookEvents. The background consumer hands each
event to SyncEngine.apply_webhook_action() and marks the log row processed.
The pipeline never writes mapping state itself.

Shopify topics:
    orders/paid               → inventory_delta (-qty) per line item
    orders/cancelled          → inventory_delta (+qty) per line item
    inventory_levels/update   → inventory_level (absolute available)
    products/update           → logged only

Naver callbacks (JSON, hex HMAC-SHA256 in X-Naver-Signature):
    {"eventId", "eventType", "channelProductNo", "quantity", "stockQuantity", "salePrice"}
    ORDER_PAID / ORDER_CANCELLED / STOCK_CHANGED / PRICE_CHANGED
"""

import asyncio
import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from loguru import logger

from ..config import settings as default_settings
from ..connectors.base import MARKETPLACE, STOREFRONT, as_decimal, as_int
from ..database import session_scope
from ..errors import SkuSyncError, WebhookSignatureError
from ..models import WebhookLog
from .sync_engine import WebhookAction

SHOPIFY = "shopify"
NAVER = "naver"


@dataclass
class WebhookEvent:
    platform: str
    kind: str  # inventory_delta | inventory_level | price
    external_ref: Optional[str] = None
    ref_kind: Optional[str] = None  # mapping field the ref matches, see MappingDirectory
    sku: Optional[str] = None
    quantity: Optional[int] = None
    price: Optional[Decimal] = None
    log_id: Optional[int] = None
    payload: dict = field(default_factory=dict)

    @property
    def origin(self) -> str:
        return MARKETPLACE if self.platform == NAVER else STOREFRONT


# ═══════════════════════════════════════════════════════════════════════
#  SIGNATURES
# ═══════════════════════════════════════════════════════════════════════


def shopify_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def naver_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def _numeric_id(ref) -> str:
    """'gid://shopify/Location/123' and '123' both become '123'."""
    return str(ref).rsplit("/", 1)[-1] if ref is not None else ""


# ═══════════════════════════════════════════════════════════════════════
#  NORMALIZATION
# ═══════════════════════════════════════════════════════════════════════


def normalize_shopify(topic: str, payload: dict, location_id: str = "") -> list[WebhookEvent]:
    if topic in ("orders/paid", "orders/cancelled"):
        sign = -1 if topic == "orders/paid" else 1
        events = []
        for item in payload.get("line_items") or []:
            qty = as_int(item.get("quantity"))
            if qty <= 0:
                continue
            variant_id = item.get("variant_id")
            events.append(
                WebhookEvent(
                    platform=SHOPIFY,
                    kind="inventory_delta",
                    external_ref=str(variant_id) if variant_id else None,
                    ref_kind="storefront" if variant_id else None,
                    sku=None if variant_id else (item.get("sku") or None),
                    quantity=sign * qty,
                    payload={"orderId": payload.get("id"), "lineItemId": item.get("id")},
                )
            )
        return [e for e in events if e.external_ref or e.sku]
    if topic == "inventory_levels/update":
        if location_id and _numeric_id(payload.get("location_id")) != _numeric_id(location_id):
            return []
        if payload.get("inventory_item_id") is None or payload.get("available") is None:
            return []
        return [
            WebhookEvent(
                platform=SHOPIFY,
                kind="inventory_level",
                external_ref=str(payload["inventory_item_id"]),
                ref_kind="storefront_inventory_item",
                quantity=as_int(payload.get("available")),
            )
        ]
    return []


def normalize_naver(payload: dict) -> list[WebhookEvent]:
    event_type = (payload.get("eventType") or "").upper()
    ref = payload.get("channelProductNo")
    if ref is None:
        return []
    base = dict(platform=NAVER, external_ref=str(ref), ref_kind="marketplace", sku=payload.get("sku"))
    if event_type in ("ORDER_PAID", "ORDER_CANCELLED"):
        qty = as_int(payload.get("quantity"))
        if qty <= 0:
            return []
        sign = -1 if event_type == "ORDER_PAID" else 1
        return [WebhookEvent(kind="inventory_delta", quantity=sign * qty, **base)]
    if event_type == "STOCK_CHANGED" and payload.get("stockQuantity") is not None:
        return [WebhookEvent(kind="inventory_level", quantity=as_int(payload.get("stockQuantity")), **base)]
    if event_type == "PRICE_CHANGED":
        return [WebhookEvent(kind="price", price=as_decimal(payload.get("salePrice")), **base)]
    return []


# ═══════════════════════════════════════════════════════════════════════
#  PIPELINE
# ═══════════════════════════════════════════════════════════════════════


class WebhookPipeline:
    def __init__(self, engine, mappings, session_factory=None, config=None, queue_size: int = 1000):
        self.engine = engine
        self.mappings = mappings
        self._session_factory = session_factory
        self.settings = config or default_settings
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        # log_id -> [events still queued, first error]
        self._pending: dict[int, list] = {}
        self._running = False

    def _session(self):
        return session_scope(self._session_factory)

    # ── Verification ─────────────────────────────────────────────────

    def verify_shopify(self, raw_body: bytes, header: Optional[str]) -> None:
        secret = self.settings.shopify_webhook_secret
        if not secret or not header:
            raise WebhookSignatureError(SHOPIFY)
        if not hmac.compare_digest(shopify_signature(raw_body, secret), header.strip()):
            logger.warning("Shopify webhook signature mismatch")
            raise WebhookSignatureError(SHOPIFY)

    def verify_naver(self, raw_body: bytes, header: Optional[str]) -> None:
        secret = self.settings.naver_webhook_secret
        if not secret or not header:
            raise WebhookSignatureError(NAVER)
        if not hmac.compare_digest(naver_signature(raw_body, secret), header.strip().lower()):
            logger.warning("Naver webhook signature mismatch")
            raise WebhookSignatureError(NAVER)

    # ── Intake ───────────────────────────────────────────────────────

    def receive(self, platform: str, topic: str, external_id: Optional[str], payload: dict) -> dict:
        """Log one verified delivery and queue its events. Replays are acknowledged and skipped."""
        if platform == SHOPIFY:
            events = normalize_shopify(topic, payload, self.settings.shopify_location_id)
        else:
            events = normalize_naver(payload)

        with self._session() as db:
            if external_id:
                seen = (
                    db.query(WebhookLog.id)
                    .filter(WebhookLog.platform == platform, WebhookLog.external_id == external_id)
                    .first()
                )
                if seen:
                    logger.info("Duplicate webhook skipped", platform=platform, external_id=external_id)
                    return {"accepted": False, "duplicate": True, "events": 0}
            row = WebhookLog(
                platform=platform,
                event=topic,
                external_id=external_id,
                sku=next((e.sku for e in events if e.sku), None),
                payload=payload,
                created_at=datetime.now(timezone.utc),
            )
            if not events:
                row.processed = True
                row.success = True
                row.processed_at = row.created_at
            db.add(row)
            db.flush()
            log_id = row.id

        if events:
            self._pending[log_id] = [len(events), None]
        for event in events:
            event.log_id = log_id
            self.enqueue(event)
        logger.info("Webhook received", platform=platform, topic=topic, events=len(events))
        return {"accepted": True, "duplicate": False, "events": len(events), "logId": log_id}

    def enqueue(self, event: WebhookEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("Webhook queue full, event dropped", platform=event.platform, ref=event.external_ref)
            self._settle(event, "DROPPED: webhook queue full")

    # ── Consumer ─────────────────────────────────────────────────────

    async def run(self) -> None:
        """Consume queued events until stop() or cancellation."""
        self._running = True
        logger.info("Webhook consumer started")
        while self._running:
            event = await self.queue.get()
            try:
                await self.process(event)
            except Exception as e:
                logger.exception("Webhook event processing crashed", platform=event.platform)
                self._settle(event, f"{e.__class__.__name__}: {e}")
            finally:
                self.queue.task_done()

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> None:
        """Process everything currently queued (used by tests and shutdown)."""
        while not self.queue.empty():
            event = self.queue.get_nowait()
            try:
                await self.process(event)
            finally:
                self.queue.task_done()

    async def process(self, event: WebhookEvent):
        """Resolve the mapping and apply the event. Returns the job, or None if suppressed."""
        mapping = None
        if event.sku:
            mapping = self.mappings.find_by_sku(event.sku)
        elif event.external_ref and event.ref_kind:
            mapping = self.mappings.find_by_platform_ref(event.ref_kind, event.external_ref)

        if mapping is None or not mapping.active:
            reason = "unknown product" if mapping is None else f"mapping {mapping.sku} inactive"
            logger.info("Webhook action suppressed", platform=event.platform, ref=event.external_ref, reason=reason)
            self._settle(event, f"SUPPRESSED: {reason}")
            return None

        action = WebhookAction(
            sku=mapping.sku,
            origin=event.origin,
            kind=event.kind,
            quantity=event.quantity,
            price=event.price,
            external_ref=event.external_ref,
        )
        try:
            job = await self.engine.apply_webhook_action(action)
        except SkuSyncError as e:
            self._settle(event, f"{e.code}: {e.message}")
            return None
        error = None
        if job.status != "completed" or job.failed_count:
            error = "; ".join(entry["error"] for entry in job.errors or []) or job.failure_reason or job.status
        self._settle(event, error)
        return job

    def _settle(self, event: WebhookEvent, error: Optional[str]) -> None:
        """Mark the delivery's log row once all of its events are done."""
        if event.log_id is None:
            return
        state = self._pending.get(event.log_id)
        if state is not None:
            state[0] -= 1
            state[1] = state[1] or error
            if state[0] > 0:
                return
            error = state[1]
            self._pending.pop(event.log_id, None)
        with self._session() as db:
            row = db.get(WebhookLog, event.log_id)
            if row is None:
                return
            row.processed = True
            row.success = error is None
            row.error = error[:2000] if error else None
            row.processed_at = datetime.now(timezone.utc)

    def recent(self, limit: int = 50, platform: Optional[str] = None) -> list[WebhookLog]:
        with self._session() as db:
            q = db.query(WebhookLog)
            if platform:
                q = q.filter(WebhookLog.platform == platform)
            return q.order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc()).limit(limit).all()
