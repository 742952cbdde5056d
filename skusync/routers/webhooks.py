"""Webhook endpoints — signature check on the raw body, then hand off to the pipeline.

Handlers answer fast: verification and logging happen inline, the actual
platform corrections run on the pipeline's background consumer.
"""

import json

from fastapi import APIRouter, Depends, Request
from loguru import logger

from ..dependencies import get_pipeline
from ..errors import ValidationError
from ..services.webhook_service import NAVER, SHOPIFY, WebhookPipeline

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _parse(raw: bytes) -> dict:
    try:
        payload = json.loads(raw or b"{}")
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


@router.post("/shopify")
async def shopify_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
    raw = await request.body()
    pipeline.verify_shopify(raw, request.headers.get("X-Shopify-Hmac-Sha256"))
    topic = request.headers.get("X-Shopify-Topic", "")
    webhook_id = request.headers.get("X-Shopify-Webhook-Id")
    result = pipeline.receive(SHOPIFY, topic, webhook_id, _parse(raw))
    logger.debug("Shopify webhook accepted", topic=topic, webhook_id=webhook_id)
    return result


@router.post("/naver")
async def naver_webhook(request: Request, pipeline: WebhookPipeline = Depends(get_pipeline)):
    raw = await request.body()
    pipeline.verify_naver(raw, request.headers.get("X-Naver-Signature"))
    payload = _parse(raw)
    event_id = payload.get("eventId")
    return pipeline.receive(NAVER, payload.get("eventType") or "", str(event_id) if event_id else None, payload)


@router.get("/logs")
async def webhook_logs(platform: str | None = None, limit: int = 50, pipeline: WebhookPipeline = Depends(get_pipeline)):
    return [row.to_dict() for row in pipeline.recent(limit=min(limit, 500), platform=platform)]
