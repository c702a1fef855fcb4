from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from receiptgold.api.dependencies import get_revenuecat_ingestion
from receiptgold.api.routes.stripe_webhooks import webhook_ack
from receiptgold.core.config import settings
from receiptgold.core.observability import sentry_breadcrumb, sentry_capture, sentry_set_tags
from receiptgold.services.revenuecat import RevenueCatIngestion, decode_revenuecat_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

WEBHOOK_PATH = "/webhooks/revenuecat"


def _authorized(header: str | None, secret: str) -> bool:
    expected = f"Bearer {secret}"
    return hmac.compare_digest((header or "").encode("utf-8"), expected.encode("utf-8"))


@router.post(WEBHOOK_PATH)
async def revenuecat_webhook(
    request: Request,
    ingestion: RevenueCatIngestion = Depends(get_revenuecat_ingestion),
):
    """Handle RevenueCat webhook events.

    RevenueCat authenticates with the shared secret configured on its
    dashboard, sent as a Bearer token.  Like the Stripe endpoint, every
    event that parses is acknowledged with 200 and failures are only
    logged and reported.
    """
    secret = settings.REVENUECAT_WEBHOOK_SECRET
    if not secret:
        logger.error("REVENUECAT_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")
    if not _authorized(request.headers.get("authorization"), secret):
        logger.warning("[revenuecat] webhook with invalid authorization rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = await request.body()
    try:
        body: Dict[str, Any] = json.loads(payload)
    except ValueError:
        logger.warning("[revenuecat] payload is not valid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    raw_event = body.get("event") if isinstance(body.get("event"), dict) else {}
    event_type = str(raw_event.get("type") or "")
    event_id = str(raw_event.get("id") or "")

    sentry_set_tags({"revenuecat.event_type": event_type})
    sentry_breadcrumb(category="revenuecat", message=f"webhook:{event_type}", data={"event_id": event_id})

    try:
        event = decode_revenuecat_event(body)
        outcome = await ingestion.handle(event)
    except Exception as exc:
        logger.exception("[revenuecat] failed processing event type=%s id=%s; acknowledging", event_type, event_id)
        sentry_capture(exc)
        return webhook_ack(event_type, event_id, processed=False)

    logger.info(
        "[revenuecat] processed event type=%s id=%s handled=%s user=%s detail=%s",
        event_type, event_id, outcome.handled, outcome.user_id, outcome.detail,
    )
    return webhook_ack(event_type, event_id, processed=outcome.handled)
