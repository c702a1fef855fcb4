from __future__ import annotations

import fnmatch
import json
import logging
from typing import Any, Dict

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from receiptgold.api.dependencies import get_event_ingestion
from receiptgold.core.config import get_webhook_secret_list, settings
from receiptgold.core.observability import sentry_breadcrumb, sentry_capture, sentry_set_tags
from receiptgold.models.schemas import WebhookAck
from receiptgold.services.events import decode_event
from receiptgold.services.ingestion import EventIngestion
from receiptgold.utils.helpers import isoformat, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

WEBHOOK_PATH = "/webhooks/stripe"


def webhook_ack(event_type: str | None, event_id: str | None, **flags: Any) -> JSONResponse:
    ack = WebhookAck(event_type=event_type, event_id=event_id, timestamp=isoformat(utcnow()), **flags)
    return JSONResponse(status_code=200, content=ack.model_dump(by_alias=True, exclude_none=True))


def _verify_signature(payload_text: str, sig_header: str, secrets: list[str]) -> None:
    """Raise HTTPException(400) unless one of ``secrets`` signed the payload."""
    last_error: Exception | None = None
    for secret in secrets:
        try:
            stripe.WebhookSignature.verify_header(
                payload_text,
                sig_header,
                secret,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
            return
        except stripe.SignatureVerificationError as e:
            last_error = e
    logger.warning("[stripe] invalid signature after trying %d secrets: %s", len(secrets), last_error)
    raise HTTPException(status_code=400, detail="Invalid signature")


def _is_filtered(event_type: str) -> bool:
    allowed = (settings.STRIPE_WEBHOOK_ALLOWED_EVENTS or "").strip()
    if not allowed:
        return False
    patterns = [p.strip() for p in allowed.split(",") if p.strip()]
    return bool(patterns) and not any(fnmatch.fnmatch(event_type, pat) for pat in patterns)


@router.post(WEBHOOK_PATH)
async def stripe_webhook(
    request: Request,
    ingestion: EventIngestion = Depends(get_event_ingestion),
):
    """Handle Stripe webhook events.

    Verifies the Stripe-Signature header before parsing.  Responds 400 for a
    missing or invalid signature and for bodies that are not JSON.  Once the
    event has parsed the response is always 200: processing errors are
    logged and reported to Sentry, but never turned into a non-2xx status,
    because a redelivery cannot repair a payload we already failed on.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("[stripe] webhook without signature header rejected")
        raise HTTPException(status_code=400, detail="Missing signature")

    endpoint_secrets = get_webhook_secret_list()
    if not endpoint_secrets:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    try:
        payload_text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Payload is not UTF-8")
    _verify_signature(payload_text, sig_header, endpoint_secrets)

    try:
        raw_event: Dict[str, Any] = json.loads(payload_text)
    except ValueError:
        logger.warning("[stripe] verified payload is not valid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(raw_event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = str(raw_event.get("type") or "")
    event_id = str(raw_event.get("id") or "")

    if _is_filtered(event_type):
        logger.debug("[stripe] event filtered by allowlist type=%s", event_type)
        return webhook_ack(event_type, event_id, filtered=True, processed=False)

    sentry_set_tags({"stripe.event_type": event_type})
    sentry_breadcrumb(category="stripe", message=f"webhook:{event_type}", data={"event_id": event_id})

    try:
        event = decode_event(raw_event)
        outcome = await ingestion.handle(event)
    except Exception as exc:
        logger.exception("[stripe] failed processing event type=%s id=%s; acknowledging", event_type, event_id)
        sentry_capture(exc)
        return webhook_ack(event_type, event_id, processed=False)

    logger.info(
        "[stripe] processed event type=%s id=%s handled=%s user=%s detail=%s",
        event_type, event_id, outcome.handled, outcome.user_id, outcome.detail,
    )
    return webhook_ack(event_type, event_id, processed=outcome.handled)


@router.api_route(WEBHOOK_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def stripe_webhook_wrong_method(request: Request):
    logger.warning("[stripe] webhook called with method %s", request.method)
    raise HTTPException(status_code=400, detail="Method not allowed")
