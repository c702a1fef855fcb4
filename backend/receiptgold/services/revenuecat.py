"""RevenueCat webhook events: decoding and dispatch onto the reconciler.

Store purchases made on mobile reach the service through RevenueCat.  Each
webhook body nests the event under ``event``; it is decoded once into a
``RevenueCatEvent`` and dispatched the same way Stripe events are:

* ``INITIAL_PURCHASE``, ``PRODUCT_CHANGE`` and ``UNCANCELLATION`` apply the
  tier of the purchased product;
* ``RENEWAL`` refreshes the period and records the payment;
* ``CANCELLATION`` and ``EXPIRATION`` downgrade like a deleted subscription;
* ``BILLING_ISSUE`` marks the subscription past due.

The user is taken from ``aliases``, then ``app_user_id``, then
``original_app_user_id``; anonymous RevenueCat ids are never used.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.core.errors import MalformedEventError, UnknownAccountError
from receiptgold.models.enums import SubscriptionStatus
from receiptgold.services.events import InvoicePayload
from receiptgold.services.ingestion import IngestionOutcome
from receiptgold.services.reconciliation import BillingUpdate, SubscriptionReconciler, TransitionRequest
from receiptgold.services.tiers import TierResolver
from receiptgold.utils.helpers import from_unix_ms, utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_ID_PREFIX = "$RCAnonymousID:"

# Event type -> history reason for events that set the purchased tier
TIER_EVENTS = {
    "INITIAL_PURCHASE": "subscription_created",
    "PRODUCT_CHANGE": "subscription_updated",
    "UNCANCELLATION": "subscription_reactivated",
}
RENEWAL_EVENTS = frozenset({"RENEWAL"})
ENDING_EVENTS = frozenset({"CANCELLATION", "EXPIRATION"})
BILLING_ISSUE_EVENTS = frozenset({"BILLING_ISSUE"})


def app_user_id(event: Mapping[str, Any]) -> Optional[str]:
    candidates: List[Any] = []
    aliases = event.get("aliases")
    if isinstance(aliases, list):
        candidates.extend(aliases)
    candidates.extend([event.get("app_user_id"), event.get("original_app_user_id")])
    for candidate in candidates:
        if isinstance(candidate, str) and candidate and not candidate.startswith(ANONYMOUS_ID_PREFIX):
            return candidate
    return None


def _amount_minor_units(event: Mapping[str, Any]) -> tuple[int, Optional[str]]:
    """Return (amount in cents, currency) of the purchase, preferring the store currency."""
    raw = event.get("price_in_purchased_currency")
    currency = event.get("currency")
    if raw is None:
        raw, currency = event.get("price"), "USD"
    try:
        amount = int(round(float(raw) * 100)) if raw is not None else 0
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"RevenueCat event {event.get('id')} has a non-numeric price") from exc
    return max(amount, 0), (str(currency).lower() if currency else None)


@dataclass(frozen=True)
class RevenueCatEvent:
    event_id: str
    event_type: str
    user_id: Optional[str]
    product_id: Optional[str]
    purchased_at: Optional[dt.datetime]
    expires_at: Optional[dt.datetime]
    transaction_id: Optional[str]
    original_transaction_id: Optional[str]
    amount: int
    currency: Optional[str]

    @property
    def invoice_id(self) -> str:
        return f"rc_{self.transaction_id or self.event_id}"

    def billing(self) -> BillingUpdate:
        return BillingUpdate(
            external_subscription_id=self.original_transaction_id,
            current_period_start=self.purchased_at,
            current_period_end=self.expires_at,
        )

    def invoice(self) -> InvoicePayload:
        return InvoicePayload(
            invoice_id=self.invoice_id,
            customer_id=None,
            subscription_id=self.original_transaction_id,
            amount_paid=self.amount,
            currency=self.currency,
            period_start=self.purchased_at,
            period_end=self.expires_at,
            metadata_user_id=self.user_id,
        )


def decode_revenuecat_event(body: Mapping[str, Any]) -> RevenueCatEvent:
    """Decode a parsed RevenueCat webhook body.

    Raises:
        MalformedEventError: the body has no ``event`` object or no type.
    """
    event = body.get("event")
    if not isinstance(event, Mapping):
        raise MalformedEventError("RevenueCat webhook body has no event object")
    event_type = str(event.get("type") or "")
    if not event_type:
        raise MalformedEventError("RevenueCat event has no type")
    product_id = event.get("product_id")
    if event_type == "PRODUCT_CHANGE" and event.get("new_product_id"):
        product_id = event.get("new_product_id")
    amount, currency = _amount_minor_units(event)
    original_transaction_id = event.get("original_transaction_id")
    transaction_id = event.get("transaction_id")
    return RevenueCatEvent(
        event_id=str(event.get("id") or ""),
        event_type=event_type,
        user_id=app_user_id(event),
        product_id=str(product_id) if product_id else None,
        purchased_at=from_unix_ms(event.get("purchased_at_ms")),
        expires_at=from_unix_ms(event.get("expiration_at_ms")),
        transaction_id=str(transaction_id) if transaction_id else None,
        original_transaction_id=str(original_transaction_id) if original_transaction_id else None,
        amount=amount,
        currency=currency,
    )


class RevenueCatIngestion:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: TierResolver,
        reconciler: SubscriptionReconciler,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.reconciler = reconciler

    def transition_for(self, event: RevenueCatEvent, user_id: str, reason: str) -> TransitionRequest:
        resolution = self.resolver.resolve_tier(None, event.product_id)
        if resolution.was_defaulted:
            logger.warning(
                "[revenuecat] product %s of event %s fell back to %s",
                event.product_id, event.event_id, resolution.tier.value,
            )
        return TransitionRequest(
            user_id=user_id,
            target_tier=resolution.tier,
            status=SubscriptionStatus.ACTIVE,
            billing=event.billing(),
            reason=reason,
        )

    async def handle(self, event: RevenueCatEvent, now: Optional[dt.datetime] = None) -> IngestionOutcome:
        now = now or utcnow()
        handled = (
            event.event_type in TIER_EVENTS
            or event.event_type in RENEWAL_EVENTS
            or event.event_type in ENDING_EVENTS
            or event.event_type in BILLING_ISSUE_EVENTS
        )
        if not handled:
            logger.info("[revenuecat] unhandled event type=%s id=%s acknowledged", event.event_type, event.event_id)
            return IngestionOutcome(event_type=event.event_type, handled=False, detail="unhandled_event_type")
        if not event.user_id:
            raise UnknownAccountError(f"RevenueCat event {event.event_id} has only anonymous user ids")
        user_id = event.user_id

        if event.event_type in TIER_EVENTS:
            request = self.transition_for(event, user_id, TIER_EVENTS[event.event_type])
            async with self.session_factory.begin() as session:
                result = await self.reconciler.apply_transition(session, request, now)
            detail = "tier_changed" if result.tier_changed else ("created" if result.created else "refreshed")
        elif event.event_type in RENEWAL_EVENTS:
            request = self.transition_for(event, user_id, "payment_succeeded")
            async with self.session_factory.begin() as session:
                await self.reconciler.apply_transition(session, request, now)
                await self.reconciler.apply_payment_succeeded(session, event.invoice(), user_id, now)
            detail = "payment_recorded"
        elif event.event_type in ENDING_EVENTS:
            async with self.session_factory.begin() as session:
                await self.reconciler.apply_subscription_deleted(
                    session, user_id, BillingUpdate(current_period_end=event.expires_at), now
                )
            detail = "downgraded"
        else:
            async with self.session_factory.begin() as session:
                await self.reconciler.apply_payment_failed(session, event.invoice(), user_id, now)
            detail = "past_due"
        return IngestionOutcome(event_type=event.event_type, handled=True, user_id=user_id, detail=detail)


__all__ = [
    "ANONYMOUS_ID_PREFIX",
    "RevenueCatEvent",
    "RevenueCatIngestion",
    "app_user_id",
    "decode_revenuecat_event",
]
