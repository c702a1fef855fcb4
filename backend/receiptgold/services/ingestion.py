"""Dispatch of decoded Stripe events onto the reconciler.

``EventIngestion`` receives its collaborators explicitly (session
factory, payment gateway, tier resolver, reconciler).  Each handled event
runs in its own transaction.  Errors propagate to the caller; the webhook
route is the only place that swallows them.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.core.errors import UnknownAccountError
from receiptgold.models.enums import SubscriptionStatus
from receiptgold.models.tables import Subscription
from receiptgold.services.events import (
    CheckoutCompleted,
    InvoicePayload,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ProviderEvent,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionPayload,
    SubscriptionUpdated,
    UnknownEvent,
)
from receiptgold.services.payment_gateway import PaymentGateway
from receiptgold.services.reconciliation import BillingUpdate, SubscriptionReconciler, TransitionRequest
from receiptgold.services.tiers import TierResolver
from receiptgold.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Provider statuses that end access; handled like a deletion
TERMINAL_PROVIDER_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})

_PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}


def status_from_provider(status: str) -> SubscriptionStatus:
    return _PROVIDER_STATUS_MAP.get(status, SubscriptionStatus.INCOMPLETE)


@dataclass(frozen=True)
class IngestionOutcome:
    event_type: str
    handled: bool
    user_id: Optional[str] = None
    detail: Optional[str] = None


class EventIngestion:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        resolver: TierResolver,
        reconciler: SubscriptionReconciler,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.resolver = resolver
        self.reconciler = reconciler

    async def handle(self, event: ProviderEvent, now: Optional[dt.datetime] = None) -> IngestionOutcome:
        now = now or utcnow()
        if isinstance(event, (SubscriptionCreated, SubscriptionUpdated)):
            return await self._on_subscription_changed(event.event_type, event.subscription, now)
        if isinstance(event, SubscriptionDeleted):
            return await self._on_subscription_deleted(event.event_type, event.subscription, now)
        if isinstance(event, CheckoutCompleted):
            return await self._on_checkout_completed(event, now)
        if isinstance(event, InvoicePaymentSucceeded):
            return await self._on_payment_succeeded(event, now)
        if isinstance(event, InvoicePaymentFailed):
            return await self._on_payment_failed(event, now)
        if isinstance(event, UnknownEvent):
            logger.info("[stripe] unhandled event type=%s id=%s acknowledged", event.event_type, event.event_id)
            return IngestionOutcome(event_type=event.event_type, handled=False, detail="unhandled_event_type")
        raise TypeError(f"unsupported event object {type(event).__name__}")

    # --- user resolution ------------------------------------------------
    async def _user_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id:
            return None
        if self.gateway.configured:
            user_id = await self.gateway.get_customer_user_id(customer_id)
            if user_id:
                return user_id
        async with self.session_factory() as session:
            return await session.scalar(
                select(Subscription.user_id).where(Subscription.external_customer_id == customer_id)
            )

    async def resolve_user_id(self, customer_id: Optional[str], *hints: Optional[str]) -> str:
        for hint in hints:
            if hint:
                return hint
        user_id = await self._user_for_customer(customer_id)
        if not user_id:
            raise UnknownAccountError(f"no user linked to customer {customer_id}")
        return user_id

    # --- handlers -------------------------------------------------------
    def transition_for(self, user_id: str, payload: SubscriptionPayload, reason: str) -> TransitionRequest:
        resolution = self.resolver.resolve_tier(payload.price_id, payload.product_id)
        if resolution.was_defaulted:
            logger.warning(
                "[stripe] subscription %s price=%s fell back to %s",
                payload.subscription_id, payload.price_id, resolution.tier.value,
            )
        return TransitionRequest(
            user_id=user_id,
            target_tier=resolution.tier,
            status=status_from_provider(payload.status),
            billing=BillingUpdate.from_subscription(payload),
            reason=reason,
        )

    async def _on_subscription_changed(self, event_type: str, payload: SubscriptionPayload, now: dt.datetime) -> IngestionOutcome:
        if payload.status in TERMINAL_PROVIDER_STATUSES:
            return await self._on_subscription_deleted(event_type, payload, now)
        user_id = await self.resolve_user_id(payload.customer_id, payload.metadata_user_id)
        reason = "subscription_created" if event_type == SubscriptionCreated.event_type else "subscription_updated"
        request = self.transition_for(user_id, payload, reason)
        async with self.session_factory.begin() as session:
            result = await self.reconciler.apply_transition(session, request, now)
        return IngestionOutcome(
            event_type=event_type,
            handled=True,
            user_id=user_id,
            detail="tier_changed" if result.tier_changed else ("created" if result.created else "refreshed"),
        )

    async def _on_subscription_deleted(self, event_type: str, payload: SubscriptionPayload, now: dt.datetime) -> IngestionOutcome:
        user_id = await self.resolve_user_id(payload.customer_id, payload.metadata_user_id)
        async with self.session_factory.begin() as session:
            await self.reconciler.apply_subscription_deleted(
                session, user_id, BillingUpdate.from_subscription(payload), now
            )
        return IngestionOutcome(event_type=event_type, handled=True, user_id=user_id, detail="downgraded")

    async def _on_checkout_completed(self, event: CheckoutCompleted, now: dt.datetime) -> IngestionOutcome:
        if not event.subscription_id:
            logger.info("[stripe] checkout %s has no subscription; nothing to reconcile", event.session_id)
            return IngestionOutcome(event_type=event.event_type, handled=False, detail="no_subscription")
        payload = await self.gateway.get_subscription(event.subscription_id)
        user_id = await self.resolve_user_id(
            event.customer_id or payload.customer_id,
            event.client_reference_id,
            event.metadata_user_id,
            payload.metadata_user_id,
        )
        if payload.status in TERMINAL_PROVIDER_STATUSES:
            return await self._on_subscription_deleted(event.event_type, payload, now)
        request = self.transition_for(user_id, payload, "checkout_completed")
        async with self.session_factory.begin() as session:
            result = await self.reconciler.apply_transition(session, request, now)
        return IngestionOutcome(
            event_type=event.event_type,
            handled=True,
            user_id=user_id,
            detail="tier_changed" if result.tier_changed else ("created" if result.created else "refreshed"),
        )

    async def _on_payment_succeeded(self, event: InvoicePaymentSucceeded, now: dt.datetime) -> IngestionOutcome:
        invoice = event.invoice
        user_id = await self.resolve_user_id(invoice.customer_id, invoice.metadata_user_id)

        # Provider fetch happens before the row lock is taken
        fallback: Optional[TransitionRequest] = None
        async with self.session_factory() as session:
            exists = await session.scalar(select(Subscription.user_id).where(Subscription.user_id == user_id))
        if exists is None:
            fallback = await self._fallback_request(user_id, invoice)

        async with self.session_factory.begin() as session:
            result = await self.reconciler.apply_payment_succeeded(
                session, invoice, user_id, now, fallback=fallback
            )
        return IngestionOutcome(
            event_type=event.event_type,
            handled=True,
            user_id=user_id,
            detail="created" if result.created else "payment_recorded",
        )

    async def _fallback_request(self, user_id: str, invoice: InvoicePayload) -> TransitionRequest:
        if not invoice.subscription_id:
            raise UnknownAccountError(
                f"invoice {invoice.invoice_id} has no subscription; cannot create subscription for {user_id}"
            )
        logger.info(
            "[stripe] no subscription row for user=%s; creating from provider subscription %s",
            user_id, invoice.subscription_id,
        )
        payload = await self.gateway.get_subscription(invoice.subscription_id)
        request = self.transition_for(user_id, payload, "payment_succeeded")
        return TransitionRequest(
            user_id=request.user_id,
            target_tier=request.target_tier,
            status=SubscriptionStatus.ACTIVE,
            billing=request.billing,
            reason=request.reason,
        )

    async def _on_payment_failed(self, event: InvoicePaymentFailed, now: dt.datetime) -> IngestionOutcome:
        invoice = event.invoice
        user_id = await self.resolve_user_id(invoice.customer_id, invoice.metadata_user_id)
        async with self.session_factory.begin() as session:
            await self.reconciler.apply_payment_failed(session, invoice, user_id, now)
        return IngestionOutcome(event_type=event.event_type, handled=True, user_id=user_id, detail="past_due")


__all__ = [
    "EventIngestion",
    "IngestionOutcome",
    "TERMINAL_PROVIDER_STATUSES",
    "status_from_provider",
]
