"""Subscription state transitions.

``SubscriptionReconciler`` turns a confirmed fact ("user U is now on tier
T with status S", "invoice I was paid", "the subscription was deleted")
into writes against the subscription, usage and receipt tables.  Every
public method expects to run inside a transaction owned by the caller::

    async with session_factory.begin() as session:
        result = await reconciler.apply_transition(session, request, now=now)

The subscription row is read with ``SELECT ... FOR UPDATE`` first, so two
transitions for the same user cannot interleave, and all writes of one
transition commit or roll back together.

Re-applying a fact is harmless: when the stored tier already equals the
target tier, no receipts are excluded, history is untouched and only
billing metadata is written again.  Duplicate webhook deliveries rely on
this instead of an event-id table.

On a tier change:

1. every receipt of the user not yet excluded is marked
   ``exclude_from_monthly_count`` (with ``previous_tier`` and the time),
   in keyset-paginated batches;
2. the open history entry is closed and a new open one appended;
3. the current month's usage row gets the new tier's limits;
4. the usage epoch ``last_monthly_count_reset_at`` moves to ``now``.

A downgrade caused by cancellation skips 1 and 4.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from receiptgold.core.config import Settings
from receiptgold.core.errors import UnknownAccountError
from receiptgold.models.enums import PaymentStatus, SubscriptionStatus, Tier
from receiptgold.models.tables import BillingHistory, Receipt, Subscription
from receiptgold.services.batching import iter_id_batches
from receiptgold.services.events import InvoicePayload, SubscriptionPayload
from receiptgold.services.tiers import FALLBACK_TIER, TierTable
from receiptgold.services.usage_window import anchor_next_reset, get_or_create_usage
from receiptgold.utils.helpers import isoformat

logger = logging.getLogger(__name__)

TRIAL_UPGRADE_REASON = "upgraded_to_paid"


@dataclass(frozen=True)
class BillingUpdate:
    """Provider billing fields; ``None`` keeps the stored value."""

    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_price_id: Optional[str] = None
    current_period_start: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: Optional[bool] = None
    trial_end: Optional[dt.datetime] = None

    @classmethod
    def from_subscription(cls, payload: SubscriptionPayload) -> "BillingUpdate":
        return cls(
            external_customer_id=payload.customer_id,
            external_subscription_id=payload.subscription_id,
            external_price_id=payload.price_id,
            current_period_start=payload.current_period_start,
            current_period_end=payload.current_period_end,
            cancel_at_period_end=payload.cancel_at_period_end,
            trial_end=payload.trial_end,
        )

    def apply_to(self, sub: Subscription) -> None:
        for name in (
            "external_customer_id",
            "external_subscription_id",
            "external_price_id",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "trial_end",
        ):
            value = getattr(self, name)
            if value is not None:
                setattr(sub, name, value)


@dataclass(frozen=True)
class TransitionRequest:
    user_id: str
    target_tier: Tier
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing: BillingUpdate = field(default_factory=BillingUpdate)
    reason: str = "subscription_updated"
    # False for downgrades caused by cancellation
    exclude_prior_receipts: bool = True
    # Only honoured when the subscription row is created
    trial_expires_at: Optional[dt.datetime] = None


@dataclass(frozen=True)
class TransitionResult:
    user_id: str
    created: bool
    tier_changed: bool
    from_tier: Optional[Tier]
    to_tier: Tier
    receipts_excluded: int
    trial_ended: bool


@dataclass(frozen=True)
class PaymentResult:
    user_id: str
    status: SubscriptionStatus
    created: bool
    ledger_appended: bool


def transition_history(
    history: Optional[List[Dict[str, Any]]],
    tier: Tier,
    now: dt.datetime,
    reason: str,
) -> List[Dict[str, Any]]:
    """Return a new history list with open entries closed and ``tier`` opened."""
    stamp = isoformat(now)
    entries = [dict(entry) for entry in (history or [])]
    for entry in entries:
        if entry.get("end_date") is None:
            entry["end_date"] = stamp
    entries.append({"tier": tier.value, "start_date": stamp, "end_date": None, "reason": reason})
    return entries


class SubscriptionReconciler:
    def __init__(self, tier_table: TierTable, batch_size: int = 400):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.tier_table = tier_table
        self.batch_size = batch_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "SubscriptionReconciler":
        return cls(TierTable.from_settings(settings), batch_size=settings.RECEIPT_EXCLUSION_BATCH_SIZE)

    async def lock_subscription(self, session: AsyncSession, user_id: str) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.user_id == user_id).with_for_update()
        return await session.scalar(stmt)

    async def exclude_receipts(
        self,
        session: AsyncSession,
        user_id: str,
        previous_tier: Optional[Tier],
        now: dt.datetime,
    ) -> int:
        """Mark every not-yet-excluded receipt of ``user_id``; returns the count."""
        stmt = select(Receipt.id).where(
            Receipt.user_id == user_id,
            Receipt.exclude_from_monthly_count.is_(False),
        )
        total = 0
        async for ids in iter_id_batches(session, stmt, Receipt.id, self.batch_size):
            await session.execute(
                update(Receipt)
                .where(Receipt.id.in_(ids))
                .values(
                    exclude_from_monthly_count=True,
                    previous_tier=previous_tier.value if previous_tier else None,
                    monthly_count_excluded_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            total += len(ids)
            logger.debug("[reconcile] excluded batch user=%s size=%d total=%d", user_id, len(ids), total)
        return total

    def _end_trial_if_upgrading(self, sub: Subscription, target: Tier, now: dt.datetime) -> bool:
        if not target.is_paid or not sub.is_trial_active(now):
            return False
        sub.trial_expires_at = now
        sub.trial_ended_early = True
        sub.trial_end_reason = TRIAL_UPGRADE_REASON
        return True

    async def apply_transition(
        self,
        session: AsyncSession,
        request: TransitionRequest,
        now: dt.datetime,
    ) -> TransitionResult:
        """Move ``request.user_id`` onto ``request.target_tier``.

        Creates the subscription row when it does not exist; a creation
        opens history, syncs usage limits and sets the epoch like a tier
        change but does not record ``last_upgrade``.
        """
        target = request.target_tier
        sub = await self.lock_subscription(session, request.user_id)
        created = sub is None
        from_tier: Optional[Tier] = None
        if sub is None:
            sub = Subscription(
                user_id=request.user_id,
                current_tier=target,
                status=request.status,
                history=[],
                cancel_at_period_end=False,
                trial_ended_early=False,
                created_at=now,
            )
            if request.trial_expires_at is not None:
                sub.trial_started_at = now
                sub.trial_expires_at = request.trial_expires_at
            session.add(sub)
        else:
            from_tier = sub.current_tier

        tier_changed = not created and from_tier != target
        receipts_excluded = 0
        if created or tier_changed:
            if request.exclude_prior_receipts:
                receipts_excluded = await self.exclude_receipts(session, request.user_id, from_tier, now)
            sub.history = transition_history(sub.history, target, now, request.reason)
            await get_or_create_usage(session, request.user_id, self.tier_table.limits(target), now, sync_limits=True)
            if request.exclude_prior_receipts:
                previous_epoch = sub.last_monthly_count_reset_at
                sub.last_monthly_count_reset_at = now if previous_epoch is None else max(previous_epoch, now)

        trial_ended = self._end_trial_if_upgrading(sub, target, now)

        sub.current_tier = target
        sub.status = request.status
        previous_period_start = sub.current_period_start
        request.billing.apply_to(sub)
        anchor_next_reset(sub, previous_period_start, now)
        sub.limits = self.tier_table.limits(target)
        sub.features = self.tier_table.features(target)
        sub.updated_at = now
        if tier_changed:
            sub.last_upgrade = {
                "from_tier": from_tier.value if from_tier else None,
                "to_tier": target.value,
                "processed_at": isoformat(now),
                "receipts_excluded": receipts_excluded,
            }
        await session.flush()

        if created or tier_changed:
            logger.info(
                "[reconcile] user=%s tier %s -> %s status=%s excluded=%d created=%s trial_ended=%s",
                request.user_id,
                from_tier.value if from_tier else None,
                target.value,
                request.status.value,
                receipts_excluded,
                created,
                trial_ended,
            )
        else:
            logger.info(
                "[reconcile] user=%s tier unchanged (%s); billing metadata refreshed status=%s",
                request.user_id, target.value, request.status.value,
            )
        return TransitionResult(
            user_id=request.user_id,
            created=created,
            tier_changed=tier_changed,
            from_tier=from_tier,
            to_tier=target,
            receipts_excluded=receipts_excluded,
            trial_ended=trial_ended,
        )

    async def apply_subscription_deleted(
        self,
        session: AsyncSession,
        user_id: str,
        billing: BillingUpdate,
        now: dt.datetime,
    ) -> TransitionResult:
        """Downgrade to the lowest tier with status ``canceled``.

        No receipts are excluded and the usage epoch does not move: the
        user lands on a stricter quota, so nothing can be over-counted.
        """
        if await self.lock_subscription(session, user_id) is None:
            raise UnknownAccountError(f"no subscription for user {user_id}")
        return await self.apply_transition(
            session,
            TransitionRequest(
                user_id=user_id,
                target_tier=FALLBACK_TIER,
                status=SubscriptionStatus.CANCELED,
                billing=billing,
                reason="subscription_canceled",
                exclude_prior_receipts=False,
            ),
            now,
        )

    async def apply_payment_succeeded(
        self,
        session: AsyncSession,
        invoice: InvoicePayload,
        user_id: str,
        now: dt.datetime,
        fallback: Optional[TransitionRequest] = None,
    ) -> PaymentResult:
        """Mark the subscription active and append the invoice to the ledger.

        When the user has no subscription row yet, ``fallback`` is applied
        to create it in this transaction.  Callers build it before the
        transaction opens (usually from the provider subscription) so no
        network call runs while the row lock is held.
        """
        sub = await self.lock_subscription(session, user_id)
        created = False
        if sub is None:
            if fallback is None:
                raise UnknownAccountError(f"no subscription for user {user_id} and no fallback")
            await self.apply_transition(session, fallback, now)
            sub = await self.lock_subscription(session, user_id)
            if sub is None:  # pragma: no cover - apply_transition always creates
                raise UnknownAccountError(f"fallback creation failed for user {user_id}")
            created = True

        sub.status = SubscriptionStatus.ACTIVE
        sub.last_payment_status = PaymentStatus.SUCCEEDED.value
        sub.last_payment_date = now
        sub.last_invoice_id = invoice.invoice_id
        if invoice.customer_id and not sub.external_customer_id:
            sub.external_customer_id = invoice.customer_id
        if invoice.subscription_id and not sub.external_subscription_id:
            sub.external_subscription_id = invoice.subscription_id
        sub.updated_at = now

        existing = await session.scalar(
            select(BillingHistory.id).where(BillingHistory.invoice_id == invoice.invoice_id)
        )
        appended = existing is None
        if appended:
            session.add(
                BillingHistory(
                    user_id=user_id,
                    invoice_id=invoice.invoice_id,
                    external_subscription_id=invoice.subscription_id,
                    amount=invoice.amount_paid,
                    currency=invoice.currency,
                    period_start=invoice.period_start,
                    period_end=invoice.period_end,
                    status=PaymentStatus.SUCCEEDED.value,
                    created_at=now,
                )
            )
        await session.flush()
        logger.info(
            "[reconcile] payment succeeded user=%s invoice=%s amount=%s %s created=%s ledger_appended=%s",
            user_id, invoice.invoice_id, invoice.amount_paid, invoice.currency, created, appended,
        )
        return PaymentResult(user_id=user_id, status=SubscriptionStatus.ACTIVE, created=created, ledger_appended=appended)

    async def apply_payment_failed(
        self,
        session: AsyncSession,
        invoice: InvoicePayload,
        user_id: str,
        now: dt.datetime,
    ) -> PaymentResult:
        """Set ``past_due``; tier and limits stay until an explicit cancellation."""
        sub = await self.lock_subscription(session, user_id)
        if sub is None:
            raise UnknownAccountError(f"no subscription for user {user_id}")
        sub.status = SubscriptionStatus.PAST_DUE
        sub.last_payment_status = PaymentStatus.FAILED.value
        sub.last_invoice_id = invoice.invoice_id
        sub.updated_at = now
        await session.flush()
        logger.warning(
            "[reconcile] payment failed user=%s invoice=%s tier=%s kept",
            user_id, invoice.invoice_id, sub.current_tier.value,
        )
        return PaymentResult(user_id=user_id, status=SubscriptionStatus.PAST_DUE, created=False, ledger_appended=False)


__all__ = [
    "BillingUpdate",
    "PaymentResult",
    "SubscriptionReconciler",
    "TRIAL_UPGRADE_REASON",
    "TransitionRequest",
    "TransitionResult",
    "transition_history",
]
