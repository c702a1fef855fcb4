from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.api.dependencies import get_entitlement_client, get_reconciler
from receiptgold.core.database import get_session_factory
from receiptgold.core.errors import InternalError, NotFound, PermissionDenied, TransitionError, UnknownAccountError
from receiptgold.core.security import get_caller_id
from receiptgold.models.enums import SubscriptionStatus
from receiptgold.models.schemas import (
    QuotaRead,
    SubscriptionRead,
    TierChangeInfo,
    TierChangeRequest,
    TierChangeResponse,
    TrialRead,
    UsageCounterRead,
)
from receiptgold.models.tables import Subscription
from receiptgold.services.entitlements import EntitlementClient
from receiptgold.services.reconciliation import BillingUpdate, SubscriptionReconciler, TransitionRequest
from receiptgold.services.usage_window import get_quota_status, record_receipt_created, resolve_account_holder
from receiptgold.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/tier-change", response_model=TierChangeResponse)
async def change_tier(
    body: TierChangeRequest,
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    entitlements: EntitlementClient = Depends(get_entitlement_client),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
):
    """Reconcile the caller's tier after a completed purchase.

    When ``tierId`` is omitted the tier is resolved from the caller's store
    entitlements; a failed lookup resolves to the free tier rather than
    erroring.
    """
    if caller_id != body.user_id:
        raise PermissionDenied("Caller may only change their own subscription")

    now = utcnow()
    if body.tier_id is not None:
        target = body.tier_id
    else:
        resolution = await entitlements.resolve_tier(body.external_user_id or body.user_id, now)
        if resolution.was_defaulted:
            logger.warning("[tiers] tier-change for user=%s fell back to %s", body.user_id, resolution.tier.value)
        target = resolution.tier

    request = TransitionRequest(
        user_id=body.user_id,
        target_tier=target,
        status=SubscriptionStatus.ACTIVE,
        billing=BillingUpdate(external_subscription_id=body.subscription_id),
        reason="client_tier_change",
    )
    try:
        async with session_factory.begin() as session:
            result = await reconciler.apply_transition(session, request, now)
    except (TransitionError, SQLAlchemyError) as exc:
        logger.exception("[reconcile] tier-change failed for user=%s", body.user_id)
        raise InternalError("Failed to apply tier change") from exc

    return TierChangeResponse(
        success=True,
        receipts_excluded=result.receipts_excluded,
        tier_change=TierChangeInfo(from_tier=result.from_tier, to_tier=result.to_tier),
    )


@router.get("/me", response_model=SubscriptionRead)
async def get_my_subscription(
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    now = utcnow()
    async with session_factory() as session:
        holder = await resolve_account_holder(session, caller_id)
        sub = await session.get(Subscription, holder)
    if sub is None:
        raise NotFound(f"No subscription for user {holder}")
    trial = sub.trial_snapshot(now)
    return SubscriptionRead(
        user_id=sub.user_id,
        current_tier=sub.current_tier,
        status=sub.status,
        billing=sub.billing_snapshot(),
        limits=sub.limits or {},
        features=sub.features or {},
        history=sub.history or [],
        trial=TrialRead(**trial) if trial else None,
        last_monthly_count_reset_at=sub.last_monthly_count_reset_at,
        created_at=sub.created_at,
        updated_at=sub.updated_at,
    )


@router.get("/me/usage", response_model=QuotaRead)
async def get_my_usage(
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    async with session_factory() as session:
        quota = await get_quota_status(session, caller_id, utcnow())
    return QuotaRead(
        account_holder_id=quota.account_holder_id,
        used=quota.used,
        limit=quota.limit,
        remaining=quota.remaining,
        can_create=quota.can_create,
        window_start=quota.window_start,
    )


@router.post("/me/usage/receipts", response_model=UsageCounterRead)
async def record_my_receipt(
    caller_id: str = Depends(get_caller_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Count a newly captured receipt against the caller's monthly usage row.

    Called by the receipt feature after it stores a receipt.  Team members
    are counted on their account holder's row.
    """
    try:
        async with session_factory.begin() as session:
            usage = await record_receipt_created(session, caller_id, utcnow())
    except UnknownAccountError as exc:
        raise NotFound(str(exc)) from exc
    return UsageCounterRead(
        account_holder_id=usage.user_id,
        month=usage.month,
        receipts_uploaded=usage.receipts_uploaded,
        limits=usage.limits or {},
    )
