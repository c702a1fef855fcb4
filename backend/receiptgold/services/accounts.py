"""Account provisioning and deletion.

Sign-up creates state only for account holders: a ``trial`` subscription
with a short trial window plus the month's usage row.  A team member gets
a link to their account holder and a usage row carrying teammate limits,
but never a subscription of their own; their receipts count against the
account holder.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptgold.core.errors import InvalidArgument
from receiptgold.models.enums import SubscriptionStatus, TeamMemberStatus, Tier
from receiptgold.models.tables import Subscription, TeamMember, Usage
from receiptgold.services.reconciliation import SubscriptionReconciler, TransitionRequest
from receiptgold.services.usage_window import get_or_create_usage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionResult:
    user_id: str
    is_team_member: bool
    created: bool


async def provision_account(
    session: AsyncSession,
    reconciler: SubscriptionReconciler,
    user_id: str,
    now: dt.datetime,
    trial_days: int,
    account_holder_id: Optional[str] = None,
) -> ProvisionResult:
    """Create the initial billing state for a new user; idempotent."""
    if account_holder_id and account_holder_id != user_id:
        if await session.get(Subscription, user_id) is not None:
            raise InvalidArgument("an account holder cannot join another team")
        link = await session.get(TeamMember, user_id)
        created = link is None
        if link is None:
            session.add(
                TeamMember(
                    user_id=user_id,
                    account_holder_id=account_holder_id,
                    status=TeamMemberStatus.ACTIVE,
                    created_at=now,
                )
            )
        elif link.account_holder_id != account_holder_id or link.status != TeamMemberStatus.ACTIVE:
            link.account_holder_id = account_holder_id
            link.status = TeamMemberStatus.ACTIVE
        await get_or_create_usage(session, user_id, reconciler.tier_table.limits(Tier.TEAMMATE), now)
        await session.flush()
        logger.info("[accounts] team member user=%s linked to holder=%s created=%s", user_id, account_holder_id, created)
        return ProvisionResult(user_id=user_id, is_team_member=True, created=created)

    if await reconciler.lock_subscription(session, user_id) is not None:
        return ProvisionResult(user_id=user_id, is_team_member=False, created=False)
    await reconciler.apply_transition(
        session,
        TransitionRequest(
            user_id=user_id,
            target_tier=Tier.TRIAL,
            status=SubscriptionStatus.ACTIVE,
            reason="initial_signup",
            trial_expires_at=now + dt.timedelta(days=trial_days),
        ),
        now,
    )
    logger.info("[accounts] provisioned trial subscription user=%s trial_days=%d", user_id, trial_days)
    return ProvisionResult(user_id=user_id, is_team_member=False, created=True)


async def delete_account(session: AsyncSession, user_id: str) -> int:
    """Remove billing state owned by ``user_id``; returns rows deleted.

    Receipts and the invoice ledger are left to their owning features.
    """
    deleted = 0
    for stmt in (
        delete(Subscription).where(Subscription.user_id == user_id),
        delete(Usage).where(Usage.user_id == user_id),
        delete(TeamMember).where(TeamMember.user_id == user_id),
    ):
        result = await session.execute(stmt.execution_options(synchronize_session=False))
        deleted += result.rowcount or 0
    remaining_members = await session.scalars(
        select(TeamMember).where(TeamMember.account_holder_id == user_id)
    )
    for member in remaining_members:
        member.status = TeamMemberStatus.REMOVED
    await session.flush()
    logger.info("[accounts] deleted billing state user=%s rows=%d", user_id, deleted)
    return deleted


__all__ = ["ProvisionResult", "delete_account", "provision_account"]
