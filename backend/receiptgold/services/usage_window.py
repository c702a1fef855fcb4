"""Usage counting window and monthly rollover.

The canonical answer to "how many receipts has this account used" is
:func:`count_receipts_in_window`:

* the window starts at ``last_monthly_count_reset_at``, else the billing
  period start, else the first of the current calendar month;
* receipts are counted for the account holder, also when the caller is a
  team member;
* receipts flagged ``exclude_from_monthly_count`` are skipped;
* soft-deleted receipts still count, so create/delete/create cannot be
  used to get around a monthly cap.

The ``usage`` rows keep informational counters and a snapshot of the
limits; quota decisions never read those counters.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.core.errors import UnknownAccountError
from receiptgold.models.enums import SubscriptionStatus, TeamMemberStatus
from receiptgold.models.tables import Receipt, Subscription, TeamMember, Usage
from receiptgold.services.tiers import UNLIMITED
from receiptgold.utils.helpers import add_months, month_key, month_start

logger = logging.getLogger(__name__)

# Shortest calendar month; rows newer than this cannot be due yet
MIN_PERIOD_DAYS = 28


def usage_doc_id(user_id: str, when: dt.datetime) -> str:
    return f"{user_id}_{month_key(when)}"


async def get_or_create_usage(
    session: AsyncSession,
    user_id: str,
    limits: Dict[str, int],
    now: dt.datetime,
    sync_limits: bool = False,
) -> Usage:
    """Return this month's usage row, creating it with ``limits`` if absent.

    With ``sync_limits`` an existing row's limit snapshot is replaced too
    (tier changes); otherwise an existing row is returned untouched.
    """
    key = usage_doc_id(user_id, now)
    usage = await session.get(Usage, key, with_for_update=True)
    if usage is None:
        usage = Usage(
            id=key,
            user_id=user_id,
            month=month_key(now),
            receipts_uploaded=0,
            api_calls=0,
            reports_generated=0,
            limits=dict(limits),
            reset_date=add_months(month_start(now), 1),
            created_at=now,
            updated_at=now,
        )
        session.add(usage)
    elif sync_limits:
        usage.limits = dict(limits)
        usage.updated_at = now
    return usage


async def resolve_account_holder(session: AsyncSession, user_id: str) -> str:
    """Map an active team member to their account holder; others map to themselves."""
    holder = await session.scalar(
        select(TeamMember.account_holder_id).where(
            TeamMember.user_id == user_id,
            TeamMember.status == TeamMemberStatus.ACTIVE,
        )
    )
    return holder or user_id


def window_start(sub: Optional[Subscription], now: dt.datetime) -> dt.datetime:
    if sub is not None and sub.last_monthly_count_reset_at is not None:
        return sub.last_monthly_count_reset_at
    if sub is not None and sub.current_period_start is not None:
        return sub.current_period_start
    return month_start(now)


async def count_receipts_in_window(session: AsyncSession, user_id: str, now: dt.datetime) -> int:
    holder = await resolve_account_holder(session, user_id)
    sub = await session.get(Subscription, holder)
    start = window_start(sub, now)
    count = await session.scalar(
        select(func.count(Receipt.id)).where(
            Receipt.user_id == holder,
            Receipt.created_at >= start,
            Receipt.exclude_from_monthly_count.is_(False),
        )
    )
    return int(count or 0)


@dataclass(frozen=True)
class QuotaStatus:
    account_holder_id: str
    used: int
    limit: int
    window_start: dt.datetime

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(self.limit - self.used, 0)

    @property
    def can_create(self) -> bool:
        return self.unlimited or self.used < self.limit


async def get_quota_status(session: AsyncSession, user_id: str, now: dt.datetime) -> QuotaStatus:
    holder = await resolve_account_holder(session, user_id)
    sub = await session.get(Subscription, holder)
    limit = int((sub.limits or {}).get("max_receipts", 0)) if sub is not None else 0
    return QuotaStatus(
        account_holder_id=holder,
        used=await count_receipts_in_window(session, holder, now),
        limit=limit,
        window_start=window_start(sub, now),
    )


async def record_receipt_created(session: AsyncSession, user_id: str, now: dt.datetime) -> Usage:
    """Bump the informational ``receipts_uploaded`` counter for this month.

    The row belongs to the account holder and is created on the first
    receipt of a calendar month with a snapshot of the current limits.
    Nothing is rejected here; quota decisions use the window count.

    Raises:
        UnknownAccountError: the account holder has no subscription.
    """
    holder = await resolve_account_holder(session, user_id)
    sub = await session.get(Subscription, holder)
    if sub is None:
        raise UnknownAccountError(f"no subscription for user {holder}")
    usage = await get_or_create_usage(session, holder, dict(sub.limits or {}), now)
    usage.receipts_uploaded = (usage.receipts_uploaded or 0) + 1
    usage.updated_at = now
    logger.debug("[usage] receipt recorded holder=%s month=%s count=%d", holder, usage.month, usage.receipts_uploaded)
    return usage


# ---------------------------------------------------------------------------
# Scheduled rollover


@dataclass
class RolloverSummary:
    scanned: int = 0
    rolled_over: int = 0
    errors: int = 0


def anchor_next_reset(
    sub: Subscription,
    previous_period_start: Optional[dt.datetime],
    now: dt.datetime,
) -> None:
    """Keep ``next_monthly_reset`` tied to the billing period.

    A new ``current_period_start`` re-anchors the next reset one month
    after it.  When the period advanced (a renewal) and the usage epoch has
    not reached the new start yet, the reset is due at the new start so the
    next scan opens the new window.  Rows without a period keep their
    stored date, or one month after ``now`` when they have none.
    """
    period_start = sub.current_period_start
    if period_start is None or period_start == previous_period_start:
        if sub.next_monthly_reset is None:
            sub.next_monthly_reset = add_months(period_start or now, 1)
        return
    renewed = previous_period_start is not None and period_start > previous_period_start
    epoch = sub.last_monthly_count_reset_at
    if renewed and (epoch is None or epoch < period_start):
        sub.next_monthly_reset = period_start
    else:
        sub.next_monthly_reset = add_months(period_start, 1)


def next_reset_due(sub: Subscription) -> Optional[dt.datetime]:
    if sub.next_monthly_reset is not None:
        return sub.next_monthly_reset
    if sub.current_period_start is not None:
        return add_months(sub.current_period_start, 1)
    return None


async def roll_over_subscription(session: AsyncSession, user_id: str, now: dt.datetime) -> bool:
    """Roll one subscription into a new usage window if it is due.

    Returns False when the row vanished, is no longer active or is not due
    (another run got there first).
    """
    sub = await session.scalar(
        select(Subscription).where(Subscription.user_id == user_id).with_for_update()
    )
    if sub is None or sub.status != SubscriptionStatus.ACTIVE:
        return False
    due = next_reset_due(sub)
    if due is None or now < due:
        return False

    key = usage_doc_id(user_id, now)
    usage = await session.get(Usage, key, with_for_update=True)
    if usage is None:
        usage = Usage(id=key, user_id=user_id, month=month_key(now), created_at=now)
        session.add(usage)
    usage.receipts_uploaded = 0
    usage.api_calls = 0
    usage.reports_generated = 0
    usage.limits = dict(sub.limits or {})
    usage.reset_date = add_months(month_start(now), 1)
    usage.updated_at = now

    next_due = due
    while next_due <= now:
        next_due = add_months(next_due, 1)
    sub.last_monthly_reset = now
    sub.next_monthly_reset = next_due
    # Epoch only moves forward; a later tier-change epoch wins
    if sub.last_monthly_count_reset_at is None or sub.last_monthly_count_reset_at < due:
        sub.last_monthly_count_reset_at = due
    sub.updated_at = now
    await session.flush()
    return True


async def run_monthly_rollover(
    session_factory: async_sessionmaker[AsyncSession],
    now: dt.datetime,
    batch_limit: int = 500,
) -> RolloverSummary:
    """Scan active subscriptions and roll over those past their reset date.

    Each user is handled in its own transaction; a failure is logged and
    the scan continues.
    """
    summary = RolloverSummary()
    async with session_factory() as session:
        user_ids = list(
            (
                await session.scalars(
                    select(Subscription.user_id)
                    .where(
                        Subscription.status == SubscriptionStatus.ACTIVE,
                        or_(
                            Subscription.next_monthly_reset <= now,
                            and_(
                                Subscription.next_monthly_reset.is_(None),
                                Subscription.current_period_start <= now - dt.timedelta(days=MIN_PERIOD_DAYS),
                            ),
                        ),
                    )
                    .order_by(Subscription.user_id)
                    .limit(batch_limit)
                )
            ).all()
        )
    for user_id in user_ids:
        summary.scanned += 1
        try:
            async with session_factory.begin() as session:
                if await roll_over_subscription(session, user_id, now):
                    summary.rolled_over += 1
        except Exception:
            summary.errors += 1
            logger.exception("[rollover] failed for user=%s", user_id)
    logger.info(
        "[rollover] scanned=%d rolled_over=%d errors=%d",
        summary.scanned, summary.rolled_over, summary.errors,
    )
    return summary


__all__ = [
    "QuotaStatus",
    "RolloverSummary",
    "count_receipts_in_window",
    "get_or_create_usage",
    "anchor_next_reset",
    "get_quota_status",
    "next_reset_due",
    "record_receipt_created",
    "resolve_account_holder",
    "roll_over_subscription",
    "run_monthly_rollover",
    "usage_doc_id",
    "window_start",
]
