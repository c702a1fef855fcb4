import datetime as dt

import pytest

from receiptgold.core.errors import UnknownAccountError
from receiptgold.models.enums import ReceiptStatus, SubscriptionStatus, TeamMemberStatus, Tier
from receiptgold.models.tables import Subscription, TeamMember, Usage
from receiptgold.services.reconciliation import BillingUpdate, TransitionRequest
from receiptgold.services.usage_window import (
    count_receipts_in_window,
    get_quota_status,
    record_receipt_created,
    resolve_account_holder,
    run_monthly_rollover,
    usage_doc_id,
    window_start,
)
from receiptgold.utils.helpers import add_months

from .conftest import add_receipts


async def _subscribe(session_factory, reconciler, user_id, tier, when, period_start=None):
    async with session_factory.begin() as session:
        await reconciler.apply_transition(
            session,
            TransitionRequest(
                user_id=user_id,
                target_tier=tier,
                billing=BillingUpdate(current_period_start=period_start),
            ),
            when,
        )


def test_window_start_fallbacks(now):
    epoch = dt.datetime(2024, 3, 10)
    period = dt.datetime(2024, 3, 2)
    assert window_start(Subscription(last_monthly_count_reset_at=epoch, current_period_start=period), now) == epoch
    assert window_start(Subscription(current_period_start=period), now) == period
    assert window_start(Subscription(), now) == dt.datetime(2024, 3, 1)
    assert window_start(None, now) == dt.datetime(2024, 3, 1)


async def test_count_respects_epoch_exclusion_and_soft_delete(session_factory, reconciler, now):
    epoch = now - dt.timedelta(days=5)
    await _subscribe(session_factory, reconciler, "holder", Tier.STARTER, epoch)
    await add_receipts(session_factory, "holder", 3, epoch - dt.timedelta(days=1))  # before the window
    await add_receipts(session_factory, "holder", 2, now - dt.timedelta(days=1))
    await add_receipts(session_factory, "holder", 1, now - dt.timedelta(hours=1), status=ReceiptStatus.DELETED)

    async with session_factory() as session:
        assert await count_receipts_in_window(session, "holder", now) == 3


async def test_team_member_counts_against_holder(session_factory, reconciler, now):
    await _subscribe(session_factory, reconciler, "holder", Tier.FREE, now - dt.timedelta(days=3))
    async with session_factory.begin() as session:
        session.add(TeamMember(user_id="member", account_holder_id="holder", status=TeamMemberStatus.ACTIVE))
        session.add(TeamMember(user_id="gone", account_holder_id="holder", status=TeamMemberStatus.REMOVED))
    await add_receipts(session_factory, "holder", 4, now - dt.timedelta(days=1))
    await add_receipts(session_factory, "holder", 6, now - dt.timedelta(hours=2), created_by="member")

    async with session_factory() as session:
        assert await resolve_account_holder(session, "member") == "holder"
        assert await resolve_account_holder(session, "gone") == "gone"
        quota = await get_quota_status(session, "member", now)

    assert quota.account_holder_id == "holder"
    assert quota.used == 10
    assert quota.limit == 10
    assert quota.remaining == 0
    assert quota.can_create is False


async def test_unlimited_quota(session_factory, reconciler, now):
    await _subscribe(session_factory, reconciler, "pro", Tier.PROFESSIONAL, now - dt.timedelta(days=1))
    await add_receipts(session_factory, "pro", 60, now - dt.timedelta(hours=1))

    async with session_factory() as session:
        quota = await get_quota_status(session, "pro", now)

    assert quota.unlimited is True
    assert quota.remaining is None
    assert quota.can_create is True


async def test_record_receipt_created_bumps_holder_counter(session_factory, reconciler, now):
    await _subscribe(session_factory, reconciler, "holder", Tier.STARTER, now - dt.timedelta(days=1))
    async with session_factory.begin() as session:
        session.add(TeamMember(user_id="member", account_holder_id="holder", status=TeamMemberStatus.ACTIVE))

    for _ in range(2):
        async with session_factory.begin() as session:
            await record_receipt_created(session, "member", now)

    async with session_factory() as session:
        usage = await session.get(Usage, usage_doc_id("holder", now))
        assert await session.get(Usage, usage_doc_id("member", now)) is None
    assert usage.receipts_uploaded == 2


async def test_record_receipt_created_needs_subscription(session_factory, now):
    with pytest.raises(UnknownAccountError):
        async with session_factory.begin() as session:
            await record_receipt_created(session, "ghost", now)


async def test_monthly_rollover_resets_usage_and_epoch(session_factory, reconciler, tier_table):
    start = dt.datetime(2024, 1, 31, 8, 0)
    await _subscribe(session_factory, reconciler, "user_1", Tier.GROWTH, start, period_start=start)
    due = add_months(start, 1)
    async with session_factory.begin() as session:
        await record_receipt_created(session, "user_1", due)

    run_at = due + dt.timedelta(hours=2)
    summary = await run_monthly_rollover(session_factory, run_at)

    assert (summary.scanned, summary.rolled_over, summary.errors) == (1, 1, 0)
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
        usage = await session.get(Usage, usage_doc_id("user_1", run_at))
    assert due == dt.datetime(2024, 2, 29, 8, 0)
    assert sub.last_monthly_count_reset_at == due
    assert sub.last_monthly_reset == run_at
    assert sub.next_monthly_reset == add_months(due, 1)
    assert usage.receipts_uploaded == 0
    assert usage.limits == tier_table.limits(Tier.GROWTH)

    again = await run_monthly_rollover(session_factory, run_at + dt.timedelta(hours=1))
    assert again.rolled_over == 0


async def test_rollover_skips_inactive_and_not_due(session_factory, reconciler, now):
    past = now - dt.timedelta(days=45)
    await _subscribe(session_factory, reconciler, "canceled", Tier.STARTER, past)
    await _subscribe(session_factory, reconciler, "fresh", Tier.STARTER, now - dt.timedelta(days=2))
    async with session_factory.begin() as session:
        sub = await session.get(Subscription, "canceled")
        sub.status = SubscriptionStatus.CANCELED

    summary = await run_monthly_rollover(session_factory, now)

    assert summary.rolled_over == 0


async def test_rollover_keeps_later_tier_change_epoch(session_factory, reconciler):
    start = dt.datetime(2024, 2, 10)
    await _subscribe(session_factory, reconciler, "user_1", Tier.STARTER, start)
    due = add_months(start, 1)
    # Upgrade lands after the reset was due but before the job ran
    upgrade_at = due + dt.timedelta(hours=3)
    await _subscribe(session_factory, reconciler, "user_1", Tier.GROWTH, upgrade_at)

    summary = await run_monthly_rollover(session_factory, upgrade_at + dt.timedelta(hours=1))

    assert summary.rolled_over == 1
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
    assert sub.last_monthly_count_reset_at == upgrade_at
    assert sub.next_monthly_reset == add_months(due, 1)


async def test_rollover_candidate_without_reset_date(session_factory, reconciler, now):
    await _subscribe(session_factory, reconciler, "legacy", Tier.STARTER, now - dt.timedelta(days=40))
    async with session_factory.begin() as session:
        sub = await session.get(Subscription, "legacy")
        sub.next_monthly_reset = None
        sub.current_period_start = now - dt.timedelta(days=35)

    summary = await run_monthly_rollover(session_factory, now)

    assert summary.rolled_over == 1
    async with session_factory() as session:
        sub = await session.get(Subscription, "legacy")
    assert sub.next_monthly_reset > now


async def test_rollover_waits_for_paid_period_after_mid_month_upgrade(session_factory, reconciler):
    signup = dt.datetime(2024, 3, 1, 9, 0)
    upgrade = dt.datetime(2024, 3, 15, 9, 0)
    await _subscribe(session_factory, reconciler, "user_1", Tier.TRIAL, signup)
    await _subscribe(session_factory, reconciler, "user_1", Tier.GROWTH, upgrade, period_start=upgrade)
    await add_receipts(session_factory, "user_1", 3, dt.datetime(2024, 3, 20, 9, 0))

    early = dt.datetime(2024, 4, 2, 9, 0)
    summary = await run_monthly_rollover(session_factory, early)

    assert summary.rolled_over == 0
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
        assert await count_receipts_in_window(session, "user_1", early) == 3
    assert sub.last_monthly_count_reset_at == upgrade
    assert sub.next_monthly_reset == dt.datetime(2024, 4, 15, 9, 0)

    on_time = dt.datetime(2024, 4, 15, 10, 0)
    summary = await run_monthly_rollover(session_factory, on_time)

    assert summary.rolled_over == 1
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
        assert await count_receipts_in_window(session, "user_1", on_time) == 0
    assert sub.last_monthly_count_reset_at == dt.datetime(2024, 4, 15, 9, 0)
    assert sub.next_monthly_reset == dt.datetime(2024, 5, 15, 9, 0)


async def test_renewal_before_scan_opens_new_window(session_factory, reconciler):
    start = dt.datetime(2024, 3, 15, 9, 0)
    renewed = dt.datetime(2024, 4, 15, 9, 0)
    await _subscribe(session_factory, reconciler, "user_1", Tier.GROWTH, start, period_start=start)
    await add_receipts(session_factory, "user_1", 4, dt.datetime(2024, 4, 1))

    # Renewal webhook for the same tier lands before the hourly scan
    await _subscribe(session_factory, reconciler, "user_1", Tier.GROWTH, renewed + dt.timedelta(minutes=5), period_start=renewed)
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
    assert sub.next_monthly_reset == renewed

    run_at = renewed + dt.timedelta(hours=1)
    summary = await run_monthly_rollover(session_factory, run_at)

    assert summary.rolled_over == 1
    async with session_factory() as session:
        sub = await session.get(Subscription, "user_1")
        assert await count_receipts_in_window(session, "user_1", run_at) == 0
    assert sub.last_monthly_count_reset_at == renewed
    assert sub.next_monthly_reset == dt.datetime(2024, 5, 15, 9, 0)
