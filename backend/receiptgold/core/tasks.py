"""Dramatiq task definitions for background processing.

The scheduled job is the monthly usage rollover: active subscriptions
whose reset date has passed get a fresh usage row and a new counting
epoch.  ``record_receipt_usage`` is enqueued by the receipt feature for
each stored receipt.  To run the worker:

```bash
dramatiq receiptgold.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``; ``DRAMATIQ_BROKER_URL`` overrides
it.  With ``ENVIRONMENT=test`` an in-memory ``StubBroker`` is installed so
tests can import actors without a Redis server.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from typing import Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.brokers.stub import StubBroker
from dramatiq.middleware import AgeLimit, Retries, ShutdownNotifications, TimeLimit
from dramatiq.results import Results
from dramatiq.results.backends import RedisBackend

from receiptgold.core.config import settings
from receiptgold.core.database import standalone_session_factory
from receiptgold.core.observability import sentry_breadcrumb, sentry_capture
from receiptgold.core.errors import UnknownAccountError
from receiptgold.services.usage_window import RolloverSummary, record_receipt_created, run_monthly_rollover
from receiptgold.utils.helpers import parse_iso_datetime, to_naive_utc, utcnow

logger = logging.getLogger(__name__)


def _has_mw(broker, mw_cls) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


def configure_broker() -> dramatiq.Broker:
    """Install the process-wide broker (Redis, or a stub under test)."""
    if (settings.ENVIRONMENT or "").lower() == "test":
        stub = StubBroker()
        stub.emit_after("process_boot")
        dramatiq.set_broker(stub)
        return stub

    redis_url = settings.DRAMATIQ_BROKER_URL or settings.REDIS_URL
    logger.info("Configuring Dramatiq with Redis broker")
    redis_broker = RedisBroker(url=redis_url)
    if not _has_mw(redis_broker, Results):
        redis_broker.add_middleware(Results(backend=RedisBackend(url=redis_url)))
    if not _has_mw(redis_broker, AgeLimit):
        redis_broker.add_middleware(AgeLimit())
    if not _has_mw(redis_broker, TimeLimit):
        redis_broker.add_middleware(TimeLimit())
    if not _has_mw(redis_broker, ShutdownNotifications):
        redis_broker.add_middleware(ShutdownNotifications())
    if not _has_mw(redis_broker, Retries):
        # Exponential backoff up to ~1m
        redis_broker.add_middleware(Retries(max_retries=3, min_backoff=5000, max_backoff=60000, backoff=2.0))
    dramatiq.set_broker(redis_broker)
    return redis_broker


# Export the broker for Dramatiq CLI
broker = configure_broker()


async def _rollover(batch_limit: int, now: Optional[dt.datetime] = None) -> RolloverSummary:
    async with standalone_session_factory() as session_factory:
        return await run_monthly_rollover(session_factory, now or utcnow(), batch_limit=batch_limit)


@dramatiq.actor(max_retries=0)
def rollover_monthly_usage(batch_limit: int = 500) -> None:
    """Reset usage for active subscriptions whose monthly reset is due.

    Safe to rerun: a subscription that was already rolled over has its next
    reset date in the future and is skipped.  No retries; the next
    scheduled run picks up anything that failed.
    """
    start_time = time.time()
    sentry_breadcrumb(category="rollover", message="rollover.run.start", data={"batch_limit": batch_limit})
    try:
        summary = asyncio.run(_rollover(batch_limit))
    except Exception as exc:
        logger.exception("[rollover] run failed")
        sentry_capture(exc)
        raise
    duration = time.time() - start_time
    sentry_breadcrumb(
        category="rollover",
        message="rollover.run.end",
        data={
            "scanned": summary.scanned,
            "rolled_over": summary.rolled_over,
            "errors": summary.errors,
            "duration_s": round(duration, 3),
        },
    )
    logger.info("[rollover] run finished in %.2fs", duration)


async def _record_receipt(user_id: str, created_at: dt.datetime) -> None:
    async with standalone_session_factory() as session_factory:
        async with session_factory.begin() as session:
            await record_receipt_created(session, user_id, created_at)


@dramatiq.actor(max_retries=0)
def record_receipt_usage(user_id: str, created_at: Optional[str] = None) -> None:
    """Count one stored receipt on the owner's monthly usage row.

    ``created_at`` is an ISO timestamp; it picks the month bucket and
    defaults to now.  Not retried: the counter is not idempotent.
    """
    parsed = parse_iso_datetime(created_at)
    when = to_naive_utc(parsed) if parsed is not None else utcnow()
    try:
        asyncio.run(_record_receipt(user_id, when))
    except UnknownAccountError:
        logger.warning("[usage] receipt for user=%s has no subscription; not counted", user_id)
    except Exception as exc:
        logger.exception("[usage] failed recording receipt for user=%s", user_id)
        sentry_capture(exc)
        raise


__all__ = ["broker", "configure_broker", "record_receipt_usage", "rollover_monthly_usage"]
