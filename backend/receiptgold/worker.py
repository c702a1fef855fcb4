"""Dramatiq worker configuration.

This module loads the environment, initialises Sentry and imports all
tasks so they are registered when the worker starts.

Run with:
    dramatiq receiptgold.worker
"""

import logging
import os
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

# Load the repo root .env explicitly to avoid relying on CWD
repo_root = Path(__file__).resolve().parents[2]
root_env = repo_root / ".env"
if root_env.exists():
    load_dotenv(dotenv_path=str(root_env), override=False)

from receiptgold.core.config import settings  # noqa: E402
from receiptgold.core.observability import init_sentry  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

if settings.DATABASE_URL:
    os.environ.setdefault("DATABASE_URL", settings.DATABASE_URL)

# Importing tasks configures the broker and registers the actors
from receiptgold.core.tasks import broker, record_receipt_usage, rollover_monthly_usage  # noqa: E402,F401

logger.info("Tasks registered successfully")


def _cron_enabled() -> bool:
    return os.getenv("ROLLOVER_CRON_ENABLED", "false").lower() in {"1", "true", "yes"}


def _maybe_start_rollover_cron():  # pragma: no cover - simple orchestrator
    """Enqueue the monthly rollover on a fixed interval (default hourly)."""
    if not _cron_enabled():
        return None
    interval = int(os.getenv("ROLLOVER_CRON_INTERVAL_SECONDS", "3600"))
    batch_limit = int(os.getenv("ROLLOVER_CRON_BATCH_LIMIT", "500"))

    def loop():
        while True:
            try:
                logger.info("[cron] enqueue rollover_monthly_usage interval=%ss batch_limit=%s", interval, batch_limit)
                rollover_monthly_usage.send(batch_limit=batch_limit)
            except Exception:
                logger.exception("[cron] failed to enqueue rollover task")
            time.sleep(interval)

    t = threading.Thread(target=loop, name="rollover-cron", daemon=True)
    t.start()
    logger.info("Rollover cron loop started (interval=%ss)", interval)
    return t


_maybe_start_rollover_cron()
