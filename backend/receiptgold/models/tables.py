"""SQLAlchemy ORM models for the billing service.

The subscription row is the single serialization point per account
holder: every transition locks it (``SELECT ... FOR UPDATE``) before
touching usage or receipt rows.  JSON columns hold tier-derived snapshots
(``limits``/``features``) and the append-only tier ``history``; they are
always reassigned as new objects, never mutated in place, because plain
JSON columns do not track in-place changes.

Timestamps are stored as naive UTC.

If you extend or modify these models call the ``init_db`` helper during
development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    JSON,
    String,
)

from receiptgold.core.database import Base
from receiptgold.utils.helpers import isoformat, utcnow
from .enums import ReceiptStatus, SubscriptionStatus, TeamMemberStatus, Tier


class Subscription(Base):
    """Subscription state for one account holder, keyed by user id."""

    __tablename__ = "subscriptions"

    user_id = Column(String, primary_key=True)
    current_tier = Column(Enum(Tier), nullable=False, default=Tier.TRIAL)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)

    # Billing (provider mirror)
    external_customer_id = Column(String, nullable=True, index=True)
    external_subscription_id = Column(String, nullable=True, index=True)
    external_price_id = Column(String, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    trial_end = Column(DateTime, nullable=True)
    last_payment_status = Column(String, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)
    last_invoice_id = Column(String, nullable=True)
    last_monthly_reset = Column(DateTime, nullable=True)
    next_monthly_reset = Column(DateTime, nullable=True)
    # {"from_tier", "to_tier", "processed_at", "receipts_excluded"}
    last_upgrade = Column(JSON, nullable=True)

    # Tier-derived snapshots
    limits = Column(JSON, nullable=False, default=dict)
    features = Column(JSON, nullable=False, default=dict)

    # [{"tier", "start_date", "end_date", "reason"}, ...]
    history = Column(JSON, nullable=False, default=list)

    # Trial window; "active" is derived from trial_expires_at
    trial_started_at = Column(DateTime, nullable=True)
    trial_expires_at = Column(DateTime, nullable=True)
    trial_ended_early = Column(Boolean, nullable=False, default=False)
    trial_end_reason = Column(String, nullable=True)

    # Usage window epoch; only moves forward
    last_monthly_count_reset_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def is_trial_active(self, now: dt.datetime) -> bool:
        return self.trial_expires_at is not None and self.trial_expires_at > now

    def open_history_entries(self) -> list[Dict[str, Any]]:
        return [entry for entry in (self.history or []) if entry.get("end_date") is None]

    def billing_snapshot(self) -> Dict[str, Any]:
        return {
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
            "external_price_id": self.external_price_id,
            "current_period_start": isoformat(self.current_period_start),
            "current_period_end": isoformat(self.current_period_end),
            "cancel_at_period_end": bool(self.cancel_at_period_end),
            "trial_end": isoformat(self.trial_end),
            "last_payment_status": self.last_payment_status,
            "last_payment_date": isoformat(self.last_payment_date),
            "last_invoice_id": self.last_invoice_id,
            "last_monthly_reset": isoformat(self.last_monthly_reset),
            "next_monthly_reset": isoformat(self.next_monthly_reset),
            "last_upgrade": self.last_upgrade,
        }

    def trial_snapshot(self, now: dt.datetime) -> Optional[Dict[str, Any]]:
        if self.trial_started_at is None and self.trial_expires_at is None:
            return None
        return {
            "is_active": self.is_trial_active(now),
            "started_at": isoformat(self.trial_started_at),
            "expires_at": isoformat(self.trial_expires_at),
            "ended_early": bool(self.trial_ended_early),
            "end_reason": self.trial_end_reason,
        }


class Usage(Base):
    """Monthly usage counters, keyed by ``{user_id}_{YYYY-MM}``."""

    __tablename__ = "usage"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    month = Column(String, nullable=False)
    receipts_uploaded = Column(Integer, nullable=False, default=0)
    api_calls = Column(Integer, nullable=False, default=0)
    reports_generated = Column(Integer, nullable=False, default=0)
    limits = Column(JSON, nullable=False, default=dict)
    reset_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class Receipt(Base):
    """Receipt row as seen by usage counting.

    ``user_id`` is the quota owner (the account holder, also for receipts
    captured by team members); ``created_by`` is whoever captured it.
    """

    __tablename__ = "receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    created_by = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    status = Column(Enum(ReceiptStatus), nullable=False, default=ReceiptStatus.PENDING)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    exclude_from_monthly_count = Column(Boolean, nullable=False, default=False)
    monthly_count_excluded_at = Column(DateTime, nullable=True)
    previous_tier = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_receipts_user_id_created_at", "user_id", "created_at"),
    )


class BillingHistory(Base):
    """Append-only ledger of paid invoices; rows are never updated."""

    __tablename__ = "billing_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    invoice_id = Column(String, nullable=False, unique=True)
    external_subscription_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0)  # minor units
    currency = Column(String, nullable=True)
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class TeamMember(Base):
    """Links a team member to the account holder whose quota they share."""

    __tablename__ = "team_members"

    user_id = Column(String, primary_key=True)
    account_holder_id = Column(String, nullable=False, index=True)
    status = Column(Enum(TeamMemberStatus), nullable=False, default=TeamMemberStatus.ACTIVE)
    created_at = Column(DateTime, default=utcnow, nullable=False)
