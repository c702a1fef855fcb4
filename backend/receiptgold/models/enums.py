"""Enumeration types used throughout the billing service.

Enumerations constrain the values that can be stored in the database or
passed through the API.  When modifying these enums update the
corresponding database columns and the tier table in
``receiptgold.services.tiers`` so new values are accepted everywhere.
"""

from enum import Enum


class Tier(str, Enum):
    """Subscription tier for an account holder (or a teammate seat)."""

    TRIAL = "trial"
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    PROFESSIONAL = "professional"
    TEAMMATE = "teammate"

    @property
    def is_paid(self) -> bool:
        return self in PAID_TIERS


PAID_TIERS = frozenset({Tier.STARTER, Tier.GROWTH, Tier.PROFESSIONAL})


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription row."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"


class ReceiptStatus(str, Enum):
    """Receipt states relevant to usage counting.

    ``DELETED`` is a soft-delete marker; deleted receipts keep counting
    toward the window they were created in.
    """

    PENDING = "pending"
    PROCESSED = "processed"
    DELETED = "deleted"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TeamMemberStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"
