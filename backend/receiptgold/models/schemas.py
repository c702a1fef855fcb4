"""Pydantic schemas for request and response models.

The mobile client speaks camelCase, so every API model uses a camelCase
alias generator while accepting snake_case names as well.  Schemas are
kept separate from the ORM models so the stored shape can evolve without
changing the wire format.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from receiptgold.models.enums import PAID_TIERS, SubscriptionStatus, Tier

SUBSCRIPTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{3,255}$")

# Tiers a client may request explicitly
REQUESTABLE_TIERS = frozenset(PAID_TIERS | {Tier.FREE})


class APIModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TierChangeRequest(APIModel):
    """Body of the tier-change call made by the client after a purchase."""

    subscription_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    tier_id: Optional[Tier] = None
    external_user_id: Optional[str] = None

    @field_validator("subscription_id")
    @classmethod
    def _subscription_id_shape(cls, value: str) -> str:
        value = value.strip()
        if not SUBSCRIPTION_ID_PATTERN.match(value):
            raise ValueError("malformed subscription id")
        return value

    @field_validator("tier_id", mode="before")
    @classmethod
    def _normalise_tier(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value == "":
                return None
        return value

    @field_validator("tier_id")
    @classmethod
    def _requestable_tier(cls, value: Optional[Tier]) -> Optional[Tier]:
        if value is not None and value not in REQUESTABLE_TIERS:
            raise ValueError(f"tier {value.value!r} cannot be requested")
        return value


class TierChangeInfo(APIModel):
    from_tier: Optional[Tier] = None
    to_tier: Tier


class TierChangeResponse(APIModel):
    success: bool
    receipts_excluded: int
    tier_change: TierChangeInfo


class WebhookAck(APIModel):
    received: bool = True
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    timestamp: str
    processed: Optional[bool] = None
    filtered: Optional[bool] = None


class QuotaRead(APIModel):
    account_holder_id: str
    used: int
    limit: int
    remaining: Optional[int] = None
    can_create: bool
    window_start: datetime


class UsageCounterRead(APIModel):
    account_holder_id: str
    month: str
    receipts_uploaded: int
    limits: Dict[str, int] = Field(default_factory=dict)


class TrialRead(APIModel):
    is_active: bool
    started_at: Optional[str] = None
    expires_at: Optional[str] = None
    ended_early: bool = False
    end_reason: Optional[str] = None


class SubscriptionRead(APIModel):
    user_id: str
    current_tier: Tier
    status: SubscriptionStatus
    billing: Dict[str, Any] = Field(default_factory=dict)
    limits: Dict[str, int] = Field(default_factory=dict)
    features: Dict[str, bool] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    trial: Optional[TrialRead] = None
    last_monthly_count_reset_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ProvisionRequest(APIModel):
    account_holder_id: Optional[str] = None


class ProvisionResponse(APIModel):
    user_id: str
    is_team_member: bool
    created: bool


class AccountDeletedResponse(APIModel):
    user_id: str
    rows_deleted: int


class CustomerCreateRequest(APIModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CustomerCreateResponse(APIModel):
    customer_id: str


class CheckoutSessionRequest(APIModel):
    price_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)


class CheckoutSessionResponse(APIModel):
    session_id: str
