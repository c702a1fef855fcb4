"""Entitlement-based tier resolution (RevenueCat).

Mobile purchases do not carry a provider price id.  After a purchase the
client asks the tier-change endpoint to reconcile, and when it does not
name a tier the subscriber's entitlements are fetched from RevenueCat and
the highest active one wins.

Any failure along the way (missing key, network error, non-2xx, bad
JSON, unexpected shape) resolves to the fallback tier.  This module never
raises to its caller.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from receiptgold.core.config import Settings
from receiptgold.models.enums import Tier
from receiptgold.services.tiers import FALLBACK_TIER, PRODUCT_TIER_MAP, TierResolution
from receiptgold.utils.helpers import parse_iso_datetime

logger = logging.getLogger(__name__)

ENTITLEMENT_TIER_MAP: Dict[str, Tier] = {
    "starter": Tier.STARTER,
    "growth": Tier.GROWTH,
    "professional": Tier.PROFESSIONAL,
    "pro": Tier.PROFESSIONAL,
    "premium": Tier.PROFESSIONAL,
}

# Highest first
TIER_PRECEDENCE = (Tier.PROFESSIONAL, Tier.GROWTH, Tier.STARTER, Tier.FREE)


def active_entitlements(entitlements: Mapping[str, Any], now: dt.datetime) -> Dict[str, Dict[str, Any]]:
    """Keep entitlements with no expiry or an expiry after ``now``."""
    aware_now = now if now.tzinfo else now.replace(tzinfo=dt.timezone.utc)
    active: Dict[str, Dict[str, Any]] = {}
    for name, info in entitlements.items():
        if not isinstance(info, dict):
            continue
        raw_expiry = info.get("expires_date")
        if raw_expiry is None:
            active[name] = info
            continue
        expires = parse_iso_datetime(str(raw_expiry))
        if expires is None:
            logger.warning("[tiers] unparseable entitlement expiry %r for %s; skipping", raw_expiry, name)
            continue
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=dt.timezone.utc)
        if expires > aware_now:
            active[name] = info
    return active


def tier_for_entitlement(name: str, info: Mapping[str, Any]) -> Optional[Tier]:
    tier = ENTITLEMENT_TIER_MAP.get(name.lower())
    if tier is None:
        tier = PRODUCT_TIER_MAP.get(str(info.get("product_identifier") or ""))
    return tier


def highest_tier(entitlements: Mapping[str, Mapping[str, Any]]) -> Tier:
    tiers = {tier_for_entitlement(name, info) for name, info in entitlements.items()}
    for tier in TIER_PRECEDENCE:
        if tier in tiers:
            return tier
    return FALLBACK_TIER


class EntitlementClient:
    """Thin async client for the RevenueCat subscribers endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.revenuecat.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "EntitlementClient":
        return cls(
            api_key=settings.REVENUECAT_API_KEY,
            base_url=settings.REVENUECAT_API_URL,
            timeout=settings.REVENUECAT_TIMEOUT_SECONDS,
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def get_subscriber(self, external_user_id: str) -> Optional[Dict[str, Any]]:
        """Return the ``subscriber`` object, or None on any failure."""
        if not self.api_key:
            logger.warning("[tiers] RevenueCat API key not configured; skipping entitlement lookup")
            return None
        url = f"{self.base_url}/subscribers/{quote(external_user_id, safe='')}"
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("[tiers] RevenueCat request failed for %s: %s", external_user_id, exc)
            return None
        if response.status_code != 200:
            logger.warning(
                "[tiers] RevenueCat returned status %d for %s: %s",
                response.status_code, external_user_id, response.text[:200],
            )
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("[tiers] RevenueCat returned non-JSON body for %s", external_user_id)
            return None
        subscriber = data.get("subscriber") if isinstance(data, dict) else None
        if not isinstance(subscriber, dict):
            logger.warning("[tiers] RevenueCat response for %s has no subscriber object", external_user_id)
            return None
        return subscriber

    async def resolve_tier(self, external_user_id: str, now: dt.datetime) -> TierResolution:
        subscriber = await self.get_subscriber(external_user_id)
        if subscriber is None:
            return TierResolution(FALLBACK_TIER, True)
        entitlements = subscriber.get("entitlements")
        if not isinstance(entitlements, dict):
            logger.warning("[tiers] subscriber %s has no entitlements map; defaulting", external_user_id)
            return TierResolution(FALLBACK_TIER, True)
        active = active_entitlements(entitlements, now)
        tier = highest_tier(active)
        logger.info(
            "[tiers] entitlement lookup user=%s active=%s tier=%s",
            external_user_id, sorted(active), tier.value,
        )
        return TierResolution(tier, False)


__all__ = [
    "ENTITLEMENT_TIER_MAP",
    "EntitlementClient",
    "TIER_PRECEDENCE",
    "active_entitlements",
    "highest_tier",
    "tier_for_entitlement",
]
