"""Tier table and price-based tier resolution.

The tier table is the only place limits and feature flags come from;
subscription and usage rows store snapshots of it that are rewritten on
every tier change.  ``-1`` means unlimited.

Unmapped price ids deliberately fall back to ``Tier.FREE``.  The fallback
is reported through ``TierResolution.was_defaulted`` as well as a warning
log so callers and tests can tell a real free plan from a missing
mapping.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, Mapping, NamedTuple, Optional, Tuple

from receiptgold.core.config import Settings, get_price_tier_pairs
from receiptgold.models.enums import Tier

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Lowest tier; target of downgrades and of every resolution fallback
FALLBACK_TIER = Tier.FREE

# Store product identifiers (mobile purchases and checkout metadata)
PRODUCT_TIER_MAP: Dict[str, Tier] = {
    "rg_starter": Tier.STARTER,
    "rg_growth_monthly": Tier.GROWTH,
    "rg_growth_annual": Tier.GROWTH,
    "rg_professional_monthly": Tier.PROFESSIONAL,
    "rg_professional_annual": Tier.PROFESSIONAL,
}


@dataclass(frozen=True)
class TierLimits:
    max_receipts: int
    max_businesses: int
    api_calls_per_month: int
    max_reports: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class TierFeatures:
    advanced_reporting: bool = False
    tax_preparation: bool = False
    accounting_integrations: bool = False
    priority_support: bool = False
    multi_business_management: bool = False
    white_label: bool = False
    api_access: bool = False
    dedicated_manager: bool = False

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class TierDefinition:
    tier: Tier
    limits: TierLimits
    features: TierFeatures


class TierTable:
    """Immutable lookup from ``Tier`` to its limits and features."""

    def __init__(self, definitions: Iterable[TierDefinition]):
        self._definitions: Dict[Tier, TierDefinition] = {d.tier: d for d in definitions}
        missing = set(Tier) - set(self._definitions)
        if missing:
            raise ValueError(f"tier table missing definitions for {sorted(t.value for t in missing)}")

    def __getitem__(self, tier: Tier) -> TierDefinition:
        return self._definitions[tier]

    def limits(self, tier: Tier) -> Dict[str, int]:
        return self._definitions[tier].limits.as_dict()

    def features(self, tier: Tier) -> Dict[str, bool]:
        return self._definitions[tier].features.as_dict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TierTable":
        """Build the table, applying configured receipt ceilings."""
        free_limits = TierLimits(
            max_receipts=settings.FREE_TIER_MAX_RECEIPTS,
            max_businesses=1,
            api_calls_per_month=0,
            max_reports=3,
        )
        return cls(
            [
                TierDefinition(Tier.TRIAL, free_limits, TierFeatures()),
                TierDefinition(Tier.FREE, free_limits, TierFeatures()),
                TierDefinition(
                    Tier.STARTER,
                    TierLimits(
                        max_receipts=settings.STARTER_TIER_MAX_RECEIPTS,
                        max_businesses=1,
                        api_calls_per_month=0,
                        max_reports=10,
                    ),
                    TierFeatures(),
                ),
                TierDefinition(
                    Tier.GROWTH,
                    TierLimits(
                        max_receipts=settings.GROWTH_TIER_MAX_RECEIPTS,
                        max_businesses=1,
                        api_calls_per_month=1000,
                        max_reports=50,
                    ),
                    TierFeatures(
                        advanced_reporting=True,
                        tax_preparation=True,
                        accounting_integrations=True,
                        priority_support=True,
                    ),
                ),
                TierDefinition(
                    Tier.PROFESSIONAL,
                    TierLimits(
                        max_receipts=settings.PROFESSIONAL_TIER_MAX_RECEIPTS,
                        max_businesses=UNLIMITED,
                        api_calls_per_month=10000,
                        max_reports=UNLIMITED,
                    ),
                    TierFeatures(
                        advanced_reporting=True,
                        tax_preparation=True,
                        accounting_integrations=True,
                        priority_support=True,
                        multi_business_management=True,
                        white_label=True,
                        api_access=True,
                        dedicated_manager=True,
                    ),
                ),
                TierDefinition(
                    Tier.TEAMMATE,
                    TierLimits(
                        max_receipts=UNLIMITED,
                        max_businesses=1,
                        api_calls_per_month=0,
                        max_reports=0,
                    ),
                    TierFeatures(),
                ),
            ]
        )


class TierResolution(NamedTuple):
    tier: Tier
    was_defaulted: bool


def parse_tier(value: str) -> Optional[Tier]:
    try:
        return Tier(value.strip().lower())
    except ValueError:
        return None


class TierResolver:
    """Maps provider price (and product) identifiers onto tiers.

    Pure lookup: resolution never touches storage or the network.
    """

    def __init__(self, price_map: Mapping[str, Tier], product_map: Mapping[str, Tier] = PRODUCT_TIER_MAP):
        self._price_map = dict(price_map)
        self._product_map = dict(product_map)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TierResolver":
        return cls(build_price_map(get_price_tier_pairs(settings)))

    def resolve_tier(self, price_id: Optional[str], product_id: Optional[str] = None) -> TierResolution:
        if price_id and price_id in self._price_map:
            return TierResolution(self._price_map[price_id], False)
        if product_id and product_id in self._product_map:
            return TierResolution(self._product_map[product_id], False)
        logger.warning(
            "[tiers] unmapped price id=%s product=%s; defaulting to %s",
            price_id, product_id, FALLBACK_TIER.value,
        )
        return TierResolution(FALLBACK_TIER, True)


def build_price_map(pairs: Iterable[Tuple[str, str]]) -> Dict[str, Tier]:
    mapping: Dict[str, Tier] = {}
    for price_id, tier_name in pairs:
        tier = parse_tier(tier_name)
        if tier is None or not tier.is_paid:
            logger.warning("[tiers] ignoring price mapping %s -> %s (not a paid tier)", price_id, tier_name)
            continue
        mapping[price_id] = tier
    return mapping


__all__ = [
    "FALLBACK_TIER",
    "PRODUCT_TIER_MAP",
    "TierDefinition",
    "TierFeatures",
    "TierLimits",
    "TierResolution",
    "TierResolver",
    "TierTable",
    "UNLIMITED",
    "build_price_map",
    "parse_tier",
]
