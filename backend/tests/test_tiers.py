import logging

import pytest

from receiptgold.core.config import Settings, get_price_tier_pairs
from receiptgold.models.enums import Tier
from receiptgold.services.tiers import (
    FALLBACK_TIER,
    UNLIMITED,
    TierResolver,
    TierTable,
    build_price_map,
    parse_tier,
)

from .conftest import PRICE_GROWTH, PRICE_STARTER


@pytest.mark.parametrize(
    "tier, receipts, businesses, api_calls, reports",
    [
        (Tier.TRIAL, 10, 1, 0, 3),
        (Tier.FREE, 10, 1, 0, 3),
        (Tier.STARTER, 50, 1, 0, 10),
        (Tier.GROWTH, 150, 1, 1000, 50),
        (Tier.PROFESSIONAL, UNLIMITED, UNLIMITED, 10000, UNLIMITED),
        (Tier.TEAMMATE, UNLIMITED, 1, 0, 0),
    ],
)
def test_tier_table_limits(tier_table, tier, receipts, businesses, api_calls, reports):
    limits = tier_table.limits(tier)
    assert limits == {
        "max_receipts": receipts,
        "max_businesses": businesses,
        "api_calls_per_month": api_calls,
        "max_reports": reports,
    }


def test_tier_table_features(tier_table):
    assert not any(tier_table.features(Tier.FREE).values())
    growth = tier_table.features(Tier.GROWTH)
    assert growth["advanced_reporting"] and growth["priority_support"]
    assert not growth["api_access"]
    assert all(tier_table.features(Tier.PROFESSIONAL).values())


def test_tier_table_receipt_ceiling_from_settings():
    table = TierTable.from_settings(Settings(FREE_TIER_MAX_RECEIPTS=5, GROWTH_TIER_MAX_RECEIPTS=200))
    assert table.limits(Tier.FREE)["max_receipts"] == 5
    assert table.limits(Tier.TRIAL)["max_receipts"] == 5
    assert table.limits(Tier.GROWTH)["max_receipts"] == 200


def test_tier_table_returns_fresh_dicts(tier_table):
    limits = tier_table.limits(Tier.STARTER)
    limits["max_receipts"] = 9999
    assert tier_table.limits(Tier.STARTER)["max_receipts"] == 50


def test_tier_table_requires_every_tier(tier_table):
    with pytest.raises(ValueError):
        TierTable([tier_table[Tier.FREE]])


def test_resolver_maps_known_price(resolver):
    resolution = resolver.resolve_tier(PRICE_GROWTH)
    assert resolution.tier is Tier.GROWTH
    assert resolution.was_defaulted is False


def test_resolver_falls_back_to_product_id(resolver):
    resolution = resolver.resolve_tier("price_unknown", "rg_professional_annual")
    assert resolution == (Tier.PROFESSIONAL, False)


def test_resolver_unmapped_price_defaults_with_warning(resolver, caplog):
    with caplog.at_level(logging.WARNING, logger="receiptgold.services.tiers"):
        resolution = resolver.resolve_tier("price_mystery")
    assert resolution.tier is FALLBACK_TIER is Tier.FREE
    assert resolution.was_defaulted is True
    assert "unmapped price id=price_mystery" in caplog.text


def test_resolver_missing_price(resolver):
    assert resolver.resolve_tier(None).was_defaulted is True


def test_build_price_map_ignores_non_paid_tiers():
    mapping = build_price_map([("p1", "starter"), ("p2", "trial"), ("p3", "bogus"), ("p4", "Professional")])
    assert mapping == {"p1": Tier.STARTER, "p4": Tier.PROFESSIONAL}


def test_resolver_from_settings_reads_price_ids():
    cfg = Settings(
        STRIPE_PRICE_STARTER_MONTHLY=PRICE_STARTER,
        STRIPE_PRICE_GROWTH_ANNUAL="price_growth_year",
        STRIPE_PRICE_TIER_MAP="price_legacy:growth, malformed, price_promo:professional",
    )
    assert get_price_tier_pairs(cfg) == [
        (PRICE_STARTER, "starter"),
        ("price_growth_year", "growth"),
        ("price_legacy", "growth"),
        ("price_promo", "professional"),
    ]
    resolver = TierResolver.from_settings(cfg)
    assert resolver.resolve_tier("price_growth_year").tier is Tier.GROWTH
    assert resolver.resolve_tier("price_promo").tier is Tier.PROFESSIONAL


def test_parse_tier():
    assert parse_tier(" Growth ") is Tier.GROWTH
    assert parse_tier("gold") is None
