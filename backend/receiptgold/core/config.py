"""Configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  As a last
# resort, a .env in the backend directory may be used.  Files are loaded in
# order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_BACKEND_ENV = (_THIS_FILE.parents[2] / ".env").as_posix()
if os.path.exists(_BACKEND_ENV) and _BACKEND_ENV not in _candidate_envs:
    _candidate_envs.append(_BACKEND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "ReceiptGold Billing"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Local SQLite is used when DATABASE_URL is unset and this flag is on.
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=True)

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # Auth
    # Disable auth bypass by default.  Override in .env only when running locally.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    # HS256 shared secret; when unset tokens are verified against AUTH_JWKS_URL.
    AUTH_JWT_SECRET: Optional[str] = Field(default=None)
    AUTH_JWKS_URL: Optional[str] = Field(default=None)
    AUTH_JWT_AUDIENCE: Optional[str] = Field(default=None)
    AUTH_JWT_ISSUER: Optional[str] = Field(default=None)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    # Stripe
    STRIPE_API_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRETS: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = Field(default=300)
    STRIPE_WEBHOOK_ALLOWED_EVENTS: Optional[str] = Field(default=None)
    STRIPE_PRICE_STARTER_MONTHLY: Optional[str] = Field(default=None)
    STRIPE_PRICE_STARTER_ANNUAL: Optional[str] = Field(default=None)
    STRIPE_PRICE_GROWTH_MONTHLY: Optional[str] = Field(default=None)
    STRIPE_PRICE_GROWTH_ANNUAL: Optional[str] = Field(default=None)
    STRIPE_PRICE_PROFESSIONAL_MONTHLY: Optional[str] = Field(default=None)
    STRIPE_PRICE_PROFESSIONAL_ANNUAL: Optional[str] = Field(default=None)
    # Extra "price_id:tier" pairs, comma separated (legacy or promotional prices)
    STRIPE_PRICE_TIER_MAP: Optional[str] = Field(default=None)

    # RevenueCat entitlement lookup (mobile purchases)
    REVENUECAT_API_KEY: Optional[str] = Field(default=None)
    REVENUECAT_API_URL: str = Field(default="https://api.revenuecat.com/v1")
    REVENUECAT_TIMEOUT_SECONDS: float = Field(default=10.0)
    # Expected as "Authorization: Bearer <secret>" on RevenueCat webhooks
    REVENUECAT_WEBHOOK_SECRET: Optional[str] = Field(default=None)

    # Checkout redirect base (success and cancel pages)
    APP_URL: str = Field(default="http://localhost:8081")

    # Tiers & usage
    TRIAL_DAYS: int = Field(default=3)
    FREE_TIER_MAX_RECEIPTS: int = Field(default=10)
    STARTER_TIER_MAX_RECEIPTS: int = Field(default=50)
    GROWTH_TIER_MAX_RECEIPTS: int = Field(default=150)
    PROFESSIONAL_TIER_MAX_RECEIPTS: int = Field(default=-1)
    RECEIPT_EXCLUSION_BATCH_SIZE: int = Field(default=400)


# Instantiate global settings
settings = Settings()


def get_webhook_secret_list() -> list[str]:
    """Return list of webhook secrets for signature verification.

    Precedence:
    1. STRIPE_WEBHOOK_SECRETS (comma separated, ordered)
    2. Fallback to singular STRIPE_WEBHOOK_SECRET if set
    """
    secrets: list[str] = []
    if settings.STRIPE_WEBHOOK_SECRETS:
        secrets.extend([s.strip() for s in settings.STRIPE_WEBHOOK_SECRETS.split(",") if s.strip()])
    elif settings.STRIPE_WEBHOOK_SECRET:
        secrets.append(settings.STRIPE_WEBHOOK_SECRET.strip())
    return secrets


def get_price_tier_pairs(cfg: Optional[Settings] = None) -> list[tuple[str, str]]:
    """Return configured ``(price_id, tier)`` pairs in declaration order."""
    cfg = cfg or settings
    pairs: list[tuple[str, str]] = []
    for tier in ("starter", "growth", "professional"):
        for interval in ("MONTHLY", "ANNUAL"):
            price_id = getattr(cfg, f"STRIPE_PRICE_{tier.upper()}_{interval}", None)
            if price_id:
                pairs.append((price_id.strip(), tier))
    for chunk in (cfg.STRIPE_PRICE_TIER_MAP or "").split(","):
        price_id, sep, tier = chunk.partition(":")
        if sep and price_id.strip() and tier.strip():
            pairs.append((price_id.strip(), tier.strip().lower()))
    return pairs
