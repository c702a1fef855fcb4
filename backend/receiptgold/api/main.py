"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and wires
the lifespan: Sentry, table creation and the explicitly constructed
external clients (Stripe gateway, RevenueCat client) plus the tier
resolver and reconciler, which are stored on ``app.state`` for the
dependencies in ``receiptgold.api.dependencies``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receiptgold.api.error_handlers import (
    generic_exception_handler,
    operation_error_handler,
    validation_exception_handler,
)
from receiptgold.api.routes.accounts import router as accounts_router
from receiptgold.api.routes.checkout import router as checkout_router
from receiptgold.api.routes.revenuecat_webhooks import router as revenuecat_webhooks_router
from receiptgold.api.routes.stripe_webhooks import router as stripe_webhooks_router
from receiptgold.api.routes.subscriptions import router as subscriptions_router
from receiptgold.core.config import settings
from receiptgold.core.database import init_db
from receiptgold.core.errors import OperationError
from receiptgold.core.observability import init_sentry
from receiptgold.services.entitlements import EntitlementClient
from receiptgold.services.payment_gateway import PaymentGateway
from receiptgold.services.reconciliation import SubscriptionReconciler
from receiptgold.services.tiers import TierResolver

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def configure_services(app: FastAPI) -> None:
    """Build external clients and domain services once per process."""
    app.state.payment_gateway = PaymentGateway.from_settings(settings)
    app.state.entitlement_client = EntitlementClient.from_settings(settings)
    app.state.tier_resolver = TierResolver.from_settings(settings)
    app.state.reconciler = SubscriptionReconciler.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    configure_services(app)
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="ReceiptGold Billing API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    if settings.SENTRY_DSN:
        sentry_sdk.set_tag("path", request.url.path)
        sentry_sdk.set_tag("method", request.method)
    return await call_next(request)


# Development allows any origin; otherwise the configured list only
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if env_is_dev else list(settings.BACKEND_CORS_ORIGINS or []),
    allow_credentials=not env_is_dev,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(OperationError, operation_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(stripe_webhooks_router)
app.include_router(revenuecat_webhooks_router)
app.include_router(subscriptions_router)
app.include_router(accounts_router)
app.include_router(checkout_router)


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}
