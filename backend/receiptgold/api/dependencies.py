"""FastAPI dependencies for the billing routes.

External clients and the reconciler are built once in the application
lifespan and stored on ``app.state`` (see ``receiptgold.api.main``); the
dependencies below only hand them out.  Tests replace them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptgold.core.database import get_session_factory
from receiptgold.core.errors import InternalError
from receiptgold.services.entitlements import EntitlementClient
from receiptgold.services.ingestion import EventIngestion
from receiptgold.services.payment_gateway import PaymentGateway
from receiptgold.services.reconciliation import SubscriptionReconciler
from receiptgold.services.revenuecat import RevenueCatIngestion
from receiptgold.services.tiers import TierResolver


def _from_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise InternalError(f"{name} is not configured on the application")
    return value


def get_payment_gateway(request: Request) -> PaymentGateway:
    return _from_state(request, "payment_gateway")


def get_entitlement_client(request: Request) -> EntitlementClient:
    return _from_state(request, "entitlement_client")


def get_tier_resolver(request: Request) -> TierResolver:
    return _from_state(request, "tier_resolver")


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return _from_state(request, "reconciler")


def get_event_ingestion(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    resolver: TierResolver = Depends(get_tier_resolver),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> EventIngestion:
    return EventIngestion(session_factory, gateway, resolver, reconciler)


def get_revenuecat_ingestion(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    resolver: TierResolver = Depends(get_tier_resolver),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> RevenueCatIngestion:
    return RevenueCatIngestion(session_factory, resolver, reconciler)
