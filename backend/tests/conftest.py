from __future__ import annotations

import datetime as dt
import os
import sys
from pathlib import Path
from typing import Dict, Optional

# Must be set before receiptgold is imported: selects the stub broker and
# keeps Sentry and the module-level engine away from real services.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SENTRY_DSN"] = ""

# Add backend folder to sys.path so `import receiptgold...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from receiptgold.core.config import Settings  # noqa: E402
from receiptgold.core.database import Base, build_session_factory  # noqa: E402
from receiptgold.core.errors import PaymentProviderError  # noqa: E402
from receiptgold.models import tables  # noqa: E402,F401
from receiptgold.models.enums import ReceiptStatus, Tier  # noqa: E402
from receiptgold.models.tables import Receipt  # noqa: E402
from receiptgold.services.events import SubscriptionPayload  # noqa: E402
from receiptgold.services.reconciliation import SubscriptionReconciler  # noqa: E402
from receiptgold.services.tiers import TierResolver, TierTable  # noqa: E402

PRICE_STARTER = "price_starter_monthly"
PRICE_GROWTH = "price_growth_monthly"
PRICE_PROFESSIONAL = "price_professional_annual"


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def now() -> dt.datetime:
    return dt.datetime(2024, 3, 15, 12, 0, 0)


@pytest.fixture
def tier_table() -> TierTable:
    return TierTable.from_settings(Settings())


@pytest.fixture
def reconciler(tier_table) -> SubscriptionReconciler:
    # Small batches so exclusion runs over several pages
    return SubscriptionReconciler(tier_table, batch_size=3)


@pytest.fixture
def resolver() -> TierResolver:
    return TierResolver(
        {
            PRICE_STARTER: Tier.STARTER,
            PRICE_GROWTH: Tier.GROWTH,
            PRICE_PROFESSIONAL: Tier.PROFESSIONAL,
        }
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(sqlite_url(tmp_path / "billing.db"), poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


class FakeGateway:
    """In-memory stand-in for ``PaymentGateway``."""

    def __init__(
        self,
        customers: Optional[Dict[str, Optional[str]]] = None,
        subscriptions: Optional[Dict[str, SubscriptionPayload]] = None,
        configured: bool = True,
    ):
        self.customers = customers or {}
        self.subscriptions = subscriptions or {}
        self.configured = configured
        self.subscription_calls: list[str] = []
        self.created_customers: list[dict] = []
        self.checkout_sessions: list[dict] = []

    async def get_customer_user_id(self, customer_id: str) -> Optional[str]:
        return self.customers.get(customer_id)

    async def get_subscription(self, subscription_id: str) -> SubscriptionPayload:
        self.subscription_calls.append(subscription_id)
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise PaymentProviderError(f"no such subscription {subscription_id}")

    async def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        if not self.configured:
            raise PaymentProviderError("Stripe client is not configured")
        customer_id = f"cus_{len(self.created_customers) + 1}"
        self.created_customers.append({"id": customer_id, "user_id": user_id, "email": email, "name": name})
        self.customers[customer_id] = user_id
        return customer_id

    async def create_checkout_session(self, **params) -> str:
        self.checkout_sessions.append(params)
        return f"cs_{len(self.checkout_sessions)}"


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


def make_subscription_payload(
    subscription_id: str = "sub_123",
    customer_id: Optional[str] = "cus_123",
    status: str = "active",
    price_id: Optional[str] = PRICE_STARTER,
    user_id: Optional[str] = None,
    period_start: Optional[dt.datetime] = None,
) -> SubscriptionPayload:
    return SubscriptionPayload(
        subscription_id=subscription_id,
        customer_id=customer_id,
        status=status,
        price_id=price_id,
        product_id=None,
        current_period_start=period_start,
        current_period_end=None,
        cancel_at_period_end=False,
        trial_end=None,
        metadata_user_id=user_id,
    )


async def add_receipts(
    session_factory,
    user_id: str,
    count: int,
    created_at: dt.datetime,
    created_by: Optional[str] = None,
    status: ReceiptStatus = ReceiptStatus.PROCESSED,
) -> None:
    async with session_factory.begin() as session:
        for i in range(count):
            session.add(
                Receipt(
                    user_id=user_id,
                    created_by=created_by or user_id,
                    vendor=f"vendor-{i}",
                    amount=10.0 + i,
                    status=status,
                    created_at=created_at,
                )
            )
