from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import time

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from receiptgold.api.dependencies import get_payment_gateway, get_reconciler, get_tier_resolver
from receiptgold.api.main import app
from receiptgold.core import config as cfg
from receiptgold.core.database import get_session_factory
from receiptgold.models.enums import SubscriptionStatus, Tier
from receiptgold.models.tables import BillingHistory, Receipt, Subscription
from receiptgold.utils.helpers import utcnow

from .conftest import PRICE_GROWTH, PRICE_STARTER, FakeGateway, add_receipts, make_subscription_payload

SECRET = "whsec_current"
OLD_SECRET = "whsec_previous"
URL = "/webhooks/stripe"


def _sign(payload: str, secret: str = SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _subscription_event(event_type="customer.subscription.created", price=PRICE_STARTER, status="active",
                        user_id="user_1", event_id="evt_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": status,
                "metadata": {"userId": user_id} if user_id else {},
                "items": {
                    "data": [
                        {
                            "price": {"id": price, "product": "prod_x"},
                            "current_period_start": 1709251200,
                            "current_period_end": 1711929600,
                        }
                    ]
                },
            }
        },
    }


@pytest.fixture(autouse=True)
def webhook_settings(monkeypatch):
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRET", None, raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", f"{SECRET}, {OLD_SECRET}", raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_ALLOWED_EVENTS", None, raising=False)


@pytest.fixture
def fake_gateway():
    return FakeGateway(configured=False)


@pytest_asyncio.fixture
async def client(session_factory, resolver, reconciler, fake_gateway):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_tier_resolver] = lambda: resolver
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _post(client, event, secret=SECRET):
    payload = json.dumps(event)
    return await client.post(
        URL,
        content=payload,
        headers={"Stripe-Signature": _sign(payload, secret), "Content-Type": "application/json"},
    )


async def _subscription(session_factory, user_id="user_1"):
    async with session_factory() as session:
        return await session.get(Subscription, user_id)


async def _excluded_count(session_factory, user_id="user_1"):
    async with session_factory() as session:
        return await session.scalar(
            select(func.count(Receipt.id)).where(
                Receipt.user_id == user_id,
                Receipt.exclude_from_monthly_count.is_(True),
            )
        )


async def test_missing_signature_is_rejected(client):
    resp = await client.post(URL, content=json.dumps(_subscription_event()))
    assert resp.status_code == 400


async def test_bad_signature_is_rejected(client, session_factory):
    resp = await _post(client, _subscription_event(), secret="whsec_wrong")
    assert resp.status_code == 400
    assert await _subscription(session_factory) is None


async def test_stale_timestamp_is_rejected(client):
    payload = json.dumps(_subscription_event())
    header = _sign(payload, timestamp=int(time.time()) - 3600)
    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": header})
    assert resp.status_code == 400


async def test_invalid_json_is_rejected(client):
    payload = "{not json"
    resp = await client.post(URL, content=payload, headers={"Stripe-Signature": _sign(payload)})
    assert resp.status_code == 400


async def test_non_utf8_body_is_rejected(client):
    resp = await client.post(URL, content=b"\xff\xfe\xfa", headers={"Stripe-Signature": _sign("x")})
    assert resp.status_code == 400


async def test_unconfigured_secret_is_server_error(client, monkeypatch):
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", None, raising=False)
    resp = await _post(client, _subscription_event())
    assert resp.status_code == 500


async def test_wrong_method_is_rejected(client):
    resp = await client.get(URL)
    assert resp.status_code == 400


async def test_subscription_created_applies_tier(client, session_factory):
    resp = await _post(client, _subscription_event())

    assert resp.status_code == 200
    body = resp.json()
    assert body["received"] is True
    assert body["eventType"] == "customer.subscription.created"
    assert body["eventId"] == "evt_1"
    assert body["processed"] is True
    sub = await _subscription(session_factory)
    assert sub.current_tier is Tier.STARTER
    assert sub.external_customer_id == "cus_1"
    assert sub.external_subscription_id == "sub_1"
    assert sub.external_price_id == PRICE_STARTER


async def test_rotated_secret_still_verifies(client, session_factory):
    resp = await _post(client, _subscription_event(), secret=OLD_SECRET)
    assert resp.status_code == 200
    assert (await _subscription(session_factory)).current_tier is Tier.STARTER


async def test_duplicate_delivery_is_harmless(client, session_factory):
    await add_receipts(session_factory, "user_1", 4, utcnow() - dt.timedelta(days=2))
    event = _subscription_event(event_type="customer.subscription.updated", price=PRICE_GROWTH)

    first = await _post(client, event)
    after_first = await _subscription(session_factory)
    excluded_first = await _excluded_count(session_factory)
    # Captured between the deliveries; a replay must not exclude these
    await add_receipts(session_factory, "user_1", 2, utcnow())
    second = await _post(client, event)

    assert first.status_code == second.status_code == 200
    assert first.json()["processed"] is True
    assert second.json()["processed"] is True
    sub = await _subscription(session_factory)
    assert excluded_first == 4
    assert await _excluded_count(session_factory) == excluded_first
    assert sub.current_tier is after_first.current_tier is Tier.GROWTH
    assert len(sub.history) == len(after_first.history) == 1
    assert sub.updated_at > after_first.updated_at


async def test_customer_lookup_by_stored_customer_id(client, session_factory):
    await _post(client, _subscription_event())
    resp = await _post(
        client,
        _subscription_event(event_type="customer.subscription.updated", price=PRICE_GROWTH, user_id=None, event_id="evt_2"),
    )

    assert resp.json()["processed"] is True
    sub = await _subscription(session_factory)
    assert sub.current_tier is Tier.GROWTH
    assert sub.last_upgrade["from_tier"] == "starter"


async def test_terminal_status_downgrades(client, session_factory):
    await _post(client, _subscription_event(price=PRICE_GROWTH))
    resp = await _post(
        client,
        _subscription_event(event_type="customer.subscription.updated", status="unpaid", event_id="evt_2"),
    )

    assert resp.json()["processed"] is True
    sub = await _subscription(session_factory)
    assert sub.current_tier is Tier.FREE
    assert sub.status is SubscriptionStatus.CANCELED


async def test_subscription_deleted(client, session_factory):
    await _post(client, _subscription_event(price=PRICE_GROWTH))
    resp = await _post(
        client,
        _subscription_event(event_type="customer.subscription.deleted", status="canceled", event_id="evt_3"),
    )

    assert resp.status_code == 200
    sub = await _subscription(session_factory)
    assert sub.current_tier is Tier.FREE
    assert sub.history[-1]["reason"] == "subscription_canceled"


async def test_processing_failure_is_acknowledged(client, session_factory):
    # No userId metadata, gateway unconfigured, no stored customer: unknown account
    resp = await _post(client, _subscription_event(user_id=None))

    assert resp.status_code == 200
    assert resp.json()["processed"] is False
    assert await _subscription(session_factory) is None


async def test_malformed_event_is_acknowledged(client):
    resp = await _post(client, {"id": "evt_9", "type": "customer.subscription.updated", "data": {}})
    assert resp.status_code == 200
    assert resp.json()["processed"] is False


async def test_unknown_event_type_is_acknowledged(client):
    resp = await _post(client, {"id": "evt_5", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}})
    assert resp.status_code == 200
    assert resp.json()["processed"] is False


async def test_allowlist_filters_events(client, monkeypatch, session_factory):
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_ALLOWED_EVENTS", "invoice.*", raising=False)
    resp = await _post(client, _subscription_event())

    assert resp.status_code == 200
    assert resp.json()["filtered"] is True
    assert await _subscription(session_factory) is None


async def test_checkout_completed_fetches_subscription(client, session_factory, fake_gateway):
    fake_gateway.subscriptions["sub_7"] = make_subscription_payload(
        subscription_id="sub_7", customer_id="cus_7", price_id=PRICE_GROWTH
    )
    event = {
        "id": "evt_6",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_1", "customer": "cus_7", "subscription": "sub_7", "client_reference_id": "user_7"}},
    }

    resp = await _post(client, event)

    assert resp.json()["processed"] is True
    assert fake_gateway.subscription_calls == ["sub_7"]
    sub = await _subscription(session_factory, "user_7")
    assert sub.current_tier is Tier.GROWTH
    assert sub.external_customer_id == "cus_7"


async def test_payment_succeeded_creates_missing_subscription(client, session_factory, fake_gateway):
    fake_gateway.subscriptions["sub_8"] = make_subscription_payload(subscription_id="sub_8", price_id=PRICE_STARTER)
    event = {
        "id": "evt_7",
        "type": "invoice.payment_succeeded",
        "data": {
            "object": {
                "id": "in_1",
                "customer": "cus_123",
                "subscription": "sub_8",
                "amount_paid": 999,
                "currency": "usd",
                "metadata": {"userId": "user_8"},
            }
        },
    }

    resp = await _post(client, event)

    assert resp.json()["processed"] is True
    assert fake_gateway.subscription_calls == ["sub_8"]
    sub = await _subscription(session_factory, "user_8")
    assert sub.current_tier is Tier.STARTER
    assert sub.status is SubscriptionStatus.ACTIVE
    assert sub.last_invoice_id == "in_1"


async def test_payment_for_existing_subscription_skips_provider_fetch(client, session_factory, fake_gateway):
    await _post(client, _subscription_event())
    event = {
        "id": "evt_10",
        "type": "invoice.payment_succeeded",
        "data": {
            "object": {
                "id": "in_3",
                "customer": "cus_1",
                "subscription": "sub_1",
                "amount_paid": 1999,
                "currency": "usd",
                "metadata": {"userId": "user_1"},
            }
        },
    }

    resp = await _post(client, event)

    assert resp.json()["processed"] is True
    assert fake_gateway.subscription_calls == []
    async with session_factory() as session:
        ledger = (await session.scalars(select(BillingHistory))).all()
    assert [row.invoice_id for row in ledger] == ["in_3"]


async def test_payment_failed_marks_past_due(client, session_factory):
    await _post(client, _subscription_event())
    event = {
        "id": "evt_8",
        "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_2", "customer": "cus_1", "subscription": "sub_1"}},
    }

    resp = await _post(client, event)

    assert resp.json()["processed"] is True
    sub = await _subscription(session_factory)
    assert sub.status is SubscriptionStatus.PAST_DUE
    assert sub.current_tier is Tier.STARTER
