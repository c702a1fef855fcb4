"""Stripe access used by reconciliation.

``PaymentGateway`` is constructed once at startup (see the API lifespan)
from settings and handed to the components that need it; nothing in the
service configures the global ``stripe.api_key``.  Reconciliation reads a
customer's ``userId`` metadata and subscription snapshots; the checkout
routes create customers and checkout sessions tagged with the user id so
the resulting webhooks resolve back to the account.

The Stripe SDK is synchronous, so calls run in a worker thread.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from receiptgold.core.config import Settings
from receiptgold.core.errors import PaymentProviderError
from receiptgold.services.events import SubscriptionPayload, metadata_user_id

logger = logging.getLogger(__name__)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if to_dict is None:
        raise PaymentProviderError(f"unexpected Stripe object type {type(obj).__name__}")
    return to_dict()


class PaymentGateway:
    def __init__(self, client: Optional[stripe.StripeClient]):
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentGateway":
        if not settings.STRIPE_API_KEY:
            logger.warning("[stripe] STRIPE_API_KEY not configured; provider lookups will fail")
            return cls(None)
        return cls(stripe.StripeClient(settings.STRIPE_API_KEY))

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> stripe.StripeClient:
        if self._client is None:
            raise PaymentProviderError("Stripe client is not configured")
        return self._client

    async def get_customer_user_id(self, customer_id: str) -> Optional[str]:
        """Return ``metadata.userId`` of a customer, or None if unset/deleted."""
        client = self._require_client()
        try:
            customer = await run_in_threadpool(client.customers.retrieve, customer_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"failed to retrieve customer {customer_id}: {exc}") from exc
        data = _as_dict(customer)
        if data.get("deleted"):
            logger.warning("[stripe] customer %s is deleted", customer_id)
            return None
        return metadata_user_id(data.get("metadata"))

    async def get_subscription(self, subscription_id: str) -> SubscriptionPayload:
        client = self._require_client()
        try:
            subscription = await run_in_threadpool(client.subscriptions.retrieve, subscription_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"failed to retrieve subscription {subscription_id}: {exc}") from exc
        return SubscriptionPayload.from_object(_as_dict(subscription))


    async def create_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        client = self._require_client()
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        try:
            customer = await run_in_threadpool(client.customers.create, params=params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"failed to create customer for {user_id}: {exc}") from exc
        customer_id = _as_dict(customer).get("id")
        if not customer_id:
            raise PaymentProviderError("Stripe returned a customer without an id")
        logger.info("[stripe] created customer %s for user=%s", customer_id, user_id)
        return str(customer_id)

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create a subscription-mode checkout session and return its id."""
        client = self._require_client()
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"userId": user_id},
            "subscription_data": {"metadata": {"userId": user_id}},
        }
        try:
            session = await run_in_threadpool(client.checkout.sessions.create, params=params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"failed to create checkout session for {user_id}: {exc}") from exc
        session_id = _as_dict(session).get("id")
        if not session_id:
            raise PaymentProviderError("Stripe returned a checkout session without an id")
        logger.info("[stripe] created checkout session %s user=%s price=%s", session_id, user_id, price_id)
        return str(session_id)

__all__ = ["PaymentGateway"]
