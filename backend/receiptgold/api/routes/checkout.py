from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from receiptgold.api.dependencies import get_payment_gateway, get_tier_resolver
from receiptgold.core.config import settings
from receiptgold.core.errors import InternalError, InvalidArgument, PermissionDenied, PaymentProviderError
from receiptgold.core.security import get_caller_id
from receiptgold.models.schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CustomerCreateRequest,
    CustomerCreateResponse,
)
from receiptgold.services.payment_gateway import PaymentGateway
from receiptgold.services.tiers import TierResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/customer", response_model=CustomerCreateResponse)
async def create_customer(
    body: CustomerCreateRequest,
    caller_id: str = Depends(get_caller_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    try:
        customer_id = await gateway.create_customer(caller_id, email=body.email, name=body.name)
    except PaymentProviderError as exc:
        logger.exception("[stripe] customer creation failed for user=%s", caller_id)
        raise InternalError("Failed to create customer") from exc
    return CustomerCreateResponse(customer_id=customer_id)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    body: CheckoutSessionRequest,
    caller_id: str = Depends(get_caller_id),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    resolver: TierResolver = Depends(get_tier_resolver),
):
    """Start a Stripe checkout for one of the configured subscription prices.

    The customer must belong to the caller.  The session carries the
    caller's id so the webhooks it produces resolve to this account.
    """
    if resolver.resolve_tier(body.price_id).was_defaulted:
        raise InvalidArgument(f"Unknown price {body.price_id}")

    app_url = settings.APP_URL.rstrip("/")
    try:
        owner = await gateway.get_customer_user_id(body.customer_id)
        if owner != caller_id:
            raise PermissionDenied("Customer belongs to another user")
        session_id = await gateway.create_checkout_session(
            customer_id=body.customer_id,
            price_id=body.price_id,
            user_id=caller_id,
            success_url=f"{app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{app_url}/subscription/cancel",
        )
    except PaymentProviderError as exc:
        logger.exception("[stripe] checkout session failed for user=%s", caller_id)
        raise InternalError("Failed to create checkout session") from exc
    return CheckoutSessionResponse(session_id=session_id)
