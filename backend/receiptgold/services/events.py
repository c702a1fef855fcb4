"""Typed decoding of Stripe webhook events.

A verified event is decoded exactly once, at the ingestion boundary, into
one of the frozen dataclasses below.  Everything downstream works with
these types instead of raw dictionaries.  Event types we do not handle
become ``UnknownEvent`` so the dispatcher can log and acknowledge them
explicitly.

Stripe moved subscription period bounds onto subscription items and the
invoice's subscription reference under ``parent.subscription_details``
in newer API versions; both shapes are accepted.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping, Optional, Union

from receiptgold.core.errors import MalformedEventError
from receiptgold.utils.helpers import from_unix


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _id_of(value: Any) -> Optional[str]:
    """Return the id of an expandable field (plain id or expanded object)."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def metadata_user_id(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, Mapping):
        return None
    value = metadata.get("userId") or metadata.get("user_id")
    return str(value) if value else None


@dataclass(frozen=True)
class SubscriptionPayload:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    product_id: Optional[str]
    current_period_start: Optional[dt.datetime]
    current_period_end: Optional[dt.datetime]
    cancel_at_period_end: bool
    trial_end: Optional[dt.datetime]
    metadata_user_id: Optional[str]

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "SubscriptionPayload":
        subscription_id = obj.get("id")
        if not subscription_id:
            raise MalformedEventError("subscription object has no id")
        item = _first_item(obj)
        price = item.get("price") or {}
        if not isinstance(price, Mapping):
            price = {"id": price}
        period_start = obj.get("current_period_start") or item.get("current_period_start")
        period_end = obj.get("current_period_end") or item.get("current_period_end")
        return cls(
            subscription_id=str(subscription_id),
            customer_id=_id_of(obj.get("customer")),
            status=str(obj.get("status") or ""),
            price_id=_id_of(price.get("id")),
            product_id=_id_of(price.get("product")),
            current_period_start=from_unix(period_start),
            current_period_end=from_unix(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            trial_end=from_unix(obj.get("trial_end")),
            metadata_user_id=metadata_user_id(obj.get("metadata")),
        )


@dataclass(frozen=True)
class InvoicePayload:
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_paid: int
    currency: Optional[str]
    period_start: Optional[dt.datetime]
    period_end: Optional[dt.datetime]
    metadata_user_id: Optional[str]

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "InvoicePayload":
        invoice_id = obj.get("id")
        if not invoice_id:
            raise MalformedEventError("invoice object has no id")
        parent = obj.get("parent") or {}
        details = parent.get("subscription_details") or {} if isinstance(parent, Mapping) else {}
        subscription_id = _id_of(obj.get("subscription")) or _id_of(details.get("subscription"))
        user_id_hint = metadata_user_id(details.get("metadata")) or metadata_user_id(obj.get("metadata"))

        lines = (obj.get("lines") or {}).get("data") or []
        line_period = lines[0].get("period") if lines and isinstance(lines[0], Mapping) else None
        line_period = line_period if isinstance(line_period, Mapping) else {}
        try:
            amount_paid = int(obj.get("amount_paid") or 0)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"invoice {invoice_id} has a non-integer amount_paid") from exc
        return cls(
            invoice_id=str(invoice_id),
            customer_id=_id_of(obj.get("customer")),
            subscription_id=subscription_id,
            amount_paid=amount_paid,
            currency=obj.get("currency"),
            period_start=from_unix(line_period.get("start") or obj.get("period_start")),
            period_end=from_unix(line_period.get("end") or obj.get("period_end")),
            metadata_user_id=user_id_hint,
        )


@dataclass(frozen=True)
class SubscriptionCreated:
    event_type: ClassVar[str] = "customer.subscription.created"
    event_id: str
    subscription: SubscriptionPayload


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_type: ClassVar[str] = "customer.subscription.updated"
    event_id: str
    subscription: SubscriptionPayload


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_type: ClassVar[str] = "customer.subscription.deleted"
    event_id: str
    subscription: SubscriptionPayload


@dataclass(frozen=True)
class CheckoutCompleted:
    event_type: ClassVar[str] = "checkout.session.completed"
    event_id: str
    session_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    client_reference_id: Optional[str]
    metadata_user_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_type: ClassVar[str] = "invoice.payment_succeeded"
    event_id: str
    invoice: InvoicePayload


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_type: ClassVar[str] = "invoice.payment_failed"
    event_id: str
    invoice: InvoicePayload


@dataclass(frozen=True)
class UnknownEvent:
    event_id: str
    event_type: str


ProviderEvent = Union[
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    CheckoutCompleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnknownEvent,
]


def _checkout(event_id: str, obj: Mapping[str, Any]) -> CheckoutCompleted:
    session_id = obj.get("id")
    if not session_id:
        raise MalformedEventError("checkout session has no id")
    return CheckoutCompleted(
        event_id=event_id,
        session_id=str(session_id),
        customer_id=_id_of(obj.get("customer")),
        subscription_id=_id_of(obj.get("subscription")),
        client_reference_id=obj.get("client_reference_id"),
        metadata_user_id=metadata_user_id(obj.get("metadata")),
    )


_DECODERS = {
    SubscriptionCreated.event_type: lambda eid, obj: SubscriptionCreated(eid, SubscriptionPayload.from_object(obj)),
    SubscriptionUpdated.event_type: lambda eid, obj: SubscriptionUpdated(eid, SubscriptionPayload.from_object(obj)),
    SubscriptionDeleted.event_type: lambda eid, obj: SubscriptionDeleted(eid, SubscriptionPayload.from_object(obj)),
    CheckoutCompleted.event_type: _checkout,
    InvoicePaymentSucceeded.event_type: lambda eid, obj: InvoicePaymentSucceeded(eid, InvoicePayload.from_object(obj)),
    InvoicePaymentFailed.event_type: lambda eid, obj: InvoicePaymentFailed(eid, InvoicePayload.from_object(obj)),
}


def decode_event(raw: Mapping[str, Any]) -> ProviderEvent:
    """Decode a parsed webhook body into a typed event.

    Raises:
        MalformedEventError: a handled event type is missing its data object
            or required identifiers.
    """
    event_id = str(raw.get("id") or "")
    event_type = str(raw.get("type") or "")
    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return UnknownEvent(event_id=event_id, event_type=event_type)
    data = raw.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        raise MalformedEventError(f"{event_type} event {event_id} has no data.object")
    return decoder(event_id, obj)


__all__ = [
    "CheckoutCompleted",
    "InvoicePayload",
    "InvoicePaymentFailed",
    "InvoicePaymentSucceeded",
    "ProviderEvent",
    "SubscriptionCreated",
    "SubscriptionDeleted",
    "SubscriptionPayload",
    "SubscriptionUpdated",
    "UnknownEvent",
    "decode_event",
]
