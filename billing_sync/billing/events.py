"""
Single deserialization boundary for provider webhook events.

Everything downstream works on the frozen dataclasses below; no handler reads
raw provider JSON, and no handler cares whether the object came from a dict,
a Stripe SDK object, or a stored payload snapshot.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from billing_sync.errors import MalformedEvent
from billing_sync.models.types import from_epoch


def as_dict(obj: Any) -> Dict[str, Any]:
    """Stripe objects may need converting to plain dicts."""
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if isinstance(obj, dict):
        return dict(obj)
    raise MalformedEvent(f"Unsupported provider object type: {type(obj).__name__}")


def _ref_id(value) -> Optional[str]:
    # Expandable references arrive either as "cus_123" or {"id": "cus_123", ...}
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _user_hint(metadata: Dict[str, Any]) -> Optional[str]:
    hint = (metadata or {}).get("user_id")
    if hint is None:
        return None
    hint = str(hint).strip()
    return hint or None


@dataclass(frozen=True)
class ProviderEvent:
    id: str
    type: str
    created: Optional[datetime]
    object: Dict[str, Any]
    raw: Dict[str, Any] = field(repr=False, default_factory=dict)


@dataclass(frozen=True)
class SubscriptionPayload:
    id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    product_id: Optional[str]
    user_hint: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    unit_amount: Optional[int] = None
    cancel_at_period_end: bool = False
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoicePayload:
    id: Optional[str]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_hint: Optional[str]
    billing_reason: Optional[str]
    amount_paid: Optional[int] = None
    payment_intent_status: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSessionPayload:
    id: Optional[str]
    subscription_id: Optional[str]
    customer_id: Optional[str]
    user_hint: Optional[str]


@dataclass(frozen=True)
class CustomerPayload:
    id: str
    email: Optional[str]
    user_hint: Optional[str]


@dataclass(frozen=True)
class ChargePayload:
    id: Optional[str]
    customer_id: Optional[str]
    amount: Optional[int]
    amount_refunded: Optional[int]
    currency: Optional[str]
    failure_code: Optional[str]
    failure_message: Optional[str]


def parse_event(raw: Any) -> ProviderEvent:
    event = as_dict(raw)
    ev_id = event.get("id")
    ev_type = event.get("type")
    if not ev_id or not ev_type:
        raise MalformedEvent("Event is missing id or type")
    obj = as_dict((as_dict(event.get("data")) or {}).get("object"))
    if not obj:
        raise MalformedEvent(f"Event {ev_id} has no data.object")
    return ProviderEvent(
        id=str(ev_id),
        type=str(ev_type),
        created=from_epoch(event.get("created")),
        object=obj,
        raw=event,
    )


def _subscription_items(obj: Dict[str, Any]) -> list:
    items = obj.get("items") or []
    if isinstance(items, dict):
        items = items.get("data") or []
    return [as_dict(i) for i in items]


def parse_subscription(obj: Dict[str, Any]) -> SubscriptionPayload:
    obj = as_dict(obj)
    sub_id = obj.get("id")
    if not sub_id:
        raise MalformedEvent("Subscription object has no id")

    items = _subscription_items(obj)
    first = items[0] if items else {}
    price = as_dict(first.get("price"))
    metadata = as_dict(obj.get("metadata"))

    # Newer API versions moved the period bounds from the subscription onto its items
    period_start = obj.get("current_period_start") or first.get("current_period_start")
    period_end = obj.get("current_period_end") or first.get("current_period_end")

    return SubscriptionPayload(
        id=sub_id,
        customer_id=_ref_id(obj.get("customer")),
        status=obj.get("status") or "incomplete",
        price_id=price.get("id"),
        product_id=_ref_id(price.get("product")),
        unit_amount=price.get("unit_amount"),
        user_hint=_user_hint(metadata),
        current_period_start=from_epoch(period_start),
        current_period_end=from_epoch(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        trial_start=from_epoch(obj.get("trial_start")),
        trial_end=from_epoch(obj.get("trial_end")),
        metadata=metadata,
    )


def parse_invoice(obj: Dict[str, Any]) -> InvoicePayload:
    obj = as_dict(obj)
    sub_ref = obj.get("subscription")
    details = as_dict(obj.get("subscription_details"))
    if not sub_ref:
        # 2025+ API versions: invoice.parent.subscription_details.subscription
        parent_details = as_dict(as_dict(obj.get("parent")).get("subscription_details"))
        sub_ref = parent_details.get("subscription")
        details = details or parent_details
    hint = _user_hint(as_dict(details.get("metadata"))) or _user_hint(as_dict(obj.get("metadata")))
    intent = obj.get("payment_intent")
    return InvoicePayload(
        id=obj.get("id"),
        subscription_id=_ref_id(sub_ref),
        customer_id=_ref_id(obj.get("customer")),
        user_hint=hint,
        billing_reason=obj.get("billing_reason"),
        amount_paid=obj.get("amount_paid"),
        payment_intent_status=intent.get("status") if isinstance(intent, dict) else None,
    )


def parse_checkout_session(obj: Dict[str, Any]) -> CheckoutSessionPayload:
    obj = as_dict(obj)
    hint = _user_hint(as_dict(obj.get("metadata")))
    if not hint and obj.get("client_reference_id"):
        hint = str(obj["client_reference_id"])
    return CheckoutSessionPayload(
        id=obj.get("id"),
        subscription_id=_ref_id(obj.get("subscription")),
        customer_id=_ref_id(obj.get("customer")),
        user_hint=hint,
    )


def parse_customer(obj: Dict[str, Any]) -> CustomerPayload:
    obj = as_dict(obj)
    if not obj.get("id"):
        raise MalformedEvent("Customer object has no id")
    email = (obj.get("email") or "").strip().lower() or None
    return CustomerPayload(id=obj["id"], email=email, user_hint=_user_hint(as_dict(obj.get("metadata"))))


def parse_charge(obj: Dict[str, Any]) -> ChargePayload:
    obj = as_dict(obj)
    return ChargePayload(
        id=obj.get("id"),
        customer_id=_ref_id(obj.get("customer")),
        amount=obj.get("amount"),
        amount_refunded=obj.get("amount_refunded"),
        currency=obj.get("currency"),
        failure_code=obj.get("failure_code"),
        failure_message=obj.get("failure_message"),
    )
