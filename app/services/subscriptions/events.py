"""
Typed billing events.

Stripe objects are parsed with pydantic models and normalised into a
`BillingEvent`, the only shape the state machine accepts. Webhooks and
user-initiated changes both end up here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError


class EventKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


STRIPE_EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.CREATED,
    "customer.subscription.updated": EventKind.UPDATED,
    "customer.subscription.paused": EventKind.UPDATED,
    "customer.subscription.resumed": EventKind.UPDATED,
    "customer.subscription.deleted": EventKind.CANCELLED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "invoice.paid": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.PAYMENT_FAILED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "charge.refunded": EventKind.REFUNDED,
}

SUBSCRIPTION_KINDS = frozenset({EventKind.CREATED, EventKind.UPDATED, EventKind.CANCELLED})
PAYMENT_KINDS = frozenset({EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED, EventKind.REFUNDED})

METADATA_MAX_KEYS = 50
METADATA_MAX_KEY_LENGTH = 40
METADATA_MAX_VALUE_LENGTH = 500


def bounded_metadata(raw: dict | None) -> dict[str, str]:
    """Coerce a free-form mapping into a small string -> string bag."""
    if not raw:
        return {}
    bag: dict[str, str] = {}
    for key, value in raw.items():
        if len(bag) >= METADATA_MAX_KEYS:
            break
        if value is None:
            continue
        bag[str(key)[:METADATA_MAX_KEY_LENGTH]] = str(value)[:METADATA_MAX_VALUE_LENGTH]
    return bag


def from_timestamp(ts: int | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _id_of(value: Any) -> str | None:
    # Stripe sends either the bare id or the expanded object.
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


# --- Stripe payload models -------------------------------------------------


class StripeRecurring(BaseModel):
    interval: str = "month"
    interval_count: int = 1


class StripePrice(BaseModel):
    id: str = ""
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[StripeRecurring] = None


class StripeSubscriptionItem(BaseModel):
    price: StripePrice = Field(default_factory=StripePrice)
    quantity: int = 1
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class StripeItemList(BaseModel):
    data: list[StripeSubscriptionItem] = Field(default_factory=list)


class StripeSubscriptionData(BaseModel):
    id: str
    customer: Any = None
    status: str
    currency: str = "usd"
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    ended_at: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    items: StripeItemList = Field(default_factory=StripeItemList)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StripeCheckoutSessionData(BaseModel):
    id: str
    customer: Any = None
    subscription: Any = None
    customer_email: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StripeStatusTransitions(BaseModel):
    paid_at: Optional[int] = None


class StripeInvoiceData(BaseModel):
    id: str
    customer: Any = None
    subscription: Any = None
    payment_intent: Any = None
    charge: Any = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "usd"
    hosted_invoice_url: Optional[str] = None
    description: Optional[str] = None
    attempt_count: Optional[int] = None
    created: Optional[int] = None
    status_transitions: Optional[StripeStatusTransitions] = None
    parent: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def subscription_id(self) -> str | None:
        sub = _id_of(self.subscription)
        if sub:
            return sub
        details = (self.parent or {}).get("subscription_details") or {}
        return _id_of(details.get("subscription"))


class StripePaymentError(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None


class StripePaymentIntentData(BaseModel):
    id: str
    customer: Any = None
    amount: int = 0
    amount_received: int = 0
    currency: str = "usd"
    status: Optional[str] = None
    description: Optional[str] = None
    latest_charge: Any = None
    last_payment_error: Optional[StripePaymentError] = None
    created: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StripeCard(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    country: Optional[str] = None


class StripePaymentMethodDetails(BaseModel):
    type: Optional[str] = None
    card: Optional[StripeCard] = None


class StripeChargeData(BaseModel):
    id: str
    customer: Any = None
    payment_intent: Any = None
    invoice: Any = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str = "usd"
    receipt_url: Optional[str] = None
    description: Optional[str] = None
    payment_method_details: Optional[StripePaymentMethodDetails] = None
    billing_details: dict[str, Any] = Field(default_factory=dict)
    refunds: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def refund_reason(self) -> str | None:
        data = (self.refunds or {}).get("data") or []
        if data and isinstance(data[0], dict):
            return data[0].get("reason")
        return None


# --- normalised event ------------------------------------------------------


@dataclass
class SubscriptionSnapshot:
    subscription_id: str
    customer_id: str | None
    status: str
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    price_id: str = ""
    amount: int = 0
    currency: str = "usd"
    interval: str = "month"
    interval_count: int = 1
    quantity: int = 1
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class PaymentSnapshot:
    payment_intent_id: str | None
    amount: int
    currency: str
    status: str
    customer_id: str | None = None
    subscription_id: str | None = None
    invoice_id: str | None = None
    charge_id: str | None = None
    refunded_amount: int = 0
    refund_reason: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    description: str | None = None
    receipt_url: str | None = None
    paid_at: datetime | None = None
    payment_method_type: str | None = None
    card: StripeCard | None = None
    billing_details: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutSnapshot:
    session_id: str
    customer_id: str | None
    subscription_id: str | None


@dataclass
class BillingEvent:
    kind: EventKind
    event_id: str | None
    event_type: str
    user_id: str | None = None
    plan_hint: str | None = None
    subscription: SubscriptionSnapshot | None = None
    payment: PaymentSnapshot | None = None
    checkout: CheckoutSnapshot | None = None
    initiated_by: str = "provider"

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription.subscription_id
        if self.payment:
            return self.payment.subscription_id
        if self.checkout:
            return self.checkout.subscription_id
        return None

    @property
    def customer_id(self) -> str | None:
        if self.subscription:
            return self.subscription.customer_id
        if self.payment:
            return self.payment.customer_id
        if self.checkout:
            return self.checkout.customer_id
        return None


def subscription_snapshot(obj: dict) -> SubscriptionSnapshot:
    sub = StripeSubscriptionData(**obj)
    item = sub.items.data[0] if sub.items.data else StripeSubscriptionItem()
    recurring = item.price.recurring or StripeRecurring()
    amount = item.price.unit_amount or 0
    if amount < 0:
        raise ValidationError("Subscription amount must not be negative")
    return SubscriptionSnapshot(
        subscription_id=sub.id,
        customer_id=_id_of(sub.customer),
        status=sub.status,
        # Newer API versions only carry the period on the subscription item.
        current_period_start=from_timestamp(sub.current_period_start or item.current_period_start),
        current_period_end=from_timestamp(sub.current_period_end or item.current_period_end),
        trial_start=from_timestamp(sub.trial_start),
        trial_end=from_timestamp(sub.trial_end),
        cancel_at_period_end=sub.cancel_at_period_end,
        canceled_at=from_timestamp(sub.canceled_at),
        ended_at=from_timestamp(sub.ended_at),
        price_id=item.price.id,
        amount=int(amount),
        currency=(item.price.currency or sub.currency or "usd").lower(),
        interval=recurring.interval,
        interval_count=max(int(recurring.interval_count), 1),
        quantity=max(int(item.quantity), 1),
        metadata=bounded_metadata(sub.metadata),
    )


def _paid_at(*timestamps: int | None) -> datetime:
    # Provider time when it gives one, arrival time otherwise.
    for ts in timestamps:
        if ts:
            return from_timestamp(ts)
    return datetime.now(tz=timezone.utc)


def _invoice_payment(obj: dict, status: str) -> PaymentSnapshot:
    invoice = StripeInvoiceData(**obj)
    transitions = invoice.status_transitions or StripeStatusTransitions()
    amount = invoice.amount_paid if status == "succeeded" else invoice.amount_due
    return PaymentSnapshot(
        payment_intent_id=_id_of(invoice.payment_intent),
        amount=int(amount),
        currency=invoice.currency.lower(),
        status=status,
        customer_id=_id_of(invoice.customer),
        subscription_id=invoice.subscription_id(),
        invoice_id=invoice.id,
        charge_id=_id_of(invoice.charge),
        failure_message=None if status == "succeeded" else f"Payment failed for invoice {invoice.id}",
        description=invoice.description or (f"Subscription {invoice.subscription_id()}" if invoice.subscription_id() else None),
        receipt_url=invoice.hosted_invoice_url,
        paid_at=_paid_at(transitions.paid_at, invoice.created) if status == "succeeded" else None,
        metadata=bounded_metadata({**invoice.metadata, "attempt_count": invoice.attempt_count}),
    )


def _intent_payment(obj: dict, status: str) -> PaymentSnapshot:
    intent = StripePaymentIntentData(**obj)
    error = intent.last_payment_error or StripePaymentError()
    return PaymentSnapshot(
        payment_intent_id=intent.id,
        amount=int(intent.amount),
        currency=intent.currency.lower(),
        status=status,
        customer_id=_id_of(intent.customer),
        charge_id=_id_of(intent.latest_charge),
        failure_code=error.code if status == "failed" else None,
        failure_message=error.message if status == "failed" else None,
        description=intent.description,
        paid_at=_paid_at(intent.created) if status == "succeeded" else None,
        metadata=bounded_metadata(intent.metadata),
    )


def _charge_refund(obj: dict) -> PaymentSnapshot:
    charge = StripeChargeData(**obj)
    details = charge.payment_method_details or StripePaymentMethodDetails()
    address = charge.billing_details.get("address") or {}
    billing = {k: v for k, v in charge.billing_details.items() if k != "address"}
    billing.update({f"address_{k}": v for k, v in address.items()})
    return PaymentSnapshot(
        payment_intent_id=_id_of(charge.payment_intent),
        amount=int(charge.amount),
        currency=charge.currency.lower(),
        status="refunded",
        customer_id=_id_of(charge.customer),
        invoice_id=_id_of(charge.invoice),
        charge_id=charge.id,
        refunded_amount=int(charge.amount_refunded),
        refund_reason=charge.refund_reason(),
        description=charge.description,
        receipt_url=charge.receipt_url,
        payment_method_type=details.type,
        card=details.card,
        billing_details=bounded_metadata(billing),
        metadata=bounded_metadata(charge.metadata),
    )


def parse_stripe_event(event: dict) -> BillingEvent | None:
    """Normalise a verified Stripe event; returns None for types we don't track."""
    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Event id is missing")
    kind = STRIPE_EVENT_KINDS.get(event_type)
    if kind is None:
        return None
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise ValidationError("Event payload is missing")

    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("Event metadata must be an object")
    result = BillingEvent(
        kind=kind,
        event_id=event_id,
        event_type=event_type,
        user_id=metadata.get("user_id"),
        plan_hint=metadata.get("plan_id"),
    )
    try:
        if kind in SUBSCRIPTION_KINDS:
            result.subscription = subscription_snapshot(obj)
        elif kind == EventKind.CHECKOUT_COMPLETED:
            session = StripeCheckoutSessionData(**obj)
            result.checkout = CheckoutSnapshot(
                session_id=session.id,
                customer_id=_id_of(session.customer),
                subscription_id=_id_of(session.subscription),
            )
        elif kind == EventKind.REFUNDED:
            result.payment = _charge_refund(obj)
        elif event_type.startswith("invoice."):
            status = "succeeded" if kind == EventKind.PAYMENT_SUCCEEDED else "failed"
            result.payment = _invoice_payment(obj, status)
        else:
            status = "succeeded" if kind == EventKind.PAYMENT_SUCCEEDED else "failed"
            result.payment = _intent_payment(obj, status)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed {event_type} payload") from e
    return result


def synthesized_event(kind: EventKind, provider_subscription: dict, *, plan: str | None, user_id: str) -> BillingEvent:
    """Wrap a provider subscription object returned by a user-initiated call."""
    try:
        snapshot = subscription_snapshot(provider_subscription)
    except PydanticValidationError as e:
        raise ValidationError("Malformed provider subscription") from e
    return BillingEvent(
        kind=kind,
        event_id=None,
        event_type=f"user.subscription.{kind.value}",
        user_id=user_id,
        plan_hint=plan,
        subscription=snapshot,
        initiated_by="user",
    )
