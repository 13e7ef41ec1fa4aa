from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import StaleEvent, ValidationError
from app.core.plans import PlanTable
from app.db import models
from app.db.models import ENTITLED_STATUSES, SUBSCRIPTION_STATUSES, as_utc, utcnow
from app.services.ledger import store
from app.services.subscriptions.events import PAYMENT_KINDS, SUBSCRIPTION_KINDS, BillingEvent, EventKind

logger = logging.getLogger(__name__)


def is_entitled(
    status: str | None,
    *,
    cancel_at_period_end: bool = False,
    current_period_end: datetime | None = None,
    now: datetime | None = None,
) -> bool:
    if status not in ENTITLED_STATUSES:
        return False
    if not cancel_at_period_end or current_period_end is None:
        return True
    now = now or utcnow()
    return as_utc(current_period_end) > now


def is_subscription_active(sub: models.SubscriptionRecord | None, now: datetime | None = None) -> bool:
    if not sub:
        return False
    return is_entitled(
        sub.status,
        cancel_at_period_end=sub.cancel_at_period_end,
        current_period_end=sub.current_period_end,
        now=now,
    )


def effective_plan(
    user: models.User,
    record: models.SubscriptionRecord | None = None,
    now: datetime | None = None,
) -> str:
    """Plan the usage meter should enforce: paid plans only count while entitled.

    With the user's current record at hand, a cancel-at-period-end subscription
    stops counting as soon as the period is over, even before the provider's
    final event arrives.
    """
    active = is_subscription_active(record, now) if record else user.is_active
    if active and user.plan:
        return user.plan
    return "free"


def transition_action(
    previous_status: str | None,
    new_status: str,
    kind: EventKind,
    *,
    cancel_requested: bool = False,
) -> str:
    if kind == EventKind.CANCELLED or cancel_requested:
        return "cancelled"
    if previous_status is None:
        return "trial_started" if new_status == "trialing" else "created"
    if previous_status == "trialing" and new_status != "trialing":
        return "trial_ended"
    if new_status == "incomplete_expired":
        return "expired"
    if new_status == "canceled":
        return "cancelled"
    if previous_status not in ENTITLED_STATUSES and new_status in ENTITLED_STATUSES:
        return "reactivated"
    return "updated"


@dataclass
class DerivedUserFields:
    plan: str
    is_active: bool
    current_period_end: datetime | None


@dataclass
class ApplyResult:
    action: str
    user_id: str | None
    status: str = "success"
    from_plan: str | None = None
    to_plan: str | None = None
    record: models.SubscriptionRecord | None = None
    payment: models.PaymentInfo | None = None
    user_fields: DerivedUserFields | None = None
    amount: int | None = None
    currency: str | None = None
    error_message: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class SubscriptionStateMachine:
    """Applies a normalised billing event to the ledger.

    The caller owns the transaction; nothing here commits. Writes go through
    `app.services.ledger.store`, which keeps every upsert a single statement.
    """

    def __init__(self, plans: PlanTable):
        self.plans = plans

    async def apply(self, session: AsyncSession, event: BillingEvent, now: datetime | None = None) -> ApplyResult:
        now = now or utcnow()
        if event.kind in SUBSCRIPTION_KINDS:
            return await self._apply_subscription(session, event, now)
        if event.kind in PAYMENT_KINDS:
            return await self._apply_payment(session, event, now)
        if event.kind == EventKind.CHECKOUT_COMPLETED:
            return await self._apply_checkout(session, event, now)
        raise ValidationError(f"Unsupported event kind {event.kind}")

    def resolve_plan(self, price_id: str | None, plan_hint: str | None) -> str:
        plan = self.plans.plan_for_price(price_id)
        if plan:
            return plan
        if plan_hint and self.plans.has(plan_hint) and plan_hint != "free":
            return plan_hint
        raise ValidationError("Unknown plan for subscription price")

    async def _resolve_owner(
        self,
        session: AsyncSession,
        event: BillingEvent,
        existing: models.SubscriptionRecord | None = None,
    ) -> models.User:
        # A record never changes owner once created.
        if existing:
            user = await store.get_user(session, existing.user_id)
            if user:
                return user
        if event.user_id:
            user = await store.get_user(session, event.user_id)
            if user:
                return user
        if event.customer_id:
            user = await store.get_user_by_customer(session, event.customer_id)
            if user:
                return user
        raise ValidationError("Cannot resolve the subscription owner")

    async def _apply_subscription(self, session: AsyncSession, event: BillingEvent, now: datetime) -> ApplyResult:
        snapshot = event.subscription
        if snapshot is None:
            raise ValidationError("Subscription payload is missing")
        if event.kind == EventKind.CANCELLED and not snapshot.cancel_at_period_end:
            # Provider deletion or user-requested immediate cancellation.
            snapshot.status = "canceled"
            snapshot.canceled_at = snapshot.canceled_at or now
            snapshot.ended_at = snapshot.ended_at or now
        if snapshot.status not in SUBSCRIPTION_STATUSES:
            raise ValidationError(f"Unknown subscription status {snapshot.status}")

        existing = await store.get_subscription_record(session, snapshot.subscription_id)
        user = await self._resolve_owner(session, event, existing)
        plan = self.resolve_plan(snapshot.price_id, event.plan_hint or (existing.plan if existing else None))
        previous_status = existing.status if existing else None
        previous_cancel = bool(existing and existing.cancel_at_period_end)
        from_plan = existing.plan if existing else user.plan

        record = await store.upsert_subscription_record(
            session,
            user_id=user.id,
            plan=plan,
            snapshot=snapshot,
            now=now,
        )
        if record is None:
            logger.info(
                "Stale %s for subscription %s ignored (period end %s)",
                event.event_type,
                snapshot.subscription_id,
                snapshot.current_period_end,
            )
            raise StaleEvent()

        entitled = is_subscription_active(record, now=now)
        fields = DerivedUserFields(plan=plan, is_active=entitled, current_period_end=record.current_period_end)
        owns_pointer = user.stripe_subscription_id in (None, snapshot.subscription_id)
        if owns_pointer or entitled:
            await store.update_user_subscription_fields(
                session,
                user.id,
                plan=fields.plan,
                is_active=fields.is_active,
                current_period_end=fields.current_period_end,
                customer_id=snapshot.customer_id,
                subscription_id=snapshot.subscription_id,
                now=now,
            )
        else:
            fields = None

        # The upsert refreshes `existing` in place, so compare against the captured flag.
        cancel_requested = previous_status is not None and not previous_cancel and record.cancel_at_period_end
        action = transition_action(previous_status, record.status, event.kind, cancel_requested=cancel_requested)
        logger.info(
            "Subscription %s for user %s: %s -> %s (%s)",
            snapshot.subscription_id,
            user.id,
            previous_status,
            record.status,
            action,
        )
        metadata = {"status": record.status, "initiated_by": event.initiated_by}
        if previous_status:
            metadata["previous_status"] = previous_status
        if snapshot.cancel_at_period_end:
            metadata["cancel_at_period_end"] = "true"
        return ApplyResult(
            action=action,
            user_id=user.id,
            from_plan=from_plan,
            to_plan=plan,
            record=record,
            user_fields=fields,
            amount=record.amount,
            currency=record.currency,
            metadata=metadata,
        )

    async def _apply_payment(self, session: AsyncSession, event: BillingEvent, now: datetime) -> ApplyResult:
        snapshot = event.payment
        if snapshot is None:
            raise ValidationError("Payment payload is missing")
        if snapshot.amount < 0 or snapshot.refunded_amount < 0:
            raise ValidationError("Payment amounts must not be negative")
        existing = None
        if snapshot.subscription_id:
            existing = await store.get_subscription_record(session, snapshot.subscription_id)
        user = await self._resolve_owner(session, event, existing)
        payment = await store.upsert_payment(session, user_id=user.id, snapshot=snapshot, now=now)

        if event.kind == EventKind.PAYMENT_FAILED:
            action, status = "payment_failed", "failed"
        else:
            # Refunds are recorded against the original payment in the audit trail.
            action, status = "payment_succeeded", "success"
        metadata = {"payment_status": payment.status, "initiated_by": event.initiated_by}
        if snapshot.invoice_id:
            metadata["invoice_id"] = snapshot.invoice_id
        if event.kind == EventKind.REFUNDED:
            metadata["refunded_amount"] = str(payment.refunded_amount)
        logger.info("Payment %s for user %s now %s", payment.payment_intent_id or payment.id, user.id, payment.status)
        return ApplyResult(
            action=action,
            user_id=user.id,
            status=status,
            payment=payment,
            amount=snapshot.amount,
            currency=snapshot.currency,
            error_message=snapshot.failure_message if status == "failed" else None,
            metadata=metadata,
        )

    async def _apply_checkout(self, session: AsyncSession, event: BillingEvent, now: datetime) -> ApplyResult:
        checkout = event.checkout
        if checkout is None:
            raise ValidationError("Checkout payload is missing")
        user = await self._resolve_owner(session, event)
        await store.link_provider_ids(
            session,
            user.id,
            customer_id=checkout.customer_id,
            subscription_id=checkout.subscription_id,
            now=now,
        )
        to_plan = event.plan_hint if self.plans.has(event.plan_hint) else None
        return ApplyResult(
            action="created",
            user_id=user.id,
            status="pending",
            from_plan=user.plan,
            to_plan=to_plan,
            metadata={"session_id": checkout.session_id},
        )


async def write_log(
    session: AsyncSession,
    event: BillingEvent,
    result: ApplyResult,
    now: datetime | None = None,
) -> models.SubscriptionLog:
    return await store.append_log(
        session,
        user_id=result.user_id,
        action=result.action,
        status=result.status,
        subscription_id=event.subscription_id,
        from_plan=result.from_plan,
        to_plan=result.to_plan,
        stripe_event_id=event.event_id,
        stripe_event_type=event.event_type,
        amount=result.amount,
        currency=result.currency,
        error_message=result.error_message,
        metadata=result.metadata,
        now=now or utcnow(),
    )


# Audit action recorded for events that fail before a transition is computed.
FAILED_ACTIONS: dict[EventKind, str] = {
    EventKind.CREATED: "created",
    EventKind.UPDATED: "updated",
    EventKind.CANCELLED: "cancelled",
    EventKind.CHECKOUT_COMPLETED: "created",
    EventKind.PAYMENT_SUCCEEDED: "payment_succeeded",
    EventKind.PAYMENT_FAILED: "payment_failed",
    EventKind.REFUNDED: "payment_succeeded",
}


async def write_stale_log(
    session: AsyncSession,
    event: BillingEvent,
    now: datetime | None = None,
) -> models.SubscriptionLog:
    """Record an event the stale guard refused; the record itself is untouched."""
    record = await store.get_subscription_record(session, event.subscription_id) if event.subscription_id else None
    return await store.append_log(
        session,
        user_id=record.user_id if record else None,
        action=FAILED_ACTIONS[event.kind],
        status="failed",
        subscription_id=event.subscription_id,
        stripe_event_id=event.event_id,
        stripe_event_type=event.event_type,
        error_message="stale event",
        metadata={"initiated_by": event.initiated_by},
        now=now or utcnow(),
    )
