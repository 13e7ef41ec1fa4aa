from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.db import models
from app.services.subscriptions.events import PaymentSnapshot, SubscriptionSnapshot

# Payment statuses only ever move forward; a late "failed" never undoes a success.
PAYMENT_STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "failed": 1,
    "cancelled": 1,
    "succeeded": 2,
    "partially_refunded": 3,
    "refunded": 4,
}


def _insert(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Atomic upsert is not supported on {dialect}")


def _cols(model, values: dict[str, Any]) -> dict:
    return {getattr(model, name): value for name, value in values.items()}


# --- reads -----------------------------------------------------------------


async def get_user(session: AsyncSession, user_id: str) -> models.User | None:
    return await session.get(models.User, user_id, populate_existing=True)


async def get_user_by_customer(session: AsyncSession, customer_id: str) -> models.User | None:
    q = select(models.User).where(models.User.stripe_customer_id == customer_id)
    res = await session.execute(q)
    return res.scalars().first()


async def get_subscription_record(session: AsyncSession, subscription_id: str) -> models.SubscriptionRecord | None:
    q = select(models.SubscriptionRecord).where(models.SubscriptionRecord.stripe_subscription_id == subscription_id)
    res = await session.execute(q.execution_options(populate_existing=True))
    return res.scalars().first()


async def get_log_by_event_id(session: AsyncSession, event_id: str) -> models.SubscriptionLog | None:
    q = select(models.SubscriptionLog).where(models.SubscriptionLog.stripe_event_id == event_id)
    res = await session.execute(q)
    return res.scalars().first()


# --- subscription records --------------------------------------------------


async def upsert_subscription_record(
    session: AsyncSession,
    *,
    user_id: str,
    plan: str,
    snapshot: SubscriptionSnapshot,
    now: datetime,
) -> models.SubscriptionRecord | None:
    """Insert or update the record for `snapshot.subscription_id` in one statement.

    Returns None when the stored period end is newer than the incoming one;
    in that case nothing is written.
    """
    R = models.SubscriptionRecord
    mutable = {
        "stripe_customer_id": snapshot.customer_id,
        "plan": plan,
        "status": snapshot.status,
        "current_period_start": snapshot.current_period_start,
        "trial_start": snapshot.trial_start,
        "trial_end": snapshot.trial_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "canceled_at": snapshot.canceled_at,
        "ended_at": snapshot.ended_at,
        "price_id": snapshot.price_id,
        "amount": snapshot.amount,
        "currency": snapshot.currency,
        "interval": snapshot.interval,
        "interval_count": snapshot.interval_count,
        "quantity": snapshot.quantity,
        "metadata_": snapshot.metadata,
        "last_synced_at": now,
        "updated_at": now,
    }
    stmt = _insert(session, R).values(
        _cols(
            R,
            {
                **mutable,
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "stripe_subscription_id": snapshot.subscription_id,
                "current_period_end": snapshot.current_period_end,
                "created_at": now,
            },
        )
    )
    on_update = _cols(R, mutable)
    if snapshot.current_period_end is not None:
        on_update[R.current_period_end] = snapshot.current_period_end
        not_stale = or_(R.current_period_end.is_(None), R.current_period_end <= snapshot.current_period_end)
    else:
        not_stale = None
    stmt = stmt.on_conflict_do_update(
        index_elements=[R.stripe_subscription_id],
        set_=on_update,
        where=not_stale,
    ).returning(R)
    res = await session.execute(stmt, execution_options={"populate_existing": True})
    return res.scalars().first()


async def update_user_subscription_fields(
    session: AsyncSession,
    user_id: str,
    *,
    plan: str,
    is_active: bool,
    current_period_end: datetime | None,
    customer_id: str | None,
    subscription_id: str | None,
    now: datetime,
) -> None:
    values: dict[str, Any] = {
        "plan": plan,
        "is_active": is_active,
        "current_period_end": current_period_end,
        "updated_at": now,
    }
    if customer_id:
        values["stripe_customer_id"] = customer_id
    if subscription_id:
        values["stripe_subscription_id"] = subscription_id
    await session.execute(update(models.User).where(models.User.id == user_id).values(**values))


async def link_provider_ids(
    session: AsyncSession,
    user_id: str,
    *,
    customer_id: str | None,
    subscription_id: str | None,
    now: datetime,
) -> None:
    values: dict[str, Any] = {"updated_at": now}
    if customer_id:
        values["stripe_customer_id"] = customer_id
    if subscription_id:
        values["stripe_subscription_id"] = subscription_id
    await session.execute(update(models.User).where(models.User.id == user_id).values(**values))


# --- payments --------------------------------------------------------------


def _forward_status(new_status: str):
    P = models.PaymentInfo
    stored_rank = case(PAYMENT_STATUS_RANK, value=P.status, else_=0)
    return case((stored_rank <= PAYMENT_STATUS_RANK[new_status], new_status), else_=P.status)


def _refund_expressions(refunded_amount: int):
    P = models.PaymentInfo
    refunded = case(
        (P.refunded_amount >= refunded_amount, P.refunded_amount),
        (P.amount < refunded_amount, P.amount),
        else_=refunded_amount,
    )
    status = case((refunded >= P.amount, "refunded"), else_="partially_refunded")
    return refunded, status


def _payment_row(user_id: str, snapshot: PaymentSnapshot, now: datetime) -> dict[str, Any]:
    card = snapshot.card
    refunded = min(max(snapshot.refunded_amount, 0), snapshot.amount)
    status = snapshot.status
    if status == "refunded":
        status = "refunded" if refunded >= snapshot.amount else "partially_refunded"
    return {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "payment_key": payment_key(snapshot),
        "subscription_id": snapshot.subscription_id,
        "payment_intent_id": snapshot.payment_intent_id,
        "invoice_id": snapshot.invoice_id,
        "charge_id": snapshot.charge_id,
        "amount": snapshot.amount,
        "currency": snapshot.currency,
        "status": status,
        "payment_method_type": snapshot.payment_method_type or ("card" if card else None),
        "card_brand": card.brand if card else None,
        "card_last4": card.last4 if card else None,
        "card_exp_month": card.exp_month if card else None,
        "card_exp_year": card.exp_year if card else None,
        "card_country": card.country if card else None,
        "billing_details": snapshot.billing_details,
        "description": snapshot.description,
        "receipt_url": snapshot.receipt_url,
        "refunded_amount": refunded,
        "refund_reason": snapshot.refund_reason,
        "failure_code": snapshot.failure_code,
        "failure_message": snapshot.failure_message,
        "metadata_": snapshot.metadata,
        "paid_at": snapshot.paid_at,
        "refunded_at": now if refunded else None,
        "created_at": now,
        "updated_at": now,
    }


def _payment_changes(snapshot: PaymentSnapshot, now: datetime) -> dict[str, Any]:
    P = models.PaymentInfo
    changes: dict[str, Any] = {"updated_at": now}
    if snapshot.status == "refunded":
        refunded, status = _refund_expressions(snapshot.refunded_amount)
        changes.update(refunded_amount=refunded, status=status, refunded_at=now)
        if snapshot.refund_reason:
            changes["refund_reason"] = snapshot.refund_reason
    else:
        changes["status"] = _forward_status(snapshot.status)
        if snapshot.status == "failed":
            changes.update(failure_code=snapshot.failure_code, failure_message=snapshot.failure_message)
        if snapshot.paid_at:
            changes["paid_at"] = func.coalesce(P.paid_at, snapshot.paid_at)
    if snapshot.invoice_id:
        changes["invoice_id"] = func.coalesce(P.invoice_id, snapshot.invoice_id)
    if snapshot.charge_id:
        changes["charge_id"] = func.coalesce(P.charge_id, snapshot.charge_id)
    if snapshot.receipt_url:
        changes["receipt_url"] = snapshot.receipt_url
    return changes


def payment_key(snapshot: PaymentSnapshot) -> str:
    """Natural key for a payment: the intent, else the invoice, else the charge."""
    if snapshot.payment_intent_id:
        return f"pi:{snapshot.payment_intent_id}"
    if snapshot.invoice_id:
        return f"in:{snapshot.invoice_id}"
    if snapshot.charge_id:
        return f"ch:{snapshot.charge_id}"
    raise ValidationError("Payment has no intent, invoice or charge id")


async def upsert_payment(
    session: AsyncSession,
    *,
    user_id: str,
    snapshot: PaymentSnapshot,
    now: datetime,
) -> models.PaymentInfo:
    """Create the payment row once; later events only move status/refund fields."""
    P = models.PaymentInfo
    row = _payment_row(user_id, snapshot, now)
    stmt = (
        _insert(session, P)
        .values(_cols(P, row))
        .on_conflict_do_update(index_elements=[P.payment_key], set_=_cols(P, _payment_changes(snapshot, now)))
        .returning(P)
    )
    res = await session.execute(stmt, execution_options={"populate_existing": True})
    return res.scalars().one()


# --- audit log -------------------------------------------------------------


async def append_log(
    session: AsyncSession,
    *,
    user_id: str | None,
    action: str,
    status: str = "success",
    subscription_id: str | None = None,
    from_plan: str | None = None,
    to_plan: str | None = None,
    stripe_event_id: str | None = None,
    stripe_event_type: str | None = None,
    amount: int | None = None,
    currency: str | None = None,
    error_message: str | None = None,
    metadata: dict[str, str] | None = None,
    now: datetime,
) -> models.SubscriptionLog:
    log = models.SubscriptionLog(
        user_id=user_id,
        subscription_id=subscription_id,
        action=action,
        from_plan=from_plan,
        to_plan=to_plan,
        stripe_event_id=stripe_event_id,
        stripe_event_type=stripe_event_type,
        amount=amount,
        currency=currency,
        status=status,
        error_message=error_message,
        metadata_=metadata or {},
        created_at=now,
        updated_at=now,
    )
    session.add(log)
    # Flush now so a duplicate event id surfaces inside the caller's unit of work.
    await session.flush()
    return log
