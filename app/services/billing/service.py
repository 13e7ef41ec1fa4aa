from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import String, case, func, literal_column, select, union_all
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import NotFound, StaleEvent, StorageFailure, ValidationError
from app.core.plans import PAID_PLAN_IDS, PlanTable
from app.db import models
from app.db.models import ENTITLED_STATUSES, as_utc, utcnow
from app.services.ledger import store
from app.services.payments.service import PaymentProvider, call_provider
from app.services.subscriptions.events import BillingEvent, EventKind, synthesized_event
from app.services.subscriptions.service import (
    SubscriptionStateMachine,
    effective_plan,
    is_subscription_active,
    write_log,
    write_stale_log,
)
from app.services.usage.service import QuotaResult, UsageMeter

logger = logging.getLogger(__name__)

# Stripe charges these in whole units; everything else has two decimals.
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}
)
REVENUE_STATUSES = ("succeeded", "partially_refunded", "refunded")
HISTORY_KINDS = ("all", "subscription", "payment")
METERED_OPERATIONS = frozenset({"transform"})
MAX_PAGE_SIZE = 100

_CENT = Decimal("0.01")


def to_major_units(amount: int | None, currency: str | None) -> Decimal:
    if not amount:
        return Decimal(0)
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(int(amount))
    return Decimal(int(amount)) / 100


def money(value: Decimal) -> float:
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _month(session: AsyncSession, column):
    if session.get_bind().dialect.name == "postgresql":
        return func.to_char(column, "YYYY-MM")
    return func.strftime("%Y-%m", column)


def _subscription_item(sub: models.SubscriptionRecord) -> dict[str, Any]:
    return {
        "type": "subscription",
        "id": sub.stripe_subscription_id,
        "plan": sub.plan,
        "status": sub.status,
        "amount": money(to_major_units(sub.amount, sub.currency)),
        "currency": sub.currency,
        "interval": sub.interval,
        "interval_count": sub.interval_count,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "current_period_end": _iso(sub.current_period_end),
        "created_at": _iso(sub.created_at),
    }


def _payment_item(payment: models.PaymentInfo) -> dict[str, Any]:
    return {
        "type": "payment",
        "id": payment.payment_intent_id or payment.charge_id or payment.invoice_id,
        "status": payment.status,
        "amount": money(to_major_units(payment.amount, payment.currency)),
        "refunded_amount": money(to_major_units(payment.refunded_amount, payment.currency)),
        "currency": payment.currency,
        "description": payment.description,
        "receipt_url": payment.receipt_url,
        "card_brand": payment.card_brand,
        "card_last4": payment.card_last4,
        "paid_at": _iso(payment.paid_at),
        "created_at": _iso(payment.created_at),
    }


def _log_item(log: models.SubscriptionLog) -> dict[str, Any]:
    return {
        "action": log.action,
        "status": log.status,
        "from_plan": log.from_plan,
        "to_plan": log.to_plan,
        "event_type": log.stripe_event_type,
        "amount": money(to_major_units(log.amount, log.currency)) if log.amount is not None else None,
        "currency": log.currency,
        "error_message": log.error_message,
        "metadata": dict(log.metadata_ or {}),
        "created_at": _iso(log.created_at),
    }


class BillingService:
    """Reads the ledger for display and runs user-initiated subscription changes.

    Changes go to the provider first; only what the provider returns is
    applied locally, through the same state machine the webhooks use.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        meter: UsageMeter,
        provider: PaymentProvider,
        plans: PlanTable,
        provider_timeout: float = 10.0,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.meter = meter
        self.provider = provider
        self.plans = plans
        self.provider_timeout = provider_timeout

    async def _user(self, session: AsyncSession, user_id: str) -> models.User:
        user = await store.get_user(session, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    async def _current_record(self, session: AsyncSession, user: models.User) -> models.SubscriptionRecord | None:
        if not user.stripe_subscription_id:
            return None
        return await store.get_subscription_record(session, user.stripe_subscription_id)

    # --- status & usage ----------------------------------------------------

    async def get_status(self, user_id: str) -> dict[str, Any]:
        async with self.session_factory() as session:
            user = await self._user(session, user_id)
            record = await self._current_record(session, user)
            now = utcnow()
            plan = effective_plan(user, record, now)
            usage = await self.meter.status(session, user_id, plan)
        subscription = None
        if record:
            subscription = {
                "id": record.stripe_subscription_id,
                "status": record.status,
                "cancel_at_period_end": record.cancel_at_period_end,
                "current_period_end": _iso(record.current_period_end),
            }
        return {
            "plan": plan,
            "is_active": is_subscription_active(record, now) if record else user.is_active,
            "current_period_end": _iso(user.current_period_end),
            "subscription": subscription,
            "usage": {
                "total": usage.total,
                "remaining": usage.remaining,
                "percentage": usage.percentage,
                "max_usage": usage.max_usage,
            },
        }

    def _check_operation(self, operation: str) -> None:
        if operation not in METERED_OPERATIONS:
            raise ValidationError(f"Unknown operation {operation}")

    async def consume(self, user_id: str, operation: str = "transform", count: int = 1) -> QuotaResult:
        self._check_operation(operation)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    user = await self._user(session, user_id)
                    plan = effective_plan(user, await self._current_record(session, user))
                    result = await self.meter.require(session, user_id, plan, count)
        except SQLAlchemyError as e:
            logger.exception("Failed to record usage for user %s", user_id)
            raise StorageFailure() from e
        logger.info("User %s used %s x%s on %s plan, %s remaining", user_id, operation, count, plan, result.remaining)
        return result

    async def preflight(self, user_id: str, operation: str = "transform", count: int = 1) -> QuotaResult:
        self._check_operation(operation)
        async with self.session_factory() as session:
            user = await self._user(session, user_id)
            plan = effective_plan(user, await self._current_record(session, user))
            return await self.meter.check(session, user_id, plan, count)

    # --- aggregates --------------------------------------------------------

    async def overview(self, user_id: str | None = None) -> dict[str, Any]:
        R, P = models.SubscriptionRecord, models.PaymentInfo
        async with self.session_factory() as session:
            subs = select(
                func.count(R.id),
                func.coalesce(func.sum(case((R.status.in_(ENTITLED_STATUSES), 1), else_=0)), 0),
            )
            pays = select(
                func.count(P.id),
                func.coalesce(func.sum(case((P.status.in_(REVENUE_STATUSES), 1), else_=0)), 0),
            )
            revenue_q = (
                select(P.currency, func.sum(P.amount - P.refunded_amount))
                .where(P.status.in_(REVENUE_STATUSES))
                .group_by(P.currency)
            )
            if user_id:
                subs = subs.where(R.user_id == user_id)
                pays = pays.where(P.user_id == user_id)
                revenue_q = revenue_q.where(P.user_id == user_id)
            total_subs, active_subs = (await session.execute(subs)).one()
            total_pays, succeeded = (await session.execute(pays)).one()
            revenue = sum(
                (to_major_units(amount, currency) for currency, amount in (await session.execute(revenue_q)).all()),
                Decimal(0),
            )
        average = revenue / succeeded if succeeded else Decimal(0)
        return {
            "total_subscriptions": int(total_subs),
            "active_subscriptions": int(active_subs),
            "total_payments": int(total_pays),
            "succeeded_payments": int(succeeded),
            "total_revenue": money(revenue),
            "average_revenue": money(average),
        }

    async def plan_distribution(self, user_id: str | None = None) -> dict[str, dict[str, Any]]:
        R, P = models.SubscriptionRecord, models.PaymentInfo
        stats: dict[str, dict[str, Any]] = {p: {"count": 0, "active": 0, "revenue": Decimal(0)} for p in PAID_PLAN_IDS}
        async with self.session_factory() as session:
            counts = select(
                R.plan,
                func.count(R.id),
                func.sum(case((R.status.in_(ENTITLED_STATUSES), 1), else_=0)),
            ).group_by(R.plan)
            # Revenue follows the subscription's plan, never the payment amount.
            revenue = (
                select(R.plan, P.currency, func.sum(P.amount - P.refunded_amount))
                .join(R, R.stripe_subscription_id == P.subscription_id)
                .where(P.status.in_(REVENUE_STATUSES))
                .group_by(R.plan, P.currency)
            )
            if user_id:
                counts = counts.where(R.user_id == user_id)
                revenue = revenue.where(P.user_id == user_id)
            for plan, count, active in (await session.execute(counts)).all():
                entry = stats.setdefault(plan, {"count": 0, "active": 0, "revenue": Decimal(0)})
                entry["count"] = int(count)
                entry["active"] = int(active or 0)
            for plan, currency, amount in (await session.execute(revenue)).all():
                entry = stats.setdefault(plan, {"count": 0, "active": 0, "revenue": Decimal(0)})
                entry["revenue"] += to_major_units(amount, currency)
        for entry in stats.values():
            entry["revenue"] = money(entry["revenue"])
        return stats

    async def monthly_revenue(self, user_id: str | None = None) -> list[dict[str, Any]]:
        R, P = models.SubscriptionRecord, models.PaymentInfo
        months: dict[str, dict[str, Any]] = {}

        def bucket(month: str) -> dict[str, Any]:
            return months.setdefault(month, {"month": month, "subscriptions": 0, "payments": 0, "revenue": Decimal(0)})

        async with self.session_factory() as session:
            sub_month = _month(session, R.created_at)
            pay_month = _month(session, P.created_at)
            subs = select(sub_month, func.count(R.id)).group_by(sub_month)
            pays = (
                select(pay_month, P.currency, func.count(P.id), func.sum(P.amount - P.refunded_amount))
                .where(P.status.in_(REVENUE_STATUSES))
                .group_by(pay_month, P.currency)
            )
            if user_id:
                subs = subs.where(R.user_id == user_id)
                pays = pays.where(P.user_id == user_id)
            for month, count in (await session.execute(subs)).all():
                bucket(month)["subscriptions"] += int(count)
            for month, currency, count, amount in (await session.execute(pays)).all():
                entry = bucket(month)
                entry["payments"] += int(count)
                entry["revenue"] += to_major_units(amount, currency)
        rows = [months[m] for m in sorted(months)]
        for row in rows:
            row["revenue"] = money(row["revenue"])
        return rows

    # --- ledger listings ---------------------------------------------------

    async def history(self, user_id: str, kind: str = "all", page: int = 1, limit: int = 20) -> dict[str, Any]:
        if kind not in HISTORY_KINDS:
            raise ValidationError(f"Unknown history kind {kind}")
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        limit = min(limit, MAX_PAGE_SIZE)
        R, P = models.SubscriptionRecord, models.PaymentInfo

        parts = []
        if kind in ("all", "subscription"):
            parts.append(
                select(
                    literal_column("'subscription'", String).label("kind"),
                    R.id.label("row_id"),
                    R.created_at.label("created_at"),
                ).where(R.user_id == user_id)
            )
        if kind in ("all", "payment"):
            parts.append(
                select(
                    literal_column("'payment'", String).label("kind"),
                    P.id.label("row_id"),
                    P.created_at.label("created_at"),
                ).where(P.user_id == user_id)
            )
        merged = (union_all(*parts) if len(parts) > 1 else parts[0]).subquery()

        async with self.session_factory() as session:
            total = (await session.execute(select(func.count()).select_from(merged))).scalar_one()
            page_q = (
                select(merged.c.kind, merged.c.row_id)
                .order_by(merged.c.created_at.desc(), merged.c.row_id)
                .limit(limit)
                .offset((page - 1) * limit)
            )
            keys = (await session.execute(page_q)).all()
            sub_ids = [row_id for k, row_id in keys if k == "subscription"]
            pay_ids = [row_id for k, row_id in keys if k == "payment"]
            subs = {}
            pays = {}
            if sub_ids:
                subs = {s.id: s for s in (await session.execute(select(R).where(R.id.in_(sub_ids)))).scalars()}
            if pay_ids:
                pays = {p.id: p for p in (await session.execute(select(P).where(P.id.in_(pay_ids)))).scalars()}

        items = [
            _subscription_item(subs[row_id]) if k == "subscription" else _payment_item(pays[row_id])
            for k, row_id in keys
        ]
        total_pages = (total + limit - 1) // limit
        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page * limit < total,
                "has_prev": page > 1,
            },
        }

    async def recent_logs(self, user_id: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        L = models.SubscriptionLog
        q = select(L).order_by(L.created_at.desc(), L.id).limit(max(1, min(limit, MAX_PAGE_SIZE)))
        if user_id:
            q = q.where(L.user_id == user_id)
        async with self.session_factory() as session:
            logs = (await session.execute(q)).scalars().all()
        return [_log_item(log) for log in logs]

    async def stats(self, user_id: str | None = None) -> dict[str, Any]:
        return {
            "overview": await self.overview(user_id),
            "plan_distribution": await self.plan_distribution(user_id),
            "monthly": await self.monthly_revenue(user_id),
            "recent_logs": await self.recent_logs(user_id),
        }

    # --- user-initiated changes --------------------------------------------

    async def _subscription_id(self, user_id: str) -> str:
        async with self.session_factory() as session:
            user = await self._user(session, user_id)
        if not user.stripe_subscription_id:
            raise ValidationError("No subscription on file")
        return user.stripe_subscription_id

    async def _apply_user_event(self, event: BillingEvent) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    try:
                        result = await self.state_machine.apply(session, event)
                    except StaleEvent:
                        # A newer webhook already landed; the provider call is still audited.
                        await write_stale_log(session, event)
                        logger.info(
                            "Provider state for %s is older than the ledger, logged without applying",
                            event.subscription_id,
                        )
                        return
                    await write_log(session, event, result)
        except SQLAlchemyError as e:
            logger.exception("Failed to apply %s for subscription %s", event.event_type, event.subscription_id)
            raise StorageFailure() from e

    async def change_plan(self, user_id: str, plan: str) -> dict[str, Any]:
        if plan not in PAID_PLAN_IDS:
            raise ValidationError(f"Cannot switch to plan {plan}")
        price_id = self.plans.get(plan).price_id
        if not price_id:
            raise ValidationError(f"Plan {plan} is not available for purchase")
        subscription_id = await self._subscription_id(user_id)

        # Nothing is written locally unless the provider accepted the change.
        provider_sub = await call_provider(
            self.provider.change_price, subscription_id, price_id, timeout=self.provider_timeout
        )
        event = synthesized_event(EventKind.UPDATED, provider_sub, plan=plan, user_id=user_id)
        await self._apply_user_event(event)
        logger.info("User %s switched subscription %s to %s", user_id, subscription_id, plan)
        return await self.get_status(user_id)

    async def cancel(self, user_id: str, at_period_end: bool = True) -> dict[str, Any]:
        subscription_id = await self._subscription_id(user_id)
        provider_sub = await call_provider(
            self.provider.cancel_subscription, subscription_id, at_period_end, timeout=self.provider_timeout
        )
        kind = EventKind.UPDATED if at_period_end else EventKind.CANCELLED
        event = synthesized_event(kind, provider_sub, plan=None, user_id=user_id)
        await self._apply_user_event(event)
        logger.info("User %s cancelled subscription %s (at_period_end=%s)", user_id, subscription_id, at_period_end)
        return await self.get_status(user_id)

    async def sync_from_provider(self, user_id: str) -> dict[str, Any]:
        subscription_id = await self._subscription_id(user_id)
        provider_sub = await call_provider(
            self.provider.retrieve_subscription, subscription_id, timeout=self.provider_timeout
        )
        event = synthesized_event(EventKind.UPDATED, provider_sub, plan=None, user_id=user_id)
        event.event_type = "user.subscription.synced"
        await self._apply_user_event(event)
        logger.info("Synced subscription %s for user %s from %s", subscription_id, user_id, self.provider.name)
        return await self.get_status(user_id)
