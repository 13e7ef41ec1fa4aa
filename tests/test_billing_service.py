"""
Tests for BillingService: ledger aggregates, history paging and the
user-initiated changes that round-trip through the payment provider.
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import stripe

from app.core.errors import ProviderUnavailable, ValidationError
from app.db import models
from app.services.billing.service import BillingService, money, to_major_units
from app.services.payments.service import MockProvider
from app.services.subscriptions.service import effective_plan
from factories import (
    PRICE_AMOUNTS,
    PRICE_ENTERPRISE,
    PRICE_PRO,
    charge_object,
    count_rows,
    fetch_one,
    invoice_object,
    period,
    signed,
    stripe_event,
    subscription_object,
)

R = models.SubscriptionRecord
L = models.SubscriptionLog


async def deliver(ingester, event):
    return await ingester.ingest(*signed(event))


async def subscribe(ingester, provider, user, price_id=PRICE_PRO):
    """Create a subscription at the provider and deliver its created webhook."""
    sub = provider.new_subscription(user.stripe_customer_id, price_id, user_id=user.id)
    await deliver(ingester, stripe_event(f"evt_{sub['id']}", "customer.subscription.created", sub))
    return sub


class SlowProvider(MockProvider):
    def change_price(self, subscription_id, price_id):
        time.sleep(0.5)
        return super().change_price(subscription_id, price_id)


class FailingProvider(MockProvider):
    def __init__(self, error):
        super().__init__(price_amounts=PRICE_AMOUNTS)
        self.error = error

    def change_price(self, subscription_id, price_id):
        raise self.error


def service_with(provider, session_factory, state_machine, meter, plans, timeout=2.0):
    return BillingService(session_factory, state_machine, meter, provider, plans, provider_timeout=timeout)


class TestMoney:
    def test_minor_units(self):
        assert to_major_units(1999, "usd") == Decimal("19.99")
        assert to_major_units(1999, "EUR") == Decimal("19.99")

    def test_zero_decimal_currency(self):
        assert to_major_units(500, "jpy") == Decimal(500)

    def test_empty_amount(self):
        assert to_major_units(None, "usd") == Decimal(0)

    def test_rounding(self):
        assert money(Decimal("0.125")) == 0.13
        assert money(Decimal("49.99")) == 49.99


@pytest.mark.asyncio
class TestAggregates:
    async def test_revenue_follows_the_subscription_plan(self, billing, ingester, user):
        """Scenario C: one enterprise subscription paid once."""
        await deliver(
            ingester,
            stripe_event("evt_sub", "customer.subscription.created", subscription_object(price_id=PRICE_ENTERPRISE)),
        )
        await deliver(ingester, stripe_event("evt_pay", "invoice.paid", invoice_object(amount=4999)))

        stats = await billing.stats()

        overview = stats["overview"]
        assert overview["total_revenue"] == 49.99
        assert overview["average_revenue"] == 49.99
        assert overview["total_subscriptions"] == 1
        assert overview["active_subscriptions"] == 1
        assert overview["succeeded_payments"] == 1
        distribution = stats["plan_distribution"]
        assert distribution["enterprise"] == {"count": 1, "active": 1, "revenue": 49.99}
        assert distribution["pro"]["revenue"] == 0
        assert distribution["basic"]["count"] == 0

    async def test_revenue_is_net_of_refunds(self, billing, ingester, user):
        await deliver(ingester, stripe_event("evt_sub", "customer.subscription.created", subscription_object()))
        await deliver(ingester, stripe_event("evt_pay", "invoice.paid", invoice_object()))
        await deliver(ingester, stripe_event("evt_ref", "charge.refunded", charge_object(amount_refunded=500)))

        overview = await billing.overview()

        assert overview["total_revenue"] == 14.99
        assert overview["succeeded_payments"] == 1

    async def test_intentless_invoice_counted_once(self, billing, ingester, user):
        """Both invoice success events for one invoice describe a single payment."""
        await deliver(
            ingester,
            stripe_event("evt_sub", "customer.subscription.created", subscription_object(price_id=PRICE_ENTERPRISE)),
        )
        invoice = invoice_object("in_1", payment_intent=None, amount=4999)
        await deliver(ingester, stripe_event("evt_paid", "invoice.paid", invoice))
        await deliver(ingester, stripe_event("evt_succeeded", "invoice.payment_succeeded", invoice))

        overview = await billing.overview()

        assert overview["total_payments"] == 1
        assert overview["total_revenue"] == 49.99

    async def test_failed_payments_earn_nothing(self, billing, ingester, user):
        await deliver(ingester, stripe_event("evt_sub", "customer.subscription.created", subscription_object()))
        await deliver(ingester, stripe_event("evt_fail", "invoice.payment_failed", invoice_object()))

        overview = await billing.overview()

        assert overview["total_payments"] == 1
        assert overview["succeeded_payments"] == 0
        assert overview["total_revenue"] == 0
        assert overview["average_revenue"] == 0

    async def test_overview_scoped_to_user(self, billing, ingester, user, make_user):
        other = await make_user(stripe_customer_id="cus_other")
        await deliver(ingester, stripe_event("evt_1", "customer.subscription.created", subscription_object()))
        await deliver(
            ingester,
            stripe_event("evt_2", "customer.subscription.created", subscription_object("sub_2", customer="cus_other")),
        )

        assert (await billing.overview())["total_subscriptions"] == 2
        assert (await billing.overview(other.id))["total_subscriptions"] == 1

    async def test_monthly_revenue(self, billing, ingester, user):
        await deliver(ingester, stripe_event("evt_sub", "customer.subscription.created", subscription_object()))
        await deliver(ingester, stripe_event("evt_pay", "invoice.paid", invoice_object()))

        monthly = await billing.monthly_revenue()

        month = datetime.now(tz=timezone.utc).strftime("%Y-%m")
        assert monthly == [{"month": month, "subscriptions": 1, "payments": 1, "revenue": 19.99}]

    async def test_recent_logs(self, billing, ingester, user):
        await deliver(ingester, stripe_event("evt_sub", "customer.subscription.created", subscription_object()))

        logs = await billing.recent_logs(user.id)

        assert len(logs) == 1
        assert logs[0]["action"] == "created"
        assert logs[0]["amount"] == 19.99
        assert logs[0]["event_type"] == "customer.subscription.created"


@pytest.mark.asyncio
class TestHistory:
    async def _seed(self, ingester):
        for sub_id in ("sub_a", "sub_b", "sub_c"):
            await deliver(ingester, stripe_event(f"evt_{sub_id}", "customer.subscription.created", subscription_object(sub_id)))
        for n in range(4):
            invoice = invoice_object(f"in_{n}", subscription="sub_a", payment_intent=f"pi_{n}")
            await deliver(ingester, stripe_event(f"evt_pay_{n}", "invoice.paid", invoice))

    async def test_pages_cover_everything_once(self, billing, ingester, user):
        await self._seed(ingester)

        seen = []
        page = 1
        while True:
            result = await billing.history(user.id, page=page, limit=3)
            seen.extend((item["type"], item["id"]) for item in result["items"])
            if not result["pagination"]["has_next"]:
                break
            page += 1

        assert len(seen) == 7
        assert len(set(seen)) == 7
        assert result["pagination"]["total"] == 7
        assert result["pagination"]["total_pages"] == 3
        assert result["pagination"]["has_prev"] is True

    async def test_kind_filter(self, billing, ingester, user):
        await self._seed(ingester)

        result = await billing.history(user.id, kind="payment")

        assert result["pagination"]["total"] == 4
        assert {item["type"] for item in result["items"]} == {"payment"}
        assert result["items"][0]["amount"] == 19.99

    async def test_limit_is_capped(self, billing, user):
        result = await billing.history(user.id, limit=500)

        assert result["pagination"]["limit"] == 100
        assert result["items"] == []
        assert result["pagination"]["total_pages"] == 0

    async def test_bad_arguments(self, billing, user):
        with pytest.raises(ValidationError):
            await billing.history(user.id, kind="refunds")
        with pytest.raises(ValidationError):
            await billing.history(user.id, page=0)


@pytest.mark.asyncio
class TestUserChanges:
    async def test_change_plan(self, billing, ingester, provider, session_factory, user):
        sub = await subscribe(ingester, provider, user)

        status = await billing.change_plan(user.id, "enterprise")

        assert status["plan"] == "enterprise"
        assert status["usage"]["remaining"] == -1
        record = await fetch_one(session_factory, R, R.stripe_subscription_id == sub["id"])
        assert (record.plan, record.price_id, record.amount) == ("enterprise", PRICE_ENTERPRISE, 4999)
        log = await fetch_one(session_factory, L, L.stripe_event_type == "user.subscription.updated")
        assert log.stripe_event_id is None
        assert (log.from_plan, log.to_plan) == ("pro", "enterprise")
        assert log.metadata_["initiated_by"] == "user"

    async def test_change_plan_rejects_free_and_unknown(self, billing, ingester, provider, user):
        await subscribe(ingester, provider, user)

        with pytest.raises(ValidationError):
            await billing.change_plan(user.id, "free")
        with pytest.raises(ValidationError):
            await billing.change_plan(user.id, "platinum")

    async def test_change_plan_without_subscription(self, billing, user):
        with pytest.raises(ValidationError):
            await billing.change_plan(user.id, "pro")

    async def test_provider_timeout_writes_nothing(
        self, ingester, session_factory, state_machine, meter, plans, user
    ):
        provider = SlowProvider(price_amounts=PRICE_AMOUNTS)
        sub = await subscribe(ingester, provider, user)
        logs_before = await count_rows(session_factory, L)
        service = service_with(provider, session_factory, state_machine, meter, plans, timeout=0.05)

        with pytest.raises(ProviderUnavailable):
            await service.change_plan(user.id, "enterprise")

        assert await count_rows(session_factory, L) == logs_before
        record = await fetch_one(session_factory, R, R.stripe_subscription_id == sub["id"])
        assert record.plan == "pro"

    async def test_provider_connection_error(self, ingester, session_factory, state_machine, meter, plans, user):
        provider = FailingProvider(stripe.APIConnectionError("connection reset"))
        await subscribe(ingester, provider, user)
        service = service_with(provider, session_factory, state_machine, meter, plans)

        with pytest.raises(ProviderUnavailable):
            await service.change_plan(user.id, "basic")

    async def test_provider_rejection_is_a_validation_error(
        self, ingester, session_factory, state_machine, meter, plans, user
    ):
        provider = FailingProvider(stripe.InvalidRequestError("No such price", "price"))
        await subscribe(ingester, provider, user)
        service = service_with(provider, session_factory, state_machine, meter, plans)

        with pytest.raises(ValidationError):
            await service.change_plan(user.id, "basic")

    async def test_cancel_at_period_end_keeps_plan(self, billing, ingester, provider, session_factory, user):
        sub = await subscribe(ingester, provider, user)

        status = await billing.cancel(user.id, at_period_end=True)

        assert status["plan"] == "pro"
        assert status["is_active"] is True
        assert status["subscription"]["cancel_at_period_end"] is True
        record = await fetch_one(session_factory, R, R.stripe_subscription_id == sub["id"])
        assert record.status == "active"
        log = await fetch_one(session_factory, L, L.stripe_event_type == "user.subscription.updated")
        assert (log.action, log.status) == ("cancelled", "success")
        assert log.metadata_["cancel_at_period_end"] == "true"

    async def test_cancel_immediately(self, billing, ingester, provider, session_factory, user):
        sub = await subscribe(ingester, provider, user)

        status = await billing.cancel(user.id, at_period_end=False)

        assert status["plan"] == "free"
        assert status["is_active"] is False
        record = await fetch_one(session_factory, R, R.stripe_subscription_id == sub["id"])
        assert record.status == "canceled"
        log = await fetch_one(session_factory, L, L.stripe_event_type == "user.subscription.cancelled")
        assert log.action == "cancelled"

    async def test_cancelled_period_end_expires_at_read_time(self, ingester, session_factory, user):
        await deliver(
            ingester,
            stripe_event("evt_1", "customer.subscription.updated", subscription_object(cancel_at_period_end=True)),
        )
        stored_user = await fetch_one(session_factory, models.User, models.User.id == user.id)
        record = await fetch_one(session_factory, R, R.stripe_subscription_id == "sub_1")

        later = datetime.now(tz=timezone.utc) + timedelta(days=31)

        assert effective_plan(stored_user, record) == "pro"
        assert effective_plan(stored_user, record, now=later) == "free"

    async def test_sync_from_provider(self, billing, ingester, provider, session_factory, user):
        sub = await subscribe(ingester, provider, user)
        _, later_end = period(days_from_now=60)
        provider.seed({**sub, "status": "past_due", "current_period_end": later_end})

        status = await billing.sync_from_provider(user.id)

        assert status["plan"] == "free"
        assert status["subscription"]["status"] == "past_due"
        log = await fetch_one(session_factory, L, L.stripe_event_type == "user.subscription.synced")
        assert log.status == "success"

    async def test_stale_provider_state_is_logged_not_applied(self, billing, ingester, provider, session_factory, user):
        sub = await subscribe(ingester, provider, user)
        _, later_end = period(days_from_now=60)
        await deliver(
            ingester,
            stripe_event(
                "evt_newer",
                "customer.subscription.updated",
                subscription_object(sub["id"], status="past_due", period_end=later_end),
            ),
        )

        status = await billing.sync_from_provider(user.id)

        assert status["subscription"]["status"] == "past_due"
        log = await fetch_one(session_factory, L, L.stripe_event_type == "user.subscription.synced")
        assert (log.status, log.error_message, log.action) == ("failed", "stale event", "updated")
        assert log.user_id == user.id
        assert log.stripe_event_id is None


class TestMockProvider:
    def test_returned_subscriptions_are_independent_copies(self):
        provider = MockProvider(price_amounts=PRICE_AMOUNTS)
        sub = provider.new_subscription("cus_1", PRICE_PRO, user_id="u1")

        before = provider.retrieve_subscription(sub["id"])
        provider.change_price(sub["id"], PRICE_ENTERPRISE)

        assert before["items"]["data"][0]["price"]["id"] == PRICE_PRO
        assert sub["items"]["data"][0]["price"]["unit_amount"] == 1999
        assert provider.retrieve_subscription(sub["id"])["items"]["data"][0]["price"]["id"] == PRICE_ENTERPRISE
