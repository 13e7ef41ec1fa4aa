"""
Tests for the usage meter and the quota checks BillingService runs on top of it.
"""

import asyncio
from dataclasses import replace

import pytest

from app.core.errors import NotFound, QuotaExceeded, ValidationError
from app.core.plans import UNLIMITED, PlanTable
from app.db import models
from app.services.billing.service import BillingService
from app.services.subscriptions.service import SubscriptionStateMachine
from app.services.usage.service import UsageMeter
from factories import fetch_one


@pytest.mark.asyncio
class TestQuota:
    async def test_free_plan_allows_exactly_its_limit(self, billing, user):
        """Scenario A: a free user gets 100 operations, the 101st is denied."""
        for i in range(100):
            result = await billing.consume(user.id, "transform", 1)
            assert result.allowed
            assert result.remaining == 99 - i

        with pytest.raises(QuotaExceeded) as exc:
            await billing.consume(user.id, "transform", 1)

        assert exc.value.remaining == 0
        status = await billing.get_status(user.id)
        assert status["usage"]["total"] == 100
        assert status["usage"]["remaining"] == 0
        assert status["usage"]["percentage"] == 100

    async def test_batch_that_would_overshoot_is_denied_whole(self, billing, user):
        await billing.consume(user.id, "transform", 95)

        with pytest.raises(QuotaExceeded) as exc:
            await billing.consume(user.id, "transform", 10)

        assert exc.value.remaining == 5
        status = await billing.get_status(user.id)
        assert status["usage"]["total"] == 95

    async def test_concurrent_consumers_never_overshoot(self, session_factory, plans, provider, make_user):
        limits = plans.get("free")
        tight = PlanTable({**{p: plans.get(p) for p in ("basic", "pro", "enterprise")}, "free": replace(limits, max_usage=10)})
        service = BillingService(session_factory, SubscriptionStateMachine(tight), UsageMeter(tight), provider, tight)
        target = await make_user()

        async def attempt():
            try:
                await service.consume(target.id, "transform", 1)
                return True
            except QuotaExceeded:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(25)))

        assert sum(results) == 10
        stored = await fetch_one(session_factory, models.User, models.User.id == target.id)
        assert stored.total_transformations == 10

    async def test_unlimited_plan(self, billing, make_user):
        vip = await make_user(plan="enterprise", is_active=True)

        result = await billing.consume(vip.id, "transform", 5000)

        assert result.allowed
        assert result.remaining == UNLIMITED
        status = await billing.get_status(vip.id)
        assert status["usage"]["remaining"] == UNLIMITED
        assert status["usage"]["percentage"] == 0

    async def test_inactive_paid_user_is_metered_as_free(self, billing, make_user):
        lapsed = await make_user(plan="pro", is_active=False)

        result = await billing.preflight(lapsed.id, "transform", 1)

        assert result.max_usage == 100

    async def test_preflight_does_not_consume(self, billing, user):
        before = await billing.preflight(user.id, "transform", 1)
        after = await billing.preflight(user.id, "transform", 1)

        assert before.allowed and after.allowed
        assert after.used == before.used == 0

    async def test_count_must_be_positive(self, billing, user):
        with pytest.raises(ValidationError):
            await billing.consume(user.id, "transform", 0)

    async def test_unknown_operation(self, billing, user):
        with pytest.raises(ValidationError):
            await billing.consume(user.id, "upscale", 1)

    async def test_unknown_user(self, billing):
        with pytest.raises(NotFound):
            await billing.consume("missing-user", "transform", 1)


@pytest.mark.asyncio
class TestUsageMeter:
    async def test_status_percentage(self, meter, test_db, user):
        await meter.check_and_consume(test_db, user.id, "free", 25)
        await test_db.commit()

        status = await meter.status(test_db, user.id, "free")

        assert (status.total, status.remaining, status.percentage, status.max_usage) == (25, 75, 25, 100)

    async def test_require_raises_when_denied(self, meter, test_db, user):
        await meter.check_and_consume(test_db, user.id, "free", 100)

        with pytest.raises(QuotaExceeded):
            await meter.require(test_db, user.id, "free", 1)

    async def test_denied_consume_leaves_counter(self, meter, test_db, user):
        result = await meter.check_and_consume(test_db, user.id, "free", 101)

        assert not result.allowed
        assert result.used == 0
        assert result.remaining == 100

    async def test_unknown_plan(self, meter, test_db, user):
        with pytest.raises(ValidationError):
            await meter.check(test_db, user.id, "platinum", 1)
