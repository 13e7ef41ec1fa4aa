from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, QuotaExceeded, ValidationError
from app.core.plans import UNLIMITED, PlanLimits, PlanTable
from app.db import models
from app.db.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    remaining: int
    used: int
    max_usage: int


@dataclass(frozen=True)
class UsageStatus:
    total: int
    remaining: int
    percentage: int
    max_usage: int


def remaining_for(limits: PlanLimits, used: int) -> int:
    if limits.unlimited:
        return UNLIMITED
    return max(0, limits.max_usage - used)


class UsageMeter:
    """Per-user quota over `users.total_transformations`.

    The check and the increment are one conditional UPDATE, so concurrent
    requests (from any number of processes) cannot jointly overshoot the limit.
    """

    def __init__(self, plans: PlanTable):
        self.plans = plans

    def limits_for(self, plan: str) -> PlanLimits:
        if not self.plans.has(plan):
            raise ValidationError(f"Unknown plan {plan}")
        return self.plans.get(plan)

    async def check_and_consume(self, session: AsyncSession, user_id: str, plan: str, count: int = 1) -> QuotaResult:
        if count < 1:
            raise ValidationError("Count must be at least 1")
        limits = self.limits_for(plan)
        U = models.User
        new_total = U.total_transformations + count

        stmt = update(U).where(U.id == user_id)
        if limits.unlimited:
            trials_left = UNLIMITED
        else:
            stmt = stmt.where(new_total <= limits.max_usage)
            trials_left = limits.max_usage - new_total
        stmt = (
            stmt.values(total_transformations=new_total, free_trials_remaining=trials_left, updated_at=utcnow())
            .returning(U.total_transformations)
            .execution_options(synchronize_session=False)
        )
        used = (await session.execute(stmt)).scalar_one_or_none()
        if used is not None:
            return QuotaResult(True, remaining_for(limits, used), used, limits.max_usage)

        current = await self._current(session, user_id)
        logger.info("Quota denied for user %s on %s plan (%s used, %s requested)", user_id, plan, current, count)
        return QuotaResult(False, remaining_for(limits, current), current, limits.max_usage)

    async def require(self, session: AsyncSession, user_id: str, plan: str, count: int = 1) -> QuotaResult:
        result = await self.check_and_consume(session, user_id, plan, count)
        if not result.allowed:
            raise QuotaExceeded(remaining=result.remaining)
        return result

    async def check(self, session: AsyncSession, user_id: str, plan: str, count: int = 1) -> QuotaResult:
        if count < 1:
            raise ValidationError("Count must be at least 1")
        limits = self.limits_for(plan)
        used = await self._current(session, user_id)
        allowed = limits.unlimited or used + count <= limits.max_usage
        return QuotaResult(allowed, remaining_for(limits, used), used, limits.max_usage)

    async def status(self, session: AsyncSession, user_id: str, plan: str) -> UsageStatus:
        limits = self.limits_for(plan)
        used = await self._current(session, user_id)
        if limits.unlimited or limits.max_usage <= 0:
            percentage = 0
        else:
            percentage = min(100, round(used / limits.max_usage * 100))
        return UsageStatus(
            total=used,
            remaining=remaining_for(limits, used),
            percentage=percentage,
            max_usage=limits.max_usage,
        )

    async def _current(self, session: AsyncSession, user_id: str) -> int:
        q = select(models.User.total_transformations).where(models.User.id == user_id)
        used = (await session.execute(q)).scalar_one_or_none()
        if used is None:
            raise NotFound("User not found")
        return int(used)
