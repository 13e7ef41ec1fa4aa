from __future__ import annotations

from dataclasses import dataclass

from app.core.settings import Settings, settings

UNLIMITED = -1
PLAN_IDS: tuple[str, ...] = ("free", "basic", "pro", "enterprise")
PAID_PLAN_IDS: tuple[str, ...] = ("basic", "pro", "enterprise")
PLAN_RANK: dict[str, int] = {"free": 0, "basic": 1, "pro": 2, "enterprise": 3}

_MB = 1024 * 1024


@dataclass(frozen=True)
class PlanLimits:
    plan_id: str
    max_usage: int
    max_file_size: int
    features: tuple[str, ...]
    price_id: str | None

    @property
    def unlimited(self) -> bool:
        return self.max_usage == UNLIMITED


class PlanTable:
    """Plan name -> limits, plus the reverse price id index used by webhooks."""

    def __init__(self, plans: dict[str, PlanLimits]):
        self._plans = dict(plans)
        self._by_price = {p.price_id: p.plan_id for p in plans.values() if p.price_id}

    @classmethod
    def from_settings(cls, conf: Settings) -> PlanTable:
        return cls(
            {
                "free": PlanLimits("free", conf.free_usage_limit, 2 * _MB, ("basic_transform",), None),
                "basic": PlanLimits(
                    "basic",
                    conf.basic_usage_limit,
                    5 * _MB,
                    ("standard_resolution", "history", "email_support"),
                    conf.stripe_price_id_basic,
                ),
                "pro": PlanLimits(
                    "pro",
                    conf.pro_usage_limit,
                    10 * _MB,
                    ("high_resolution", "batch_processing", "priority_support"),
                    conf.stripe_price_id_pro,
                ),
                "enterprise": PlanLimits(
                    "enterprise",
                    conf.enterprise_usage_limit,
                    50 * _MB,
                    ("max_resolution", "api_access", "custom_development"),
                    conf.stripe_price_id_enterprise,
                ),
            }
        )

    def get(self, plan_id: str | None) -> PlanLimits:
        return self._plans.get(plan_id or "free", self._plans["free"])

    def has(self, plan_id: str | None) -> bool:
        return plan_id in self._plans

    def plan_for_price(self, price_id: str | None) -> str | None:
        if not price_id:
            return None
        return self._by_price.get(price_id)

    def public(self) -> list[dict]:
        return [
            {
                "plan": p.plan_id,
                "max_usage": p.max_usage,
                "max_file_size": p.max_file_size,
                "features": list(p.features),
            }
            for p in self._plans.values()
        ]


def has_plan_access(user_plan_id: str, required_plan_id: str) -> bool:
    return PLAN_RANK.get(user_plan_id, 0) >= PLAN_RANK.get(required_plan_id, 0)


plan_table = PlanTable.from_settings(settings)
