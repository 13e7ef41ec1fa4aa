from __future__ import annotations

import asyncio
import logging

from app.core.errors import NotFound, ValidationError
from app.core.plans import plan_table
from app.core.settings import settings
from app.db.session import create_engine, create_session_factory
from app.services.billing.service import BillingService
from app.services.payments.service import build_provider
from app.services.subscriptions.service import SubscriptionStateMachine
from app.services.usage.service import UsageMeter

logger = logging.getLogger(__name__)

RECONCILE_JOB = "app.services.subscriptions.tasks.reconcile_subscription"


def reconcile_subscription(user_id: str) -> None:
    """RQ worker task: pull the user's subscription from the provider and apply it."""

    async def _run() -> None:
        engine = create_engine()
        try:
            service = BillingService(
                create_session_factory(engine),
                SubscriptionStateMachine(plan_table),
                UsageMeter(plan_table),
                build_provider(settings),
                plan_table,
                provider_timeout=settings.provider_timeout_seconds,
            )
            try:
                await service.sync_from_provider(user_id)
            except (NotFound, ValidationError) as e:
                # Nothing to reconcile; retrying won't change that.
                logger.warning("Skipping reconciliation for user %s: %s", user_id, e.message)
        finally:
            await engine.dispose()

    asyncio.run(_run())
