from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum

import stripe
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import AlreadyApplied, AuthenticationFailed, BillingError, StaleEvent, StorageFailure, ValidationError
from app.db.models import utcnow
from app.services.ledger import store
from app.services.subscriptions.events import STRIPE_EVENT_KINDS, BillingEvent, parse_stripe_event
from app.services.subscriptions.service import FAILED_ACTIONS, SubscriptionStateMachine, write_log, write_stale_log

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    STALE = "stale"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    event_id: str | None = None
    event_type: str | None = None
    action: str | None = None
    error: BillingError | None = None

    def to_dict(self) -> dict:
        return {"status": self.outcome.value}


class WebhookIngester:
    """Verifies, dedupes and applies Stripe webhook deliveries.

    Each delivery is one unit of work: the ledger mutation and its log row
    commit together or not at all. The unique `stripe_event_id` on the log
    is what makes redelivery a no-op.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        webhook_secret: str,
        deadline: float,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.webhook_secret = webhook_secret
        self.deadline = deadline

    def verify(self, raw_body: bytes, signature_header: str | None) -> dict:
        if not self.webhook_secret or not signature_header:
            raise AuthenticationFailed()
        try:
            body = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            logger.warning("Rejected webhook with invalid signature")
            raise AuthenticationFailed()
        try:
            event = json.loads(body)
        except ValueError as e:
            raise ValidationError("Malformed event payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Malformed event payload")
        return event

    async def ingest(self, raw_body: bytes, signature_header: str | None) -> IngestResult:
        payload = self.verify(raw_body, signature_header)
        event_id = payload.get("id")
        event_type = payload.get("type") or ""
        if not event_id or not isinstance(event_id, str):
            raise ValidationError("Event id is missing")

        try:
            return await asyncio.wait_for(self._run(payload, event_id, event_type), timeout=self.deadline)
        except asyncio.TimeoutError:
            logger.error("Webhook %s (%s) exceeded the %ss deadline", event_id, event_type, self.deadline)
            raise StorageFailure()

    async def _run(self, payload: dict, event_id: str, event_type: str) -> IngestResult:
        try:
            try:
                event = parse_stripe_event(payload)
            except ValidationError as e:
                kind = STRIPE_EVENT_KINDS.get(event_type)
                partial = BillingEvent(kind=kind, event_id=event_id, event_type=event_type) if kind else None
                return await self._reject(partial, event_id, event_type, e)

            if event is None:
                logger.info("Ignoring webhook %s of type %s", event_id, event_type)
                return IngestResult(IngestOutcome.IGNORED, event_id, event_type)

            try:
                return await self._apply(event)
            except AlreadyApplied:
                logger.info("Webhook %s (%s) already applied", event_id, event_type)
                return IngestResult(IngestOutcome.ALREADY_APPLIED, event_id, event_type)
            except IntegrityError:
                # A concurrent delivery of the same event committed first.
                if await self._seen(event_id):
                    logger.info("Webhook %s (%s) applied by a concurrent delivery", event_id, event_type)
                    return IngestResult(IngestOutcome.ALREADY_APPLIED, event_id, event_type)
                raise
            except ValidationError as e:
                return await self._reject(event, event_id, event_type, e)
        except SQLAlchemyError as e:
            logger.exception("Storage failure while ingesting webhook %s (%s)", event_id, event_type)
            raise StorageFailure() from e

    async def _apply(self, event: BillingEvent) -> IngestResult:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                if await store.get_log_by_event_id(session, event.event_id):
                    raise AlreadyApplied()
                try:
                    result = await self.state_machine.apply(session, event, now=now)
                except StaleEvent:
                    # Nothing was written by the guarded upsert; only the log row lands.
                    await write_stale_log(session, event, now=now)
                    logger.info("Webhook %s (%s) is stale, logged without applying", event.event_id, event.event_type)
                    return IngestResult(IngestOutcome.STALE, event.event_id, event.event_type)

                await write_log(session, event, result, now=now)
        logger.info(
            "Applied webhook %s (%s): %s for user %s",
            event.event_id,
            event.event_type,
            result.action,
            result.user_id,
        )
        return IngestResult(IngestOutcome.APPLIED, event.event_id, event.event_type, action=result.action)

    async def _seen(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            return await store.get_log_by_event_id(session, event_id) is not None

    async def _reject(
        self,
        event: BillingEvent | None,
        event_id: str,
        event_type: str,
        error: ValidationError,
    ) -> IngestResult:
        logger.warning("Rejected webhook %s (%s): %s", event_id, event_type, error.message)
        action = FAILED_ACTIONS.get(event.kind) if event else None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if await store.get_log_by_event_id(session, event_id):
                        return IngestResult(IngestOutcome.ALREADY_APPLIED, event_id, event_type)
                    user_id = None
                    if event and event.user_id and await store.get_user(session, event.user_id):
                        user_id = event.user_id
                    await store.append_log(
                        session,
                        user_id=user_id,
                        action=action or "updated",
                        status="failed",
                        subscription_id=event.subscription_id if event else None,
                        stripe_event_id=event_id,
                        stripe_event_type=event_type,
                        error_message=error.message,
                        now=utcnow(),
                    )
        except IntegrityError:
            logger.info("Rejection of webhook %s was already recorded", event_id)
        return IngestResult(IngestOutcome.REJECTED, event_id, event_type, error=error)
