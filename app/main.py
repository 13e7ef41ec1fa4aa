from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import redis
from fastapi import APIRouter, Cookie, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from rq import Queue, Retry
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import BillingError, Forbidden, Unauthenticated, ValidationError
from app.core.plans import plan_table
from app.core.security import unsign_session
from app.core.settings import settings
from app.db import models
from app.db.session import create_engine, create_session_factory
from app.services.billing.service import BillingService
from app.services.ledger import store
from app.services.payments.service import PaymentProvider, build_provider
from app.services.subscriptions.service import SubscriptionStateMachine
from app.services.subscriptions.tasks import RECONCILE_JOB
from app.services.usage.service import UsageMeter
from app.services.webhooks.ingester import IngestOutcome, WebhookIngester

logger = logging.getLogger(__name__)

router = APIRouter()


class UsageRequest(BaseModel):
    operation: str = "transform"
    count: int = 1


class PlanChangeRequest(BaseModel):
    plan: str


def _wire(app: FastAPI, session_factory: async_sessionmaker[AsyncSession], provider: PaymentProvider) -> None:
    state_machine = SubscriptionStateMachine(plan_table)
    app.state.session_factory = session_factory
    app.state.billing = BillingService(
        session_factory,
        state_machine,
        UsageMeter(plan_table),
        provider,
        plan_table,
        provider_timeout=settings.provider_timeout_seconds,
    )
    app.state.ingester = WebhookIngester(
        session_factory,
        state_machine,
        settings.stripe_webhook_secret or "",
        settings.webhook_deadline_seconds,
    )


async def _bootstrap_admins(session_factory: async_sessionmaker[AsyncSession]) -> None:
    if not settings.admin_emails:
        return
    emails = [e.strip().lower() for e in settings.admin_emails.split(",") if e.strip()]
    if not emails:
        return
    async with session_factory() as db:
        res = await db.execute(select(models.User).where(models.User.email.in_(emails)))
        for u in res.scalars().all():
            u.is_admin = True
        await db.commit()


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider: PaymentProvider | None = None,
) -> FastAPI:
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        if not hasattr(app.state, "billing"):
            engine = create_engine()
            _wire(app, create_session_factory(engine), provider or build_provider(settings))
        await _bootstrap_admins(app.state.session_factory)
        try:
            yield
        finally:
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    if session_factory is not None:
        _wire(app, session_factory, provider or build_provider(settings))

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, internal_error_handler)
    app.middleware("http")(security_headers_middleware)
    app.include_router(router)
    return app


async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    return response


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.retryable:
        logger.warning("%s %s failed with retryable %s", request.method, request.url.path, exc.code)
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    err = ValidationError("Invalid request parameters")
    return JSONResponse(err.to_dict(), status_code=err.http_status)


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": {"code": "internal_error", "message": "Internal error"}}, status_code=500)


# --- dependencies ------------------------------------------------------------


def get_billing(request: Request) -> BillingService:
    return request.app.state.billing


def get_ingester(request: Request) -> WebhookIngester:
    return request.app.state.ingester


def get_queue() -> Queue:
    return Queue(connection=redis.from_url(settings.redis_url))


async def get_current_user_id(
    session_token: str | None = Cookie(default=None, alias=settings.session_cookie_name),
) -> str:
    user_id = unsign_session(session_token) if session_token else None
    if not user_id:
        raise Unauthenticated()
    return user_id


async def require_admin(request: Request, user_id: str = Depends(get_current_user_id)) -> str:
    async with request.app.state.session_factory() as db:
        user = await store.get_user(db, user_id)
    if not user or not user.is_admin:
        raise Forbidden("Admin privileges required")
    return user_id


# --- routes ------------------------------------------------------------------


@router.post("/billing/webhook")
async def billing_webhook(request: Request, ingester: WebhookIngester = Depends(get_ingester)):
    payload = await request.body()
    result = await ingester.ingest(payload, request.headers.get("Stripe-Signature"))
    if result.outcome == IngestOutcome.REJECTED and result.error:
        return JSONResponse(result.error.to_dict(), status_code=result.error.http_status)
    return result.to_dict()


@router.get("/billing/status")
async def billing_status(user_id: str = Depends(get_current_user_id), billing: BillingService = Depends(get_billing)):
    return await billing.get_status(user_id)


@router.post("/billing/usage")
async def record_usage(
    body: UsageRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    result = await billing.consume(user_id, body.operation, body.count)
    return {"allowed": result.allowed, "remaining": result.remaining, "used": result.used}


@router.get("/billing/usage/check")
async def check_usage(
    operation: str = "transform",
    count: int = 1,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    result = await billing.preflight(user_id, operation, count)
    return {"allowed": result.allowed, "remaining": result.remaining}


@router.get("/billing/history")
async def billing_history(
    kind: str = "all",
    page: int = 1,
    limit: int = 20,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    return await billing.history(user_id, kind=kind, page=page, limit=limit)


@router.get("/billing/stats")
async def billing_stats(user_id: str = Depends(get_current_user_id), billing: BillingService = Depends(get_billing)):
    return await billing.stats(user_id)


@router.get("/billing/logs")
async def billing_logs(
    limit: int = 10,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    return {"logs": await billing.recent_logs(user_id, limit=limit)}


@router.put("/billing/subscription")
async def change_subscription(
    body: PlanChangeRequest,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    return await billing.change_plan(user_id, body.plan)


@router.delete("/billing/subscription")
async def cancel_subscription(
    at_period_end: bool = True,
    user_id: str = Depends(get_current_user_id),
    billing: BillingService = Depends(get_billing),
):
    return await billing.cancel(user_id, at_period_end=at_period_end)


@router.post("/billing/subscription/sync", status_code=202)
async def sync_subscription(user_id: str = Depends(get_current_user_id), queue: Queue = Depends(get_queue)):
    job = queue.enqueue(RECONCILE_JOB, user_id, retry=Retry(max=3, interval=[10, 30, 60]))
    return {"status": "queued", "job_id": job.id}


@router.get("/admin/billing/stats")
async def admin_billing_stats(_: str = Depends(require_admin), billing: BillingService = Depends(get_billing)):
    return await billing.stats()


@router.get("/plans")
async def list_plans():
    return {"plans": plan_table.public()}


app = create_app()
