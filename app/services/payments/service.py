from __future__ import annotations

import asyncio
import copy
import logging
import threading
import time
import uuid
from typing import Any, Callable, Protocol

import stripe

from app.core.errors import ProviderUnavailable, ValidationError
from app.core.settings import Settings

logger = logging.getLogger(__name__)


class PaymentProvider(Protocol):
    name: str

    def retrieve_subscription(self, subscription_id: str) -> dict: ...

    def change_price(self, subscription_id: str, price_id: str) -> dict: ...

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> dict: ...


def to_plain_dict(obj: Any) -> dict:
    for attr in ("to_dict_recursive", "to_dict"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            return fn()
    return dict(obj)


class StripeProvider:
    name = "stripe"

    def __init__(self, api_key: str):
        self._api_key = api_key

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return to_plain_dict(stripe.Subscription.retrieve(subscription_id, api_key=self._api_key))

    def change_price(self, subscription_id: str, price_id: str) -> dict:
        current = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        item_id = current["items"]["data"][0]["id"]
        updated = stripe.Subscription.modify(
            subscription_id,
            api_key=self._api_key,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations",
        )
        return to_plain_dict(updated)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> dict:
        if at_period_end:
            sub = stripe.Subscription.modify(subscription_id, api_key=self._api_key, cancel_at_period_end=True)
        else:
            sub = stripe.Subscription.cancel(subscription_id, api_key=self._api_key)
        return to_plain_dict(sub)


class MockProvider:
    """In-process stand-in for Stripe, used when payments_mode=mock."""

    name = "mock"
    period_seconds = 30 * 24 * 60 * 60

    def __init__(self, price_amounts: dict[str, int] | None = None):
        self._subs: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._price_amounts = price_amounts or {}

    def seed(self, subscription: dict) -> None:
        with self._lock:
            self._subs[subscription["id"]] = copy.deepcopy(subscription)

    def _get(self, subscription_id: str) -> dict:
        sub = self._subs.get(subscription_id)
        if sub is None:
            raise ValidationError("No such subscription")
        return sub

    def retrieve_subscription(self, subscription_id: str) -> dict:
        with self._lock:
            return copy.deepcopy(self._get(subscription_id))

    def change_price(self, subscription_id: str, price_id: str) -> dict:
        with self._lock:
            sub = self._get(subscription_id)
            item = sub["items"]["data"][0]
            item["price"] = {
                **item.get("price", {}),
                "id": price_id,
                "unit_amount": self._price_amounts.get(price_id, item.get("price", {}).get("unit_amount", 0)),
            }
            return copy.deepcopy(sub)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool) -> dict:
        with self._lock:
            sub = self._get(subscription_id)
            if at_period_end:
                sub["cancel_at_period_end"] = True
            else:
                now = int(time.time())
                sub.update(status="canceled", canceled_at=now, ended_at=now)
            return copy.deepcopy(sub)

    def new_subscription(self, customer_id: str, price_id: str, *, user_id: str, status: str = "active") -> dict:
        now = int(time.time())
        sub = {
            "id": f"sub_mock_{uuid.uuid4().hex[:14]}",
            "customer": customer_id,
            "status": status,
            "currency": "usd",
            "current_period_start": now,
            "current_period_end": now + self.period_seconds,
            "cancel_at_period_end": False,
            "items": {
                "data": [
                    {
                        "id": f"si_mock_{uuid.uuid4().hex[:14]}",
                        "quantity": 1,
                        "price": {
                            "id": price_id,
                            "unit_amount": self._price_amounts.get(price_id, 0),
                            "currency": "usd",
                            "recurring": {"interval": "month", "interval_count": 1},
                        },
                    }
                ]
            },
            "metadata": {"user_id": user_id},
        }
        self.seed(sub)
        return copy.deepcopy(sub)


def build_provider(conf: Settings) -> PaymentProvider:
    if conf.payments_mode == "stripe":
        if not conf.stripe_secret_key:
            raise RuntimeError("Stripe is enabled but STRIPE_SECRET_KEY is missing")
        return StripeProvider(conf.stripe_secret_key)
    return MockProvider()


async def call_provider(fn: Callable[..., dict], *args: Any, timeout: float) -> dict:
    """Run a blocking provider call in a thread, bounded by `timeout` seconds."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Provider call %s timed out after %ss", getattr(fn, "__name__", fn), timeout)
        raise ProviderUnavailable()
    except stripe.InvalidRequestError as e:
        logger.warning("Provider rejected %s: %s", getattr(fn, "__name__", fn), e.user_message or e)
        raise ValidationError("Payment provider rejected the request") from e
    except stripe.StripeError as e:
        logger.exception("Provider call %s failed", getattr(fn, "__name__", fn))
        raise ProviderUnavailable() from e
