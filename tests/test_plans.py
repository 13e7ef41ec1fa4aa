"""
Tests for the plan table and session signing helpers.
"""

import stripe

from app.core.plans import UNLIMITED, PlanTable, has_plan_access
from app.core.security import sign_session, stripe_signature_header, unsign_session
from app.core.settings import Settings
from factories import PRICE_BASIC, PRICE_ENTERPRISE, PRICE_PRO, WEBHOOK_SECRET


class TestPlanTable:
    def test_plan_for_price(self, plans):
        assert plans.plan_for_price(PRICE_BASIC) == "basic"
        assert plans.plan_for_price(PRICE_PRO) == "pro"
        assert plans.plan_for_price(PRICE_ENTERPRISE) == "enterprise"
        assert plans.plan_for_price("price_unknown") is None
        assert plans.plan_for_price(None) is None

    def test_unknown_plan_falls_back_to_free(self, plans):
        assert plans.get("platinum").plan_id == "free"
        assert plans.get(None).plan_id == "free"
        assert not plans.has("platinum")

    def test_limits(self, plans):
        assert plans.get("free").max_usage == 100
        assert plans.get("enterprise").max_usage == UNLIMITED
        assert plans.get("enterprise").unlimited
        assert not plans.get("pro").unlimited

    def test_public_listing_hides_price_ids(self, plans):
        listing = plans.public()

        assert [p["plan"] for p in listing] == ["free", "basic", "pro", "enterprise"]
        assert all("price_id" not in p for p in listing)

    def test_unconfigured_prices_are_not_indexed(self):
        table = PlanTable.from_settings(Settings(_env_file=None))

        assert table.plan_for_price("") is None
        assert table.get("pro").price_id is None


class TestPlanAccess:
    def test_ranking(self):
        assert has_plan_access("pro", "basic")
        assert has_plan_access("pro", "pro")
        assert not has_plan_access("basic", "enterprise")
        assert not has_plan_access("unknown", "basic")


class TestSessions:
    def test_round_trip(self):
        assert unsign_session(sign_session("user-1")) == "user-1"

    def test_tampered_token(self):
        token = sign_session("user-1")

        assert unsign_session(token[:-2] + "xx") is None
        assert unsign_session("garbage") is None


class TestSignatureHeader:
    def test_header_verifies_with_stripe(self):
        body = b'{"id": "evt_1"}'
        header = stripe_signature_header(body, WEBHOOK_SECRET)

        assert stripe.WebhookSignature.verify_header(body.decode(), header, WEBHOOK_SECRET, 300)
