"""
Stripe billing: webhook handling and the billing endpoints.

Webhook payloads are signed with the test STRIPE_WEBHOOK_SECRET the same
way Stripe signs them, so signature verification runs for real.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import select

from anytimebot.billing import handle_stripe_event, subscription_period_end, subscription_price_id
from anytimebot.models import PlanTier, Subscription, SubscriptionStatus

from conftest import auth_headers, make_user

PERIOD_END = 1_900_000_000


def stripe_subscription(sub_id="sub_123", price_id="price_team_test", status="active"):
    return {
        "id": sub_id,
        "status": status,
        "current_period_end": PERIOD_END,
        "items": {"data": [{"price": {"id": price_id}}]},
    }


def signed_headers(payload: str, secret: str = "whsec_test") -> dict:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={timestamp},v1={signature}", "content-type": "application/json"}


async def _subscription(session, user_id) -> Subscription:
    result = await session.execute(
        select(Subscription).where(Subscription.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ────────────────────────────────────────────────────────────────
# Payload helpers
# ────────────────────────────────────────────────────────────────

def test_subscription_price_and_period():
    sub = stripe_subscription()
    assert subscription_price_id(sub) == "price_team_test"
    assert subscription_period_end(sub) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


def test_period_end_from_subscription_item():
    sub = {"id": "sub_1", "items": {"data": [{"price": {"id": "p"}, "current_period_end": PERIOD_END}]}}
    assert subscription_period_end(sub) == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)


def test_missing_items():
    assert subscription_price_id({"id": "sub_1"}) is None
    assert subscription_period_end({"id": "sub_1"}) is None


# ────────────────────────────────────────────────────────────────
# handle_stripe_event
# ────────────────────────────────────────────────────────────────

class TestHandleStripeEvent:

    async def test_checkout_completed_upgrades_plan(self, async_session):
        user = await make_user(async_session)
        event = {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "metadata": {"userId": str(user.id), "plan": "TEAM"},
                    "subscription": "sub_123",
                    "customer": "cus_123",
                }
            },
        }

        with patch("anytimebot.billing.retrieve_subscription", return_value=stripe_subscription()):
            assert await handle_stripe_event(async_session, event) is True

        subscription = await _subscription(async_session, user.id)
        assert subscription.plan == PlanTier.TEAM
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.stripe_subscription_id == "sub_123"
        assert subscription.stripe_customer_id == "cus_123"
        assert subscription.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)

    async def test_checkout_without_user_is_ignored(self, async_session):
        event = {"type": "checkout.session.completed", "data": {"object": {"metadata": {}, "subscription": "sub_1"}}}
        with patch("anytimebot.billing.retrieve_subscription") as retrieve:
            assert await handle_stripe_event(async_session, event) is True
        retrieve.assert_not_called()

    async def test_subscription_updated_to_inactive_status(self, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        subscription = await _subscription(async_session, user.id)
        subscription.stripe_subscription_id = "sub_123"
        await async_session.commit()

        event = {
            "type": "customer.subscription.updated",
            "data": {"object": stripe_subscription(price_id="price_pro_test", status="unpaid")},
        }
        await handle_stripe_event(async_session, event)

        subscription = await _subscription(async_session, user.id)
        assert subscription.plan == PlanTier.PRO
        assert subscription.status == SubscriptionStatus.CANCELLED

    async def test_payment_failed_marks_past_due(self, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        subscription = await _subscription(async_session, user.id)
        subscription.stripe_subscription_id = "sub_123"
        await async_session.commit()

        event = {"type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_123"}}}
        await handle_stripe_event(async_session, event)

        subscription = await _subscription(async_session, user.id)
        assert subscription.status == SubscriptionStatus.PAST_DUE

    async def test_unknown_event_is_not_handled(self, async_session):
        assert await handle_stripe_event(async_session, {"type": "charge.refunded", "data": {"object": {}}}) is False


# ────────────────────────────────────────────────────────────────
# Endpoints
# ────────────────────────────────────────────────────────────────

class TestStripeWebhookEndpoint:

    async def test_missing_signature(self, client):
        response = await client.post("/api/stripe/webhook", content="{}")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Missing signature"

    async def test_invalid_signature(self, client):
        payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}})
        response = await client.post(
            "/api/stripe/webhook", content=payload, headers=signed_headers(payload, secret="whsec_other")
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid signature"

    async def test_subscription_deleted_downgrades(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.TEAM)
        subscription = await _subscription(async_session, user.id)
        subscription.stripe_subscription_id = "sub_gone"
        await async_session.commit()

        payload = json.dumps(
            {
                "id": "evt_2",
                "object": "event",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_gone", "object": "subscription", "status": "canceled"}},
            }
        )
        response = await client.post("/api/stripe/webhook", content=payload, headers=signed_headers(payload))

        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True}

        subscription = await _subscription(async_session, user.id)
        assert subscription.plan == PlanTier.FREE
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.stripe_subscription_id is None


class TestBillingEndpoints:

    async def test_plans_are_public(self, client):
        response = await client.get("/api/plans")
        assert response.status_code == 200
        plans = {plan["plan"]: plan for plan in response.json()["data"]}
        assert plans["PRO"]["price"] == 19
        assert plans["PRO"]["quotas"]["ai_interactions"] == 200

    async def test_checkout_rejects_free_plan(self, client, async_session):
        user = await make_user(async_session)
        response = await client.post("/api/stripe/create-checkout", json={"plan": "FREE"}, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid plan"

    async def test_checkout_returns_hosted_url(self, client, async_session):
        user = await make_user(async_session)
        with patch("anytimebot.routes_billing.create_checkout_session", return_value="https://checkout.test/s"):
            response = await client.post(
                "/api/stripe/create-checkout", json={"plan": "PRO"}, headers=auth_headers(user)
            )
        assert response.status_code == 200
        assert response.json()["data"] == {"url": "https://checkout.test/s"}

    async def test_portal_needs_customer(self, client, async_session):
        user = await make_user(async_session)
        response = await client.post("/api/stripe/create-portal", headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No billing account found"

    async def test_usage_stats(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        response = await client.get("/api/usage/stats", headers=auth_headers(user))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["plan"] == "PRO"
        assert data["usage"]["ai_interactions"] == {"used": 0, "limit": 200, "percentage": 0}
        assert data["warnings"] == []

    async def test_usage_stats_requires_auth(self, client):
        response = await client.get("/api/usage/stats")
        assert response.status_code == 401
