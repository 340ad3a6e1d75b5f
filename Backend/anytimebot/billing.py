"""
Stripe billing: checkout, customer portal and subscription webhooks.

The plan of a user lives on their Subscription row; quotas are derived from
it (see plans.py), so webhooks only move plan/status/period fields.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import PlanTier, Subscription, SubscriptionStatus, User
from .plans import plan_for_price_id, price_id_for_plan
from .usage_tracker import get_subscription

logger = logging.getLogger(__name__)

CHECKOUT_PLANS = (PlanTier.PRO, PlanTier.TEAM)


class BillingNotConfigured(Exception):
    """Raised when STRIPE_SECRET_KEY is missing."""


def _stripe_client():
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise BillingNotConfigured("Stripe is not configured")
    stripe.api_key = settings.stripe_secret_key
    return stripe


def _field(obj: Any, key: str) -> Any:
    """Read a key from a dict or StripeObject, None when missing."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


# ────────────────────────────────────────────────────────────────
# Checkout and portal
# ────────────────────────────────────────────────────────────────

async def ensure_customer(session: AsyncSession, user: User, subscription: Subscription) -> str:
    if subscription.stripe_customer_id:
        return subscription.stripe_customer_id

    s = _stripe_client()
    customer = s.Customer.create(email=user.email, name=user.name or None, metadata={"userId": str(user.id)})
    subscription.stripe_customer_id = customer["id"]
    await session.flush()
    logger.info(f"Created Stripe customer for user {user.id}")
    return subscription.stripe_customer_id


async def create_checkout_session(session: AsyncSession, user: User, plan: PlanTier) -> str:
    """Start a subscription checkout and return its hosted URL."""
    s = _stripe_client()
    subscription = await get_subscription(session, user.id)
    customer_id = await ensure_customer(session, user, subscription)
    origin = get_settings().app_base_url

    checkout = s.checkout.Session.create(
        customer=customer_id,
        mode="subscription",
        payment_method_types=["card"],
        line_items=[{"price": price_id_for_plan(plan), "quantity": 1}],
        success_url=f"{origin}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/pricing",
        metadata={"userId": str(user.id), "plan": plan.value},
    )
    return checkout["url"]


def create_portal_session(customer_id: str) -> str:
    s = _stripe_client()
    portal = s.billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{get_settings().app_base_url}/dashboard",
    )
    return portal["url"]


# ────────────────────────────────────────────────────────────────
# Webhooks
# ────────────────────────────────────────────────────────────────

def construct_event(payload: bytes, signature: str):
    """
    Verify and parse a webhook payload.

    Raises:
        ValueError: malformed payload
        stripe.SignatureVerificationError: bad signature
    """
    s = _stripe_client()
    return s.Webhook.construct_event(payload, signature, get_settings().stripe_webhook_secret)


def retrieve_subscription(subscription_id: str):
    return _stripe_client().Subscription.retrieve(subscription_id)


def subscription_price_id(stripe_subscription: Any) -> Optional[str]:
    items = _field(_field(stripe_subscription, "items"), "data") or []
    if not items:
        return None
    return _field(_field(items[0], "price"), "id")


def subscription_period_end(stripe_subscription: Any) -> Optional[datetime]:
    period_end = _field(stripe_subscription, "current_period_end")
    if period_end is None:
        # Newer API versions carry the period on the subscription item
        items = _field(_field(stripe_subscription, "items"), "data") or []
        period_end = _field(items[0], "current_period_end") if items else None
    return _timestamp(period_end)


async def _subscription_by_stripe_id(session: AsyncSession, stripe_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not stripe_subscription_id:
        return None
    result = await session.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one_or_none()


async def _handle_checkout_completed(session: AsyncSession, checkout: Any) -> None:
    user_id = _field(_field(checkout, "metadata"), "userId")
    stripe_subscription_id = _field(checkout, "subscription")
    if not user_id or not str(user_id).isdigit():
        logger.error("Checkout session completed without a userId in metadata")
        return
    if not stripe_subscription_id:
        logger.error(f"Checkout session for user {user_id} has no subscription")
        return

    stripe_subscription = retrieve_subscription(stripe_subscription_id)
    price_id = subscription_price_id(stripe_subscription)

    subscription = await get_subscription(session, int(user_id))
    subscription.plan = plan_for_price_id(price_id)
    subscription.status = SubscriptionStatus.ACTIVE
    subscription.stripe_subscription_id = stripe_subscription_id
    subscription.stripe_price_id = price_id
    subscription.current_period_end = subscription_period_end(stripe_subscription)
    if _field(checkout, "customer"):
        subscription.stripe_customer_id = _field(checkout, "customer")
    logger.info(f"User {user_id} upgraded to {subscription.plan.value}")


async def _handle_subscription_updated(session: AsyncSession, stripe_subscription: Any) -> None:
    subscription = await _subscription_by_stripe_id(session, _field(stripe_subscription, "id"))
    if subscription is None:
        logger.error(f"No subscription row for Stripe subscription {_field(stripe_subscription, 'id')}")
        return
    price_id = subscription_price_id(stripe_subscription)
    subscription.plan = plan_for_price_id(price_id)
    subscription.stripe_price_id = price_id
    subscription.status = (
        SubscriptionStatus.ACTIVE
        if _field(stripe_subscription, "status") == "active"
        else SubscriptionStatus.CANCELLED
    )
    subscription.current_period_end = subscription_period_end(stripe_subscription)


async def _handle_subscription_deleted(session: AsyncSession, stripe_subscription: Any) -> None:
    subscription = await _subscription_by_stripe_id(session, _field(stripe_subscription, "id"))
    if subscription is None:
        logger.error(f"No subscription row for Stripe subscription {_field(stripe_subscription, 'id')}")
        return
    subscription.plan = PlanTier.FREE
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.stripe_subscription_id = None
    logger.info(f"User {subscription.user_id} downgraded to FREE")


async def _handle_payment_failed(session: AsyncSession, invoice: Any) -> None:
    subscription = await _subscription_by_stripe_id(session, _field(invoice, "subscription"))
    if subscription is None:
        return
    subscription.status = SubscriptionStatus.PAST_DUE
    logger.warning(f"Payment failed for user {subscription.user_id}")


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_failed": _handle_payment_failed,
}


async def handle_stripe_event(session: AsyncSession, event: Any) -> bool:
    """Apply a verified event; False for event types we ignore."""
    event_type = _field(event, "type")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug(f"Ignoring Stripe event {event_type}")
        return False
    await handler(session, _field(_field(event, "data"), "object"))
    await session.commit()
    return True
