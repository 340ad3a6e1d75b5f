import logging
from dataclasses import asdict
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from .billing import (
    CHECKOUT_PLANS,
    BillingNotConfigured,
    construct_event,
    create_checkout_session,
    create_portal_session,
    handle_stripe_event,
)
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import PlanTier, User
from .plans import PLAN_CONFIG
from .usage_tracker import get_subscription, get_usage_report

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["billing"])


class CheckoutRequest(CamelModel):
    plan: Optional[str] = None


def _not_configured(e: BillingNotConfigured) -> HTTPException:
    logger.error(f"Billing request rejected: {e}")
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Billing is not configured")


@router.get("/plans")
async def list_plans():
    return success_response(
        [
            {
                "plan": tier.value,
                "name": details.name,
                "price": details.price,
                "description": details.description,
                "features": details.features,
                "quotas": asdict(details.quotas),
            }
            for tier, details in PLAN_CONFIG.items()
        ]
    )


@router.post("/stripe/create-checkout")
async def create_checkout(
    request: CheckoutRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    plan = (request.plan or "").upper()
    if plan not in {p.value for p in CHECKOUT_PLANS}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")

    user = await session.get(User, ctx.user_id)
    try:
        url = await create_checkout_session(session, user, PlanTier(plan))
    except BillingNotConfigured as e:
        raise _not_configured(e)
    except stripe.StripeError as e:
        logger.error(f"Stripe checkout failed for user {ctx.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create checkout session")

    await session.commit()
    return success_response({"url": url})


@router.post("/stripe/create-portal")
async def create_portal(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    subscription = await get_subscription(session, ctx.user_id)
    await session.commit()
    if not subscription.stripe_customer_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No billing account found")

    try:
        url = create_portal_session(subscription.stripe_customer_id)
    except BillingNotConfigured as e:
        raise _not_configured(e)
    except stripe.StripeError as e:
        logger.error(f"Stripe portal failed for user {ctx.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create portal session")
    return success_response({"url": url})


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    payload = await request.body()
    try:
        event = construct_event(payload, signature)
    except BillingNotConfigured as e:
        raise _not_configured(e)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"Rejected Stripe webhook: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    logger.info(f"Stripe event {event['type']} ({event['id']})")
    handled = await handle_stripe_event(session, event)
    return {"received": True, "handled": handled}


@router.get("/usage/stats")
async def usage_stats(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    report = await get_usage_report(session, ctx.user_id)
    await session.commit()
    return success_response(report)
