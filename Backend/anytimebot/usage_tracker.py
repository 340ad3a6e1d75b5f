"""
Usage tracking against plan quotas.

Counters live in the `usage` table (one row per user) and are reset monthly
by the cron endpoint; limits are derived from the user's subscription plan.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import PlanTier, Subscription, SubscriptionStatus, Usage
from .plans import (
    PlanQuotas,
    QuotaDecision,
    build_usage_stats,
    can_perform_action,
    get_quotas,
    usage_warnings,
    within_limit,
)
from .utils import start_of_month

logger = logging.getLogger(__name__)

_ACTION_COLUMNS = {
    "ai": "ai_interactions",
    "video": "video_minutes",
    "whatsapp": "whatsapp_messages",
    "telegram": "telegram_messages",
}


class QuotaExceededError(Exception):
    """Raised when a plan does not allow an action; rendered as 403."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


async def get_subscription(session: AsyncSession, user_id: int) -> Subscription:
    result = await session.execute(select(Subscription).where(Subscription.user_id == user_id))
    subscription = result.scalar_one_or_none()
    if not subscription:
        subscription = Subscription(user_id=user_id, plan=PlanTier.FREE, status=SubscriptionStatus.ACTIVE)
        session.add(subscription)
        await session.flush()
    return subscription


async def get_usage(session: AsyncSession, user_id: int) -> Usage:
    result = await session.execute(select(Usage).where(Usage.user_id == user_id))
    usage = result.scalar_one_or_none()
    if not usage:
        usage = Usage(
            user_id=user_id,
            ai_interactions=0,
            video_minutes=0,
            whatsapp_messages=0,
            telegram_messages=0,
            last_reset_at=datetime.now(timezone.utc),
        )
        session.add(usage)
        await session.flush()
    return usage


async def initialize_account(session: AsyncSession, user_id: int) -> None:
    """Create the FREE subscription and zeroed usage row for a new user."""
    await get_subscription(session, user_id)
    await get_usage(session, user_id)


def effective_plan(subscription: Subscription) -> PlanTier:
    # A cancelled or unpaid subscription keeps its row but falls back to FREE limits
    if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.INACTIVE):
        return PlanTier.FREE
    return subscription.plan


async def get_user_quotas(session: AsyncSession, user_id: int) -> PlanQuotas:
    subscription = await get_subscription(session, user_id)
    return get_quotas(effective_plan(subscription))


def usage_to_dict(usage: Usage) -> dict:
    return {column: getattr(usage, column) for column in _ACTION_COLUMNS.values()}


async def check_user_quota(session: AsyncSession, user_id: int, action: str) -> QuotaDecision:
    quotas = await get_user_quotas(session, user_id)
    usage = await get_usage(session, user_id)
    return can_perform_action(quotas, usage_to_dict(usage), action)


async def require_quota(session: AsyncSession, user_id: int, action: str) -> None:
    decision = await check_user_quota(session, user_id, action)
    if not decision.allowed:
        logger.info(f"Quota check failed for user {user_id} ({action}): {decision.reason}")
        raise QuotaExceededError(decision.reason or "Quota exceeded")


async def increment_usage(session: AsyncSession, user_id: int, action: str, amount: int = 1) -> None:
    column = _ACTION_COLUMNS[action]
    usage = await get_usage(session, user_id)
    setattr(usage, column, getattr(usage, column) + amount)
    await session.flush()


async def require_capacity(
    session: AsyncSession,
    user_id: int,
    limit_name: str,
    current_count: int,
    label: str,
) -> None:
    """Enforce count limits such as booking_pages, bot_documents and team_members."""
    quotas = await get_user_quotas(session, user_id)
    limit = getattr(quotas, limit_name)
    if not within_limit(limit, current_count):
        if limit == 0:
            raise QuotaExceededError(f"{label} require Pro plan or higher")
        raise QuotaExceededError(f"{label} limit reached ({limit}). Upgrade your plan.")


async def get_usage_report(session: AsyncSession, user_id: int) -> dict:
    subscription = await get_subscription(session, user_id)
    quotas = get_quotas(effective_plan(subscription))
    usage = await get_usage(session, user_id)
    stats = build_usage_stats(quotas, usage_to_dict(usage))
    return {
        "plan": subscription.plan.value,
        "status": subscription.status.value,
        "usage": stats,
        "warnings": usage_warnings(stats),
        "lastResetAt": usage.last_reset_at.isoformat(),
    }


async def reset_monthly_usage(session: AsyncSession, now: datetime | None = None) -> int:
    """Zero counters for rows last reset before the first day of last month."""
    now = now or datetime.now(timezone.utc)
    cutoff = start_of_month(now, months_back=1)
    result = await session.execute(
        update(Usage)
        .where(Usage.last_reset_at < cutoff)
        .values(
            ai_interactions=0,
            video_minutes=0,
            whatsapp_messages=0,
            telegram_messages=0,
            last_reset_at=now,
        )
    )
    await session.commit()
    logger.info(f"Monthly usage reset completed for {result.rowcount} users")
    return result.rowcount or 0
