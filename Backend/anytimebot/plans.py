"""
Plan configuration and quota rules.

A limit of -1 means unlimited; 0 means the feature is not part of the plan.
"""

from dataclasses import dataclass, field
from typing import Optional

from .core.config import get_settings
from .models import PlanTier
from .utils import round_half_up

UNLIMITED = -1
WARNING_THRESHOLD = 80

QUOTA_ACTIONS = ("ai", "video", "whatsapp", "telegram")


@dataclass(frozen=True)
class PlanQuotas:
    booking_pages: int
    ai_interactions: int
    bot_documents: int
    video_minutes: int
    whatsapp_messages: int
    telegram_messages: int
    team_members: int
    video_recording: bool = False
    video_transcription: bool = False
    team_scheduling: bool = False
    can_use_whatsapp: bool = False
    can_use_telegram: bool = False
    can_use_evolution: bool = False
    can_use_twilio: bool = False


@dataclass(frozen=True)
class PlanDetails:
    name: str
    price: int
    description: str
    quotas: PlanQuotas
    features: list[str] = field(default_factory=list)


PLAN_CONFIG: dict[PlanTier, PlanDetails] = {
    PlanTier.FREE: PlanDetails(
        name="Free",
        price=0,
        description="Perfect for getting started",
        quotas=PlanQuotas(
            booking_pages=1,
            ai_interactions=0,
            bot_documents=0,
            video_minutes=0,
            whatsapp_messages=0,
            telegram_messages=0,
            team_members=0,
        ),
        features=["1 booking page", "Google Calendar sync", "Basic email notifications"],
    ),
    PlanTier.PRO: PlanDetails(
        name="Pro",
        price=19,
        description="For professionals who need AI power",
        quotas=PlanQuotas(
            booking_pages=10,
            ai_interactions=200,
            bot_documents=5,
            video_minutes=100,
            whatsapp_messages=1000,
            telegram_messages=0,
            team_members=1,
            video_recording=True,
            video_transcription=True,
            can_use_whatsapp=True,
            can_use_evolution=True,
        ),
        features=["Trainable assistant", "Meeting rooms", "WhatsApp via Evolution API", "Pre-meeting briefs"],
    ),
    PlanTier.TEAM: PlanDetails(
        name="Team",
        price=49,
        description="For teams that work together",
        quotas=PlanQuotas(
            booking_pages=50,
            ai_interactions=500,
            bot_documents=50,
            video_minutes=500,
            whatsapp_messages=5000,
            telegram_messages=5000,
            team_members=5,
            video_recording=True,
            video_transcription=True,
            team_scheduling=True,
            can_use_whatsapp=True,
            can_use_telegram=True,
            can_use_evolution=True,
            can_use_twilio=True,
        ),
        features=["Team scheduling", "Round-robin and smart routing", "WhatsApp via Twilio"],
    ),
    PlanTier.ENTERPRISE: PlanDetails(
        name="Enterprise",
        price=0,
        description="For large organizations",
        quotas=PlanQuotas(
            booking_pages=UNLIMITED,
            ai_interactions=UNLIMITED,
            bot_documents=UNLIMITED,
            video_minutes=UNLIMITED,
            whatsapp_messages=UNLIMITED,
            telegram_messages=UNLIMITED,
            team_members=UNLIMITED,
            video_recording=True,
            video_transcription=True,
            team_scheduling=True,
            can_use_whatsapp=True,
            can_use_telegram=True,
            can_use_evolution=True,
            can_use_twilio=True,
        ),
        features=["Unlimited everything"],
    ),
}


@dataclass
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None


def get_quotas(plan: PlanTier) -> PlanQuotas:
    return PLAN_CONFIG[plan].quotas


def within_limit(limit: int, current: int) -> bool:
    """True when one more item fits under a count limit (pages, documents, members)."""
    if limit == UNLIMITED:
        return True
    return current < limit


def can_perform_action(quotas: PlanQuotas, usage: dict, action: str) -> QuotaDecision:
    """
    Decide whether a metered action is allowed.

    `usage` maps ai_interactions / video_minutes / whatsapp_messages /
    telegram_messages to this month's counters.
    """
    if action == "ai":
        if quotas.ai_interactions == 0:
            return QuotaDecision(False, "AI features require Pro plan or higher")
        if quotas.ai_interactions > 0 and usage.get("ai_interactions", 0) >= quotas.ai_interactions:
            return QuotaDecision(False, f"AI quota exceeded ({quotas.ai_interactions}/mo). Upgrade your plan.")
        return QuotaDecision(True)

    if action == "video":
        if quotas.video_minutes == 0:
            return QuotaDecision(False, "Video features require Pro plan or higher")
        if quotas.video_minutes > 0 and usage.get("video_minutes", 0) >= quotas.video_minutes:
            return QuotaDecision(False, f"Video quota exceeded ({quotas.video_minutes} min/mo). Upgrade your plan.")
        return QuotaDecision(True)

    if action == "whatsapp":
        if not quotas.can_use_whatsapp:
            return QuotaDecision(False, "WhatsApp requires Pro plan or higher")
        if quotas.whatsapp_messages > 0 and usage.get("whatsapp_messages", 0) >= quotas.whatsapp_messages:
            return QuotaDecision(
                False, f"WhatsApp quota exceeded ({quotas.whatsapp_messages}/mo). Upgrade your plan."
            )
        return QuotaDecision(True)

    if action == "telegram":
        if not quotas.can_use_telegram:
            return QuotaDecision(False, "Telegram requires Team plan or higher")
        if quotas.telegram_messages > 0 and usage.get("telegram_messages", 0) >= quotas.telegram_messages:
            return QuotaDecision(
                False, f"Telegram quota exceeded ({quotas.telegram_messages}/mo). Upgrade your plan."
            )
        return QuotaDecision(True)

    return QuotaDecision(False, "Unknown action")


def calculate_percentage(used: int, limit: int) -> int:
    if limit in (0, UNLIMITED):
        return 0
    return min(round_half_up(used / limit * 100), 100)


_METERS = (
    ("ai_interactions", "AI interactions"),
    ("video_minutes", "Video minutes"),
    ("whatsapp_messages", "WhatsApp messages"),
    ("telegram_messages", "Telegram messages"),
)


def build_usage_stats(quotas: PlanQuotas, usage: dict) -> dict:
    stats = {}
    for key, _ in _METERS:
        used = usage.get(key, 0)
        limit = getattr(quotas, key)
        stats[key] = {"used": used, "limit": limit, "percentage": calculate_percentage(used, limit)}
    return stats


def usage_warnings(stats: dict) -> list[str]:
    warnings = []
    for key, label in _METERS:
        meter = stats[key]
        if meter["limit"] > 0 and meter["percentage"] >= WARNING_THRESHOLD:
            warnings.append(f"{label}: {meter['used']}/{meter['limit']} ({meter['percentage']}%)")
    return warnings


def plan_for_price_id(price_id: Optional[str]) -> PlanTier:
    """Checkout prices map to TEAM when they match the team price, PRO otherwise."""
    settings = get_settings()
    if price_id and price_id == settings.stripe_price_team:
        return PlanTier.TEAM
    return PlanTier.PRO


def price_id_for_plan(plan: PlanTier) -> Optional[str]:
    settings = get_settings()
    return {
        PlanTier.PRO: settings.stripe_price_pro,
        PlanTier.TEAM: settings.stripe_price_team,
    }.get(plan)
