"""
TEAM ASSIGNMENT

Picks the team member(s) who host a booking of a team event type.

MODES:
    collective   every active member with a connected calendar must be free;
                 all of them host (the first is recorded on the booking)
    round_robin  routing rules first, then members by lastAssignedAt
                 (never-assigned first); the first free member wins
    smart        routing rules first, then every free member is scored:
                 100 - 5 x (bookings assigned in the last 7 days) + match score

A member counts as free when their Google Calendar reports no busy block
in [start, end). Members without a connected calendar are never assigned.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .google_calendar import has_calendar, is_user_free
from .models import AssignmentMode, Booking, EventType, TeamMember

logger = logging.getLogger(__name__)

BASE_SCORE = 100
WORKLOAD_PENALTY = 5
WORKLOAD_WINDOW_DAYS = 7

SKILL_MATCH_POINTS = 50
LANGUAGE_MATCH_POINTS = 40
KEYWORD_MATCH_POINTS = 10
LEGACY_LANGUAGE_POINTS = 30
LEGACY_ENGLISH_POINTS = 10

_LANGUAGE_PATTERNS = {
    "spanish": re.compile(r"\b(hola|gracias|por favor|necesito)\b", re.IGNORECASE),
    "german": re.compile(r"\b(hallo|danke|bitte|ich brauche)\b", re.IGNORECASE),
}


@dataclass
class AssignmentResult:
    member: TeamMember
    members: list[TeamMember] = field(default_factory=list)
    reason: str = ""


# ────────────────────────────────────────────────────────────────
# Pure scoring helpers
# ────────────────────────────────────────────────────────────────

def detect_languages(message: str) -> set[str]:
    """Every known language with a greeting or phrase present in the message."""
    return {language for language, pattern in _LANGUAGE_PATTERNS.items() if pattern.search(message)}


def _answer_matches(answer: Any, value: str) -> bool:
    if isinstance(answer, str):
        return value.lower() in answer.lower()
    if isinstance(answer, list):
        return value in answer
    return False


def calculate_match_score(
    member: Any,
    form_data: Optional[dict] = None,
    routing_responses: Optional[dict] = None,
) -> int:
    """
    Skill and language affinity between a member and the guest's answers.

    `member` only needs `skills` and `languages` lists.
    """
    skills = list(member.skills or [])
    languages = list(member.languages or [])
    score = 0

    if routing_responses:
        for answer in routing_responses.values():
            if not answer:
                continue
            score += SKILL_MATCH_POINTS * sum(1 for skill in skills if _answer_matches(answer, skill))
            score += LANGUAGE_MATCH_POINTS * sum(1 for lang in languages if _answer_matches(answer, lang))

            if isinstance(answer, str):
                for word in (w for w in answer.lower().split() if len(w) > 3):
                    if any(s.lower() in word or word in s.lower() for s in skills):
                        score += KEYWORD_MATCH_POINTS
                    if any(l.lower() in word or word in l.lower() for l in languages):
                        score += KEYWORD_MATCH_POINTS
        return score

    if form_data:
        topic = str(form_data.get("topic") or "").lower()
        if topic and any(skill.lower() in topic for skill in skills):
            score += SKILL_MATCH_POINTS

        message = str(form_data.get("message") or "")
        if message:
            detected = detect_languages(message)
            for lang in (l.lower() for l in languages):
                if lang in detected:
                    score += LEGACY_LANGUAGE_POINTS
                elif lang == "english":
                    score += LEGACY_ENGLISH_POINTS

    return score


def _rules_list(routing_rules: Any) -> list[dict]:
    if isinstance(routing_rules, dict):
        routing_rules = routing_rules.get("rules")
    return [rule for rule in routing_rules or [] if isinstance(rule, dict)]


def evaluate_routing_rules(routing_rules: Any, responses: Optional[dict]) -> Optional[str]:
    """Return the `assignTo` of the first matching rule, or None."""
    if not routing_rules or not responses:
        return None

    for rule in _rules_list(routing_rules):
        response = responses.get(rule.get("questionId"))
        assign_to = rule.get("assignTo")
        value = rule.get("value")
        if not response or assign_to is None:
            continue

        operator = rule.get("operator", "equals")
        if operator == "contains":
            matches = isinstance(response, str) and value is not None and str(value).lower() in response.lower()
        elif operator == "includes":
            matches = isinstance(response, list) and value in response
        else:
            matches = response == value

        if matches:
            return str(assign_to)
    return None


def _find_member(members: Sequence[TeamMember], target: str) -> Optional[TeamMember]:
    for member in members:
        if target in (str(member.id), member.email, str(member.user_id)):
            return member
    return None


# ────────────────────────────────────────────────────────────────
# Assignment
# ────────────────────────────────────────────────────────────────

async def get_active_members(session: AsyncSession, team_id: int) -> list[TeamMember]:
    result = await session.execute(
        select(TeamMember)
        .where(TeamMember.team_id == team_id, TeamMember.is_active.is_(True))
        .order_by(TeamMember.id)
    )
    return list(result.scalars().all())


async def recent_booking_count(session: AsyncSession, member_id: int, days: int = WORKLOAD_WINDOW_DAYS) -> int:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    result = await session.execute(
        select(func.count(Booking.id)).where(
            Booking.assigned_member_id == member_id,
            Booking.created_at >= since,
        )
    )
    return result.scalar_one()


async def _members_with_calendar(session: AsyncSession, members: Sequence[TeamMember]) -> list[TeamMember]:
    return [m for m in members if await has_calendar(session, m.user_id)]


async def _mark_assigned(session: AsyncSession, member: TeamMember) -> None:
    member.last_assigned_at = datetime.now(timezone.utc)
    await session.flush()


async def _rule_based_member(
    session: AsyncSession,
    event_type: EventType,
    members: Sequence[TeamMember],
    start: datetime,
    end: datetime,
    routing_responses: Optional[dict],
) -> Optional[TeamMember]:
    if not event_type.enable_routing or not event_type.routing_rules:
        return None
    target = evaluate_routing_rules(event_type.routing_rules, routing_responses)
    if target is None:
        return None
    member = _find_member(members, target)
    if member is None:
        logger.info(f"Routing rule target {target} is not an active member of team {event_type.team_id}")
        return None
    if not await is_user_free(session, member.user_id, start, end):
        return None
    return member


async def assign_collective(
    session: AsyncSession,
    members: Sequence[TeamMember],
    start: datetime,
    end: datetime,
) -> Optional[AssignmentResult]:
    with_calendar = await _members_with_calendar(session, members)
    if not with_calendar:
        return None
    for member in with_calendar:
        if not await is_user_free(session, member.user_id, start, end):
            return None
    return AssignmentResult(member=with_calendar[0], members=with_calendar, reason="collective")


async def assign_round_robin(
    session: AsyncSession,
    event_type: EventType,
    members: Sequence[TeamMember],
    start: datetime,
    end: datetime,
    routing_responses: Optional[dict] = None,
) -> Optional[AssignmentResult]:
    ruled = await _rule_based_member(session, event_type, members, start, end, routing_responses)
    if ruled is not None:
        await _mark_assigned(session, ruled)
        return AssignmentResult(member=ruled, members=[ruled], reason="routing_rule")

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(members, key=lambda m: m.last_assigned_at or epoch)
    for member in await _members_with_calendar(session, ordered):
        if await is_user_free(session, member.user_id, start, end):
            await _mark_assigned(session, member)
            return AssignmentResult(member=member, members=[member], reason="round_robin")
    return None


async def assign_smart(
    session: AsyncSession,
    event_type: EventType,
    members: Sequence[TeamMember],
    start: datetime,
    end: datetime,
    form_data: Optional[dict] = None,
    routing_responses: Optional[dict] = None,
) -> Optional[AssignmentResult]:
    ruled = await _rule_based_member(session, event_type, members, start, end, routing_responses)
    if ruled is not None:
        await _mark_assigned(session, ruled)
        return AssignmentResult(member=ruled, members=[ruled], reason="routing_rule")

    scored: list[tuple[int, TeamMember]] = []
    for member in await _members_with_calendar(session, members):
        if not await is_user_free(session, member.user_id, start, end):
            continue
        workload = await recent_booking_count(session, member.id)
        score = BASE_SCORE - workload * WORKLOAD_PENALTY
        score += calculate_match_score(member, form_data, routing_responses)
        scored.append((score, member))

    if not scored:
        return None

    # Stable: ties keep member order
    best_score, best = max(scored, key=lambda item: item[0])
    logger.info(f"Smart assignment picked member {best.id} with score {best_score}")
    await _mark_assigned(session, best)
    return AssignmentResult(member=best, members=[best], reason="smart")


async def assign_team_member(
    session: AsyncSession,
    event_type: EventType,
    start: datetime,
    end: datetime,
    form_data: Optional[dict] = None,
    routing_responses: Optional[dict] = None,
) -> Optional[AssignmentResult]:
    """Dispatch to the event type's assignment mode; None when nobody can host."""
    if event_type.team_id is None:
        return None

    members = await get_active_members(session, event_type.team_id)
    if not members:
        return None

    mode = event_type.assignment_mode
    if mode == AssignmentMode.COLLECTIVE:
        return await assign_collective(session, members, start, end)
    if mode == AssignmentMode.ROUND_ROBIN:
        return await assign_round_robin(session, event_type, members, start, end, routing_responses)
    if mode == AssignmentMode.SMART:
        return await assign_smart(session, event_type, members, start, end, form_data, routing_responses)
    return None
