"""
Team assignment: match scoring, routing rules and mode dispatch.

Calendar lookups are patched; every member counts as connected unless a
test says otherwise.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from anytimebot.models import AssignmentMode, Team, TeamMember
from anytimebot.team_assignment import (
    assign_team_member,
    calculate_match_score,
    detect_languages,
    evaluate_routing_rules,
)

from conftest import make_event_type, make_page, make_user

START = datetime(2030, 6, 3, 15, 0, tzinfo=timezone.utc)
END = START + timedelta(minutes=30)


def member(skills=(), languages=()):
    return SimpleNamespace(skills=list(skills), languages=list(languages))


# ────────────────────────────────────────────────────────────────
# calculate_match_score
# ────────────────────────────────────────────────────────────────

class TestMatchScore:

    def test_skill_and_language_answers(self):
        score = calculate_match_score(
            member(skills=["Enterprise"], languages=["Spanish"]),
            routing_responses={"q1": "Enterprise", "q2": "Spanish"},
        )
        # one skill match, one language match, plus a keyword hit for each word
        assert score == 50 + 40 + 10 + 10

    def test_multi_select_answers_match_exactly(self):
        score = calculate_match_score(
            member(skills=["billing"]),
            routing_responses={"q1": ["billing", "support"]},
        )
        assert score == 50

    def test_empty_answers_score_nothing(self):
        assert calculate_match_score(member(skills=["sales"]), routing_responses={"q1": ""}) == 0

    def test_legacy_form_data(self):
        score = calculate_match_score(
            member(skills=["sales"], languages=["Spanish", "English"]),
            form_data={"topic": "Sales question", "message": "Hola, necesito ayuda"},
        )
        assert score == 50 + 30 + 10

    def test_mixed_language_message_scores_each_speaker(self):
        message = {"message": "Hola, ich brauche Hilfe"}
        assert calculate_match_score(member(languages=["Spanish"]), form_data=message) == 30
        assert calculate_match_score(member(languages=["German"]), form_data=message) == 30
        assert calculate_match_score(member(languages=["French"]), form_data=message) == 0

    def test_no_input_scores_zero(self):
        assert calculate_match_score(member(skills=["sales"])) == 0


def test_detect_languages():
    assert detect_languages("Hola, gracias") == {"spanish"}
    assert detect_languages("Hallo und danke") == {"german"}
    assert detect_languages("Hola! Ich brauche Hilfe") == {"spanish", "german"}
    assert detect_languages("Hello there") == set()


# ────────────────────────────────────────────────────────────────
# evaluate_routing_rules
# ────────────────────────────────────────────────────────────────

class TestRoutingRules:

    RULES = [
        {"questionId": "size", "operator": "equals", "value": "Enterprise", "assignTo": "7"},
        {"questionId": "notes", "operator": "contains", "value": "urgent", "assignTo": "8"},
        {"questionId": "products", "operator": "includes", "value": "API", "assignTo": "9"},
    ]

    def test_equals(self):
        assert evaluate_routing_rules(self.RULES, {"size": "Enterprise"}) == "7"
        assert evaluate_routing_rules(self.RULES, {"size": "Startup"}) is None

    def test_contains_is_case_insensitive(self):
        assert evaluate_routing_rules(self.RULES, {"notes": "This is URGENT please"}) == "8"

    def test_includes_checks_list_membership(self):
        assert evaluate_routing_rules(self.RULES, {"products": ["Web", "API"]}) == "9"
        assert evaluate_routing_rules(self.RULES, {"products": "API"}) is None

    def test_first_matching_rule_wins(self):
        responses = {"size": "Enterprise", "notes": "urgent"}
        assert evaluate_routing_rules(self.RULES, responses) == "7"

    def test_wrapped_rules_object(self):
        assert evaluate_routing_rules({"rules": self.RULES}, {"size": "Enterprise"}) == "7"

    @pytest.mark.parametrize("rules,responses", [(None, {"size": "x"}), ([], {"size": "x"}), (RULES, None)])
    def test_nothing_to_evaluate(self, rules, responses):
        assert evaluate_routing_rules(rules, responses) is None


# ────────────────────────────────────────────────────────────────
# assign_team_member (database)
# ────────────────────────────────────────────────────────────────

async def _team_event_type(session, mode, **fields):
    owner = await make_user(session)
    alice = await make_user(session, email="alice@example.com", username="alice")
    bob = await make_user(session, email="bob@example.com", username="bob")
    team = Team(owner_id=owner.id, name="Sales")
    session.add(team)
    await session.flush()
    members = [
        TeamMember(team_id=team.id, user_id=alice.id, email=alice.email, name="Alice", skills=["enterprise"]),
        TeamMember(team_id=team.id, user_id=bob.id, email=bob.email, name="Bob", languages=["Spanish"]),
    ]
    session.add_all(members)
    await session.commit()
    page = await make_page(session, owner)
    event_type = await make_event_type(session, page, team_id=team.id, assignment_mode=mode, **fields)
    return event_type, members


def _calendar(busy_user_ids=(), connected=True):
    def is_free(session, user_id, start, end):
        return user_id not in busy_user_ids

    return (
        patch("anytimebot.team_assignment.has_calendar", AsyncMock(return_value=connected)),
        patch("anytimebot.team_assignment.is_user_free", AsyncMock(side_effect=is_free)),
    )


class TestAssignTeamMember:

    async def test_round_robin_prefers_never_assigned(self, async_session):
        event_type, (alice, bob) = await _team_event_type(async_session, AssignmentMode.ROUND_ROBIN)
        alice.last_assigned_at = START - timedelta(days=1)
        await async_session.commit()

        calendar, free = _calendar()
        with calendar, free:
            result = await assign_team_member(async_session, event_type, START, END)

        assert result.member.id == bob.id
        assert result.reason == "round_robin"
        assert bob.last_assigned_at is not None

    async def test_round_robin_skips_busy_members(self, async_session):
        event_type, (alice, bob) = await _team_event_type(async_session, AssignmentMode.ROUND_ROBIN)

        calendar, free = _calendar(busy_user_ids={alice.user_id})
        with calendar, free:
            result = await assign_team_member(async_session, event_type, START, END)

        assert result.member.id == bob.id

    async def test_routing_rule_overrides_rotation(self, async_session):
        event_type, (alice, bob) = await _team_event_type(
            async_session,
            AssignmentMode.ROUND_ROBIN,
            enable_routing=True,
            routing_rules=[{"questionId": "size", "operator": "equals", "value": "Enterprise", "assignTo": "alice@example.com"}],
        )
        alice.last_assigned_at = START
        await async_session.commit()

        calendar, free = _calendar()
        with calendar, free:
            result = await assign_team_member(
                async_session, event_type, START, END, routing_responses={"size": "Enterprise"}
            )

        assert result.member.id == alice.id
        assert result.reason == "routing_rule"

    async def test_smart_scores_language_match(self, async_session):
        event_type, (alice, bob) = await _team_event_type(async_session, AssignmentMode.SMART)

        calendar, free = _calendar()
        with calendar, free:
            result = await assign_team_member(
                async_session, event_type, START, END, routing_responses={"language": "Spanish"}
            )

        assert result.member.id == bob.id
        assert result.reason == "smart"

    async def test_collective_needs_everyone_free(self, async_session):
        event_type, (alice, bob) = await _team_event_type(async_session, AssignmentMode.COLLECTIVE)

        calendar, free = _calendar()
        with calendar, free:
            result = await assign_team_member(async_session, event_type, START, END)
        assert [m.id for m in result.members] == [alice.id, bob.id]

        calendar, free = _calendar(busy_user_ids={bob.user_id})
        with calendar, free:
            assert await assign_team_member(async_session, event_type, START, END) is None

    async def test_members_without_calendar_are_never_assigned(self, async_session):
        event_type, _ = await _team_event_type(async_session, AssignmentMode.ROUND_ROBIN)

        calendar, free = _calendar(connected=False)
        with calendar, free:
            assert await assign_team_member(async_session, event_type, START, END) is None

    async def test_individual_event_type_is_not_assigned(self, async_session):
        user = await make_user(async_session)
        page = await make_page(async_session, user)
        event_type = await make_event_type(async_session, page)
        assert await assign_team_member(async_session, event_type, START, END) is None
