"""Routing form insights and CSV export."""

import csv
import io
from datetime import datetime, timezone
from types import SimpleNamespace

from anytimebot.routing import RoutedResponse, compute_insights, export_csv

QUESTIONS = [
    {"id": "size", "text": "Company size", "type": "select"},
    {"id": "products", "text": "Products", "type": "multiselect"},
]
MEMBERS = {
    1: SimpleNamespace(id=1, name="Alice", email="alice@example.com"),
    2: SimpleNamespace(id=2, name=None, email="bob@example.com"),
}


def _responses():
    return [
        RoutedResponse(responses={"size": "Enterprise", "products": ["API", "Web"]}, assigned_member_id=1),
        RoutedResponse(responses={"size": "Enterprise"}, assigned_member_id=1),
        RoutedResponse(responses={"size": "Enterprise"}, assigned_member_id=2),
        RoutedResponse(responses={"size": "Startup"}, assigned_member_id=None),
    ]


def test_insights_count_answers_per_question():
    insights = compute_insights(_responses(), QUESTIONS, MEMBERS)

    assert insights["totalResponses"] == 4
    size, products = insights["questions"]
    assert size["responseCounts"] == {"Enterprise": 3, "Startup": 1}
    assert products["responseCounts"] == {"API, Web": 1}


def test_insights_assignment_accuracy():
    insights = compute_insights(_responses(), QUESTIONS, MEMBERS)
    by_answer = {row["answer"]: row for row in insights["assignmentAccuracy"]}

    enterprise = by_answer["Enterprise"]
    assert enterprise["totalResponses"] == 3
    assert enterprise["topAssignedMember"]["name"] == "Alice"
    assert enterprise["assignmentCount"] == 2
    assert enterprise["accuracy"] == 67

    startup = by_answer["Startup"]
    assert startup["topAssignedMember"] is None
    assert startup["accuracy"] == 0


def test_insights_accuracy_rounds_halves_up():
    responses = [RoutedResponse(responses={"size": "Mid"}, assigned_member_id=1)]
    responses += [RoutedResponse(responses={"size": "Mid"}, assigned_member_id=None) for _ in range(7)]

    mid = compute_insights(responses, QUESTIONS, MEMBERS)["assignmentAccuracy"][0]
    assert (mid["assignmentCount"], mid["accuracy"]) == (1, 13)


def test_insights_with_no_responses():
    insights = compute_insights([], QUESTIONS, MEMBERS)
    assert insights["totalResponses"] == 0
    assert insights["assignmentAccuracy"] == []
    assert [q["responseCounts"] for q in insights["questions"]] == [{}, {}]


def test_export_csv_rows():
    submitted = datetime(2030, 1, 2, 3, 4, tzinfo=timezone.utc)
    responses = [
        RoutedResponse(
            responses={"size": "Enterprise", "products": ["API", "Web"]},
            assigned_member_id=2,
            booking_id="b-1",
            guest_name='Jane "JJ" Doe',
            guest_email="jane@example.com",
            submitted_at=submitted,
        ),
        RoutedResponse(responses={}, assigned_member_id=None),
    ]

    rows = list(csv.reader(io.StringIO(export_csv(responses, QUESTIONS, MEMBERS))))

    assert rows[0] == [
        "Booking ID", "Guest Name", "Guest Email", "Booking Time", "Assigned Member",
        "Company size", "Products", "Submitted At",
    ]
    assert rows[1] == [
        "b-1", 'Jane "JJ" Doe', "jane@example.com", "", "bob@example.com",
        "Enterprise", "API; Web", submitted.isoformat(),
    ]
    assert rows[2][4] == "Unassigned"
    assert rows[2][5:7] == ["", ""]
