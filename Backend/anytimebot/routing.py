"""
Routing form analytics: answer distributions, assignment accuracy, CSV export.
"""

import csv
import io
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from .models import TeamMember
from .utils import round_half_up


@dataclass
class RoutedResponse:
    responses: dict[str, Any]
    assigned_member_id: Optional[int]
    booking_id: Optional[str] = None
    guest_name: str = ""
    guest_email: str = ""
    booking_start: Optional[datetime] = None
    submitted_at: Optional[datetime] = None


def answer_key(answer: Any) -> str:
    if isinstance(answer, list):
        return ", ".join(str(item) for item in answer)
    return str(answer)


def _member_summary(member: Optional[TeamMember]) -> Optional[dict]:
    if member is None:
        return None
    return {"id": member.id, "name": member.name, "email": member.email}


def compute_insights(
    responses: Sequence[RoutedResponse],
    questions: Sequence[dict],
    members: dict[int, TeamMember],
) -> dict:
    """
    Per-question answer counts plus, per answer, how consistently it led to
    the same member (top member count / total x 100).
    """
    counts: dict[str, dict[str, int]] = {q.get("id"): {} for q in questions}
    stats: dict[str, dict] = defaultdict(lambda: {"total": 0, "members": defaultdict(int)})

    for response in responses:
        for question_id, answer in (response.responses or {}).items():
            key = answer_key(answer)
            question_counts = counts.setdefault(question_id, {})
            question_counts[key] = question_counts.get(key, 0) + 1

            stats[key]["total"] += 1
            if response.assigned_member_id is not None:
                stats[key]["members"][response.assigned_member_id] += 1

    accuracy = []
    for answer, stat in stats.items():
        top_member_id, top_count = None, 0
        for member_id, count in stat["members"].items():
            if count > top_count:
                top_member_id, top_count = member_id, count
        accuracy.append(
            {
                "answer": answer,
                "totalResponses": stat["total"],
                "topAssignedMember": _member_summary(members.get(top_member_id)),
                "assignmentCount": top_count,
                "accuracy": round_half_up(top_count / stat["total"] * 100) if stat["total"] else 0,
            }
        )

    return {
        "totalResponses": len(responses),
        "questions": [
            {
                "id": q.get("id"),
                "text": q.get("text"),
                "type": q.get("type"),
                "responseCounts": counts.get(q.get("id"), {}),
            }
            for q in questions
        ],
        "assignmentAccuracy": accuracy,
    }


def export_csv(
    responses: Sequence[RoutedResponse],
    questions: Sequence[dict],
    members: dict[int, TeamMember],
) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(
        ["Booking ID", "Guest Name", "Guest Email", "Booking Time", "Assigned Member"]
        + [q.get("text") or q.get("id") for q in questions]
        + ["Submitted At"]
    )
    for response in responses:
        member = members.get(response.assigned_member_id)
        answers = response.responses or {}
        writer.writerow(
            [
                response.booking_id or "",
                response.guest_name,
                response.guest_email,
                response.booking_start.isoformat() if response.booking_start else "",
                (member.name or member.email) if member else "Unassigned",
            ]
            + ["; ".join(map(str, a)) if isinstance(a, list) else str(a or "") for a in (answers.get(q.get("id")) for q in questions)]
            + [response.submitted_at.isoformat() if response.submitted_at else ""]
        )
    return buffer.getvalue()
