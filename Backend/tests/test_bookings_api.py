"""
Booking flow through the HTTP API: slots, creation, conflicts, guest
cancel/reschedule with signed tokens and the owner's booking list.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from anytimebot.booking_service import after_booking_cancelled, after_booking_created, load_event_type_context
from anytimebot.booking_tokens import generate_booking_token
from anytimebot.models import Booking, BookingStatus, PlanTier, Team, TeamMember

from conftest import auth_headers, make_event_type, make_page, make_user

DAY = date.today() + timedelta(days=7)


def at(hour: int, minute: int = 0) -> str:
    return datetime(DAY.year, DAY.month, DAY.day, hour, minute, tzinfo=timezone.utc).isoformat()


@pytest.fixture
async def event_type(async_session):
    user = await make_user(async_session)
    page = await make_page(async_session, user)
    return await make_event_type(async_session, page)


async def book(client, event_type_id, start, **fields):
    body = {
        "eventTypeId": event_type_id,
        "guestName": "Gina Guest",
        "guestEmail": "gina@example.com",
        "startTime": start,
        **fields,
    }
    return await client.post("/api/bookings", json=body)


# ────────────────────────────────────────────────────────────────
# Slots and creation
# ────────────────────────────────────────────────────────────────

class TestCreateBooking:

    async def test_create_confirmed_booking(self, client, event_type):
        response = await book(client, event_type.id, at(10), timezone="Europe/Paris")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "CONFIRMED"
        assert data["guestEmail"] == "gina@example.com"
        assert data["timezone"] == "Europe/Paris"
        assert data["eventType"]["name"] == "Intro call"
        assert datetime.fromisoformat(data["endTime"]) - datetime.fromisoformat(data["startTime"]) == timedelta(minutes=30)

    async def test_booking_requiring_confirmation_is_pending(self, client, async_session):
        user = await make_user(async_session)
        page = await make_page(async_session, user)
        event_type = await make_event_type(async_session, page, requires_confirmation=True)

        response = await book(client, event_type.id, at(10))
        assert response.json()["data"]["status"] == "PENDING"

    async def test_signed_links_are_issued(self, client, event_type, async_session):
        response = await book(client, event_type.id, at(10))
        booking_id = response.json()["data"]["id"]

        result = await async_session.execute(select(Booking).where(Booking.id == uuid.UUID(booking_id)))
        booking = result.scalar_one()
        assert booking.cancel_token
        assert booking.reschedule_token

    async def test_overlapping_booking_conflicts(self, client, event_type):
        assert (await book(client, event_type.id, at(10))).status_code == 201

        response = await book(client, event_type.id, at(10, 15), guestEmail="other@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Time slot is already booked"

    async def test_adjacent_booking_is_allowed(self, client, event_type):
        assert (await book(client, event_type.id, at(10))).status_code == 201
        assert (await book(client, event_type.id, at(10, 30))).status_code == 201

    @pytest.mark.parametrize(
        "fields,message",
        [
            ({"guestName": ""}, "Missing required fields"),
            ({"guestEmail": "not-an-email"}, "Invalid email address"),
            ({"guestPhone": "12"}, "Invalid phone number"),
            ({"startTime": "tomorrow"}, "Invalid startTime"),
        ],
    )
    async def test_invalid_input(self, client, event_type, fields, message):
        response = await book(client, event_type.id, at(10), **fields)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == message

    async def test_unknown_event_type(self, client):
        response = await book(client, 9999, at(10))
        assert response.status_code == 404

    async def test_inactive_event_type(self, client, async_session):
        user = await make_user(async_session)
        page = await make_page(async_session, user)
        event_type = await make_event_type(async_session, page, is_active=False)

        response = await book(client, event_type.id, at(10))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Booking page is not active"


class TestCheckAvailability:

    async def test_booked_slot_is_unavailable(self, client, event_type):
        await book(client, event_type.id, at(10))

        response = await client.get(
            "/api/bookings/check-availability", params={"eventTypeId": event_type.id, "date": DAY.isoformat()}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["allSlots"]) == 16
        assert "10:00" in data["allSlots"]
        assert "10:00" not in data["availableSlots"]
        assert "10:30" in data["availableSlots"]
        assert data["dayOfWeek"] == (DAY.weekday() + 1) % 7
        assert data["eventType"] == {"name": "Intro call", "duration": 30, "bufferTime": 0}

    async def test_missing_params(self, client):
        response = await client.get("/api/bookings/check-availability")
        assert response.status_code == 400

    async def test_bad_date(self, client, event_type):
        response = await client.get(
            "/api/bookings/check-availability", params={"eventTypeId": event_type.id, "date": "03/04/2030"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "date must be YYYY-MM-DD"


# ────────────────────────────────────────────────────────────────
# Guest self-service
# ────────────────────────────────────────────────────────────────

class TestGuestCancel:

    async def test_cancel_with_token(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        token = generate_booking_token(booking_id, "cancel")

        response = await client.post(
            f"/api/bookings/{booking_id}/cancel", json={"token": token, "reason": "Conflict came up"}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "CANCELLED"
        assert data["cancellationReason"] == "Conflict came up"

        again = await client.post(f"/api/bookings/{booking_id}/cancel", json={"token": token})
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "Booking is already cancelled"

    async def test_cancelled_slot_can_be_rebooked(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        await client.post(f"/api/bookings/{booking_id}/cancel", json={})

        assert (await book(client, event_type.id, at(10))).status_code == 201

    async def test_reschedule_token_cannot_cancel(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        token = generate_booking_token(booking_id, "reschedule")

        response = await client.post(f"/api/bookings/{booking_id}/cancel", json={"token": token})
        assert response.status_code == 401

    async def test_unknown_booking(self, client):
        response = await client.post("/api/bookings/not-a-uuid/cancel", json={})
        assert response.status_code == 404


class TestGuestReschedule:

    async def test_reschedule_moves_booking(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        token = generate_booking_token(booking_id, "reschedule")

        response = await client.post(
            f"/api/bookings/{booking_id}/reschedule", json={"newStartTime": at(14), "token": token}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert datetime.fromisoformat(data["startTime"]) == datetime.fromisoformat(at(14))
        assert data["status"] == "CONFIRMED"

    async def test_reschedule_into_own_slot_is_allowed(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        response = await client.post(f"/api/bookings/{booking_id}/reschedule", json={"newStartTime": at(10, 15)})
        assert response.status_code == 200

    async def test_reschedule_conflict(self, client, event_type):
        await book(client, event_type.id, at(14))
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]

        response = await client.post(f"/api/bookings/{booking_id}/reschedule", json={"newStartTime": at(14)})
        assert response.status_code == 409

    async def test_cancelled_booking_cannot_be_rescheduled(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        await client.post(f"/api/bookings/{booking_id}/cancel", json={})

        response = await client.post(f"/api/bookings/{booking_id}/reschedule", json={"newStartTime": at(14)})
        assert response.status_code == 400

    async def test_new_start_time_required(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        response = await client.post(f"/api/bookings/{booking_id}/reschedule", json={})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "newStartTime is required"


class TestVerifyToken:

    async def test_valid_token(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(10))).json()["data"]["id"]
        token = generate_booking_token(booking_id, "reschedule")

        response = await client.get("/api/bookings/verify-token", params={"token": token})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["bookingId"] == booking_id
        assert data["action"] == "reschedule"
        assert data["booking"]["guestName"] == "Gina Guest"

    async def test_invalid_token(self, client):
        response = await client.get("/api/bookings/verify-token", params={"token": "garbage"})
        assert response.status_code == 401

    async def test_missing_token(self, client):
        response = await client.get("/api/bookings/verify-token")
        assert response.status_code == 400


# ────────────────────────────────────────────────────────────────
# Owner endpoints
# ────────────────────────────────────────────────────────────────

class TestOwnerBookings:

    async def test_list_is_scoped_and_paginated(self, client, async_session):
        owner = await make_user(async_session)
        page = await make_page(async_session, owner)
        event_type = await make_event_type(async_session, page)
        other = await make_user(async_session, email="other@example.com", username="other")
        other_page = await make_page(async_session, other, slug="other-page")
        other_type = await make_event_type(async_session, other_page)

        for hour in (9, 10, 11):
            await book(client, event_type.id, at(hour))
        await book(client, other_type.id, at(9))

        response = await client.get("/api/bookings", params={"limit": 2}, headers=auth_headers(owner))
        body = response.json()
        assert len(body["data"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
        assert datetime.fromisoformat(body["data"][0]["startTime"]) == datetime.fromisoformat(at(9))

    async def test_filter_by_status(self, client, async_session, event_type):
        owner_headers = auth_headers(await _owner(async_session, event_type))
        booking_id = (await book(client, event_type.id, at(9))).json()["data"]["id"]
        await book(client, event_type.id, at(10))
        await client.post(f"/api/bookings/{booking_id}/cancel", json={})

        response = await client.get("/api/bookings", params={"status": "cancelled"}, headers=owner_headers)
        assert [b["id"] for b in response.json()["data"]] == [booking_id]

        response = await client.get("/api/bookings", params={"status": "bogus"}, headers=owner_headers)
        assert response.status_code == 400

    async def test_other_owner_cannot_read_booking(self, client, async_session, event_type):
        booking_id = (await book(client, event_type.id, at(9))).json()["data"]["id"]
        intruder = await make_user(async_session, email="intruder@example.com", username="intruder")

        response = await client.get(f"/api/bookings/{booking_id}", headers=auth_headers(intruder))
        assert response.status_code == 404

    async def test_owner_confirms_pending_booking(self, client, async_session):
        owner = await make_user(async_session)
        page = await make_page(async_session, owner)
        event_type = await make_event_type(async_session, page, requires_confirmation=True)
        booking_id = (await book(client, event_type.id, at(9))).json()["data"]["id"]

        response = await client.put(
            f"/api/bookings/{booking_id}", json={"status": "CONFIRMED"}, headers=auth_headers(owner)
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "CONFIRMED"

        response = await client.put(
            f"/api/bookings/{booking_id}", json={"status": "COMPLETED"}, headers=auth_headers(owner)
        )
        assert response.status_code == 400

    async def test_delete_is_a_soft_cancel(self, client, async_session, event_type):
        owner = await _owner(async_session, event_type)
        booking_id = (await book(client, event_type.id, at(9))).json()["data"]["id"]

        response = await client.delete(f"/api/bookings/{booking_id}", headers=auth_headers(owner))
        assert response.status_code == 200

        response = await client.get(f"/api/bookings/{booking_id}", headers=auth_headers(owner))
        assert response.json()["data"]["status"] == BookingStatus.CANCELLED.value

    async def test_invite_is_ics(self, client, event_type):
        booking_id = (await book(client, event_type.id, at(9))).json()["data"]["id"]

        response = await client.get(f"/api/bookings/{booking_id}/invite")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/calendar")
        assert "BEGIN:VCALENDAR" in response.text
        assert f"UID:{booking_id}" in response.text


async def _owner(session, event_type):
    _, _, owner = await load_event_type_context(session, event_type.id)
    return owner


class TestTeamBookingCalendar:

    async def test_team_booking_stays_on_owner_calendar(self, async_session):
        owner = await make_user(async_session, plan=PlanTier.TEAM)
        colleague = await make_user(async_session, email="alice@example.com", username="alice")
        team = Team(owner_id=owner.id, name="Sales")
        async_session.add(team)
        await async_session.flush()
        member = TeamMember(team_id=team.id, user_id=colleague.id, email="alice@example.com", name="Alice")
        async_session.add(member)
        await async_session.commit()
        page = await make_page(async_session, owner)
        event_type = await make_event_type(async_session, page, team_id=team.id)

        start = datetime.fromisoformat(at(10))
        booking = Booking(
            event_type_id=event_type.id,
            guest_name="Gina Guest",
            guest_email="gina@example.com",
            start_time=start,
            end_time=start + timedelta(minutes=30),
            status=BookingStatus.CONFIRMED,
            assigned_member_id=member.id,
        )
        async_session.add(booking)
        await async_session.flush()

        create = AsyncMock(return_value="gcal-event-1")
        delete = AsyncMock()
        with patch("anytimebot.booking_service.has_calendar", AsyncMock(return_value=True)), patch(
            "anytimebot.booking_service.create_calendar_event", create
        ), patch("anytimebot.booking_service.delete_calendar_event", delete):
            await after_booking_created(async_session, booking, event_type, owner)
            booking.status = BookingStatus.CANCELLED
            await after_booking_cancelled(async_session, booking, event_type, owner)

        assert create.await_args.args[1] == owner.id
        delete.assert_awaited_once_with(async_session, owner.id, "gcal-event-1")
