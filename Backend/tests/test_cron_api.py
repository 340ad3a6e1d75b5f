"""Scheduled job endpoints: auth, usage reset, reminders and briefings."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from anytimebot.models import Booking, BookingStatus, MeetingBriefing, Usage

from conftest import make_event_type, make_page, make_user

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


async def _booking_in(session, delta: timedelta, status=BookingStatus.CONFIRMED) -> Booking:
    user = await make_user(session)
    page = await make_page(session, user)
    event_type = await make_event_type(session, page)
    start = datetime.now(timezone.utc) + delta
    booking = Booking(
        event_type_id=event_type.id,
        guest_name="Gina",
        guest_email="gina@example.com",
        start_time=start,
        end_time=start + timedelta(minutes=30),
        status=status,
    )
    session.add(booking)
    await session.commit()
    return booking


class TestCronAuth:

    async def test_missing_secret(self, client):
        response = await client.post("/api/cron/reset-usage")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Unauthorized"

    async def test_wrong_secret(self, client):
        response = await client.get("/api/cron/send-reminders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


async def test_reset_usage(client, async_session):
    user = await make_user(async_session)
    usage = (await async_session.execute(select(Usage).where(Usage.user_id == user.id))).scalar_one()
    usage.ai_interactions = 42
    usage.last_reset_at = datetime.now(timezone.utc) - timedelta(days=90)
    await async_session.commit()

    response = await client.post("/api/cron/reset-usage", headers=CRON_HEADERS)
    assert response.status_code == 200
    assert response.json()["data"] == {"reset": 1}

    await async_session.refresh(usage)
    assert usage.ai_interactions == 0


class TestSendReminders:

    async def test_reminder_sent_once(self, client, async_session):
        booking = await _booking_in(async_session, timedelta(hours=23, minutes=30))

        with patch("anytimebot.routes_cron.send_booking_reminder", AsyncMock(return_value=True)) as send:
            response = await client.post("/api/cron/send-reminders", headers=CRON_HEADERS)
            again = await client.post("/api/cron/send-reminders", headers=CRON_HEADERS)

        assert response.json()["data"] == {"total": 1, "successful": 1, "failed": 0}
        assert again.json()["data"]["total"] == 0
        send.assert_awaited_once()

        await async_session.refresh(booking)
        assert booking.reminder_sent_at is not None

    async def test_failed_send_is_retried_later(self, client, async_session):
        booking = await _booking_in(async_session, timedelta(hours=23, minutes=30))

        with patch("anytimebot.routes_cron.send_booking_reminder", AsyncMock(return_value=False)):
            response = await client.post("/api/cron/send-reminders", headers=CRON_HEADERS)

        assert response.json()["data"] == {"total": 1, "successful": 0, "failed": 1}
        await async_session.refresh(booking)
        assert booking.reminder_sent_at is None

    async def test_outside_window_or_cancelled(self, client, async_session):
        await _booking_in(async_session, timedelta(hours=5))
        other = await make_user(async_session, email="b@example.com", username="b")
        page = await make_page(async_session, other, slug="other")
        event_type = await make_event_type(async_session, page)
        start = datetime.now(timezone.utc) + timedelta(hours=23, minutes=30)
        async_session.add(
            Booking(
                event_type_id=event_type.id,
                guest_name="Cal",
                guest_email="cal@example.com",
                start_time=start,
                end_time=start + timedelta(minutes=30),
                status=BookingStatus.CANCELLED,
            )
        )
        await async_session.commit()

        with patch("anytimebot.routes_cron.send_booking_reminder", AsyncMock(return_value=True)) as send:
            response = await client.post("/api/cron/send-reminders", headers=CRON_HEADERS)

        assert response.json()["data"]["total"] == 0
        send.assert_not_awaited()


async def test_send_briefings(client, async_session):
    booking = await _booking_in(async_session, timedelta(minutes=60))

    response = await client.post("/api/cron/send-briefings", headers=CRON_HEADERS)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total"] == 1
    assert data["successful"] == 1
    assert data["results"][0]["bookingId"] == str(booking.id)
    assert data["results"][0]["generated"] is True
    assert data["results"][0]["emailSent"] is False

    result = await async_session.execute(select(MeetingBriefing).where(MeetingBriefing.booking_id == booking.id))
    assert result.scalar_one_or_none() is not None


async def test_host_brief_is_emailed_once_when_guest_delivery_fails(client, async_session):
    booking = await _booking_in(async_session, timedelta(minutes=60))
    host_email = AsyncMock(return_value=True)

    with patch("anytimebot.briefings.send_guest_briefing", AsyncMock(return_value=False)) as guest, patch(
        "anytimebot.briefings.send_email", host_email
    ):
        for _ in range(2):
            response = await client.post("/api/cron/send-briefings", headers=CRON_HEADERS)
            assert response.json()["data"]["successful"] == 1

    assert guest.await_count == 2
    host_email.assert_awaited_once()
    assert host_email.await_args.args[0] == "owner@example.com"

    briefing = (
        await async_session.execute(select(MeetingBriefing).where(MeetingBriefing.booking_id == booking.id))
    ).scalar_one()
    await async_session.refresh(briefing)
    assert (briefing.email_sent, briefing.host_email_sent) == (False, True)
