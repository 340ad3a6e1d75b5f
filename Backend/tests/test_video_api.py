"""Video sessions and the Daily.co webhook."""

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from anytimebot.core.config import get_settings
from anytimebot.models import Booking, BookingStatus, Usage, VideoProvider, VideoSession
from anytimebot.routes_video import _event_fields

from conftest import auth_headers, make_event_type, make_page, make_user

ROOM = "meetmind-abc12345-1700000000000"


async def _video_booking(session, provider=VideoProvider.DAILY):
    user = await make_user(session)
    page = await make_page(session, user)
    event_type = await make_event_type(
        session, page, video_provider=provider, video_link="https://meet.example.com/room"
    )
    start = datetime.now(timezone.utc) + timedelta(days=1)
    booking = Booking(
        event_type_id=event_type.id,
        guest_name="Gina",
        guest_email="gina@example.com",
        start_time=start,
        end_time=start + timedelta(minutes=30),
        status=BookingStatus.CONFIRMED,
    )
    session.add(booking)
    await session.commit()
    return user, booking


async def _with_room(session, booking) -> VideoSession:
    video = VideoSession(
        booking_id=booking.id,
        provider=VideoProvider.DAILY,
        room_name=ROOM,
        room_url=f"https://acme.daily.co/{ROOM}",
        host_room_url=f"https://acme.daily.co/{ROOM}?t=host",
    )
    session.add(video)
    await session.commit()
    return video


def test_event_fields_flat_and_nested():
    flat = {"event": "room.closed", "room": "r1"}
    assert _event_fields(flat) == ("room.closed", "r1", flat)
    event, room, body = _event_fields({"type": "recording.ready", "payload": {"room_name": "r2", "duration": 60}})
    assert (event, room, body["duration"]) == ("recording.ready", "r2", 60)
    assert _event_fields({"type": "x", "payload": {"room": {"name": "r3"}}})[1] == "r3"


class TestVideoSessions:

    async def test_external_provider_uses_event_link(self, client, async_session):
        user, booking = await _video_booking(async_session, provider=VideoProvider.EXTERNAL)

        response = await client.post(
            "/api/video-sessions", json={"bookingId": str(booking.id)}, headers=auth_headers(user)
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["provider"] == "EXTERNAL"
        assert data["roomUrl"] == "https://meet.example.com/room"
        assert data["hostRoomUrl"] == "https://meet.example.com/room"

        again = await client.post(
            "/api/video-sessions", json={"bookingId": str(booking.id)}, headers=auth_headers(user)
        )
        assert again.json()["data"]["id"] == data["id"]

    async def test_daily_room_is_created(self, client, async_session):
        user, booking = await _video_booking(async_session)
        room = {"name": "meetmind-room", "url": "https://acme.daily.co/meetmind-room"}

        with patch("anytimebot.video_session.daily.create_room", AsyncMock(return_value=room)), patch(
            "anytimebot.video_session.daily.create_meeting_token", AsyncMock(return_value="tok")
        ):
            response = await client.post(
                "/api/video-sessions", json={"bookingId": str(booking.id)}, headers=auth_headers(user)
            )

        data = response.json()["data"]
        assert data["roomName"] == "meetmind-room"
        assert data["hostRoomUrl"] == "https://acme.daily.co/meetmind-room?t=tok"

    async def test_video_disabled(self, client, async_session):
        user, booking = await _video_booking(async_session, provider=VideoProvider.NONE)
        response = await client.post(
            "/api/video-sessions", json={"bookingId": str(booking.id)}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Video is not enabled for this event type"

    async def test_other_owner_cannot_create(self, client, async_session):
        _, booking = await _video_booking(async_session, provider=VideoProvider.EXTERNAL)
        intruder = await make_user(async_session, email="intruder@example.com", username="intruder")
        response = await client.post(
            "/api/video-sessions", json={"bookingId": str(booking.id)}, headers=auth_headers(intruder)
        )
        assert response.status_code == 404

    async def test_lookup_hides_host_url(self, client, async_session):
        _, booking = await _video_booking(async_session)
        await _with_room(async_session, booking)

        response = await client.get(f"/api/video-sessions/{booking.id}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["roomName"] == ROOM
        assert "hostRoomUrl" not in data

    async def test_lookup_missing(self, client):
        response = await client.get(f"/api/video-sessions/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Video session not found"

    async def test_consent(self, client, async_session):
        _, booking = await _video_booking(async_session)
        await _with_room(async_session, booking)

        response = await client.post(
            "/api/video-sessions/consent", json={"bookingId": str(booking.id), "consent": True}
        )
        assert response.json()["data"]["recordingConsent"] is True

    async def test_consent_must_be_boolean(self, client, async_session):
        _, booking = await _video_booking(async_session)
        response = await client.post(
            "/api/video-sessions/consent", json={"bookingId": str(booking.id), "consent": "yes"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid request"


class TestDailyWebhook:

    async def test_room_closed_completes_booking(self, client, async_session):
        _, booking = await _video_booking(async_session)
        video = await _with_room(async_session, booking)

        with patch(
            "anytimebot.routes_video.get_latest_recording_url",
            AsyncMock(return_value="https://recordings.test/1.mp4"),
        ):
            response = await client.post("/api/webhooks/daily", json={"event": "room.closed", "room": ROOM})

        assert response.json() == {"received": True}
        await async_session.refresh(booking)
        await async_session.refresh(video)
        assert booking.status == BookingStatus.COMPLETED
        assert video.ended_at is not None
        assert video.recording_url == "https://recordings.test/1.mp4"

    async def test_recording_ready_counts_video_minutes(self, client, async_session):
        user, booking = await _video_booking(async_session)
        video = await _with_room(async_session, booking)

        response = await client.post(
            "/api/webhooks/daily",
            json={
                "type": "recording.ready",
                "payload": {"room_name": ROOM, "duration": 1290, "download_link": "https://recordings.test/2.mp4"},
            },
        )
        assert response.json() == {"received": True}

        await async_session.refresh(video)
        assert video.duration_minutes == 22
        assert video.recording_url == "https://recordings.test/2.mp4"
        usage = (await async_session.execute(select(Usage).where(Usage.user_id == user.id))).scalar_one()
        await async_session.refresh(usage)
        assert usage.video_minutes == 22

    async def test_recording_minutes_round_halves_up(self, client, async_session):
        user, booking = await _video_booking(async_session)
        video = await _with_room(async_session, booking)

        await client.post(
            "/api/webhooks/daily",
            json={"type": "recording.ready", "payload": {"room_name": ROOM, "duration": 150}},
        )

        await async_session.refresh(video)
        assert video.duration_minutes == 3
        usage = (await async_session.execute(select(Usage).where(Usage.user_id == user.id))).scalar_one()
        await async_session.refresh(usage)
        assert usage.video_minutes == 3

    async def test_transcription_ready_stores_summary(self, client, async_session):
        _, booking = await _video_booking(async_session)
        video = await _with_room(async_session, booking)

        response = await client.post(
            "/api/webhooks/daily",
            json={"event": "transcription.ready", "room": ROOM, "transcript": "We agreed on the plan."},
        )
        assert response.json() == {"received": True}

        await async_session.refresh(video)
        assert video.transcript == "We agreed on the plan."
        assert video.summary["summary"] == "We agreed on the plan."

    async def test_unknown_room_is_ignored(self, client):
        response = await client.post("/api/webhooks/daily", json={"event": "room.closed", "room": "nope"})
        assert response.json() == {"received": True, "ignored": True}

    async def test_unhandled_event_is_ignored(self, client, async_session):
        _, booking = await _video_booking(async_session)
        await _with_room(async_session, booking)
        response = await client.post("/api/webhooks/daily", json={"event": "participant.joined", "room": ROOM})
        assert response.json() == {"received": True, "ignored": True}

    async def test_invalid_payload(self, client):
        response = await client.post(
            "/api/webhooks/daily", content="not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400


WEBHOOK_SECRET = base64.b64encode(b"daily-webhook-secret").decode()


def _sign(body: bytes, timestamp: str) -> str:
    key = base64.b64decode(WEBHOOK_SECRET)
    return base64.b64encode(hmac.new(key, timestamp.encode() + b"." + body, hashlib.sha256).digest()).decode()


class TestDailyWebhookSignature:

    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "daily_webhook_secret", WEBHOOK_SECRET)

    async def test_signed_request_is_accepted(self, client):
        body = json.dumps({"event": "room.closed", "room": "unknown-room"}).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Timestamp": "1700000000",
            "X-Webhook-Signature": _sign(body, "1700000000"),
        }

        response = await client.post("/api/webhooks/daily", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"received": True, "ignored": True}

    async def test_unsigned_request_is_rejected(self, client):
        response = await client.post("/api/webhooks/daily", json={"event": "room.closed", "room": ROOM})
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Invalid signature"

    async def test_tampered_body_is_rejected(self, client):
        signed = json.dumps({"event": "room.closed", "room": "unknown-room"}).encode()
        headers = {"X-Webhook-Timestamp": "1700000000", "X-Webhook-Signature": _sign(signed, "1700000000")}

        response = await client.post(
            "/api/webhooks/daily", content=signed.replace(b"unknown-room", ROOM.encode()), headers=headers
        )
        assert response.status_code == 403
