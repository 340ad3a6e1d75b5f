"""Assistant configuration, documents, public chat and the WhatsApp webhooks."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy import select
from twilio.request_validator import RequestValidator

from anytimebot.bot import NO_SLOTS_REPLY, SLOTS_HEADER, _scheduling_reply
from anytimebot.core.config import get_settings
from anytimebot.models import Bot, MessageDirection, PlanTier, Usage, WhatsAppMessage
from anytimebot.routes_bot import _check_redirect_target

from conftest import auth_headers, make_event_type, make_page, make_user


async def _bot(session, user, **fields) -> Bot:
    bot = Bot(user_id=user.id, **fields)
    session.add(bot)
    await session.commit()
    return bot


async def _usage(session, user_id) -> Usage:
    result = await session.execute(
        select(Usage).where(Usage.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


# ────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────

class TestBotConfig:

    async def test_defaults_before_configuration(self, client, async_session):
        user = await make_user(async_session)
        response = await client.get("/api/bot/config", headers=auth_headers(user))
        data = response.json()["data"]
        assert data["id"] is None
        assert data["name"] == "MindBot"
        assert data["isActive"] is False

    async def test_save_is_an_upsert(self, client, async_session):
        user = await make_user(async_session)
        first = await client.post(
            "/api/bot/config", json={"name": "Scheduler", "tone": "friendly"}, headers=auth_headers(user)
        )
        second = await client.post("/api/bot/config", json={"greeting": "Hey there!"}, headers=auth_headers(user))

        assert first.json()["data"]["id"] == second.json()["data"]["id"]
        data = second.json()["data"]
        assert (data["name"], data["tone"], data["greeting"], data["isActive"]) == (
            "Scheduler",
            "friendly",
            "Hey there!",
            True,
        )

    async def test_invalid_tone(self, client, async_session):
        user = await make_user(async_session)
        response = await client.post("/api/bot/config", json={"tone": "sarcastic"}, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Tone must be one of: professional, friendly, casual, formal"


class TestDocuments:

    async def test_bot_required(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        response = await client.post(
            "/api/bot/documents", json={"text": "Our office hours are 9 to 5."}, headers=auth_headers(user)
        )
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Bot not found. Configure your bot first."

    async def test_text_document_lifecycle(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, user)

        created = await client.post(
            "/api/bot/documents",
            json={"text": "Our office hours are 9 to 5.", "fileName": "hours"},
            headers=auth_headers(user),
        )
        assert created.status_code == 201
        document = created.json()["data"]
        assert (document["fileName"], document["fileType"]) == ("hours", "text")

        listing = await client.get("/api/bot/documents", headers=auth_headers(user))
        assert [d["id"] for d in listing.json()["data"]] == [document["id"]]

        deleted = await client.delete(f"/api/bot/documents/{document['id']}", headers=auth_headers(user))
        assert deleted.json()["data"] == {"deleted": True, "id": document["id"]}

    @pytest.mark.parametrize(
        "url, message",
        [
            ("file:///etc/passwd", "Only http and https URLs are supported"),
            ("ftp://example.com/notes.txt", "Only http and https URLs are supported"),
            ("http://localhost:8000/admin", "URL must point to a public host"),
            ("http://127.0.0.1/notes.txt", "URL must point to a public host"),
            ("http://10.0.0.5/notes.txt", "URL must point to a public host"),
            ("http://[::1]/notes.txt", "URL must point to a public host"),
        ],
    )
    async def test_url_must_be_public_http(self, client, async_session, url, message):
        user = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, user)

        response = await client.post("/api/bot/documents", json={"url": url}, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == message

    async def test_redirects_to_private_hosts_are_refused(self):
        with pytest.raises(HTTPException) as exc_info:
            await _check_redirect_target(httpx.Request("GET", "http://169.254.169.254/latest/meta-data"))
        assert exc_info.value.status_code == 400

    async def test_file_upload(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, user)

        response = await client.post(
            "/api/bot/documents",
            files={"file": ("faq.md", b"# FAQ\nWe offer free consultations.", "text/markdown")},
            headers=auth_headers(user),
        )
        assert response.status_code == 201
        assert response.json()["data"]["fileName"] == "faq.md"

    async def test_pdf_is_rejected(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, user)

        response = await client.post(
            "/api/bot/documents",
            files={"file": ("deck.pdf", b"%PDF-1.4", "application/pdf")},
            headers=auth_headers(user),
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "PDF files are not supported yet"

    async def test_too_short(self, client, async_session):
        user = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, user)
        response = await client.post("/api/bot/documents", json={"text": "short"}, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Document content is too short"

    async def test_free_plan_has_no_documents(self, client, async_session):
        user = await make_user(async_session)
        await _bot(async_session, user)
        response = await client.post(
            "/api/bot/documents", json={"text": "Our office hours are 9 to 5."}, headers=auth_headers(user)
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "QUOTA_EXCEEDED"

    async def test_documents_of_other_users(self, client, async_session):
        owner = await make_user(async_session, plan=PlanTier.PRO)
        await _bot(async_session, owner)
        created = await client.post(
            "/api/bot/documents", json={"text": "Our office hours are 9 to 5."}, headers=auth_headers(owner)
        )
        intruder = await make_user(async_session, email="intruder@example.com", username="intruder")

        response = await client.delete(
            f"/api/bot/documents/{created.json()['data']['id']}", headers=auth_headers(intruder)
        )
        assert response.status_code == 404


# ────────────────────────────────────────────────────────────────
# Public widget
# ────────────────────────────────────────────────────────────────

class TestPublicChat:

    async def test_public_config(self, client, async_session):
        user = await make_user(async_session, username="ada")
        await make_page(async_session, user, slug="chat")
        await _bot(async_session, user, name="Ada's helper")

        response = await client.get("/api/bot/public-config", params={"username": "ada"})
        data = response.json()["data"]
        assert data["name"] == "Ada's helper"
        assert data["ownerName"] == "Owner"
        assert data["bookingUrl"] == "http://app.test/ada/chat"

    async def test_inactive_bot_is_hidden(self, client, async_session):
        user = await make_user(async_session, username="ada")
        await _bot(async_session, user, is_active=False)
        response = await client.get("/api/bot/public-config", params={"username": "ada"})
        assert response.status_code == 404

    async def test_chat_needs_ai_quota(self, client, async_session):
        user = await make_user(async_session, username="ada")
        await _bot(async_session, user)
        response = await client.post("/api/bot/chat", json={"message": "Hi", "username": "ada"})
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "AI features require Pro plan or higher"

    async def test_chat_without_llm(self, client, async_session):
        user = await make_user(async_session, username="ada", plan=PlanTier.PRO)
        await _bot(async_session, user)
        response = await client.post("/api/bot/chat", json={"message": "Hi", "username": "ada"})
        assert response.status_code == 503

    async def test_chat_streams_and_counts_usage(self, client, async_session):
        user = await make_user(async_session, username="ada", plan=PlanTier.PRO)
        await _bot(async_session, user)

        async def fake_stream(messages, max_tokens=500, temperature=0.7):
            assert messages[-1] == {"role": "user", "content": "What do you offer?"}
            for delta in ("We offer ", "consultations."):
                yield delta

        with patch("anytimebot.routes_bot.llm_configured", return_value=True), patch(
            "anytimebot.routes_bot.stream_completion", fake_stream
        ):
            response = await client.post(
                "/api/bot/chat",
                json={
                    "message": "What do you offer?",
                    "username": "ada",
                    "history": [{"role": "system", "content": "ignored"}, {"role": "user", "content": "Hello"}],
                },
            )

        assert response.status_code == 200
        assert response.text == "We offer consultations."
        assert (await _usage(async_session, user.id)).ai_interactions == 1


# ────────────────────────────────────────────────────────────────
# WhatsApp
# ────────────────────────────────────────────────────────────────

def _evolution_payload(text="Can I book a call?", instance="acme"):
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {"remoteJid": "15550102030@s.whatsapp.net", "fromMe": False, "id": "MSG1"},
            "pushName": "Jane",
            "message": {"conversation": text},
        },
    }


async def _whatsapp_user(session, plan=PlanTier.PRO):
    user = await make_user(session, plan=plan)
    user.whatsapp_enabled = True
    user.evolution_instance_name = "acme"
    user.evolution_api_url = "https://evo.test"
    user.evolution_api_key = "evo-key"
    await session.commit()
    await _bot(session, user)
    return user


async def _messages(session, user_id) -> list[WhatsAppMessage]:
    result = await session.execute(
        select(WhatsAppMessage).where(WhatsAppMessage.user_id == user_id).order_by(WhatsAppMessage.id)
    )
    return list(result.scalars().all())


class TestEvolutionWebhook:

    async def test_reply_is_sent_and_recorded(self, client, async_session):
        user = await _whatsapp_user(async_session)

        with patch(
            "anytimebot.routes_whatsapp.generate_whatsapp_reply", AsyncMock(return_value="Sure, here are some times.")
        ), patch("anytimebot.routes_whatsapp.send_text", AsyncMock(return_value=True)) as send:
            response = await client.post("/api/webhooks/evolution", json=_evolution_payload())

        assert response.json() == {"received": True}
        send.assert_awaited_once_with(
            "https://evo.test", "evo-key", "acme", "15550102030", "Sure, here are some times."
        )
        messages = await _messages(async_session, user.id)
        assert [(m.direction, m.message) for m in messages] == [
            (MessageDirection.INCOMING, "Can I book a call?"),
            (MessageDirection.OUTGOING, "Sure, here are some times."),
        ]
        usage = await _usage(async_session, user.id)
        assert (usage.ai_interactions, usage.whatsapp_messages) == (1, 1)

    async def test_free_plan_records_but_does_not_reply(self, client, async_session):
        user = await _whatsapp_user(async_session, plan=PlanTier.FREE)

        with patch("anytimebot.routes_whatsapp.send_text", AsyncMock(return_value=True)) as send:
            response = await client.post("/api/webhooks/evolution", json=_evolution_payload())

        assert response.json() == {"received": True}
        send.assert_not_awaited()
        assert len(await _messages(async_session, user.id)) == 1

    async def test_unknown_instance(self, client):
        response = await client.post("/api/webhooks/evolution", json=_evolution_payload(instance="ghost"))
        assert response.json() == {"received": True, "ignored": True}

    async def test_non_message_events(self, client):
        response = await client.post("/api/webhooks/evolution", json={"event": "connection.update"})
        assert response.json() == {"received": True, "ignored": True}


TWILIO_FORM = {
    "MessageSid": "SM123",
    "From": "whatsapp:+15550102030",
    "To": "whatsapp:+15550009999",
    "Body": "Hello",
    "AccountSid": "AC123",
}


class TestTwilio:

    async def _twilio_user(self, session):
        user = await make_user(session, plan=PlanTier.PRO)
        user.twilio_account_sid = "AC123"
        user.twilio_auth_token = "token"
        user.twilio_phone_number = "+15550009999"
        await session.commit()
        await _bot(session, user)
        return user

    async def test_missing_fields(self, client):
        response = await client.post("/api/integrations/twilio/webhook", data={"Body": "Hello"})
        assert response.status_code == 400

    async def test_unknown_number(self, client):
        response = await client.post("/api/integrations/twilio/webhook", data=TWILIO_FORM)
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No account for this number"

    async def test_webhook_replies_over_whatsapp(self, client, async_session):
        user = await self._twilio_user(async_session)

        with patch(
            "anytimebot.routes_whatsapp.generate_whatsapp_reply", AsyncMock(return_value="Hi Jane!")
        ), patch("anytimebot.routes_whatsapp.send_whatsapp", AsyncMock(return_value=True)) as send:
            response = await client.post("/api/integrations/twilio/webhook", data=TWILIO_FORM)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Response" in response.text
        send.assert_awaited_once()
        assert send.await_args.args[1:] == ("+15550102030", "Hi Jane!")
        messages = await _messages(async_session, user.id)
        assert [m.provider for m in messages] == ["twilio", "twilio"]

    async def test_signature_covers_the_query_string(self, client, async_session, monkeypatch):
        await self._twilio_user(async_session)
        monkeypatch.setattr(get_settings(), "twilio_verify_signature", True)
        url = "http://test/api/integrations/twilio/webhook?tenant=acme"
        signature = RequestValidator("token").compute_signature(url, TWILIO_FORM)

        with patch(
            "anytimebot.routes_whatsapp.generate_whatsapp_reply", AsyncMock(return_value="Hi Jane!")
        ), patch("anytimebot.routes_whatsapp.send_whatsapp", AsyncMock(return_value=True)):
            response = await client.post(
                "/api/integrations/twilio/webhook?tenant=acme",
                data=TWILIO_FORM,
                headers={"X-Twilio-Signature": signature},
            )
        assert response.status_code == 200

    async def test_signature_without_query_string_is_rejected(self, client, async_session, monkeypatch):
        await self._twilio_user(async_session)
        monkeypatch.setattr(get_settings(), "twilio_verify_signature", True)
        signature = RequestValidator("token").compute_signature(
            "http://test/api/integrations/twilio/webhook", TWILIO_FORM
        )

        response = await client.post(
            "/api/integrations/twilio/webhook?tenant=acme",
            data=TWILIO_FORM,
            headers={"X-Twilio-Signature": signature},
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Invalid signature"

    async def test_send_requires_configuration(self, client, async_session):
        user = await make_user(async_session)
        response = await client.post(
            "/api/integrations/twilio/send", json={"to": "+15550102030", "message": "Hi"}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Twilio is not configured"

    async def test_send_failure(self, client, async_session):
        user = await self._twilio_user(async_session)
        with patch("anytimebot.routes_whatsapp.send_sms", AsyncMock(return_value=False)):
            response = await client.post(
                "/api/integrations/twilio/send",
                json={"to": "5550102030", "message": "Hi", "channel": "sms"},
                headers=auth_headers(user),
            )
        assert response.status_code == 502


# ────────────────────────────────────────────────────────────────
# Scheduling replies
# ────────────────────────────────────────────────────────────────

class TestSchedulingReply:

    HISTORY = [
        {"role": "assistant", "content": f"{SLOTS_HEADER}\n\n1. Monday 09:00"},
        {"role": "user", "content": "1"},
    ]

    async def _reply(self, session, slots, text="1"):
        user = await make_user(session)
        page = await make_page(session, user)
        await make_event_type(session, page)
        with patch("anytimebot.bot.get_available_slots", AsyncMock(return_value=slots)):
            return await _scheduling_reply(session, user, page, "+15550102030", text, self.HISTORY, "Jane")

    async def test_number_without_open_slots(self, async_session):
        assert await self._reply(async_session, []) == NO_SLOTS_REPLY

    async def test_number_out_of_range(self, async_session):
        slots = [SimpleNamespace(start_at_utc=None), SimpleNamespace(start_at_utc=None)]
        reply = await self._reply(async_session, slots, text="3")
        assert reply == "That option is not valid. Please pick a number between 1 and 2."
