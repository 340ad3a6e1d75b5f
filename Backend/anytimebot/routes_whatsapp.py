"""
WhatsApp channels.

Evolution API (self-hosted WhatsApp Web gateway):
    POST /api/webhooks/evolution   incoming messages; always answers 200 so
                                   Evolution does not retry

Twilio:
    POST /api/integrations/twilio/webhook   incoming WhatsApp/SMS, TwiML reply
    POST /api/integrations/twilio/send      owner-initiated send

Incoming texts go to the owner's assistant (see bot.generate_whatsapp_reply);
both directions are stored as WhatsAppMessage rows.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.twiml.messaging_response import MessagingResponse

from .bot import generate_whatsapp_reply, get_user_bot
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .evolution import extract_incoming, resolve_credentials, send_text, split_message
from .models import MessageDirection, User, WhatsAppMessage
from .twilio_messaging import (
    WHATSAPP_PREFIX,
    ensure_e164_format,
    send_sms,
    send_whatsapp,
    strip_whatsapp_prefix,
    twilio_configured,
    verify_twilio_signature,
)
from .usage_tracker import check_user_quota, increment_usage
from .utils import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["whatsapp"])

TWILIO_REQUIRED_FIELDS = ("MessageSid", "From", "To", "Body", "AccountSid")


class TwilioSendRequest(CamelModel):
    to: Optional[str] = None
    message: Optional[str] = None
    channel: str = "whatsapp"


def _record(
    session: AsyncSession,
    user: User,
    phone: str,
    text: str,
    direction: MessageDirection,
    provider: str,
    external_id: Optional[str] = None,
) -> None:
    session.add(
        WhatsAppMessage(
            user_id=user.id,
            phone=phone,
            message=text,
            direction=direction,
            provider=provider,
            external_id=external_id,
        )
    )


async def assistant_reply(
    session: AsyncSession,
    user: User,
    phone: str,
    text: str,
    guest_name: Optional[str] = None,
) -> Optional[str]:
    """The assistant's answer, or None when there is no active bot or no quota left."""
    bot = await get_user_bot(session, user.id)
    if not bot or not bot.is_active:
        logger.info(f"No active bot for user {user.id}; not replying to {mask_phone(phone)}")
        return None

    for action in ("whatsapp", "ai"):
        decision = await check_user_quota(session, user.id, action)
        if not decision.allowed:
            logger.warning(f"Not replying for user {user.id}: {decision.reason}")
            return None

    reply = await generate_whatsapp_reply(session, user, bot, phone, text, guest_name=guest_name)
    await increment_usage(session, user.id, "ai")
    return reply


# ────────────────────────────────────────────────────────────────
# Evolution API
# ────────────────────────────────────────────────────────────────

@router.post("/webhooks/evolution")
async def evolution_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Evolution webhook with a non-JSON body")
        return {"received": True}

    incoming = extract_incoming(payload) if isinstance(payload, dict) else None
    if incoming is None:
        return {"received": True, "ignored": True}

    result = await session.execute(
        select(User).where(
            User.evolution_instance_name == incoming.instance,
            User.whatsapp_enabled.is_(True),
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        logger.warning(f"Evolution message for unknown instance {incoming.instance}")
        return {"received": True, "ignored": True}

    logger.info(f"Evolution message from {mask_phone(incoming.phone)} for user {user.id}")
    _record(session, user, incoming.phone, incoming.text, MessageDirection.INCOMING, "evolution", incoming.message_id)
    await session.commit()

    try:
        reply = await assistant_reply(session, user, incoming.phone, incoming.text, incoming.push_name)
        credentials = resolve_credentials(user)
        if reply and credentials:
            api_url, api_key, instance = credentials
            sent_parts = 0
            for part in split_message(reply):
                if await send_text(api_url, api_key, instance, incoming.phone, part):
                    _record(session, user, incoming.phone, part, MessageDirection.OUTGOING, "evolution")
                    sent_parts += 1
            if sent_parts:
                await increment_usage(session, user.id, "whatsapp", sent_parts)
        await session.commit()
    except Exception as exc:
        logger.exception(f"Evolution webhook processing failed for user {user.id}: {exc}")
        await session.rollback()

    return {"received": True}


# ────────────────────────────────────────────────────────────────
# Twilio
# ────────────────────────────────────────────────────────────────

def _twiml() -> Response:
    return Response(str(MessagingResponse()), media_type="application/xml")


@router.post("/integrations/twilio/webhook")
async def twilio_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    form = dict(await request.form())
    if any(not form.get(field) for field in TWILIO_REQUIRED_FIELDS):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    from_raw = str(form["From"])
    is_whatsapp = from_raw.startswith(WHATSAPP_PREFIX)
    guest_phone = ensure_e164_format(strip_whatsapp_prefix(from_raw))
    to_phone = ensure_e164_format(strip_whatsapp_prefix(str(form["To"])))
    body = str(form["Body"]).strip()

    result = await session.execute(
        select(User).where(
            User.twilio_phone_number.in_([to_phone, str(form["To"]), strip_whatsapp_prefix(str(form["To"]))]),
            User.twilio_account_sid == form["AccountSid"],
        )
    )
    user = result.scalars().first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No account for this number")
    if not verify_twilio_signature(request, form, user.twilio_auth_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    logger.info(f"Twilio message {form['MessageSid']} from {mask_phone(guest_phone)} for user {user.id}")
    _record(session, user, guest_phone, body, MessageDirection.INCOMING, "twilio", str(form["MessageSid"]))
    await session.commit()

    try:
        reply = await assistant_reply(session, user, guest_phone, body, form.get("ProfileName"))
        if reply:
            send = send_whatsapp if is_whatsapp else send_sms
            if await send(user, guest_phone, reply):
                _record(session, user, guest_phone, reply, MessageDirection.OUTGOING, "twilio")
                await increment_usage(session, user.id, "whatsapp")
        await session.commit()
    except Exception as exc:
        logger.exception(f"Twilio webhook processing failed for user {user.id}: {exc}")
        await session.rollback()

    return _twiml()


@router.post("/integrations/twilio/send")
async def twilio_send(
    request: TwilioSendRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.to or not request.message:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    user = await session.get(User, ctx.user_id)
    if not twilio_configured(user):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Twilio is not configured")

    send = send_sms if request.channel == "sms" else send_whatsapp
    if not await send(user, request.to, request.message):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to send message")

    phone = ensure_e164_format(request.to)
    _record(session, user, phone, request.message, MessageDirection.OUTGOING, "twilio")
    await increment_usage(session, user.id, "whatsapp")
    await session.commit()
    return success_response({"sent": True, "to": phone})
