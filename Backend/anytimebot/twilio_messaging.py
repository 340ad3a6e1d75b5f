"""
WhatsApp and SMS through Twilio, using each user's own Twilio credentials.
"""

import logging

from fastapi import Request
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from .core.config import get_settings
from .models import User
from .utils import mask_phone

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


def ensure_e164_format(phone: str) -> str:
    """Ensure phone number is in E.164 format (+1...)."""
    if not phone:
        return phone

    cleaned = phone.replace(WHATSAPP_PREFIX, "")
    cleaned = cleaned.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")

    # No country code: assume US
    if not cleaned.startswith("+"):
        if cleaned.startswith("1") and len(cleaned) == 11:
            cleaned = f"+{cleaned}"
        else:
            cleaned = f"+1{cleaned}"

    return cleaned


def strip_whatsapp_prefix(phone: str) -> str:
    return phone.replace(WHATSAPP_PREFIX, "") if phone else phone


def twilio_configured(user: User) -> bool:
    return bool(user.twilio_account_sid and user.twilio_auth_token and user.twilio_phone_number)


def _send(user: User, to_phone: str, body: str, whatsapp: bool) -> bool:
    if not twilio_configured(user):
        logger.warning(f"Twilio not configured for user {user.id}. Skipping send.")
        return False

    to_formatted = ensure_e164_format(to_phone)
    from_formatted = ensure_e164_format(user.twilio_phone_number)
    if whatsapp:
        to_formatted = f"{WHATSAPP_PREFIX}{to_formatted}"
        from_formatted = f"{WHATSAPP_PREFIX}{from_formatted}"

    try:
        client = Client(user.twilio_account_sid, user.twilio_auth_token)
        message = client.messages.create(body=body, from_=from_formatted, to=to_formatted)
    except TwilioRestException as e:
        logger.error(f"Twilio API error sending to {mask_phone(to_phone)}: {e.code} - {e.msg}")
        return False

    logger.info(f"Twilio message sent to {mask_phone(to_formatted)}. SID: {message.sid}")
    return True


async def send_whatsapp(user: User, to_phone: str, body: str) -> bool:
    return _send(user, to_phone, body, whatsapp=True)


async def send_sms(user: User, to_phone: str, body: str) -> bool:
    return _send(user, to_phone, body, whatsapp=False)


def verify_twilio_signature(request: Request, form: dict, auth_token: str | None) -> bool:
    """Check X-Twilio-Signature when TWILIO_VERIFY_SIGNATURE is on."""
    if not get_settings().twilio_verify_signature:
        return True
    if not auth_token:
        logger.warning("TWILIO_VERIFY_SIGNATURE enabled but the account has no auth token")
        return False
    validator = RequestValidator(auth_token)
    forwarded_proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "localhost")
    url = f"{forwarded_proto}://{host}{request.url.path}"
    if request.url.query:
        url += f"?{request.url.query}"
    return validator.validate(url, form, request.headers.get("X-Twilio-Signature", ""))
