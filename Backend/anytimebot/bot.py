"""
Scheduling assistant ("bot") shared by web chat and WhatsApp.

Retrieval is keyword overlap: the query is split into words longer than
three characters and each document scores the fraction of those words it
contains. The best documents are pasted into the system prompt of a single
chat completion.

On WhatsApp a booking intent short-circuits the model: the assistant lists
the next open slots and a numeric reply ("1".."5") books that slot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import (
    BOT_DISPLAY_SLOTS,
    format_available_slots,
    get_available_slots,
    has_booking_conflict,
)
from .core.config import get_settings
from .llm import LLMUnavailable, complete
from .models import (
    Booking,
    BookingPage,
    BookingStatus,
    Bot,
    BotConversation,
    BotDocument,
    EventType,
    User,
)
from .utils import format_local

logger = logging.getLogger(__name__)

DEFAULT_BOT_NAME = "MindBot"
DEFAULT_AVATAR = "robot"
DEFAULT_GREETING = "Hi! I'm here to help you schedule a meeting. How can I assist you today?"
BOT_TONES = ("professional", "friendly", "casual", "formal")

HISTORY_LIMIT = 10
PROMPT_HISTORY_LIMIT = 6
TOP_K_DOCUMENTS = 3
SLOTS_HEADER = "Available times:"
NO_SLOTS_REPLY = "Sorry, there are no available times in the next few days."

BOOKING_KEYWORDS = (
    "reserva",
    "cita",
    "agendar",
    "programar",
    "horario",
    "disponible",
    "reunión",
    "meeting",
    "appointment",
    "schedule",
    "book",
    "available",
    "cuando",
    "when",
)

PERSONALITY_PROMPTS = {
    "professional": "Keep a professional tone. Be courteous, precise and focused on efficiency.",
    "friendly": "Be friendly and approachable. Use warm, welcoming language while staying professional.",
    "casual": "Be relaxed and informal. Light use of emojis and conversational language is fine.",
    "formal": "Keep a very formal and respectful tone. Use elegant, precise language.",
}


@dataclass
class ScoredDocument:
    id: int
    file_name: str
    content: str
    similarity: float


# ────────────────────────────────────────────────────────────────
# Retrieval and prompts
# ────────────────────────────────────────────────────────────────

def text_similarity(query: str, content: str) -> float:
    words = [w for w in query.lower().split() if len(w) > 3]
    if not words:
        return 0.0
    content_lower = content.lower()
    matches = sum(1 for word in words if word in content_lower)
    return matches / len(words)


def find_similar_documents(
    query: str,
    documents: Sequence[BotDocument],
    top_k: int = TOP_K_DOCUMENTS,
    min_similarity: float = 0.0,
) -> list[ScoredDocument]:
    """Top documents by keyword overlap; only scores above min_similarity are kept."""
    scored = [
        ScoredDocument(
            id=doc.id,
            file_name=doc.file_name,
            content=doc.content,
            similarity=text_similarity(query, doc.content),
        )
        for doc in documents
    ]
    scored = [doc for doc in scored if doc.similarity > min_similarity]
    scored.sort(key=lambda doc: doc.similarity, reverse=True)
    return scored[:top_k]


def is_booking_intent(message: str) -> bool:
    lower = message.lower()
    return any(keyword in lower for keyword in BOOKING_KEYWORDS)


def personality_prompt(tone: str, custom_personality: Optional[str] = None) -> str:
    prompt = PERSONALITY_PROMPTS.get(tone, PERSONALITY_PROMPTS["friendly"])
    if custom_personality:
        prompt += f"\n\nAdditional personality traits: {custom_personality}"
    return prompt


def booking_page_url(username: str, slug: str) -> str:
    return f"{get_settings().app_base_url}/{username}/{slug}"


def _knowledge_block(documents: Sequence[ScoredDocument]) -> str:
    if not documents:
        return ""
    joined = "\n\n".join(f"[Document {i}]\n{doc.content}" for i, doc in enumerate(documents, start=1))
    return f"Here is relevant information from my knowledge base:\n\n{joined}"


def build_system_prompt(
    bot: Bot,
    owner: User,
    documents: Sequence[ScoredDocument],
    booking_url: Optional[str] = None,
    channel: str = "web",
    history: Sequence[dict] = (),
) -> str:
    owner_name = owner.name or owner.username
    lines = [
        f"You are {bot.name}, an AI scheduling assistant for {owner_name}.",
        "",
        "Your role is to:",
        "- Help visitors schedule meetings and answer questions",
        "- Provide information based on the provided context",
        "- Guide users to book meetings when appropriate",
    ]
    if channel == "whatsapp":
        lines.append("- Keep responses short for WhatsApp (max 3-4 sentences)")
        lines.append("- Reply in the language the user writes in")
    else:
        lines.append("- Keep responses clear and concise")

    lines += ["", personality_prompt(bot.tone, bot.personality)]

    knowledge = _knowledge_block(documents)
    if knowledge:
        lines += ["", knowledge]
    if booking_url:
        lines += ["", f"Booking page URL (no spaces): {booking_url}"]
        lines.append("Always write URLs on their own line without spaces or line breaks inside them.")
    if history:
        recent = "\n".join(
            f"{'User' if m.get('role') == 'user' else bot.name}: {m.get('content', '')}"
            for m in history[-PROMPT_HISTORY_LIMIT:]
        )
        lines += ["", f"Recent conversation:\n{recent}"]

    lines += ["", "Answer naturally and conversationally. If you don't know something, say so honestly."]
    return "\n".join(lines)


# ────────────────────────────────────────────────────────────────
# Database helpers
# ────────────────────────────────────────────────────────────────

async def get_user_bot(session: AsyncSession, user_id: int) -> Optional[Bot]:
    result = await session.execute(select(Bot).where(Bot.user_id == user_id))
    return result.scalar_one_or_none()


async def get_bot_documents(session: AsyncSession, bot_id: int) -> list[BotDocument]:
    result = await session.execute(
        select(BotDocument).where(BotDocument.bot_id == bot_id).order_by(BotDocument.created_at.desc())
    )
    return list(result.scalars().all())


async def get_primary_booking_page(session: AsyncSession, user_id: int) -> Optional[BookingPage]:
    result = await session.execute(
        select(BookingPage)
        .where(BookingPage.user_id == user_id, BookingPage.is_active.is_(True))
        .order_by(BookingPage.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _get_conversation(session: AsyncSession, bot_id: int, phone: str) -> BotConversation:
    result = await session.execute(
        select(BotConversation).where(BotConversation.bot_id == bot_id, BotConversation.phone == phone)
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        conversation = BotConversation(bot_id=bot_id, phone=phone, messages=[])
        session.add(conversation)
        await session.flush()
    return conversation


async def get_conversation_history(session: AsyncSession, bot_id: int, phone: str) -> list[dict]:
    conversation = await _get_conversation(session, bot_id, phone)
    return list(conversation.messages or [])


async def add_message_to_conversation(
    session: AsyncSession,
    bot_id: int,
    phone: str,
    role: str,
    content: str,
) -> list[dict]:
    """Append a message and keep only the most recent HISTORY_LIMIT."""
    conversation = await _get_conversation(session, bot_id, phone)
    messages = list(conversation.messages or [])
    messages.append({"role": role, "content": content, "timestamp": datetime.now(timezone.utc).isoformat()})
    # Reassign so the JSON column is flagged dirty
    conversation.messages = messages[-HISTORY_LIMIT:]
    await session.flush()
    return conversation.messages


# ────────────────────────────────────────────────────────────────
# WhatsApp replies
# ────────────────────────────────────────────────────────────────

def _selected_slot_number(text: str) -> Optional[int]:
    stripped = text.strip()
    if stripped.isdigit() and 1 <= int(stripped) <= BOT_DISPLAY_SLOTS:
        return int(stripped)
    return None


def _last_assistant_message(history: Sequence[dict]) -> Optional[str]:
    for message in reversed(history[:-1]):
        if message.get("role") == "assistant":
            return message.get("content")
    return None


async def _first_event_type(session: AsyncSession, page: BookingPage) -> Optional[EventType]:
    result = await session.execute(
        select(EventType)
        .where(EventType.booking_page_id == page.id, EventType.is_active.is_(True))
        .order_by(EventType.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_booking_from_whatsapp(
    session: AsyncSession,
    event_type: EventType,
    guest_name: str,
    guest_phone: str,
    start: datetime,
) -> Optional[Booking]:
    """Book a slot picked in chat; None when it was taken in the meantime."""
    end = start + timedelta(minutes=event_type.duration)
    if await has_booking_conflict(session, event_type.id, start, end):
        return None
    booking = Booking(
        event_type_id=event_type.id,
        guest_name=guest_name,
        guest_email=f"{guest_phone.lstrip('+')}@whatsapp.temp",
        guest_phone=guest_phone,
        start_time=start,
        end_time=end,
        status=BookingStatus.PENDING if event_type.requires_confirmation else BookingStatus.CONFIRMED,
        timezone="UTC",
    )
    session.add(booking)
    await session.flush()
    logger.info(f"Booking {booking.id} created from WhatsApp for event type {event_type.id}")
    return booking


async def _scheduling_reply(
    session: AsyncSession,
    owner: User,
    page: BookingPage,
    phone: str,
    text: str,
    history: Sequence[dict],
    guest_name: Optional[str],
) -> Optional[str]:
    event_type = await _first_event_type(session, page)
    if not event_type:
        return "Sorry, there are no meeting types available right now."

    slots = await get_available_slots(session, event_type, page, owner)
    selected = _selected_slot_number(text)
    last_reply = _last_assistant_message(history) or ""

    if selected is not None and SLOTS_HEADER in last_reply:
        if not slots:
            return NO_SLOTS_REPLY
        if selected > len(slots):
            return f"That option is not valid. Please pick a number between 1 and {len(slots)}."
        slot = slots[selected - 1]
        booking = await create_booking_from_whatsapp(
            session, event_type, guest_name or "WhatsApp guest", phone, slot.start_at_utc
        )
        if booking is None:
            return "Sorry, that time was just taken. Reply with 'schedule' to see the latest options."
        when = format_local(slot.start_at_utc, owner.timezone, "%A, %B %d at %H:%M")
        return (
            f"Your booking is confirmed for {when} ({owner.timezone}).\n\n"
            "You'll receive a reminder before the meeting. Anything else I can help with?"
        )

    if not is_booking_intent(text):
        return None
    if not slots:
        return NO_SLOTS_REPLY
    return (
        f"{SLOTS_HEADER}\n\n{format_available_slots(slots, owner.timezone)}\n\n"
        "Reply with the number of your preferred time (e.g. \"1\")."
    )


async def generate_whatsapp_reply(
    session: AsyncSession,
    owner: User,
    bot: Bot,
    phone: str,
    text: str,
    guest_name: Optional[str] = None,
) -> str:
    """
    Record the incoming message, produce a reply and record it too.

    Booking intents are answered from live availability; anything else goes
    to the model with the best-matching documents as context. The bot's
    greeting is prepended on the first interaction with a phone number.
    """
    history = await add_message_to_conversation(session, bot.id, phone, "user", text)
    first_interaction = len(history) == 1
    page = await get_primary_booking_page(session, owner.id)

    reply: Optional[str] = None
    if page is not None:
        reply = await _scheduling_reply(session, owner, page, phone, text, history, guest_name)

    if reply is None:
        documents = find_similar_documents(text, await get_bot_documents(session, bot.id))
        url = booking_page_url(owner.username, page.slug) if page is not None and owner.username else None
        system_prompt = build_system_prompt(bot, owner, documents, url, channel="whatsapp", history=history[:-1])
        try:
            reply = await complete(
                [{"role": "system", "content": system_prompt}, {"role": "user", "content": text}],
                max_tokens=500,
                temperature=0.7,
            )
        except LLMUnavailable as e:
            logger.warning(f"Assistant reply unavailable for bot {bot.id}: {e}")
            reply = ""
        reply = reply.strip() or "Sorry, I couldn't generate a response right now."

    if first_interaction:
        reply = f"{bot.greeting or DEFAULT_GREETING}\n\n{reply}"

    await add_message_to_conversation(session, bot.id, phone, "assistant", reply)
    return reply
