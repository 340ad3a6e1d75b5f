import html
import math
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")
SLUG_RE = re.compile(r"^[a-zA-Z0-9_-]{3,20}$")
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value))


def is_valid_phone(value: str | None) -> bool:
    return bool(value) and bool(PHONE_RE.match(value))


def is_valid_slug(value: str | None) -> bool:
    return bool(value) and bool(SLUG_RE.match(value))


def is_valid_hhmm(value: str | None) -> bool:
    return bool(value) and bool(HHMM_RE.match(value))


def slugify(value: str) -> str:
    """Lowercase ASCII slug: 'José Núñez' -> 'jose-nunez'."""
    normalized = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower())
    return slug.strip("-")


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    return f"{phone[:6]}***"


_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BLOCK_TAG_RE = re.compile(r"<\s*(br|/p|/div|/h\d|/li|li)[^>]*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def strip_html(value: str) -> str:
    """Plain text from HTML: drops scripts/styles and tags, keeps line breaks."""
    text = _SCRIPT_RE.sub(" ", value)
    text = _BLOCK_TAG_RE.sub("\n", text)
    text = html.unescape(_TAG_RE.sub(" ", text))
    lines = (re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


# ────────────────────────────────────────────────────────────────
# Time helpers
# ────────────────────────────────────────────────────────────────

@dataclass
class BlockedTime:
    start_at_utc: datetime
    end_at_utc: datetime


def overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp (accepting a trailing 'Z') into aware UTC.

    Raises:
        ValueError: when the value is not a timestamp
    """
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(cleaned))


def parse_hhmm(value: str) -> time:
    hour, minute = map(int, value.split(":"))
    return time(hour, minute)


def get_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def js_day_of_week(local_date: date) -> int:
    """Day number with 0 = Sunday ... 6 = Saturday."""
    return (local_date.weekday() + 1) % 7


def to_utc_from_local_zone(local_date: date, local_time: time, tz: ZoneInfo) -> datetime:
    local_dt = datetime.combine(local_date, local_time).replace(tzinfo=tz)
    return local_dt.astimezone(timezone.utc)


def local_day_bounds(local_date: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start = to_utc_from_local_zone(local_date, time(0, 0), tz)
    end = to_utc_from_local_zone(local_date + timedelta(days=1), time(0, 0), tz)
    return start, end


def format_local(value: datetime, tz_name: str | None, fmt: str = "%A, %B %d, %Y at %I:%M %p") -> str:
    return ensure_utc(value).astimezone(get_zone(tz_name)).strftime(fmt)


def start_of_month(now: datetime, months_back: int = 0) -> datetime:
    year, month = now.year, now.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return datetime(year, month, 1, tzinfo=now.tzinfo or timezone.utc)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, with halves always rounded up."""
    return math.floor(value + 0.5)


def percent_change(current: int, previous: int) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    return 100.0
