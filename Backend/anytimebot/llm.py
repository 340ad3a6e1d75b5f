"""
Thin wrapper around the OpenAI SDK.

Works with any OpenAI-compatible endpoint via LLM_BASE_URL. Callers decide
what to do when the model is unavailable (fallback text, skipped summary).
"""

import json
import logging
import re
from typing import AsyncIterator, Optional

from openai import AsyncOpenAI, OpenAIError

from .core.config import get_settings

logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class LLMUnavailable(Exception):
    """Raised when no API key is configured or the provider call fails."""


def llm_configured() -> bool:
    return bool(get_settings().openai_api_key)


def get_client() -> AsyncOpenAI:
    settings = get_settings()
    if not settings.openai_api_key:
        raise LLMUnavailable("OPENAI_API_KEY is not configured")
    return AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.llm_base_url or None)


async def complete(
    messages: list[dict],
    max_tokens: int = 500,
    temperature: float = 0.7,
    model: Optional[str] = None,
) -> str:
    client = get_client()
    try:
        response = await client.chat.completions.create(
            model=model or get_settings().llm_model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    except OpenAIError as e:
        logger.error(f"LLM completion failed: {e}")
        raise LLMUnavailable(str(e)) from e
    return response.choices[0].message.content or ""


async def stream_completion(
    messages: list[dict],
    max_tokens: int = 500,
    temperature: float = 0.7,
) -> AsyncIterator[str]:
    """Yield text deltas as they arrive."""
    client = get_client()
    try:
        stream = await client.chat.completions.create(
            model=get_settings().llm_model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta
    except OpenAIError as e:
        logger.error(f"LLM stream failed: {e}")
        raise LLMUnavailable(str(e)) from e


def parse_json_reply(text: str) -> Optional[dict]:
    """Parse a JSON object from a model reply, tolerating markdown code fences."""
    if not text:
        return None
    cleaned = _JSON_FENCE_RE.sub("", text.strip()).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
