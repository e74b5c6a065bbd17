from __future__ import annotations

import logging
import re
from typing import Optional

from .config import DEFAULT_TITLE
from .inference import InferenceClient
from .models import GenerationOptions

logger = logging.getLogger(__name__)

TITLE_PROMPT = (
    "Based on this user message, generate a short, descriptive title "
    "(maximum 4-5 words) for a conversation. Respond only with the title, "
    "no quotes, no explanation:\n\n"
    'User message: "{message}"\n\n'
    "Title:"
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_QUOTES_RE = re.compile(r"[\"']")
_WHITESPACE_RE = re.compile(r"\s+")


def session_title(text: str) -> str:
    """Cheap title for a new session: the first five words of ``text``."""
    words = text.split()
    if not words:
        return DEFAULT_TITLE
    title = " ".join(words[:5])
    return title + "..." if len(words) > 5 else title


def fallback_title(text: str) -> str:
    words = _PUNCTUATION_RE.sub("", text).split()[:4]
    if not words:
        return DEFAULT_TITLE
    title = " ".join(words)
    if len(title) > 30:
        title = title[:27] + "..."
    return title.capitalize()


def clean_title(raw: str) -> str:
    cleaned = _QUOTES_RE.sub("", raw)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if len(cleaned) > 40:
        cleaned = cleaned[:37] + "..."
    return cleaned or DEFAULT_TITLE


class TitleGenerator:
    """Asks the backend for a short conversation title; never raises."""

    def __init__(self, client: InferenceClient, *, timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout if timeout is not None else client.settings.title_timeout

    async def generate_title(self, first_user_text: str) -> str:
        if not first_user_text or not first_user_text.strip():
            return DEFAULT_TITLE

        logger.info("Generating title for message: %.50s", first_user_text)
        try:
            result = await self.client.generate(
                TITLE_PROMPT.format(message=first_user_text),
                GenerationOptions(temperature=0.3, max_tokens=50),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning("Title generation failed, using fallback: %s", exc)
            return fallback_title(first_user_text)

        title = clean_title(result.content)
        logger.info("Generated title: %r", title)
        return title
