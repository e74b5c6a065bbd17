"""Prompt assembly from a session's recent history."""

from __future__ import annotations

from typing import Sequence

from .config import HISTORY_WINDOW
from .entities import Message

USER_LABEL = "User"
ASSISTANT_LABEL = "Assistant"
RESPOND_DIRECTLY = "Please respond directly, without any role prefix:"


def build_context(history: Sequence[Message], new_utterance: str) -> str:
    """Render the last ``HISTORY_WINDOW`` messages plus the new utterance.

    ``history`` must be oldest-first. System messages render under the
    assistant label.
    """
    parts = []
    for msg in list(history)[-HISTORY_WINDOW:]:
        label = USER_LABEL if msg.role == "user" else ASSISTANT_LABEL
        parts.append(f"{label}: {msg.content}\n\n")
    parts.append(f"{USER_LABEL}: {new_utterance}\n\n{RESPOND_DIRECTLY}")
    return "".join(parts)
