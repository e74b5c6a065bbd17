"""
Core conversational inference module for chatforge.

Exports:
- ChatBackend: orchestrates one chat turn (persist, prompt, generate, degrade)
- InferenceClient: buffered and streamed calls to the generation backend
- TitleGenerator: best-effort conversation titles
- build_context: prompt assembly from recent history
- SessionStore and its in-memory / filesystem implementations
- Upstream error classes
"""

from .config import ChatSettings, load_settings
from .context import build_context
from .core import ChatBackend, SendMessageResult, FALLBACK_RESPONSES
from .entities import Attachment, Message, Session
from .errors import (
    ChatError,
    ConfigurationError,
    SessionNotFoundError,
    InferenceError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
    UpstreamMalformedError,
)
from .inference import (
    GenerationResult,
    InferenceClient,
    StreamDelta,
    StreamDone,
    StreamFailed,
)
from .models import BackendConfig, GenerationOptions
from .store import FileSessionStore, InMemorySessionStore, SessionStore
from .titles import TitleGenerator

__all__ = [
    "ChatSettings",
    "load_settings",
    "build_context",
    "ChatBackend",
    "SendMessageResult",
    "FALLBACK_RESPONSES",
    "Attachment",
    "Message",
    "Session",
    "ChatError",
    "ConfigurationError",
    "SessionNotFoundError",
    "InferenceError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
    "UpstreamMalformedError",
    "GenerationResult",
    "InferenceClient",
    "StreamDelta",
    "StreamDone",
    "StreamFailed",
    "BackendConfig",
    "GenerationOptions",
    "FileSessionStore",
    "InMemorySessionStore",
    "SessionStore",
    "TitleGenerator",
]
