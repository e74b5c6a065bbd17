"""
Exception classes for the chatforge core.

Session-level errors propagate to callers. Upstream (generation backend)
errors are raised by the inference client and absorbed by the orchestrator.
"""


class ChatError(Exception):
    """Base exception class for all chatforge errors."""
    pass


class ConfigurationError(ChatError):
    """Raised when configuration is invalid or missing."""
    pass


class SessionNotFoundError(ChatError):
    """Raised when a session does not exist or has been deleted."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InferenceError(ChatError):
    """Raised when the generation backend cannot produce a response."""

    kind = "upstream"


class UpstreamTimeoutError(InferenceError):
    """Raised when the generation backend exceeds its deadline."""

    kind = "timeout"


class UpstreamUnavailableError(InferenceError):
    """Raised when the generation backend cannot be reached or refuses the call."""

    kind = "unavailable"


class UpstreamMalformedError(InferenceError):
    """Raised when the generation backend answers with an invalid or empty payload."""

    kind = "malformed"
