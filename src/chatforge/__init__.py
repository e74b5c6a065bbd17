"""
chatforge: conversational inference pipeline for a chat application.

Builds bounded prompts from session history, streams replies from an
Ollama-style generation backend, and degrades to canned replies when the
backend fails.
"""

__version__ = "0.1.0"

# Re-export core components for convenience
from .core import ChatBackend, InferenceClient, TitleGenerator

__all__ = [
    "ChatBackend",
    "InferenceClient",
    "TitleGenerator",
]
