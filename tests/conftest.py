import json
import sys
from pathlib import Path
from typing import Callable, Iterable, List

import httpx
import pytest

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from chatforge.core.config import ChatSettings
from chatforge.core.inference import InferenceClient


def ndjson(*records) -> str:
    return "".join(json.dumps(r) + "\n" for r in records)


def streamed(chunks: Iterable[str]) -> httpx.Response:
    """A 200 response whose body arrives in exactly the given chunks."""
    parts: List[bytes] = [c.encode("utf-8") for c in chunks]

    async def body():
        for part in parts:
            yield part

    return httpx.Response(200, content=body())


@pytest.fixture
def settings() -> ChatSettings:
    return ChatSettings(
        backend_url="http://ollama.test",
        default_model="test-model",
        request_timeout=2.0,
        stream_timeout=2.0,
        title_timeout=1.0,
        probe_timeout=1.0,
        stream_interval=0.0,
    )


@pytest.fixture
def make_client(settings) -> Callable[..., InferenceClient]:
    """Build an InferenceClient whose HTTP calls are answered by ``handler``."""
    def _make(handler, **overrides) -> InferenceClient:
        cfg = settings
        if overrides:
            cfg = ChatSettings(**{**settings.__dict__, **overrides})
        client = InferenceClient(cfg, transport=httpx.MockTransport(handler))
        return client

    return _make
