"""Streaming client for the text-generation backend.

The backend speaks the Ollama-style ``/api/generate`` protocol: a buffered
call returns one JSON object, a streamed call returns newline-delimited JSON
records ``{"response": <fragment>, "done": <bool>}`` ending with a record
whose ``done`` flag is true.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from .config import ChatSettings
from .errors import (
    InferenceError,
    UpstreamMalformedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from .models import GenerationOptions


logger = logging.getLogger(__name__)

# Checked in order, first match wins.
ROLE_PREFIXES: Tuple[str, ...] = (
    "Assistente:",
    "Assistant:",
    "Resposta:",
    "Response:",
    "AI:",
    "IA:",
    "Bot:",
    "Chatbot:",
    "Sistema:",
    "System:",
)

DeltaHandler = Callable[[str, str, bool], Awaitable[None]]


@dataclass(frozen=True)
class GenerationResult:
    content: str
    model: str
    token_count: int = 0
    processing_time_ms: int = 0
    used_history: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class StreamDelta:
    """New text appended to the response; ``full_text`` is everything so far."""

    fragment: str
    full_text: str


@dataclass(frozen=True)
class StreamDone:
    """Terminal event. ``fragment`` is text not carried by an earlier delta."""

    full_text: str
    fragment: str = ""
    token_count: int = 0


@dataclass(frozen=True)
class StreamFailed:
    error: InferenceError


StreamEvent = Union[StreamDelta, StreamDone, StreamFailed]


def strip_role_prefix(text: str) -> str:
    """Trim ``text`` and drop at most one leading role prefix."""
    cleaned = text.strip()
    for prefix in ROLE_PREFIXES:
        if cleaned.startswith(prefix):
            logger.debug("Removed role prefix %r", prefix)
            return cleaned[len(prefix):].strip()
    return cleaned


def _token_count(value: Any) -> int:
    """Backend token counts are advisory; anything but a whole number counts as 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not value.is_integer():
        return 0
    return max(int(value), 0)


def _split_trailing_space(text: str) -> Tuple[str, str]:
    body = text.rstrip()
    return body, text[len(body):]


class LineBuffer:
    """Reassembles newline-delimited records from arbitrarily split chunks."""

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        self._pending += chunk
        *complete, self._pending = self._pending.split("\n")
        return [line for line in complete if line.strip()]

    def flush(self) -> List[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


class PrefixGate:
    """Removes one leading role prefix from streamed text.

    Text is held back while the start of the response could still turn out
    to be a role prefix. Once that is decided the prefix (if any) is dropped
    and everything after it passes through untouched.
    """

    def __init__(self, prefixes: Tuple[str, ...] = ROLE_PREFIXES):
        self._prefixes = prefixes
        self._head = ""
        self._state = "undecided"  # undecided -> (skip_space) -> open

    def feed(self, fragment: str) -> str:
        if self._state == "open":
            return fragment
        if self._state == "skip_space":
            out = fragment.lstrip()
            if out:
                self._state = "open"
            return out

        self._head += fragment
        candidate = self._head.lstrip()
        if not candidate:
            return ""
        for prefix in self._prefixes:
            if candidate.startswith(prefix):
                logger.debug("Removed streamed role prefix %r", prefix)
                self._head = ""
                self._state = "skip_space"
                return self.feed(candidate[len(prefix):])
        if any(prefix.startswith(candidate) for prefix in self._prefixes):
            return ""
        self._head = ""
        self._state = "open"
        return candidate

    def flush(self) -> str:
        """Release held-back text at end of stream."""
        if self._state != "undecided":
            return ""
        rest = self._head.lstrip()
        self._head = ""
        self._state = "open"
        return rest


class InferenceClient:
    """Async client for buffered and streamed generation calls."""

    def __init__(
        self,
        settings: ChatSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(settings.request_timeout),
            headers={"Content-Type": "application/json"},
        )

    async def generate(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        on_delta: Optional[DeltaHandler] = None,
        *,
        timeout: Optional[float] = None,
    ) -> GenerationResult:
        """Generate a completion for ``prompt``.

        Without ``on_delta`` a single buffered call is made. With it the
        response is streamed and ``on_delta(fragment, full_text, is_final)``
        is awaited at most once per ``stream_interval``; the final call always
        fires and its ``full_text`` equals the returned content.

        Raises:
            UpstreamTimeoutError: the deadline passed before completion
            UpstreamUnavailableError: the backend could not be reached or refused the call
            UpstreamMalformedError: the backend answered with an unusable payload
        """
        options = options or GenerationOptions()
        if on_delta is None:
            return await self._generate_once(prompt, options, timeout)

        started = time.monotonic()
        interval = self.settings.stream_interval
        pending = ""
        received = ""
        last_fired: Optional[float] = None

        events = self.stream(prompt, options, timeout=timeout)
        try:
            async for event in events:
                if isinstance(event, StreamFailed):
                    raise event.error
                if isinstance(event, StreamDelta):
                    pending += event.fragment
                    received = event.full_text
                    now = time.monotonic()
                    if last_fired is not None and now - last_fired < interval:
                        continue
                    await self._emit(on_delta, pending, event.full_text, False)
                    pending = ""
                    last_fired = now
                    continue
                await self._emit(on_delta, pending + event.fragment, event.full_text, True)
                return GenerationResult(
                    content=event.full_text,
                    model=self._model(options),
                    token_count=event.token_count,
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                )
        except asyncio.CancelledError:
            # Hand over what the throttle was still holding so the caller sees all received text.
            if pending:
                await self._emit(on_delta, pending, received, False)
            raise
        finally:
            await events.aclose()
        raise UpstreamMalformedError("Generation stream ended without a result")

    async def stream(
        self,
        prompt: str,
        options: Optional[GenerationOptions] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream a generation as ``StreamDelta`` events ending in ``StreamDone``.

        Upstream failures are delivered as a final ``StreamFailed`` event.
        Closing the generator (or cancelling the consuming task) aborts the
        HTTP read and releases the connection.
        """
        options = options or GenerationOptions()
        events = self._stream_events(prompt, options, timeout)
        try:
            async for event in events:
                yield event
        except InferenceError as exc:
            logger.warning("Streaming generation failed (%s): %s", exc.kind, exc)
            yield StreamFailed(exc)
        finally:
            await events.aclose()

    async def is_available(self) -> bool:
        """Return True when the backend answers its version endpoint."""
        try:
            response = await self._http.get(
                f"{self.settings.backend_url}/api/version",
                timeout=self.settings.probe_timeout,
            )
            return response.status_code < 400
        except Exception as exc:
            logger.warning("Generation backend is not available: %s", exc)
            return False

    async def list_models(self) -> List[str]:
        """Return the names of models installed on the backend ([] on failure)."""
        try:
            response = await self._http.get(
                f"{self.settings.backend_url}/api/tags",
                timeout=self.settings.probe_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except Exception as exc:
            logger.error("Failed to list models: %s", exc)
            return []
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            return []
        return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _generate_once(
        self,
        prompt: str,
        options: GenerationOptions,
        timeout: Optional[float],
    ) -> GenerationResult:
        self._check_enabled(options)
        budget = self._budget(options, stream=False, timeout=timeout)
        body = self._request_body(prompt, options, stream=False)
        started = time.monotonic()

        logger.info("Generating response with model %s", body["model"])
        try:
            response = await asyncio.wait_for(
                self._http.post(self._endpoint(options, "/api/generate"), json=body, timeout=budget),
                timeout=budget,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTimeoutError(f"Generation timed out after {budget:.1f} seconds") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(f"Could not reach generation backend: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamMalformedError(f"Unreadable response from generation backend: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                f"Generation backend returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamMalformedError("Generation backend returned invalid JSON") from exc

        raw = data.get("response") if isinstance(data, dict) else None
        if not isinstance(raw, str) or not raw.strip():
            raise UpstreamMalformedError("Empty response from generation backend")
        content = strip_role_prefix(raw)
        if not content:
            raise UpstreamMalformedError("Generation backend returned only a role prefix")

        processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info("Response generated in %dms", processing_time_ms)
        return GenerationResult(
            content=content,
            model=body["model"],
            token_count=_token_count(data.get("eval_count")),
            processing_time_ms=processing_time_ms,
        )

    async def _stream_events(
        self,
        prompt: str,
        options: GenerationOptions,
        timeout: Optional[float],
    ) -> AsyncGenerator[Union[StreamDelta, StreamDone], None]:
        self._check_enabled(options)
        budget = self._budget(options, stream=True, timeout=timeout)
        body = self._request_body(prompt, options, stream=True)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget

        lines = LineBuffer()
        gate = PrefixGate()
        full_text = ""
        # whitespace withheld until more text follows it
        held = ""

        logger.info("Streaming response with model %s", body["model"])
        request = self._http.build_request(
            "POST", self._endpoint(options, "/api/generate"), json=body, timeout=budget
        )
        try:
            try:
                response = await asyncio.wait_for(self._http.send(request, stream=True), timeout=budget)
            except asyncio.TimeoutError as exc:
                raise UpstreamTimeoutError(f"Generation timed out after {budget:.1f} seconds") from exc
            try:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", "replace")[:200]
                    raise UpstreamUnavailableError(
                        f"Generation backend returned HTTP {response.status_code}: {detail}"
                    )

                chunks = response.aiter_text().__aiter__()
                while True:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise UpstreamTimeoutError(f"Generation timed out after {budget:.1f} seconds")
                    try:
                        chunk: Optional[str] = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                    except StopAsyncIteration:
                        chunk = None
                    except asyncio.TimeoutError as exc:
                        raise UpstreamTimeoutError(
                            f"Generation timed out after {budget:.1f} seconds"
                        ) from exc

                    batch = lines.feed(chunk) if chunk is not None else lines.flush()
                    for line in batch:
                        record = self._parse_line(line)
                        if record is None:
                            continue
                        if record.get("error"):
                            raise UpstreamUnavailableError(f"Generation backend error: {record['error']}")

                        fragment = record.get("response")
                        emitted = gate.feed(fragment) if isinstance(fragment, str) else ""
                        if record.get("done"):
                            # trailing whitespace is dropped, as in the buffered path
                            emitted = (held + emitted + gate.flush()).rstrip()
                            full_text += emitted
                            if not full_text:
                                raise UpstreamMalformedError("Generation finished without any content")
                            yield StreamDone(
                                full_text=full_text,
                                fragment=emitted,
                                token_count=_token_count(record.get("eval_count")),
                            )
                            return
                        emitted, held = _split_trailing_space(held + emitted)
                        if emitted:
                            full_text += emitted
                            yield StreamDelta(fragment=emitted, full_text=full_text)

                    if chunk is None:
                        break

                tail = (held + gate.flush()).rstrip()
                full_text += tail
                if not full_text:
                    raise UpstreamMalformedError("Generation stream ended without any content")
                logger.warning(
                    "Generation stream closed without a completion flag; keeping %d chars",
                    len(full_text),
                )
                yield StreamDone(full_text=full_text, fragment=tail)
            finally:
                await response.aclose()
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"Generation timed out after {budget:.1f} seconds") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(f"Could not reach generation backend: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamMalformedError(f"Unreadable response from generation backend: {exc}") from exc

    def _parse_line(self, line: str) -> Optional[Dict[str, Any]]:
        try:
            record = json.loads(line)
        except ValueError:
            logger.warning("Skipping malformed stream line: %.200s", line)
            return None
        if not isinstance(record, dict):
            logger.warning("Skipping non-object stream line: %.200s", line)
            return None
        return record

    async def _emit(self, on_delta: DeltaHandler, fragment: str, full_text: str, is_final: bool) -> None:
        try:
            await on_delta(fragment, full_text, is_final)
        except Exception as exc:
            logger.warning("Delta handler raised an exception: %s", exc, exc_info=True)

    def _check_enabled(self, options: GenerationOptions) -> None:
        backend = options.backend
        if not self.settings.backend_enabled or (backend is not None and not backend.enabled):
            raise UpstreamUnavailableError("Generation backend is disabled")

    def _budget(self, options: GenerationOptions, *, stream: bool, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        backend = options.backend
        if backend is not None and backend.timeout_ms:
            return backend.timeout_ms / 1000.0
        return self.settings.stream_timeout if stream else self.settings.request_timeout

    def _endpoint(self, options: GenerationOptions, path: str) -> str:
        backend = options.backend
        base = backend.base_url if backend is not None and backend.base_url else self.settings.backend_url
        return base.rstrip("/") + path

    def _model(self, options: GenerationOptions) -> str:
        return options.model or self.settings.default_model

    def _request_body(self, prompt: str, options: GenerationOptions, *, stream: bool) -> Dict[str, Any]:
        return {
            "model": self._model(options),
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
                "top_p": 0.9,
                "top_k": 40,
            },
        }
