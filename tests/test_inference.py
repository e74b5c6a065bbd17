"""Tests for the streaming inference client."""

import asyncio
import json

import httpx
import pytest

from conftest import ndjson, streamed

from chatforge.core.errors import (
    UpstreamMalformedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from chatforge.core.inference import (
    LineBuffer,
    PrefixGate,
    StreamDelta,
    StreamDone,
    StreamFailed,
    strip_role_prefix,
)
from chatforge.core.models import BackendConfig, GenerationOptions


class Recorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, fragment, full_text, is_final):
        self.calls.append((fragment, full_text, is_final))


# --- framing and prefix helpers -------------------------------------------

def test_line_buffer_keeps_incomplete_tail():
    buf = LineBuffer()
    assert buf.feed('{"a": 1}\n{"b"') == ['{"a": 1}']
    assert buf.feed(': 2}\n') == ['{"b": 2}']
    assert buf.feed('{"c": 3}') == []
    assert buf.flush() == ['{"c": 3}']
    assert buf.flush() == []


def test_strip_role_prefix_only_strips_once():
    assert strip_role_prefix("Assistant: Sure, here's the answer") == "Sure, here's the answer"
    assert strip_role_prefix("AI: Bot: hello") == "Bot: hello"
    assert strip_role_prefix("The Assistant: said hi") == "The Assistant: said hi"


def test_prefix_gate_holds_back_possible_prefix():
    gate = PrefixGate()
    assert gate.feed("Assis") == ""
    assert gate.feed("tant:") == ""
    assert gate.feed(" ") == ""
    assert gate.feed("Sure") == "Sure"
    assert gate.feed(" thing") == " thing"


def test_prefix_gate_passes_ordinary_text_and_mid_text_prefixes():
    gate = PrefixGate()
    assert gate.feed("A") == ""
    assert gate.feed("pples") == "Apples"
    assert gate.feed(" AI:") == " AI:"
    assert gate.flush() == ""


def test_prefix_gate_flush_releases_short_text():
    gate = PrefixGate()
    assert gate.feed("AI") == ""
    assert gate.flush() == "AI"


# --- buffered generation -------------------------------------------------

async def test_buffered_generation_strips_prefix_and_reports_tokens(make_client):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": "Assistant: Sure, here's the answer", "eval_count": 7})

    client = make_client(handler)
    result = await client.generate("prompt text", GenerationOptions(temperature=0.2, max_tokens=64))

    assert result.content == "Sure, here's the answer"
    assert result.model == "test-model"
    assert result.token_count == 7
    assert result.degraded is False
    assert seen["url"] == "http://ollama.test/api/generate"
    assert seen["body"]["prompt"] == "prompt text"
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"]["temperature"] == 0.2
    assert seen["body"]["options"]["num_predict"] == 64


async def test_buffered_generation_uses_backend_override(make_client):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"response": "ok"})

    client = make_client(handler)
    options = GenerationOptions(model="other", backend=BackendConfig(base_url="http://gpu.box:11434/", timeout_ms=500))
    result = await client.generate("p", options)

    assert seen["url"] == "http://gpu.box:11434/api/generate"
    assert result.model == "other"


@pytest.mark.parametrize("response", [
    httpx.Response(200, json={"response": ""}),
    httpx.Response(200, json={"done": True}),
    httpx.Response(200, content=b"not json"),
    httpx.Response(200, json={"response": "Assistant:"}),
])
async def test_buffered_generation_rejects_unusable_payloads(make_client, response):
    client = make_client(lambda request: response)
    with pytest.raises(UpstreamMalformedError):
        await client.generate("p")


async def test_http_error_status_is_unavailable(make_client):
    client = make_client(lambda request: httpx.Response(500, text="model crashed"))
    with pytest.raises(UpstreamUnavailableError):
        await client.generate("p")


async def test_connection_failure_is_unavailable(make_client):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)
    with pytest.raises(UpstreamUnavailableError):
        await client.generate("p")
    with pytest.raises(UpstreamUnavailableError):
        await client.generate("p", on_delta=Recorder())


async def test_disabled_backend_makes_no_request(make_client):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"response": "ok"})

    client = make_client(handler)
    with pytest.raises(UpstreamUnavailableError):
        await client.generate("p", GenerationOptions(backend=BackendConfig(enabled=False)))
    assert requests == []


async def test_buffered_generation_times_out(make_client):
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"response": "too late"})

    client = make_client(handler)
    with pytest.raises(UpstreamTimeoutError):
        await client.generate("p", timeout=0.05)


# --- streamed generation -------------------------------------------------

async def test_stream_reassembles_lines_split_across_reads(make_client):
    payload = ndjson(
        {"response": "Hello", "done": False},
        {"response": " world", "done": False},
        {"response": "", "done": True, "eval_count": 3},
    )
    chunks = [payload[:7], payload[7:19], payload[19:45], payload[45:]]
    client = make_client(lambda request: streamed(chunks))
    recorder = Recorder()

    result = await client.generate("p", on_delta=recorder)

    assert result.content == "Hello world"
    assert result.token_count == 3
    assert "".join(c[0] for c in recorder.calls) == "Hello world"
    assert [c[2] for c in recorder.calls].count(True) == 1
    assert recorder.calls[-1][1:] == ("Hello world", True)


async def test_stream_skips_malformed_line(make_client):
    chunks = [
        ndjson({"response": "Hi"}),
        "{this is not json\n",
        ndjson({"response": " there"}),
        ndjson({"response": "", "done": True}),
    ]
    client = make_client(lambda request: streamed(chunks))
    recorder = Recorder()

    result = await client.generate("p", on_delta=recorder)

    assert result.content == "Hi there"
    assert recorder.calls[-1] == ("", "Hi there", True)


async def test_stream_parses_unterminated_final_line(make_client):
    chunks = [ndjson({"response": "Done"}), json.dumps({"response": "!", "done": True})]
    client = make_client(lambda request: streamed(chunks))
    recorder = Recorder()

    result = await client.generate("p", on_delta=recorder)

    assert result.content == "Done!"
    assert recorder.calls[-1] == ("!", "Done!", True)


async def test_stream_without_done_flag_keeps_text(make_client):
    client = make_client(lambda request: streamed([ndjson({"response": "partial"})]))
    result = await client.generate("p", on_delta=Recorder())
    assert result.content == "partial"


async def test_empty_stream_is_malformed(make_client):
    client = make_client(lambda request: streamed([]))
    with pytest.raises(UpstreamMalformedError):
        await client.generate("p", on_delta=Recorder())


async def test_stream_error_record_is_unavailable(make_client):
    chunks = [ndjson({"response": "a"}, {"error": "model not found"})]
    client = make_client(lambda request: streamed(chunks))
    with pytest.raises(UpstreamUnavailableError):
        await client.generate("p", on_delta=Recorder())


async def test_throttled_deltas_are_coalesced_and_final_always_fires(make_client):
    chunks = [ndjson({"response": "a"}, {"response": "b"}, {"response": "c"}, {"response": "", "done": True})]
    client = make_client(lambda request: streamed(chunks), stream_interval=10.0)
    recorder = Recorder()

    result = await client.generate("p", on_delta=recorder)

    assert result.content == "abc"
    assert recorder.calls == [("a", "a", False), ("bc", "abc", True)]


async def test_streamed_role_prefix_is_stripped_once(make_client):
    chunks = [ndjson(
        {"response": "Assis"},
        {"response": "tant:"},
        {"response": " Sure"},
        {"response": ", here's the "},
        {"response": "AI: answer"},
        {"response": "", "done": True},
    )]
    client = make_client(lambda request: streamed(chunks))
    recorder = Recorder()

    result = await client.generate("p", on_delta=recorder)

    assert result.content == "Sure, here's the AI: answer"
    lengths = [len(c[1]) for c in recorder.calls]
    assert lengths == sorted(lengths)
    for _, full_text, _ in recorder.calls:
        assert result.content.startswith(full_text)
    assert "".join(c[0] for c in recorder.calls) == result.content


async def test_stream_request_is_flagged_as_streaming(make_client):
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return streamed([ndjson({"response": "x", "done": True})])

    client = make_client(handler)
    await client.generate("p", on_delta=Recorder())
    assert seen["body"]["stream"] is True


async def test_stalled_stream_times_out(make_client):
    async def body():
        yield ndjson({"response": "slow"}).encode()
        await asyncio.sleep(5)
        yield ndjson({"response": "", "done": True}).encode()

    client = make_client(lambda request: httpx.Response(200, content=body()))
    with pytest.raises(UpstreamTimeoutError):
        await client.generate("p", on_delta=Recorder(), timeout=0.1)


async def test_unanswered_stream_times_out(make_client):
    async def handler(request):
        await asyncio.sleep(5)
        return streamed([])

    client = make_client(handler)
    with pytest.raises(UpstreamTimeoutError):
        await client.generate("p", on_delta=Recorder(), timeout=0.05)


async def test_cancelling_a_stream_stops_promptly(make_client):
    async def body():
        yield ndjson({"response": "tick"}).encode()
        await asyncio.sleep(30)
        yield b""

    client = make_client(lambda request: httpx.Response(200, content=body()))
    recorder = Recorder()
    task = asyncio.create_task(client.generate("p", on_delta=recorder))
    for _ in range(50):
        if recorder.calls:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, timeout=1.0)
    assert recorder.calls[0][1] == "tick"


async def test_stream_iterator_yields_discriminated_events(make_client):
    chunks = [ndjson({"response": "x"}, {"response": "y", "done": True, "eval_count": 2})]
    client = make_client(lambda request: streamed(chunks))

    events = [event async for event in client.stream("p")]

    assert events == [
        StreamDelta(fragment="x", full_text="x"),
        StreamDone(full_text="xy", fragment="y", token_count=2),
    ]


async def test_stream_iterator_reports_failure_as_event(make_client):
    client = make_client(lambda request: httpx.Response(503))

    events = [event async for event in client.stream("p")]

    assert len(events) == 1
    assert isinstance(events[0], StreamFailed)
    assert isinstance(events[0].error, UpstreamUnavailableError)


# --- auxiliary probes ----------------------------------------------------

async def test_list_models_returns_names(make_client):
    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2"}, {"name": "mistral"}, {"size": 1}]})

    client = make_client(handler)
    assert await client.list_models() == ["llama3.2", "mistral"]


async def test_probes_absorb_failures(make_client):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    client = make_client(handler)
    assert await client.list_models() == []
    assert await client.is_available() is False


async def test_is_available_checks_version_endpoint(make_client):
    def handler(request):
        assert request.url.path == "/api/version"
        return httpx.Response(200, json={"version": "0.3.0"})

    client = make_client(handler)
    assert await client.is_available() is True


# --- payload tolerance ---------------------------------------------------

@pytest.mark.parametrize("eval_count", ["n/a", {"x": 1}, [3], 2.5, True, None])
async def test_unusable_token_counts_read_as_zero(make_client, eval_count):
    buffered = make_client(lambda request: httpx.Response(200, json={"response": "ok", "eval_count": eval_count}))
    chunks = [ndjson({"response": "ok", "done": True, "eval_count": eval_count})]
    streaming = make_client(lambda request: streamed(chunks))

    assert (await buffered.generate("p")).token_count == 0
    assert (await streaming.generate("p", on_delta=Recorder())).token_count == 0


@pytest.mark.parametrize("records", [
    [{"response": "", "done": True}],
    [{"response": "Assistant:"}, {"response": " ", "done": True}],
    [{"response": "   "}, {"response": "\n", "done": True}],
])
async def test_stream_finishing_without_text_is_malformed(make_client, records):
    client = make_client(lambda request: streamed([ndjson(*records)]))
    recorder = Recorder()

    with pytest.raises(UpstreamMalformedError):
        await client.generate("p", on_delta=recorder)
    assert recorder.calls == []


async def test_trailing_whitespace_matches_buffered_result(make_client):
    reply = "Hello there  \n"
    buffered = make_client(lambda request: httpx.Response(200, json={"response": reply}))
    chunks = [ndjson({"response": "Hello "}, {"response": "there  "}, {"response": "\n", "done": True})]
    streaming = make_client(lambda request: streamed(chunks))
    recorder = Recorder()

    expected = (await buffered.generate("p")).content
    result = await streaming.generate("p", on_delta=recorder)

    assert expected == "Hello there"
    assert result.content == expected
    assert recorder.calls[-1] == ("", "Hello there", True)
    assert "".join(c[0] for c in recorder.calls) == result.content


async def test_inner_whitespace_is_released_with_following_text(make_client):
    chunks = [ndjson({"response": "one "}, {"response": "\n\n"}, {"response": "two", "done": True})]
    client = make_client(lambda request: streamed(chunks))

    events = [event async for event in client.stream("p")]

    assert events == [
        StreamDelta(fragment="one", full_text="one"),
        StreamDone(full_text="one \n\ntwo", fragment=" \n\ntwo"),
    ]


async def test_cancelling_releases_throttled_text(make_client):
    async def body():
        yield ndjson({"response": "a"}, {"response": "b"}).encode()
        await asyncio.sleep(30)
        yield b""

    client = make_client(lambda request: httpx.Response(200, content=body()), stream_interval=10.0)
    seen = asyncio.Event()
    calls = []

    async def on_delta(fragment, full_text, is_final):
        calls.append((fragment, full_text, is_final))
        seen.set()

    task = asyncio.create_task(client.generate("p", on_delta=on_delta))
    await asyncio.wait_for(seen.wait(), timeout=1.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert calls == [("a", "a", False), ("b", "ab", False)]
