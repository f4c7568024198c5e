"""Tests for the streaming chat-completions consumer.

Tests cover:
- SSE chunk parsing (_parse_sse_chunk pure function)
- StreamConsumer.open() against httpx.MockTransport: happy path, HTTP
  errors, in-stream errors, timeouts, truncated streams
- cancellation between fragments and while blocked on the network
"""

import asyncio
import json

import httpx
import pytest

from ata.api.request_builder import RequestPayload
from ata.api.stream import StreamConsumer, StreamFragment, _parse_sse_chunk, build_http_client
from ata.conversation.cancellation import CancellationGate
from ata.conversation.errors import NetworkError, TimeoutError
from ata.conversation.transcript import Role, Turn
from tests.conftest import delta_chunk, hello_body, make_config, mock_client, sse_body, usage_chunk


def _payload(**overrides) -> RequestPayload:
    return RequestPayload(config=make_config(**overrides), turns=(Turn(role=Role.USER, content="Hi"),))


async def _collect(consumer: StreamConsumer, gate: CancellationGate | None = None) -> list[StreamFragment]:
    return [fragment async for fragment in consumer.open(_payload(), gate)]


# ---------------------------------------------------------------------------
# TestParseSSEChunk -- pure function
# ---------------------------------------------------------------------------


class TestParseSSEChunk:
    def test_text_delta(self):
        fragment = _parse_sse_chunk(delta_chunk("Hello"))
        assert fragment is not None
        assert fragment.text_delta == "Hello"
        assert fragment.is_final is False

    def test_role_only_delta_is_ignored(self):
        data = {"choices": [{"index": 0, "delta": {"role": "assistant"}, "finish_reason": None}]}
        assert _parse_sse_chunk(data) is None

    def test_finish_reason(self):
        fragment = _parse_sse_chunk(delta_chunk(finish_reason="length"))
        assert fragment is not None
        assert fragment.finish_reason == "length"
        assert fragment.text_delta == ""

    def test_usage_only_chunk(self):
        fragment = _parse_sse_chunk(usage_chunk(10, 3))
        assert fragment is not None
        assert fragment.usage["prompt_tokens"] == 10

    def test_error_object(self):
        fragment = _parse_sse_chunk({"error": {"type": "server_error", "message": "overloaded"}})
        assert fragment is not None
        assert isinstance(fragment.error, NetworkError)
        assert "server_error: overloaded" in str(fragment.error)

    def test_empty_chunk(self):
        assert _parse_sse_chunk({}) is None


# ---------------------------------------------------------------------------
# TestStreamConsumer -- full request over a mock transport
# ---------------------------------------------------------------------------


class TestStreamConsumer:
    @pytest.mark.asyncio
    async def test_hello(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=hello_body())

        async with mock_client(handler) as http:
            fragments = await _collect(StreamConsumer(http))

        assert [f.text_delta for f in fragments if f.text_delta] == ["Hel", "lo!"]
        last = fragments[-1]
        assert last.is_final is True
        assert last.finish_reason == "stop"
        assert last.usage["prompt_tokens"] == 12
        assert all(f.error is None for f in fragments)

        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/v1/chat/completions"
        assert body["stream"] is True
        assert body["messages"] == [{"role": "user", "content": "Hi"}]

    @pytest.mark.asyncio
    async def test_every_open_is_a_fresh_request(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, content=hello_body())

        async with mock_client(handler) as http:
            consumer = StreamConsumer(http)
            await _collect(consumer)
            await _collect(consumer)

        assert calls == 2

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": {"message": "bad key"}})

        async with mock_client(handler) as http:
            fragments = await _collect(StreamConsumer(http))

        assert len(fragments) == 1
        assert isinstance(fragments[0].error, NetworkError)
        assert "HTTP 401" in str(fragments[0].error)

    @pytest.mark.asyncio
    async def test_in_stream_error_ends_sequence(self):
        body = sse_body(
            delta_chunk("Hel"),
            {"error": {"type": "server_error", "message": "boom"}},
            delta_chunk("lo"),
        )

        async with mock_client(lambda request: httpx.Response(200, content=body)) as http:
            fragments = await _collect(StreamConsumer(http))

        assert [f.text_delta for f in fragments] == ["Hel", ""]
        assert isinstance(fragments[-1].error, NetworkError)
        assert not any(f.is_final for f in fragments)

    @pytest.mark.asyncio
    async def test_malformed_chunks_are_skipped(self):
        body = (
            b"data: {not json\n\n"
            + b": keep-alive comment\n\n"
            + sse_body(delta_chunk("ok"), delta_chunk(finish_reason="stop"))
        )

        async with mock_client(lambda request: httpx.Response(200, content=body)) as http:
            fragments = await _collect(StreamConsumer(http))

        assert [f.text_delta for f in fragments if f.text_delta] == ["ok"]
        assert fragments[-1].is_final is True

    @pytest.mark.asyncio
    async def test_truncated_stream_is_an_error(self):
        body = sse_body(delta_chunk("Hel"), done=False)

        async with mock_client(lambda request: httpx.Response(200, content=body)) as http:
            fragments = await _collect(StreamConsumer(http))

        assert fragments[0].text_delta == "Hel"
        assert isinstance(fragments[-1].error, NetworkError)
        assert "ended before" in str(fragments[-1].error)

    @pytest.mark.asyncio
    async def test_done_without_finish_reason_is_final(self):
        body = sse_body(delta_chunk("Hi"))

        async with mock_client(lambda request: httpx.Response(200, content=body)) as http:
            fragments = await _collect(StreamConsumer(http))

        assert fragments[-1].is_final is True
        assert fragments[-1].finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        async with mock_client(handler) as http:
            fragments = await _collect(StreamConsumer(http))

        assert len(fragments) == 1
        assert isinstance(fragments[0].error, TimeoutError)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handler) as http:
            fragments = await _collect(StreamConsumer(http))

        assert len(fragments) == 1
        assert isinstance(fragments[0].error, NetworkError)
        assert not isinstance(fragments[0].error, TimeoutError)


class TestStreamCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_fragments(self):
        gate = CancellationGate()
        seen: list[StreamFragment] = []

        async with mock_client(lambda request: httpx.Response(200, content=hello_body())) as http:
            async for fragment in StreamConsumer(http).open(_payload(), gate):
                seen.append(fragment)
                gate.request_cancel()

        assert [f.text_delta for f in seen] == ["Hel"]

    @pytest.mark.asyncio
    async def test_already_cancelled_gate_yields_nothing(self):
        gate = CancellationGate()
        gate.request_cancel()

        async with mock_client(lambda request: httpx.Response(200, content=hello_body())) as http:
            fragments = await _collect(StreamConsumer(http), gate)

        assert fragments == []

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_on_network(self):
        never = asyncio.Event()

        async def slow_body():
            yield f"data: {json.dumps(delta_chunk('Hel'))}\n\n".encode()
            await never.wait()
            yield b"data: [DONE]\n\n"

        gate = CancellationGate()
        async with mock_client(lambda request: httpx.Response(200, content=slow_body())) as http:
            stream = StreamConsumer(http).open(_payload(), gate)
            first = await anext(stream)
            assert first.text_delta == "Hel"

            asyncio.get_running_loop().call_later(0.01, gate.request_cancel)
            rest = await asyncio.wait_for(_drain(stream), timeout=2)

        assert rest == []


async def _drain(stream) -> list[StreamFragment]:
    return [fragment async for fragment in stream]


class TestBuildHttpClient:
    @pytest.mark.asyncio
    async def test_auth_and_base_url(self, settings):
        http = build_http_client(settings)
        try:
            assert http.headers["authorization"] == "Bearer sk-test"
            assert str(http.base_url).startswith("https://api.test/v1")
        finally:
            await http.aclose()
