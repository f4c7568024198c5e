"""Shared fixtures: settings isolated from the environment, scripted streams."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from ata.api.request_builder import RequestPayload
from ata.api.stream import StreamFragment
from ata.config import ModelConfig, Settings
from ata.conversation.cancellation import CancellationGate
from ata.conversation.transcript import TurnStatus

API_BASE = "https://api.test/v1"


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep real keys, .env files and the user's config dir out of tests."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        api_key="sk-test",
        api_base_url=API_BASE,
        model="gpt-test",
        ui={"history_file": tmp_path / "history", "save_history": False},
    )


def make_config(**overrides: Any) -> ModelConfig:
    values: dict[str, Any] = {"model": "gpt-test", "temperature": 0.5, "max_tokens": 100}
    values.update(overrides)
    return ModelConfig(**values)


@pytest.fixture
def config() -> ModelConfig:
    return make_config()


# ---------------------------------------------------------------------------
# Engine doubles
# ---------------------------------------------------------------------------


class RecordingRenderer:
    """Renderer that remembers everything the engine told it."""

    def __init__(self) -> None:
        self.fragments: list[str] = []
        self.statuses: list[TurnStatus] = []
        self.on_fragment_hook: Callable[[str], None] | None = None

    def on_fragment(self, text_delta: str) -> None:
        self.fragments.append(text_delta)
        if self.on_fragment_hook is not None:
            self.on_fragment_hook(text_delta)

    def on_turn_finalized(self, status: TurnStatus) -> None:
        self.statuses.append(status)


WAIT_FOR_CANCEL = object()


class ScriptedConsumer:
    """FragmentSource that plays back a script per open() call.

    Script items are StreamFragments, exceptions (raised in place),
    zero-argument callables (run in place, e.g. to call engine.cancel()),
    or WAIT_FOR_CANCEL, which blocks on the gate and then ends the stream
    like the real consumer.
    """

    def __init__(self, *scripts: list[Any]) -> None:
        self._scripts = list(scripts)
        self.payloads: list[RequestPayload] = []
        self.closed = 0

    async def open(self, payload: RequestPayload, gate: CancellationGate | None = None):
        self.payloads.append(payload)
        script = self._scripts.pop(0) if self._scripts else []
        try:
            for item in script:
                if item is WAIT_FOR_CANCEL:
                    assert gate is not None
                    await gate.wait()
                    return
                if isinstance(item, BaseException):
                    raise item
                if callable(item):
                    item()
                    continue
                yield item
        finally:
            self.closed += 1


def text(delta: str) -> StreamFragment:
    return StreamFragment(text_delta=delta)


def final(usage: dict[str, int] | None = None) -> StreamFragment:
    return StreamFragment(is_final=True, finish_reason="stop", usage=usage)


async def wait_until(predicate: Callable[[], bool], attempts: int = 1000) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# ---------------------------------------------------------------------------
# HTTP doubles
# ---------------------------------------------------------------------------


def sse_body(*chunks: dict[str, Any], done: bool = True) -> bytes:
    """Encode chat.completion.chunk dicts as an SSE response body."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def delta_chunk(content: str | None = None, finish_reason: str | None = None) -> dict[str, Any]:
    delta = {} if content is None else {"content": content}
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def usage_chunk(prompt_tokens: int, completion_tokens: int) -> dict[str, Any]:
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def hello_body() -> bytes:
    return sse_body(
        {"choices": [{"index": 0, "delta": {"role": "assistant"}, "finish_reason": None}]},
        delta_chunk("Hel"),
        delta_chunk("lo!"),
        delta_chunk(finish_reason="stop"),
        usage_chunk(12, 2),
    )


def mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=API_BASE)
