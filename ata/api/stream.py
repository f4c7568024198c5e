"""Stream consumer -- streaming chat completions over httpx.

open() returns a lazy async iterator of StreamFragments. Every call is
a fresh HTTP request; a dropped stream is never resumed. Network errors,
timeouts and in-stream API errors become one fragment with ``error`` set,
after which the sequence ends. There is no retry at this layer.

Cancellation is observed between fragments and while waiting for the
next line: the pending read is abandoned and the response closed, so
the connection is dropped rather than drained.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from ata.api.request_builder import RequestPayload
from ata.config import Settings
from ata.conversation.cancellation import CancellationGate
from ata.conversation.errors import NetworkError, TimeoutError

logger = logging.getLogger(__name__)

_DONE_SENTINEL = "[DONE]"
_CANCELLED = object()


@dataclass
class StreamFragment:
    """A unit of incremental output from the completion endpoint."""

    text_delta: str = ""
    is_final: bool = False
    error: NetworkError | None = None
    finish_reason: str = ""
    usage: dict[str, int] | None = None


def _parse_sse_chunk(data: dict[str, Any]) -> StreamFragment | None:
    """Parse one chat.completion.chunk dict into a StreamFragment.

    Returns None for chunks that carry nothing (e.g. the initial
    role-only delta). In-stream errors arrive with HTTP 200 and an
    ``error`` object in the body.
    """
    if "error" in data:
        error = data.get("error") or {}
        if isinstance(error, dict):
            text = f"{error.get('type', 'unknown')}: {error.get('message', '')}"
        else:
            text = str(error)
        return StreamFragment(error=NetworkError(f"API error: {text}"))

    usage = data.get("usage")
    choices = data.get("choices") or []
    if not choices:
        if usage:
            return StreamFragment(usage=usage)
        return None

    # Only n=1 is rendered; other choices are ignored
    choice = choices[0]
    text = (choice.get("delta") or {}).get("content") or ""
    finish_reason = choice.get("finish_reason") or ""
    if not text and not finish_reason and not usage:
        return None
    return StreamFragment(text_delta=text, finish_reason=finish_reason, usage=usage)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared httpx client with auth and connection limits."""
    headers: dict[str, str] = {"content-type": "application/json"}
    if settings.api_key:
        headers["authorization"] = f"Bearer {settings.api_key}"
    else:
        logger.warning("OPENAI_API_KEY is not set -- API calls will fail")

    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        headers=headers,
        timeout=httpx.Timeout(settings.api_timeout, connect=settings.api_timeout_connect),
        limits=httpx.Limits(max_connections=4, max_keepalive_connections=2),
    )


class StreamConsumer:
    """Opens streaming completion requests and yields fragments."""

    def __init__(self, http: httpx.AsyncClient, connect_timeout: float = 10.0) -> None:
        self._http = http
        self._connect_timeout = connect_timeout

    async def open(
        self,
        payload: RequestPayload,
        gate: CancellationGate | None = None,
    ) -> AsyncGenerator[StreamFragment, None]:
        """Start a fresh request and yield fragments until completion.

        The last fragment has is_final=True unless the stream ended with an
        error fragment or was cancelled.
        """
        gate = gate or CancellationGate()
        finish_reason = ""
        usage: dict[str, int] | None = None
        saw_done = False
        timeout = httpx.Timeout(payload.timeout, connect=self._connect_timeout)

        try:
            async with self._http.stream(
                "POST", "/chat/completions", json=payload.to_json(), timeout=timeout,
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    yield StreamFragment(error=NetworkError(
                        f"HTTP {response.status_code}: {body.decode(errors='replace')[:500]}"
                    ))
                    return

                lines = response.aiter_lines()
                while True:
                    line = await _next_line(lines, gate)
                    if line is _CANCELLED:
                        logger.debug("Stream cancelled while waiting for data, dropping connection")
                        return
                    if line is None:
                        break
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if raw == _DONE_SENTINEL:
                        saw_done = True
                        break
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed stream chunk: %.200s", raw)
                        continue

                    fragment = _parse_sse_chunk(data)
                    if fragment is None:
                        continue
                    if fragment.error is not None:
                        yield fragment
                        return
                    if fragment.usage:
                        usage = fragment.usage
                    if fragment.finish_reason:
                        finish_reason = fragment.finish_reason
                    if fragment.text_delta:
                        yield StreamFragment(text_delta=fragment.text_delta)
                    if gate.is_cancelled():
                        logger.debug("Stream cancelled between fragments, dropping connection")
                        return

        except httpx.TimeoutException as e:
            yield StreamFragment(error=TimeoutError(
                f"Request timed out after {payload.timeout:g}s: {e!r}"
            ))
            return
        except httpx.HTTPError as e:
            yield StreamFragment(error=NetworkError(f"HTTP error: {e}"))
            return

        if not finish_reason and not saw_done:
            yield StreamFragment(error=NetworkError("Stream ended before the model finished"))
            return
        if finish_reason and finish_reason != "stop":
            logger.warning("Completion finished with reason %r", finish_reason)
        yield StreamFragment(is_final=True, finish_reason=finish_reason or "stop", usage=usage)


async def _next_line(lines: AsyncIterator[str], gate: CancellationGate) -> Any:
    """Await the next line, or _CANCELLED if the gate fires first.

    Returns None when the response body is exhausted.
    """
    if gate.is_cancelled():
        return _CANCELLED
    read = asyncio.ensure_future(anext(lines, None))
    cancel_wait = asyncio.ensure_future(gate.wait())
    try:
        done, _ = await asyncio.wait({read, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (read, cancel_wait):
            if not task.done():
                task.cancel()
    if read in done:
        return read.result()
    # Let the abandoned read observe its cancellation before the response closes
    try:
        await read
    except (asyncio.CancelledError, httpx.HTTPError):
        pass
    return _CANCELLED
