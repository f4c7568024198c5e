"""Cooperative cancellation for one in-flight completion request."""

from __future__ import annotations

import asyncio


class CancellationGate:
    """Single-use cancel flag shared by the input loop and the stream consumer.

    is_cancelled() is a plain boolean read, cheap enough for the
    per-fragment path. wait() lets the consumer stop waiting on the
    network as soon as cancel is requested instead of at the next fragment.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None

    def request_cancel(self) -> None:
        """Set the flag. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._cancelled

    async def wait(self) -> None:
        """Block until request_cancel() has been called."""
        if self._cancelled:
            return
        if self._event is None:
            # Created lazily so the gate can be built outside a running loop
            self._event = asyncio.Event()
        await self._event.wait()
