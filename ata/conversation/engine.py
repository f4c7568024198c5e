"""Conversation engine -- drives one exchange at a time.

States: Idle -> AwaitingResponse -> Streaming -> Idle, with cancel()
moving AwaitingResponse/Streaming to Cancelling, which ends in Idle.

submit_turn() appends the user turn, builds the request, opens the stream
and folds fragments into a streaming assistant turn, forwarding each one
to the renderer. The assistant turn ends COMPLETE, CANCELLED (partial
content kept) or FAILED (error re-raised to the caller). cancel() is
authoritative locally: once it returns, no further fragment of that
request reaches the transcript.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from enum import StrEnum
from typing import Protocol

from ata.api.request_builder import RequestBuilder, RequestPayload
from ata.api.stream import StreamFragment
from ata.config import ModelConfig
from ata.conversation.cancellation import CancellationGate
from ata.conversation.errors import (
    BusyError,
    EmptyContextError,
    InvalidStateError,
    NetworkError,
)
from ata.conversation.transcript import Role, Transcript, Turn, TurnHandle, TurnStatus

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    STREAMING = "streaming"
    CANCELLING = "cancelling"


class Renderer(Protocol):
    """Sink for streamed output. Return values are ignored."""

    def on_fragment(self, text_delta: str) -> None: ...

    def on_turn_finalized(self, status: TurnStatus) -> None: ...


class FragmentSource(Protocol):
    """Anything with the StreamConsumer.open() signature."""

    def open(
        self, payload: RequestPayload, gate: CancellationGate | None = None,
    ) -> AsyncGenerator[StreamFragment, None]: ...


StateListener = Callable[[EngineState], None]


class NullRenderer:
    def on_fragment(self, text_delta: str) -> None:
        pass

    def on_turn_finalized(self, status: TurnStatus) -> None:
        pass


class ConversationEngine:
    """Owns the exchange protocol between the input loop and the API.

    The engine is the only writer of the transcript. config_provider is
    called once per submit_turn() to obtain an immutable ModelConfig.
    """

    def __init__(
        self,
        transcript: Transcript,
        builder: RequestBuilder,
        consumer: FragmentSource,
        config_provider: Callable[[], ModelConfig],
        renderer: Renderer | None = None,
    ) -> None:
        self._transcript = transcript
        self._builder = builder
        self._consumer = consumer
        self._config_provider = config_provider
        self._renderer: Renderer = renderer or NullRenderer()
        self._state = EngineState.IDLE
        self._gate: CancellationGate | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def transcript(self) -> Transcript:
        return self._transcript

    @property
    def busy(self) -> bool:
        return self._state != EngineState.IDLE

    def set_renderer(self, renderer: Renderer) -> None:
        self._renderer = renderer

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback fired on every state transition."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit_turn(self, user_text: str) -> Turn:
        """Run one exchange and return the finalized assistant turn.

        Raises BusyError (no transcript mutation) if an exchange is in
        flight, EmptyContextError if the context window has no room for the
        user turn (the user turn is rolled back), and NetworkError /
        TimeoutError after finalizing the assistant turn as FAILED.
        """
        if self._state != EngineState.IDLE:
            logger.warning("submit_turn() refused while %s", self._state)
            raise BusyError(f"Cannot submit a turn while {self._state}")

        config = self._config_provider()
        self._transcript.append(Turn(role=Role.USER, content=user_text))
        return await self._exchange(config, rollback_user=True)

    async def retry(self) -> Turn:
        """Re-run the last exchange, replacing the trailing assistant turn.

        The previous assistant content (complete, cancelled or failed) is
        discarded; the same user turn is sent again from scratch.
        """
        if self._state != EngineState.IDLE:
            logger.warning("retry() refused while %s", self._state)
            raise BusyError(f"Cannot retry while {self._state}")
        turns = self._transcript.turns
        if not turns or turns[-1].role != Role.ASSISTANT:
            raise InvalidStateError("Nothing to retry: last turn is not an assistant reply")

        config = self._config_provider()
        discarded = self._transcript.discard_last_assistant()
        logger.info("Retrying exchange, discarded %s assistant turn", discarded.status)
        try:
            return await self._exchange(config, rollback_user=False)
        except EmptyContextError:
            # Nothing was sent; put the previous reply back
            self._transcript.append(discarded)
            raise

    def cancel(self) -> None:
        """Request cancellation of the in-flight exchange.

        Valid only while awaiting a response or streaming.
        """
        if self._state not in (EngineState.AWAITING_RESPONSE, EngineState.STREAMING):
            raise InvalidStateError(f"Nothing to cancel while {self._state}")
        if self._gate is not None:
            self._gate.request_cancel()
        self._set_state(EngineState.CANCELLING)
        logger.debug("Cancellation requested")

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def _exchange(self, config: ModelConfig, rollback_user: bool) -> Turn:
        gate = CancellationGate()
        self._gate = gate
        self._set_state(EngineState.AWAITING_RESPONSE)

        try:
            snapshot = self._transcript.truncate_context(config.context_window_turns)
            payload = self._builder.build(snapshot, config)
        except EmptyContextError:
            if rollback_user:
                self._transcript.pop_last_user()
            self._finish()
            raise

        handle = self._transcript.begin_assistant_turn()
        if not gate.is_cancelled():
            self._set_state(EngineState.STREAMING)

        try:
            return await self._fold(handle, payload, gate)
        except NetworkError:
            # Error fragments are finalized in _fold; a raising source is not
            self._close_if_open(handle, TurnStatus.FAILED)
            raise
        except InvalidStateError:
            logger.exception("Ordering error while streaming; failing the turn")
            self._close_if_open(handle, TurnStatus.FAILED)
            raise
        except asyncio.CancelledError:
            # Task torn down from outside (e.g. shutdown): same outcome as cancel()
            self._close_if_open(handle, TurnStatus.CANCELLED)
            raise
        except Exception:
            logger.exception("Unexpected error while streaming; failing the turn")
            self._close_if_open(handle, TurnStatus.FAILED)
            raise
        finally:
            self._finish()

    async def _fold(self, handle: TurnHandle, payload: RequestPayload, gate: CancellationGate) -> Turn:
        """Fold fragments into the assistant turn until a terminal outcome."""
        if gate.is_cancelled():
            return self._finalize(handle, TurnStatus.CANCELLED)

        stream = self._consumer.open(payload, gate)
        try:
            async for fragment in stream:
                # Checked before folding: nothing arriving after cancel() is kept
                if gate.is_cancelled():
                    return self._finalize(handle, TurnStatus.CANCELLED)

                if fragment.error is not None:
                    self._finalize(handle, TurnStatus.FAILED)
                    logger.warning("Completion failed: %s", fragment.error)
                    raise fragment.error

                if fragment.text_delta:
                    self._transcript.append_fragment(handle, fragment.text_delta)
                    self._renderer.on_fragment(fragment.text_delta)

                if fragment.is_final:
                    if fragment.usage:
                        self._calibrate(payload, fragment.usage)
                    return self._finalize(handle, TurnStatus.COMPLETE)
        finally:
            await stream.aclose()

        if gate.is_cancelled():
            return self._finalize(handle, TurnStatus.CANCELLED)

        # Consumers always end with a final or error fragment; treat anything else as a drop
        self._finalize(handle, TurnStatus.FAILED)
        raise NetworkError("Stream ended without a final fragment")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _finalize(self, handle: TurnHandle, status: TurnStatus) -> Turn:
        turn = self._transcript.finalize(handle, status)
        self._renderer.on_turn_finalized(status)
        return turn

    def _close_if_open(self, handle: TurnHandle, status: TurnStatus) -> None:
        streaming = self._transcript.streaming_turn
        if streaming is not None and streaming.turn_id == handle.turn_id:
            self._finalize(handle, status)

    def _calibrate(self, payload: RequestPayload, usage: dict[str, int]) -> None:
        prompt_tokens = usage.get("prompt_tokens", 0)
        self._builder.estimator.calibrate(payload.input_chars, prompt_tokens)

    def _finish(self) -> None:
        self._gate = None
        self._set_state(EngineState.IDLE)

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        logger.debug("Engine state %s -> %s", self._state, state)
        self._state = state
        for listener in self._listeners:
            listener(state)
