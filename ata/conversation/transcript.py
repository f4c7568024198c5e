"""Transcript store -- the ordered conversation history.

Single writer: only the ConversationEngine mutates a Transcript.
Readers (renderer, persistence) may look at finalized turns at any
time, and at the live content of the streaming turn, which is only
ever appended to.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import StrEnum

from ata.conversation.errors import InvalidStateError, StaleHandleError

logger = logging.getLogger(__name__)


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TurnStatus(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


FINAL_STATUSES = frozenset({TurnStatus.COMPLETE, TurnStatus.CANCELLED, TurnStatus.FAILED})

_turn_ids = itertools.count(1)


@dataclass
class Turn:
    """One utterance in the dialogue."""

    role: Role
    content: str = ""
    status: TurnStatus = TurnStatus.COMPLETE
    turn_id: int = field(default_factory=lambda: next(_turn_ids))

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES


@dataclass(frozen=True)
class TurnHandle:
    """Addresses the assistant turn opened by begin_assistant_turn()."""

    turn_id: int


class Transcript:
    """Ordered sequence of turns, never reordered.

    Invariants:
    - at most one turn is STREAMING at a time
    - mutations other than append_fragment/finalize are refused while
      a turn is streaming
    """

    def __init__(self, turns: Iterable[Turn] | None = None) -> None:
        self._turns: list[Turn] = []
        self._streaming: Turn | None = None
        if turns:
            self.extend(turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(self._turns)

    def __getitem__(self, index: int) -> Turn:
        return self._turns[index]

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def streaming_turn(self) -> Turn | None:
        """The turn currently being streamed, if any."""
        return self._streaming

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, turn: Turn) -> None:
        """Append a finalized turn (system, user, or a loaded assistant turn)."""
        self._check_not_streaming("append")
        if turn.status == TurnStatus.STREAMING:
            raise InvalidStateError("Use begin_assistant_turn() to open a streaming turn")
        self._check_alternation(turn.role)
        self._turns.append(turn)

    def extend(self, turns: Iterable[Turn]) -> None:
        for turn in turns:
            self.append(turn)

    def begin_assistant_turn(self) -> TurnHandle:
        """Open a new, empty assistant turn in STREAMING state."""
        self._check_not_streaming("begin_assistant_turn")
        self._check_alternation(Role.ASSISTANT)
        turn = Turn(role=Role.ASSISTANT, content="", status=TurnStatus.STREAMING)
        self._turns.append(turn)
        self._streaming = turn
        logger.debug("Opened assistant turn %d", turn.turn_id)
        return TurnHandle(turn.turn_id)

    def append_fragment(self, handle: TurnHandle, text_delta: str) -> None:
        turn = self._resolve(handle)
        turn.content += text_delta

    def finalize(self, handle: TurnHandle, outcome: TurnStatus) -> Turn:
        """Close the streaming turn with a terminal status and return it."""
        if outcome not in FINAL_STATUSES:
            raise InvalidStateError(f"Cannot finalize a turn as {outcome}")
        turn = self._resolve(handle)
        turn.status = outcome
        self._streaming = None
        logger.debug(
            "Finalized assistant turn %d as %s (%d chars)",
            turn.turn_id, outcome, len(turn.content),
        )
        return turn

    def clear(self, keep_system: bool = True) -> None:
        """Drop the history between exchanges; system turns survive by default."""
        self._check_not_streaming("clear")
        if keep_system:
            self._turns = [t for t in self._turns if t.role == Role.SYSTEM]
        else:
            self._turns = []

    def discard_last_assistant(self) -> Turn:
        """Remove the trailing assistant turn so a retry can replace it."""
        self._check_not_streaming("discard_last_assistant")
        if not self._turns or self._turns[-1].role != Role.ASSISTANT:
            raise InvalidStateError("Last turn is not an assistant turn")
        return self._turns.pop()

    def pop_last_user(self) -> Turn:
        """Remove a trailing user turn that never got a request sent."""
        self._check_not_streaming("pop_last_user")
        if not self._turns or self._turns[-1].role != Role.USER:
            raise InvalidStateError("Last turn is not a user turn")
        return self._turns.pop()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def last_user_turn(self) -> Turn | None:
        for turn in reversed(self._turns):
            if turn.role == Role.USER:
                return turn
        return None

    def finalized_turns(self) -> list[Turn]:
        """Turns safe to persist -- never includes the streaming turn."""
        return [replace(t) for t in self._turns if t.is_final]

    def truncate_context(self, max_turns: int | None = None) -> tuple[Turn, ...]:
        """Read-only snapshot of turns eligible for a request.

        Excludes the streaming turn and FAILED assistant turns. System turns
        are always kept; at most max_turns of the remaining turns (the most
        recent ones) are included. Never mutates the store.
        """
        eligible = [
            t for t in self._turns
            if t.is_final and not (t.role == Role.ASSISTANT and t.status == TurnStatus.FAILED)
        ]
        if max_turns is not None:
            others = [t for t in eligible if t.role != Role.SYSTEM]
            keep = {t.turn_id for t in others[-max_turns:]} if max_turns > 0 else set()
            eligible = [t for t in eligible if t.role == Role.SYSTEM or t.turn_id in keep]
        return tuple(replace(t) for t in eligible)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_not_streaming(self, operation: str) -> None:
        if self._streaming is not None:
            raise InvalidStateError(
                f"{operation}() refused: turn {self._streaming.turn_id} is still streaming"
            )

    def _check_alternation(self, role: Role) -> None:
        # Consecutive system turns are allowed (e.g. several preamble prompts)
        if role == Role.SYSTEM or not self._turns:
            return
        if self._turns[-1].role == role:
            raise InvalidStateError(f"Two consecutive {role} turns are not allowed")

    def _resolve(self, handle: TurnHandle) -> Turn:
        turn = self._streaming
        if turn is None or turn.turn_id != handle.turn_id:
            raise StaleHandleError(f"Turn {handle.turn_id} is not the active streaming turn")
        return turn
