"""Request building -- transcript snapshot + config snapshot -> payload.

Applies the context-window policy: walk the snapshot from the most
recent turn backwards, keep turns while the token and turn budgets
allow, and always keep system turns. The kept window is contiguous.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ata.config import ModelConfig
from ata.conversation.errors import EmptyContextError
from ata.conversation.transcript import Role, Turn

logger = logging.getLogger(__name__)

# Per-message framing overhead (role, separators) in tokens
MESSAGE_OVERHEAD_TOKENS = 4


class TokenEstimator:
    """Estimates token counts with optional calibration from API usage.

    Starts with the chars/4 heuristic and drifts towards the observed
    ratio (EMA, alpha=0.1) as prompt_tokens come back from the API.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str) -> int:
        return max(1, int(len(text) * self._ratio))

    def estimate_turn(self, turn: Turn) -> int:
        return self.estimate(turn.content) + MESSAGE_OVERHEAD_TOKENS

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API prompt_tokens."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


@dataclass
class RequestPayload:
    """One chat-completions request. Built fresh per request."""

    config: ModelConfig
    turns: tuple[Turn, ...]
    estimated_tokens: int = 0
    dropped_turns: int = 0

    @property
    def input_chars(self) -> int:
        return sum(len(t.content) for t in self.turns)

    @property
    def timeout(self) -> float:
        return self.config.timeout

    def messages(self) -> list[dict[str, str]]:
        return [{"role": str(t.role), "content": t.content} for t in self.turns]

    def to_json(self) -> dict[str, Any]:
        """Body for POST /chat/completions."""
        config = self.config
        body: dict[str, Any] = {
            "model": config.model,
            "messages": self.messages(),
            "max_tokens": config.max_tokens,
            "temperature": config.temperature,
            "top_p": config.top_p,
            "n": config.n,
            "presence_penalty": config.presence_penalty,
            "frequency_penalty": config.frequency_penalty,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if config.stop:
            body["stop"] = list(config.stop)
        if config.logit_bias:
            body["logit_bias"] = dict(config.logit_bias)
        if config.user_id:
            body["user"] = config.user_id
        return body


class RequestBuilder:
    """Applies the context-window policy and produces RequestPayloads."""

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self.estimator = estimator or TokenEstimator()

    def build(self, snapshot: Sequence[Turn], config: ModelConfig) -> RequestPayload:
        """Select the context window and wrap it in a payload.

        Raises EmptyContextError if no user turn survives truncation.
        """
        system_turns = [t for t in snapshot if t.role == Role.SYSTEM]
        dialogue = [t for t in snapshot if t.role != Role.SYSTEM]

        budget = config.context_window_budget
        used = sum(self.estimator.estimate_turn(t) for t in system_turns)
        max_turns = config.context_window_turns

        kept: list[Turn] = []
        for turn in reversed(dialogue):
            if max_turns is not None and len(kept) >= max_turns:
                break
            cost = self.estimator.estimate_turn(turn)
            if used + cost > budget:
                break
            kept.append(turn)
            used += cost
        kept.reverse()

        if not any(t.role == Role.USER for t in kept):
            raise EmptyContextError(
                f"Context budget of {budget} tokens leaves no room for a user turn"
            )

        kept_ids = {t.turn_id for t in kept}
        # Snapshot order between system and dialogue turns is kept
        turns = tuple(t for t in snapshot if t.role == Role.SYSTEM or t.turn_id in kept_ids)
        dropped = len(dialogue) - len(kept)
        if dropped:
            logger.debug("Context window dropped %d older turns (budget=%d)", dropped, budget)

        return RequestPayload(
            config=config,
            turns=turns,
            estimated_tokens=used,
            dropped_turns=dropped,
        )
