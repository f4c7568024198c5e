"""Terminal renderer -- the engine's output sink.

Fragments go to stdout as they arrive. Labels and status markers go to
stderr so piping stdout captures only the model's text. Bold styling is
applied only when stderr is a terminal and NO_COLOR is unset.
"""

from __future__ import annotations

import os
import sys
from typing import TextIO

from ata.conversation.transcript import TurnStatus

BOLD = "\033[1m"
RED = "\033[91m"
YELLOW = "\033[93m"
RESET = "\033[0m"


def _style(text: str, *codes: str, stream: TextIO) -> str:
    if os.getenv("NO_COLOR") is not None or not stream.isatty():
        return text
    return "".join(codes) + text + RESET


class NewlineFixer:
    """Joins fragments split as ["\\", "n"] back into a real newline.

    Some models emit an escaped newline across two fragments; printed
    naively this shows up as a literal backslash-n.
    """

    def __init__(self) -> None:
        self._buffer: list[str] = []

    def feed(self, text: str) -> str:
        """Return the text that is safe to print now."""
        if text.endswith("\\"):
            self._buffer.append(text)
            return ""
        if self._buffer:
            joined = "".join(self._buffer) + text
            self._buffer.clear()
            return joined.replace("\\n", "\n")
        return text

    def flush(self) -> str:
        pending = "".join(self._buffer)
        self._buffer.clear()
        return pending


class TerminalRenderer:
    """Prints streamed text and per-turn status markers."""

    STATUS_MARKERS: dict[TurnStatus, tuple[str, str]] = {
        TurnStatus.CANCELLED: ("[cancelled]", YELLOW),
        TurnStatus.FAILED: ("[incomplete: request failed]", RED),
    }

    def __init__(self, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self._out = out or sys.stdout
        self._err = err or sys.stderr
        self._fixer = NewlineFixer()
        self._started = False

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def on_fragment(self, text_delta: str) -> None:
        if not self._started:
            self._started = True
            self._label("Response:\n")
        self._write(self._fixer.feed(text_delta))

    def on_turn_finalized(self, status: TurnStatus) -> None:
        self._write(self._fixer.flush())
        if self._started:
            self._write("\n")
        marker = self.STATUS_MARKERS.get(status)
        if marker is not None:
            text, color = marker
            self._err.write(_style(text, BOLD, color, stream=self._err) + "\n")
            self._err.flush()
        self._started = False
        self._err.write("\n")
        self.print_prompt()

    # ------------------------------------------------------------------
    # Input loop helpers
    # ------------------------------------------------------------------

    def print_prompt(self) -> None:
        self._label("Prompt:\n")

    def print_error(self, message: str) -> None:
        self._err.write(_style("error", BOLD, RED, stream=self._err) + f": {message}\n")
        self._err.flush()

    def print_info(self, message: str) -> None:
        self._err.write(message + "\n")
        self._err.flush()

    def _label(self, text: str) -> None:
        # Labels are interactive chrome only
        if not self._err.isatty():
            return
        self._err.write(_style(text, BOLD, stream=self._err))
        self._err.flush()

    def _write(self, text: str) -> None:
        if not text:
            return
        self._out.write(text)
        self._out.flush()
