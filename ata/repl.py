"""Input loop -- reads user lines and drives the conversation engine.

A daemon thread runs input() (with GNU readline editing/history) and
feeds lines into an asyncio.Queue, so typing stays possible while a
reply streams; queued lines are handled after the engine returns to
Idle. SIGINT is handled on the event loop: it cancels an in-flight
reply, or exits when pressed at the prompt.
"""

from __future__ import annotations

import asyncio
import logging
import readline
import signal
import sys
import threading
from collections.abc import Awaitable
from pathlib import Path
from typing import TextIO

from ata.conversation.engine import ConversationEngine, EngineState
from ata.conversation.errors import (
    AtaError,
    EmptyContextError,
    NetworkError,
)
from ata.conversation.transcript import Turn
from ata.help import COMMANDS
from ata.render import TerminalRenderer
from ata.session import Session

logger = logging.getLogger(__name__)

_EXIT = object()


class InputLoop:
    """Serializes user input into engine calls."""

    def __init__(self, session: Session, renderer: TerminalRenderer) -> None:
        self._session = session
        self._renderer = renderer
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._had_first_interrupt = False
        session.engine.add_state_listener(self._on_state_change)

    @property
    def engine(self) -> ConversationEngine:
        return self._session.engine

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_interactive(self) -> int:
        """Prompt until /exit, EOF or a second Ctrl-C."""
        self._loop = asyncio.get_running_loop()
        self._load_history()
        self._loop.add_signal_handler(signal.SIGINT, self.on_interrupt)
        reader = threading.Thread(target=self._read_lines, name="ata-readline", daemon=True)
        reader.start()
        self._renderer.print_prompt()
        try:
            while True:
                item = await self._queue.get()
                if item is _EXIT or item is None:
                    break
                if not await self.handle_line(str(item)):
                    break
        finally:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._save_history()
        return 0

    async def run_once(self, stdin: TextIO) -> int:
        """Non-interactive: read all of stdin as one prompt, answer, exit."""
        text = stdin.read()
        if not text.strip():
            self._renderer.print_error("Empty prompt, aborting.")
            return 1
        ok = await self._run_exchange(self.engine.submit_turn(text))
        return 0 if ok else 1

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    async def handle_line(self, line: str) -> bool:
        """Handle one input line. Returns False when the loop should stop."""
        if not line.strip():
            return True
        self._had_first_interrupt = False
        if line.startswith("/"):
            return await self._handle_command(line.strip())
        await self._run_exchange(self.engine.submit_turn(line))
        return True

    def on_interrupt(self) -> None:
        """SIGINT: cancel a reply in flight, otherwise (double) exit."""
        if self.engine.state in (EngineState.AWAITING_RESPONSE, EngineState.STREAMING):
            self.engine.cancel()
            return
        if self.engine.state == EngineState.CANCELLING:
            return
        if self._session.settings.ui.double_ctrlc and not self._had_first_interrupt:
            self._had_first_interrupt = True
            self._renderer.print_info("\nPress Ctrl-C again to exit.")
            self._renderer.print_prompt()
            return
        self._queue.put_nowait(_EXIT)

    async def _run_exchange(self, exchange: Awaitable[Turn]) -> bool:
        """Await one exchange, reporting errors. Returns True on success."""
        try:
            await exchange
        except NetworkError as e:
            # The renderer already marked the turn incomplete and re-prompted
            self._renderer.print_error(str(e))
            return False
        except EmptyContextError as e:
            self._renderer.print_error(f"{e}. Raise context_window_budget or /clear.")
        except AtaError as e:
            logger.error("Exchange aborted: %s", e)
            self._renderer.print_error(str(e))
        else:
            return True
        self._renderer.print_prompt()
        return False

    async def _handle_command(self, line: str) -> bool:
        name, _, rest = line.partition(" ")
        rest = rest.strip()
        session = self._session

        try:
            if name in ("/exit", "/quit"):
                return False
            elif name == "/help":
                self._renderer.print_info(COMMANDS)
            elif name == "/clear":
                session.clear()
                self._renderer.print_info("Conversation cleared.")
            elif name == "/retry":
                await self._run_exchange(self.engine.retry())
                return True
            elif name == "/save":
                path = session.save(Path(rest).expanduser() if rest else None)
                self._renderer.print_info(f"Saved conversation to {path}")
            elif name == "/load":
                if not rest:
                    self._renderer.print_error("Usage: /load FILE")
                else:
                    count = session.load(Path(rest).expanduser())
                    self._renderer.print_info(f"Loaded {count} turns from {rest}")
            elif name == "/config":
                self._renderer.print_info(session.settings.describe())
            elif name == "/settings":
                for descriptor in session.registry:
                    value = descriptor.get(session.settings)
                    self._renderer.print_info(f"{descriptor.name} = {value!r}  ({descriptor.description})")
            elif name == "/get":
                self._renderer.print_info(f"{rest} = {session.get_setting(rest)!r}")
            elif name == "/set":
                setting, _, raw = rest.partition(" ")
                if not setting or not raw:
                    self._renderer.print_error("Usage: /set NAME VALUE")
                else:
                    value = session.update_setting(setting, raw)
                    self._renderer.print_info(f"{setting} = {value!r}")
            else:
                self._renderer.print_error(f"Unknown command {name}. Type /help.")
        except AtaError as e:
            self._renderer.print_error(str(e))
        self._renderer.print_prompt()
        return True

    # ------------------------------------------------------------------
    # Reader thread and history
    # ------------------------------------------------------------------

    def _read_lines(self) -> None:
        """Runs in the reader thread; never touches engine state directly."""
        assert self._loop is not None
        while True:
            try:
                line = self.read_prompt()
            except EOFError:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
                return
            except Exception:
                logger.exception("Reading input failed")
                self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
                return
            self._loop.call_soon_threadsafe(self._queue.put_nowait, line)

    def read_prompt(self) -> str:
        """Read one prompt from the terminal.

        With ui.multiline_insertions, Enter only starts a new line and
        EOF (Ctrl-D) sends the collected lines. EOF on an empty prompt
        raises EOFError either way.
        """
        if not self._session.settings.ui.multiline_insertions:
            return input("")
        lines: list[str] = []
        while True:
            try:
                lines.append(input(""))
            except EOFError:
                if not lines:
                    raise
                return "\n".join(lines)

    def _on_state_change(self, state: EngineState) -> None:
        if state == EngineState.CANCELLING:
            logger.info("Cancelling reply")

    def _load_history(self) -> None:
        ui = self._session.settings.ui
        if not ui.save_history or not ui.history_file.exists():
            return
        try:
            readline.read_history_file(ui.history_file)
        except OSError as e:
            logger.warning("Could not load history from %s: %s", ui.history_file, e)

    def _save_history(self) -> None:
        ui = self._session.settings.ui
        if not ui.save_history:
            return
        try:
            ui.history_file.parent.mkdir(parents=True, exist_ok=True)
            readline.write_history_file(ui.history_file)
        except OSError as e:
            logger.warning("Could not save history to %s: %s", ui.history_file, e)


def stdin_is_interactive() -> bool:
    return sys.stdin.isatty()
