"""Session -- the explicit bundle of state built once at startup.

Owns the settings, transcript, HTTP client and engine. Everything that
needs shared state receives the Session instead of reaching for module
globals.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from ata.api.request_builder import RequestBuilder
from ata.api.stream import StreamConsumer, build_http_client
from ata.config import ModelConfig, Settings
from ata.conversation.errors import InvalidStateError
from ata.conversation.engine import ConversationEngine, Renderer
from ata.conversation.transcript import Role, Transcript, Turn
from ata.persistence import PersistenceError, default_save_path, load_conversation, save_conversation
from ata.settings_registry import SettingsRegistry

logger = logging.getLogger(__name__)


class Session:
    """One interactive conversation and everything it needs to run."""

    def __init__(
        self,
        settings: Settings,
        renderer: Renderer | None = None,
        http: httpx.AsyncClient | None = None,
        registry: SettingsRegistry | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or SettingsRegistry()
        self.transcript = Transcript()
        self._owns_http = http is None
        self.http = http or build_http_client(settings)
        self.builder = RequestBuilder()
        self.consumer = StreamConsumer(self.http, connect_timeout=settings.api_timeout_connect)
        self.engine = ConversationEngine(
            self.transcript,
            self.builder,
            self.consumer,
            config_provider=self.config_snapshot,
            renderer=renderer,
        )
        if settings.system_prompt:
            self.transcript.append(Turn(role=Role.SYSTEM, content=settings.system_prompt))

    def config_snapshot(self) -> ModelConfig:
        return self.settings.snapshot()

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, name: str) -> Any:
        return self.registry.get(self.settings, name)

    def update_setting(self, name: str, raw: str) -> Any:
        """Apply a /set command; returns the new value."""
        self.settings = self.registry.set(self.settings, name, raw)
        value = self.registry.get(self.settings, name)
        logger.info("Setting %s updated to %r", name, value)
        return value

    # ------------------------------------------------------------------
    # Transcript management (between exchanges only)
    # ------------------------------------------------------------------

    def clear(self) -> None:
        self._check_idle("clear")
        self.transcript.clear(keep_system=True)

    def save(self, path: Path | None = None) -> Path:
        return save_conversation(self.transcript, path or default_save_path())

    def load(self, path: Path) -> int:
        """Replace the dialogue with a saved conversation; returns turns loaded."""
        self._check_idle("load")
        turns = load_conversation(path)
        # Validate ordering before touching the live transcript
        Transcript(turns)
        if turns and turns[-1].role == Role.USER:
            raise PersistenceError(
                f"{path} ends with an unanswered user turn; the next prompt would follow it"
            )
        self.transcript.clear(keep_system=not any(t.role == Role.SYSTEM for t in turns))
        self.transcript.extend(turns)
        return len(turns)

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    def _check_idle(self, operation: str) -> None:
        if self.engine.busy:
            raise InvalidStateError(f"Cannot {operation} while a reply is in flight")
