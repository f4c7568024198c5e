"""Saving and loading conversations as JSON.

Only finalized turns are written; a streaming turn is never observed
as final. Loading accepts either the saved-conversation document
written here or a bare list of {"role", "content"} messages.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ata.conversation.errors import AtaError
from ata.conversation.transcript import Role, Transcript, Turn, TurnStatus

logger = logging.getLogger(__name__)


class PersistenceError(AtaError):
    """A conversation file could not be read or written."""


class TurnRecord(BaseModel):
    """Persisted form of a finalized turn."""

    role: Role
    content: str
    status: TurnStatus = TurnStatus.COMPLETE


class SavedConversation(BaseModel):
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    turns: list[TurnRecord] = Field(default_factory=list)


_message_list = TypeAdapter(list[TurnRecord])


def default_save_path(directory: Path | None = None) -> Path:
    """conversation-<unix seconds>.json in the given (or current) directory."""
    name = f"conversation-{int(time.time())}.json"
    return (directory or Path.cwd()) / name


def save_conversation(transcript: Transcript, path: Path) -> Path:
    turns = transcript.finalized_turns()
    document = SavedConversation(
        turns=[TurnRecord(role=t.role, content=t.content, status=t.status) for t in turns],
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"Could not save conversation to {path}: {e}") from e
    logger.info("Saved conversation to %s (%d turns)", path, len(turns))
    return path


def load_conversation(path: Path) -> list[Turn]:
    """Read turns from a saved conversation file."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Could not read conversation {path}: {e}") from e

    try:
        if isinstance(raw, list):
            records = _message_list.validate_python(raw)
        else:
            records = SavedConversation.model_validate(raw).turns
    except ValidationError as e:
        raise PersistenceError(f"Invalid conversation file {path}: {e}") from e

    turns = []
    for record in records:
        if record.status not in (TurnStatus.COMPLETE, TurnStatus.CANCELLED, TurnStatus.FAILED):
            logger.warning("Skipping non-final %s turn in %s", record.role, path)
            continue
        turns.append(Turn(role=record.role, content=record.content, status=record.status))
    logger.info("Loaded %d turns from %s", len(turns), path)
    return turns
