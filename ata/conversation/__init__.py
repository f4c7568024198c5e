"""Conversation state -- transcript, cancellation and the error taxonomy.

The engine lives in ata.conversation.engine and is imported from there
directly, since it depends on the request/stream layer in ata.api.
"""

from ata.conversation.cancellation import CancellationGate
from ata.conversation.errors import (
    AtaError,
    BusyError,
    ConfigError,
    EmptyContextError,
    InvalidStateError,
    NetworkError,
    StaleHandleError,
    TimeoutError,
)
from ata.conversation.transcript import Role, Transcript, Turn, TurnHandle, TurnStatus

__all__ = [
    "AtaError",
    "BusyError",
    "CancellationGate",
    "ConfigError",
    "EmptyContextError",
    "InvalidStateError",
    "NetworkError",
    "Role",
    "StaleHandleError",
    "TimeoutError",
    "Transcript",
    "Turn",
    "TurnHandle",
    "TurnStatus",
]
