"""Error taxonomy for the conversation engine.

Ordering errors (InvalidStateError, StaleHandleError, BusyError) mean a
caller broke the single-engine protocol. Network errors are surfaced to
the user, who may resubmit. Cancellation is not an error.
"""

from __future__ import annotations


class AtaError(Exception):
    """Base class for all ata errors."""


class ConfigError(AtaError):
    """Configuration is missing, unreadable or fails validation."""


class EmptyContextError(AtaError):
    """Context truncation left no user turn to send."""


class NetworkError(AtaError):
    """The completion request failed before or during streaming."""


class TimeoutError(NetworkError):  # noqa: A001
    """The completion request exceeded the configured timeout."""


class InvalidStateError(AtaError):
    """An operation was attempted in a state that does not allow it."""


class StaleHandleError(InvalidStateError):
    """A turn handle no longer addresses the active streaming turn."""


class BusyError(InvalidStateError):
    """A turn was submitted while another exchange is still in flight."""
