"""Explicit registry of user-editable settings.

Each exposed field is described by a SettingDescriptor with typed
get/parse/validate/apply callables, so /get and /set in the input loop
never reach into Settings by introspection. Applying a value returns a
new Settings object; the running engine picks it up on the next turn.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from ata.config import Settings
from ata.conversation.errors import ConfigError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"expected one of {sorted(_TRUE | _FALSE)}, got {raw!r}")


def parse_optional_int(raw: str) -> int | None:
    if raw.strip().lower() in ("", "none", "off"):
        return None
    return int(raw)


def parse_optional_str(raw: str) -> str | None:
    value = raw.strip()
    return None if value.lower() in ("", "none") else value


def parse_str_list(raw: str) -> list[str]:
    """JSON array, or comma-separated phrases."""
    raw = raw.strip()
    if raw.startswith("["):
        value = json.loads(raw)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError("expected a JSON array of strings")
        return value
    return [part.strip() for part in raw.split(",") if part.strip()]


def in_range(low: float, high: float | None = None) -> Callable[[Any], None]:
    def check(value: Any) -> None:
        if value is None:
            return
        if value < low or (high is not None and value > high):
            bound = f"between {low} and {high}" if high is not None else f">= {low}"
            raise ValueError(f"must be {bound}")
    return check


def _not_empty(value: str | None) -> None:
    if value is not None and not value:
        raise ValueError("cannot be an empty string")


def _check_stop(value: list[str]) -> None:
    if len(value) > 4:
        raise ValueError("at most 4 stop phrases are allowed")
    if any(not phrase for phrase in value):
        raise ValueError("stop phrases cannot contain empties")


def _no_check(value: Any) -> None:
    return None


def _top_level(name: str) -> tuple[Callable[[Settings], Any], Callable[[Settings, Any], Settings]]:
    def get(settings: Settings) -> Any:
        return getattr(settings, name)

    def apply(settings: Settings, value: Any) -> Settings:
        return settings.model_copy(update={name: value})

    return get, apply


def _ui(name: str) -> tuple[Callable[[Settings], Any], Callable[[Settings, Any], Settings]]:
    def get(settings: Settings) -> Any:
        return getattr(settings.ui, name)

    def apply(settings: Settings, value: Any) -> Settings:
        ui = settings.ui.model_copy(update={name: value})
        return settings.model_copy(update={"ui": ui})

    return get, apply


@dataclass(frozen=True)
class SettingDescriptor:
    """Typed accessor for one editable setting."""

    name: str
    description: str
    parse: Callable[[str], Any]
    get: Callable[[Settings], Any]
    apply: Callable[[Settings, Any], Settings]
    validate: Callable[[Any], None] = _no_check

    def set(self, settings: Settings, raw: str) -> Settings:
        """Parse, validate and apply raw text; returns the updated Settings."""
        try:
            value = self.parse(raw)
            self.validate(value)
        except (ValueError, json.JSONDecodeError) as e:
            raise ConfigError(f"{self.name}: {e}") from e
        return self.apply(settings, value)


def _descriptor(
    name: str,
    description: str,
    parse: Callable[[str], Any],
    validate: Callable[[Any], None] = _no_check,
    ui: bool = False,
) -> SettingDescriptor:
    field = name.split(".", 1)[1] if ui else name
    get, apply = _ui(field) if ui else _top_level(field)
    return SettingDescriptor(name, description, parse, get, apply, validate)


DEFAULT_DESCRIPTORS: tuple[SettingDescriptor, ...] = (
    _descriptor("model", "Model ID", str.strip, _not_empty),
    _descriptor("max_tokens", "Maximum tokens in a reply", int, in_range(1)),
    _descriptor("temperature", "Sampling temperature", float, in_range(0.0, 1.0)),
    _descriptor("top_p", "Nucleus sampling mass", float, in_range(0.0, 1.0)),
    _descriptor("n", "Number of choices to request", int, in_range(1, 10)),
    _descriptor("stop", "Stop phrases (JSON array or comma-separated)", parse_str_list, _check_stop),
    _descriptor("presence_penalty", "Presence penalty", float, in_range(0.0, 1.0)),
    _descriptor("frequency_penalty", "Frequency penalty", float, in_range(0.0, 1.0)),
    _descriptor("user_id", "End-user ID sent with requests", parse_optional_str, _not_empty),
    _descriptor("context_window_budget", "Context window budget in tokens", int, in_range(1)),
    _descriptor("context_window_turns", "Max turns sent as context (none = unlimited)",
                parse_optional_int, in_range(1)),
    _descriptor("api_timeout", "Seconds to wait for the next stream chunk", float, in_range(0.001)),
    _descriptor("ui.double_ctrlc", "Require Ctrl-C twice to exit", parse_bool, ui=True),
    _descriptor("ui.multiline_insertions", "Enter inserts a newline, Ctrl-D sends", parse_bool, ui=True),
    _descriptor("ui.hide_config", "Hide config on startup", parse_bool, ui=True),
    _descriptor("ui.redact_api_key", "Redact the API key in /config", parse_bool, ui=True),
    _descriptor("ui.save_history", "Save input history on exit", parse_bool, ui=True),
)


class SettingsRegistry:
    """Name -> SettingDescriptor lookup."""

    def __init__(self, descriptors: tuple[SettingDescriptor, ...] = DEFAULT_DESCRIPTORS) -> None:
        self._descriptors = {d.name: d for d in descriptors}

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[SettingDescriptor]:
        return iter(self._descriptors.values())

    def names(self) -> list[str]:
        return list(self._descriptors)

    def describe(self, name: str) -> SettingDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise ConfigError(f"Unknown setting {name!r}") from None

    def get(self, settings: Settings, name: str) -> Any:
        return self.describe(name).get(settings)

    def set(self, settings: Settings, name: str, raw: str) -> Settings:
        return self.describe(name).set(settings, raw)
