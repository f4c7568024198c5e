"""Settings via pydantic-settings with ATA_ env prefix.

The API key is read from the unprefixed OPENAI_API_KEY so the same
variable used by other OpenAI tooling works here. Values from a TOML
config file are passed as init kwargs and therefore win over env vars.

Each submit_turn() takes an immutable ModelConfig snapshot; the engine
never writes configuration.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ata.conversation.errors import ConfigError

logger = logging.getLogger(__name__)

APP_NAME = "ata"
DEFAULT_CONFIG_FILENAME = Path("ata.toml")

EXAMPLE_TOML = """\
api_key = "<YOUR SECRET API KEY>"
model = "gpt-3.5-turbo"
max_tokens = 2048
temperature = 0.8
"""


def config_dir() -> Path:
    """Per-user config directory (XDG_CONFIG_HOME aware)."""
    base = os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config"
    return Path(base) / APP_NAME


class UiSettings(BaseModel):
    """Input loop and display options."""

    double_ctrlc: bool = True  # Require Ctrl-C twice to exit
    multiline_insertions: bool = False  # Enter adds a line, Ctrl-D sends the prompt
    hide_config: bool = False
    redact_api_key: bool = True
    save_history: bool = True
    history_file: Path = Field(default_factory=lambda: config_dir() / "history")


class ModelConfig(BaseModel):
    """Immutable per-request snapshot of the model configuration."""

    model_config = ConfigDict(frozen=True)

    model: str
    temperature: float
    max_tokens: int
    top_p: float = 1.0
    n: int = 1
    stop: tuple[str, ...] = ()
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    logit_bias: tuple[tuple[str, float], ...] = ()
    user_id: str | None = None
    context_window_budget: int = 8000  # tokens
    context_window_turns: int | None = None
    timeout: float = 120.0  # seconds


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ATA_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # Credentials -- unprefixed alias matches the standard OpenAI env var
    api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    api_base_url: str = "https://api.openai.com/v1"

    # LLM
    model: str = "gpt-3.5-turbo"
    max_tokens: int = Field(2048, ge=1)
    temperature: float = Field(0.8, ge=0.0, le=1.0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)
    n: int = Field(1, ge=1, le=10)
    stop: list[str] = Field(default_factory=list, max_length=4)
    presence_penalty: float = Field(0.0, ge=0.0, le=1.0)
    frequency_penalty: float = Field(0.0, ge=0.0, le=1.0)
    logit_bias: dict[str, float] = Field(default_factory=dict)
    user_id: str | None = None
    system_prompt: str = ""

    # Context window
    context_window_budget: int = Field(8000, ge=1)  # estimated tokens
    context_window_turns: int | None = Field(None, ge=1)

    # HTTP
    api_timeout_connect: float = Field(10.0, gt=0)
    api_timeout: float = Field(120.0, gt=0)  # read timeout between stream chunks

    log_level: str = "warning"

    ui: UiSettings = Field(default_factory=UiSettings)

    @field_validator("stop")
    @classmethod
    def _validate_stop(cls, value: list[str]) -> list[str]:
        if any(not phrase for phrase in value):
            raise ValueError("Stop phrases cannot contain empties")
        return value

    @field_validator("logit_bias")
    @classmethod
    def _validate_logit_bias(cls, value: dict[str, float]) -> dict[str, float]:
        for key, bias in value.items():
            if bias < -2.0 or bias > 2.0:
                raise ValueError(f"logit_bias for {key} must be between -2.0 and 2.0")
        return value

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str | None) -> str | None:
        if value is not None and not value:
            raise ValueError("User ID cannot be an empty string")
        return value

    def snapshot(self) -> ModelConfig:
        """Freeze the request-relevant fields for one submit_turn()."""
        return ModelConfig(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
            n=self.n,
            stop=tuple(self.stop),
            presence_penalty=self.presence_penalty,
            frequency_penalty=self.frequency_penalty,
            logit_bias=tuple(sorted(self.logit_bias.items())),
            user_id=self.user_id,
            context_window_budget=self.context_window_budget,
            context_window_turns=self.context_window_turns,
            timeout=self.api_timeout,
        )

    def require_api_key(self) -> None:
        if not self.api_key:
            raise ConfigError("API key is missing (set OPENAI_API_KEY or api_key in the config file)")

    def describe(self) -> str:
        """Human-readable dump for the startup banner and /config."""
        lines = ["Configuration:"]
        for name, value in self.model_dump(exclude={"ui"}).items():
            if name == "api_key":
                value = "[redacted]" if self.ui.redact_api_key else value
            elif name == "model":
                value = str(value).upper()
            lines.append(f"{name}: {value}")
        ui = ", ".join(f"{k}: {v}" for k, v in self.ui.model_dump().items())
        lines.append(f"ui: {{{ui}}}")
        return "\n".join(lines)


# ------------------------------------------------------------------
# Config file location and loading
# ------------------------------------------------------------------


def resolve_config_path(location: str | None) -> Path:
    """Map the -c/--config argument to a file path.

    - empty / None: ./ata.toml if present (deprecated), else the user config dir
    - a bare name without a dot: <config dir>/<name>.toml
    - anything else: taken as a path
    """
    location = (location or "").strip()
    if not location:
        if DEFAULT_CONFIG_FILENAME.exists():
            logger.warning(
                "%s found in working directory BUT UNSPECIFIED. This behavior is "
                "DEPRECATED. Please move it to %s.",
                DEFAULT_CONFIG_FILENAME, config_dir(),
            )
            return DEFAULT_CONFIG_FILENAME
        return config_dir() / DEFAULT_CONFIG_FILENAME
    if "." not in location:
        return config_dir() / f"{location}.toml"
    return Path(location).expanduser()


def load_settings(path: Path | None = None) -> Settings:
    """Build Settings from env vars, overridden by the TOML file when it exists."""
    data: dict = {}
    if path is not None and path.exists():
        try:
            with path.open("rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Config parsing failure for {path}: {e}") from e
        logger.info("Loaded config file %s", path)
    elif path is not None:
        logger.info("No config file at %s, using environment/defaults", path)

    try:
        return Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def write_example_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(EXAMPLE_TOML, encoding="utf-8")
    logger.info("Wrote example config to %s", path)
