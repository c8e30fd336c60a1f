"""Configuration loading and validation for gappsbot."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Directories searched (in order) when resolving a config name
CONFIG_SEARCH_DIRS = (Path("."), Path("configs"))
CONFIG_SUFFIXES = ("", ".yaml", ".yml")


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings with an optional unit
    suffix: "500ms", "1s", "1.5m", "2h".

    Args:
        value: Number or duration string.

    Returns:
        Duration in seconds.

    Raises:
        ValueError: If the value cannot be parsed or is not positive.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match is None:
            raise ValueError(f"Invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = float(amount) * _DURATION_UNITS[unit or "s"]
    else:
        raise ValueError(f"Invalid duration: {value!r}")

    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


class DatabaseConfig(BaseModel):
    """Embedded key/value database configuration."""

    path: Path = Path("bot.db")
    timeout: float = 1.0  # Seconds; bounds lock acquisition on open and close

    @field_validator("timeout", mode="before")
    @classmethod
    def validate_timeout(cls, v: Any) -> float:
        """Accept numbers or duration strings."""
        return parse_duration(v)


class TelegramConfig(BaseModel):
    """Telegram transport configuration."""

    token: str | None = None
    debug: bool = False
    timeout: int = Field(60, ge=0)  # Long-poll seconds
    max_concurrent_handlers: int = Field(32, ge=1)


class CommandsConfig(BaseModel):
    """Command prefixes recognised by the listener."""

    start: str = Field("/start", min_length=1)
    help: str = Field("/help", min_length=1)


class MessagesConfig(BaseModel):
    """Canned reply bodies (Markdown)."""

    hello: str = "Hello! Send /help to see what I can do."
    help: str = "*Available commands*\n/start - greeting\n/help - this message"


class ShutdownConfig(BaseModel):
    """Graceful shutdown configuration."""

    close_timeout: float = 5.0  # Seconds allowed for each component to close

    @field_validator("close_timeout", mode="before")
    @classmethod
    def validate_close_timeout(cls, v: Any) -> float:
        """Accept numbers or duration strings."""
        return parse_duration(v)


class Config(BaseModel):
    """Root configuration for gappsbot."""

    log_level: str = "INFO"
    log_json: bool = False

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    shutdown: ShutdownConfig = Field(default_factory=ShutdownConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def telegram_token(self) -> str | None:
        """Get the bot token, preferring the TELEGRAM_TOKEN environment variable."""
        return os.environ.get("TELEGRAM_TOKEN") or self.telegram.token

    @staticmethod
    def find(name: str) -> Path | None:
        """Resolve a config name to an existing file.

        The name is tried as given, then with .yaml and .yml suffixes, in the
        current directory and then in ./configs.

        Args:
            name: Config file name or path, with or without extension.

        Returns:
            Path to the first existing candidate, or None.
        """
        candidate = Path(name)
        if candidate.is_absolute() or candidate.parent != Path("."):
            search = [candidate.parent]
            candidate = Path(candidate.name)
        else:
            search = list(CONFIG_SEARCH_DIRS)

        for directory in search:
            for suffix in CONFIG_SUFFIXES:
                path = directory / f"{candidate}{suffix}"
                if path.is_file():
                    return path
        return None

    @classmethod
    def load(cls, config_path: Path | str = Path("config.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"Configuration root must be a mapping: {config_path}")

        # Environment variable overrides
        if "GAPPSBOT_LOG_LEVEL" in os.environ:
            yaml_config["log_level"] = os.environ["GAPPSBOT_LOG_LEVEL"]
        if "GAPPSBOT_LOG_JSON" in os.environ:
            yaml_config["log_json"] = os.environ["GAPPSBOT_LOG_JSON"].lower() == "true"
        if "GAPPSBOT_DB_PATH" in os.environ:
            db_config = yaml_config.get("db") or {}
            db_config["path"] = os.environ["GAPPSBOT_DB_PATH"]
            yaml_config["db"] = db_config

        return cls.model_validate(yaml_config)
