"""Application configuration via environment variables."""

import logging

from pydantic import ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from errors import ConfigError


class Settings(BaseSettings):
    # Plex
    plex_url: str = ""
    plex_token: str = ""
    plex_client_identifier: str = "rewind-subtitles"

    # Jellyfin
    jellyfin_url: str = ""
    jellyfin_api_key: str = ""

    # Rewind detection
    rewind_threshold_seconds: float = 3.0
    max_rewind_seconds: float = 60.0  # longer backward jumps are scene changes, not replays
    long_rewind_cooldown_cycles: int = 2
    jitter_tolerance_seconds: float = 1.0  # backward blips treated as normal play
    seek_forward_tolerance_seconds: float = 7.0  # extra movement allowed before a jump counts as a seek
    min_sample_interval_seconds: float = 0.5
    forward_confirmation_cycles: int = 2
    history_size: int = 4

    # Polling
    active_poll_interval_seconds: float = 1.0
    idle_poll_interval_seconds: float = 30.0
    missed_poll_grace: int = 3
    request_timeout_seconds: float = 5.0
    command_retry_limit: int = 3

    # Subtitles
    subtitle_preference_patterns: list[str] = []  # e.g. ["English", "-SDH"]
    prefer_external_subtitles: bool = False
    restore_on_shutdown: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env"}

    @field_validator(
        "rewind_threshold_seconds",
        "seek_forward_tolerance_seconds",
        "active_poll_interval_seconds",
        "request_timeout_seconds",
    )
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("jitter_tolerance_seconds", "min_sample_interval_seconds")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must be greater than or equal to 0")
        return v

    @field_validator("forward_confirmation_cycles", "command_retry_limit")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("history_size")
    @classmethod
    def _history_size(cls, v: int) -> int:
        if v < 2:
            raise ValueError("must keep at least 2 samples")
        return v

    @field_validator("missed_poll_grace", "long_rewind_cooldown_cycles")
    @classmethod
    def _non_negative_count(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be greater than or equal to 0")
        return v

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level '{v}'")
        return level

    @field_validator("plex_url", "jellyfin_url")
    @classmethod
    def _strip_url(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def _check_relations(self) -> "Settings":
        if self.jitter_tolerance_seconds >= self.rewind_threshold_seconds:
            raise ValueError("jitter_tolerance_seconds must be smaller than rewind_threshold_seconds")
        if self.max_rewind_seconds <= self.rewind_threshold_seconds:
            raise ValueError("max_rewind_seconds must be greater than rewind_threshold_seconds")
        if self.idle_poll_interval_seconds < self.active_poll_interval_seconds:
            raise ValueError("idle_poll_interval_seconds must not be shorter than active_poll_interval_seconds")
        return self

    @property
    def plex_enabled(self) -> bool:
        return bool(self.plex_url and self.plex_token)

    @property
    def jellyfin_enabled(self) -> bool:
        return bool(self.jellyfin_url and self.jellyfin_api_key)


def load_settings(**overrides) -> Settings:
    """Build settings from the environment, turning validation failures into ConfigError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


settings = load_settings()
