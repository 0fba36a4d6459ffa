"""Configuration system for tabwright.

Environment variables (and a ``.env`` file in the working directory) are read
through pydantic-settings (``EnvConfig``) and exposed through the ``CONFIG``
singleton, which re-reads them on every property access so tests and
long-running processes can change settings without re-importing modules.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EnvConfig(BaseSettings):
    """Environment variable configuration using pydantic-settings."""

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='allow'
    )

    # Logging
    TABWRIGHT_LOGGING_LEVEL: str = Field(default='info')
    TABWRIGHT_EVENT_BUS_LOGGING_LEVEL: str = Field(default='WARNING')
    TABWRIGHT_LOG_FILE: str | None = Field(default=None)

    # Timeouts (milliseconds)
    TABWRIGHT_DEFAULT_TIMEOUT_MS: float = Field(default=30000)
    TABWRIGHT_NAVIGATION_TIMEOUT_MS: float = Field(default=15000)

    # Capture pacing (milliseconds)
    TABWRIGHT_CAPTURE_INTERVAL_MS: int = Field(default=700)
    TABWRIGHT_MAX_CAPTURE_INTERVAL_MS: int = Field(default=2500)
    TABWRIGHT_SEGMENT_SETTLE_DELAY_MS: int = Field(default=400)

    # Path configuration
    XDG_CACHE_HOME: str = Field(default='~/.cache')
    TABWRIGHT_DOWNLOADS_DIR: str | None = Field(default=None)

    @field_validator(
        'TABWRIGHT_DEFAULT_TIMEOUT_MS',
        'TABWRIGHT_NAVIGATION_TIMEOUT_MS',
        'TABWRIGHT_CAPTURE_INTERVAL_MS',
        'TABWRIGHT_MAX_CAPTURE_INTERVAL_MS',
        'TABWRIGHT_SEGMENT_SETTLE_DELAY_MS',
        mode='before',
    )
    @classmethod
    def _non_negative_number(cls, value: Any, info: ValidationInfo) -> Any:
        field = cls.model_fields[info.field_name]
        default = field.default
        if value is None or value == '':
            return default
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            logger.warning(f'Ignoring non-numeric {info.field_name}={value!r}, using {default}')
            return default
        if parsed < 0:
            logger.warning(f'Ignoring negative {info.field_name}={value!r}, using {default}')
            return default
        return parsed if field.annotation is float else int(parsed)

    @field_validator('TABWRIGHT_LOG_FILE', 'TABWRIGHT_DOWNLOADS_DIR', mode='before')
    @classmethod
    def _empty_is_unset(cls, value: Any) -> Any:
        return value or None


class Config:
    """Configuration class backed by ``EnvConfig``.

    Re-reads the environment and ``.env`` on every access for flexibility.
    """

    _instance: 'Config | None' = None

    def __new__(cls) -> 'Config':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def env(self) -> EnvConfig:
        """Snapshot of the environment (including ``.env``) as a validated model."""
        return EnvConfig()

    @property
    def LOGGING_LEVEL(self) -> str:
        return self.env().TABWRIGHT_LOGGING_LEVEL.lower()

    @property
    def EVENT_BUS_LOGGING_LEVEL(self) -> str:
        return self.env().TABWRIGHT_EVENT_BUS_LOGGING_LEVEL.upper()

    @property
    def LOG_FILE(self) -> str | None:
        return self.env().TABWRIGHT_LOG_FILE

    @property
    def DEFAULT_TIMEOUT_MS(self) -> float:
        return self.env().TABWRIGHT_DEFAULT_TIMEOUT_MS

    @property
    def NAVIGATION_TIMEOUT_MS(self) -> float:
        return self.env().TABWRIGHT_NAVIGATION_TIMEOUT_MS

    @property
    def CAPTURE_INTERVAL_MS(self) -> int:
        return self.env().TABWRIGHT_CAPTURE_INTERVAL_MS

    @property
    def MAX_CAPTURE_INTERVAL_MS(self) -> int:
        return self.env().TABWRIGHT_MAX_CAPTURE_INTERVAL_MS

    @property
    def SEGMENT_SETTLE_DELAY_MS(self) -> int:
        return self.env().TABWRIGHT_SEGMENT_SETTLE_DELAY_MS

    @property
    def XDG_CACHE_HOME(self) -> Path:
        return Path(self.env().XDG_CACHE_HOME).expanduser().resolve()

    @property
    def DOWNLOADS_DIR(self) -> Path:
        env_config = self.env()
        if env_config.TABWRIGHT_DOWNLOADS_DIR:
            return Path(env_config.TABWRIGHT_DOWNLOADS_DIR).expanduser().resolve()
        return Path(env_config.XDG_CACHE_HOME).expanduser().resolve() / 'tabwright' / 'downloads'


CONFIG = Config()
