"""kestrel-chat - Configuration system with Pydantic Settings"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import pydantic_settings
from pydantic import Field, SecretStr
from pydantic_settings import (
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

__all__ = [
    "Settings",
    "settings",
    "get_settings",
]

ENV_PREFIX = "KESTREL_CHAT_"
APP_DIR_NAME = "kestrel-chat"


class Settings(pydantic_settings.BaseSettings):
    """Application settings with type-safe validation"""

    # Backend connection
    api_url: str = Field(default="http://localhost:3001", min_length=1)
    api_token: Optional[SecretStr] = Field(default=None)
    request_timeout: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0)

    # Logging
    log_level: str = Field(default="INFO")

    # Event stream
    reconnect_delay: float = Field(default=3.0, ge=0)
    max_reconnect_attempts: int = Field(default=50, ge=0)

    # Session status
    activity_stale_seconds: float = Field(default=10.0, gt=0)
    retry_fallback_ms: int = Field(default=5000, ge=0)

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[pydantic_settings.BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        del env_settings, dotenv_settings

        model_case_sensitive = settings_cls.model_config.get("case_sensitive")
        case_sensitive = model_case_sensitive if isinstance(model_case_sensitive, bool) else None

        return (
            init_settings,
            EnvSettingsSource(
                settings_cls,
                env_prefix=ENV_PREFIX,
                case_sensitive=case_sensitive,
            ),
            DotEnvSettingsSource(
                settings_cls,
                env_prefix=ENV_PREFIX,
                env_file=_dotenv_paths(settings_cls),
                case_sensitive=case_sensitive,
            ),
            file_secret_settings,
        )

    def token_value(self) -> Optional[str]:
        """Return the plain API token, or None when unset."""
        if self.api_token is None:
            return None
        return self.api_token.get_secret_value()


def _config_dir() -> Path:
    env_value = os.getenv("XDG_CONFIG_HOME")
    base = Path(env_value).expanduser() if env_value else Path.home() / ".config"
    return base / APP_DIR_NAME


def _dotenv_paths(settings_cls: type[pydantic_settings.BaseSettings]) -> tuple[Path | str, ...]:
    explicit_env_files = settings_cls.model_config.get("env_file")
    if explicit_env_files is not None:
        if isinstance(explicit_env_files, (str, Path)):
            return (explicit_env_files,)
        return tuple(explicit_env_files)

    return (".env", _config_dir() / ".env")


settings: Settings = Settings()


def get_settings() -> Settings:
    """
    Get the global settings singleton instance.

    Returns:
        The global Settings instance.
    """
    return settings

