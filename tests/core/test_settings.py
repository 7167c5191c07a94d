"""Tests for Settings loading from environment and .env files."""

from pathlib import Path

import pytest
from pydantic import ValidationError
from pydantic_settings import SettingsConfigDict

from kestrel_chat.core.settings import Settings, get_settings


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty directory with no KESTREL_CHAT_* variables set."""
    import os

    for name in list(os.environ):
        if name.upper().startswith("KESTREL_CHAT_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestSettingsDefaults:
    """Defaults and validation."""

    def test_defaults(self, isolated_env: Path) -> None:
        settings = Settings()
        assert settings.api_url == "http://localhost:3001"
        assert settings.api_token is None
        assert settings.token_value() is None
        assert settings.max_retries == 3
        assert settings.reconnect_delay == 3.0
        assert settings.max_reconnect_attempts == 50
        assert settings.retry_fallback_ms == 5000

    def test_negative_retries_rejected(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KESTREL_CHAT_MAX_RETRIES", "-1")
        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_returns_singleton(self) -> None:
        assert get_settings() is get_settings()


class TestSettingsSources:
    """Environment, .env files and init kwargs."""

    def test_env_prefix(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KESTREL_CHAT_API_URL", "https://agents.example.com")
        monkeypatch.setenv("KESTREL_CHAT_API_TOKEN", "secret-token")

        settings = Settings()

        assert settings.api_url == "https://agents.example.com"
        assert settings.token_value() == "secret-token"
        assert "secret-token" not in repr(settings)

    def test_init_kwargs_override_env(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KESTREL_CHAT_RECONNECT_DELAY", "9")
        assert Settings(reconnect_delay=0.5).reconnect_delay == 0.5

    def test_repo_dotenv(self, isolated_env: Path) -> None:
        (isolated_env / ".env").write_text("KESTREL_CHAT_MAX_RECONNECT_ATTEMPTS=7\n")
        assert Settings().max_reconnect_attempts == 7

    def test_config_dir_dotenv(self, isolated_env: Path) -> None:
        config_dir = isolated_env / "config" / "kestrel-chat"
        config_dir.mkdir(parents=True)
        (config_dir / ".env").write_text('KESTREL_CHAT_LOG_LEVEL="DEBUG"\n')
        assert Settings().log_level == "DEBUG"

    def test_env_overrides_dotenv(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        (isolated_env / ".env").write_text("KESTREL_CHAT_MAX_RETRIES=1\n")
        monkeypatch.setenv("KESTREL_CHAT_MAX_RETRIES", "5")
        assert Settings().max_retries == 5

    def test_explicit_env_files_later_wins(self, isolated_env: Path) -> None:
        first = isolated_env / "first.env"
        second = isolated_env / "second.env"
        first.write_text("KESTREL_CHAT_API_URL=http://first\n")
        second.write_text("KESTREL_CHAT_API_URL=http://second\n")

        class TestSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=(first, second),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore",
            )

        assert TestSettings().api_url == "http://second"
