from __future__ import annotations

from pathlib import Path

import pytest
from loguru import logger

from openkit import logging_utils
from openkit.config import DecodeFailurePolicy, Settings, get_settings
from openkit.errors import ApiKeyNotConfiguredError, ConfigurationError
from openkit.retry import RetryPolicy


def test_defaults() -> None:
    settings = Settings()

    assert settings.api_key is None
    assert settings.base_url == "https://api.openai.com/v1"
    assert settings.decode_failure_policy is DecodeFailurePolicy.FATAL
    assert settings.retry_policy() == RetryPolicy.DEFAULT


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENKIT_API_KEY", "sk-env")
    monkeypatch.setenv("OPENKIT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("OPENKIT_MAX_DELAY", "120")
    monkeypatch.setenv("OPENKIT_DECODE_FAILURE_POLICY", "skip")

    settings = get_settings()

    assert settings.require_api_key() == "sk-env"
    assert settings.retry_policy().max_attempts == 5
    assert settings.retry_policy().max_delay == 120.0
    assert settings.decode_failure_policy is DecodeFailurePolicy.SKIP


def test_dotenv_file_is_read(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text("OPENKIT_API_KEY=sk-file\nOPENKIT_PROJECT=proj-file\n", encoding="utf-8")

    settings = get_settings()

    assert settings.api_key == "sk-file"
    assert settings.project == "proj-file"


def test_explicit_overrides_win_and_none_is_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENKIT_MODEL", "env-model")

    assert get_settings(model=None).model == "env-model"
    assert get_settings(model="cli-model").model == "cli-model"


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_attempts": 0},
        {"base_delay": 10.0, "max_delay": 1.0},
        {"jitter_low": 1.3, "jitter_high": 1.1},
        {"decode_failure_policy": "sometimes"},
    ],
)
def test_invalid_values_raise_configuration_error(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        get_settings(**overrides)


def test_missing_api_key_is_reported() -> None:
    with pytest.raises(ApiKeyNotConfiguredError):
        Settings().require_api_key()


def test_configure_logging_default_profile_writes_to_stderr(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(logging_utils, "_CONFIGURED", None)

    logging_utils.configure_logging(level="debug")
    logger.debug("config.test value={}", 42)

    assert "config.test value=42" in capsys.readouterr().err
    assert logging_utils._CONFIGURED == ("default", "DEBUG")
