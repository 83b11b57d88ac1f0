import pytest
from pydantic import ValidationError

from vkrelay.config.settings import Settings

TOKENS = {"telegram_bot_token": "123:abc", "vk_access_token": "vk1.a.token"}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("TELEGRAM_BOT_TOKEN", "VK_ACCESS_TOKEN", "LOG_LEVEL", "BIND_COMMAND", "POLL_INTERVAL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings(_env_file=None, **TOKENS)

    assert settings.vk_api_version == "5.199"
    assert settings.bind_command == "Bind"
    assert settings.command_prefix == "/"
    assert settings.log_level == "INFO"
    assert settings.fetch_backoff_max >= settings.fetch_backoff_base


def test_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("VK_ACCESS_TOKEN", "vk1.a.token")
    monkeypatch.setenv("POLL_INTERVAL", "2.5")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.telegram_bot_token == "123:abc"
    assert settings.poll_interval == 2.5
    assert settings.log_level == "DEBUG"


def test_bind_command_leading_slash_is_stripped() -> None:
    assert Settings(_env_file=None, bind_command="/Follow", **TOKENS).bind_command == "Follow"


def test_bind_command_strips_the_configured_prefix() -> None:
    settings = Settings(_env_file=None, command_prefix="!", bind_command="!follow", **TOKENS)
    assert settings.bind_command == "follow"

    kept = Settings(_env_file=None, command_prefix="!", bind_command="/follow", **TOKENS)
    assert kept.bind_command == "/follow"


def test_unknown_log_level_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_level="verbose", **TOKENS)


def test_backoff_max_below_base_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, fetch_backoff_base=10, fetch_backoff_max=5, **TOKENS)


def test_missing_tokens_are_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
