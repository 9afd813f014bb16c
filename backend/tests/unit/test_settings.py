import pydantic
import pytest

from chatsync.settings import Settings


def test_defaults_match_reconnect_policy(monkeypatch):
    monkeypatch.delenv("CHAT_RECONNECT_BASE_MS", raising=False)
    monkeypatch.delenv("CHAT_SOCKET_PATH", raising=False)
    config = Settings(_env_file=None)

    assert config.reconnect_base_delay == 1.0
    assert config.reconnect_max_delay == 30.0
    assert config.reconnect_max_attempts == 5
    assert config.typing_debounce_seconds == 2.0
    assert config.socket_path == "socket.io"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CHAT_RECONNECT_BASE_MS", "500")
    monkeypatch.setenv("CHAT_SOCKET_PATH", "ws")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = Settings(_env_file=None)

    assert config.reconnect_base_delay == 0.5
    assert config.socket_path == "ws"
    assert config.obs_log_level == "DEBUG"


def test_attempt_limit_must_be_positive(monkeypatch):
    monkeypatch.setenv("CHAT_RECONNECT_MAX_ATTEMPTS", "0")

    with pytest.raises(pydantic.ValidationError):
        Settings(_env_file=None)
