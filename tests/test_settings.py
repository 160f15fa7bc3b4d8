"""
Tests for engine settings.
"""
import pytest
from pydantic import ValidationError

from ticketsync.config import DEFAULT_WELCOME_MESSAGE, SyncSettings


@pytest.mark.unit
def test_defaults():
    settings = SyncSettings(_env_file=None)

    assert settings.typing_window == 1.5
    assert settings.poll_interval == 5.0
    assert settings.max_reconnect_attempts == 3
    assert settings.assignment_retry_on_message is True
    assert settings.welcome_message == DEFAULT_WELCOME_MESSAGE
    assert settings.functions_api_key is None
    assert settings.get_functions_api_key() is None


@pytest.mark.unit
def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TICKETSYNC_TYPING_WINDOW", "2.5")
    monkeypatch.setenv("TICKETSYNC_FEED_SILENCE_TIMEOUT", "45")
    monkeypatch.setenv("TICKETSYNC_FUNCTIONS_BASE_URL", "https://functions.example.test/")

    settings = SyncSettings(_env_file=None)

    assert settings.typing_window == 2.5
    assert settings.feed_silence_timeout == 45.0
    assert settings.functions_base_url == "https://functions.example.test"


@pytest.mark.unit
def test_api_key_from_env_reference(monkeypatch):
    monkeypatch.setenv("SUPPORT_FUNCTIONS_KEY", "s3cret")

    settings = SyncSettings(_env_file=None, functions_api_key="env://SUPPORT_FUNCTIONS_KEY")

    assert settings.get_functions_api_key() == "s3cret"
    assert "s3cret" not in repr(settings)


@pytest.mark.unit
def test_api_key_missing_env_reference(monkeypatch):
    monkeypatch.delenv("SUPPORT_FUNCTIONS_KEY", raising=False)

    settings = SyncSettings(_env_file=None, functions_api_key="env://SUPPORT_FUNCTIONS_KEY")

    assert settings.functions_api_key is None


@pytest.mark.unit
def test_blank_api_key_is_none():
    assert SyncSettings(_env_file=None, functions_api_key="  ").functions_api_key is None


@pytest.mark.unit
@pytest.mark.parametrize("field,value", [
    ("typing_window", 0),
    ("poll_interval", -1),
    ("max_reconnect_attempts", -1),
    ("bot_max_attempts", 0),
    ("max_message_length", 0),
])
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        SyncSettings(_env_file=None, **{field: value})


@pytest.mark.unit
def test_backoff_cap_below_base_rejected():
    with pytest.raises(ValidationError):
        SyncSettings(_env_file=None, reconnect_backoff_base=5.0, reconnect_backoff_max=1.0)


@pytest.mark.unit
def test_component_config():
    settings = SyncSettings(_env_file=None, typing_window=2.0)

    assert settings.get_component_config("presence") == {"typing_window": 2.0}
    assert settings.get_component_config("connection")["poll_interval"] == 5.0
    assert settings.get_component_config("escalation")["has_api_key"] is False
    assert settings.get_component_config("unknown") == {}


@pytest.mark.unit
def test_validate_config_warnings():
    assert SyncSettings(_env_file=None).validate_config() == []

    settings = SyncSettings(
        _env_file=None,
        heartbeat_interval=30.0,
        feed_silence_timeout=10.0,
        write_timeout=20.0,
        pending_window=5.0,
        functions_base_url="https://functions.example.test"
    )
    warnings = settings.validate_config()

    assert len(warnings) == 3
    assert any("heartbeat_interval" in w for w in warnings)
    assert any("pending_window" in w for w in warnings)
    assert any("functions_api_key" in w for w in warnings)
