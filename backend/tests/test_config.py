import pytest

from speech_relay.config import Settings
from speech_relay.errors import ConfigurationError

from conftest import BASE_ENV, make_settings


def test_defaults():
    settings = make_settings()
    assert settings.PORT == 8080
    assert settings.SONIOX_AUTH_MODE == "config"
    assert settings.SONIOX_CONNECT_TIMEOUT == 10.0
    assert settings.SONIOX_WS_URL == "wss://stt-rt.soniox.com/transcribe-websocket"
    assert settings.CORS_ALLOW_ORIGINS == ["*"]
    assert settings.validate() is settings


def test_missing_mandatory_settings():
    settings = Settings(environ={"SONIOX_API_KEY": "k", "SUPABASE_URL": "https://x"})
    assert settings.missing() == ["OPENAI_API_KEY", "SUPABASE_ANON_KEY"]
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY, SUPABASE_ANON_KEY"):
        settings.validate()


def test_deepgram_key_is_optional():
    env = {k: v for k, v in BASE_ENV.items() if k != "DEEPGRAM_API_KEY"}
    assert Settings(environ=env).missing() == []


def test_unknown_auth_mode():
    with pytest.raises(ConfigurationError, match="SONIOX_AUTH_MODE"):
        make_settings(SONIOX_AUTH_MODE="query").validate()


def test_cors_origins_list():
    settings = make_settings(CORS_ALLOW_ORIGINS="https://a.example, https://b.example")
    assert settings.CORS_ALLOW_ORIGINS == ["https://a.example", "https://b.example"]
