# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from config import AppConfig, ConfigError, SessionConfig
from spec import AI_DEBOUNCE_MS, AI_RATE_LIMIT_PER_MINUTE, RELAY_DEFAULT_MODEL


_ENV_NAMES = (
    "ENV", "LOG_LEVEL", "DEEPGRAM_API_KEY", "DEEPGRAM_MODEL", "DEEPGRAM_LANGUAGE",
    "LLM_PROVIDER", "LLM_MODEL", "LLM_STREAM", "OPENAI_API_KEY", "GROQ_API_KEY",
    "AUDIO_CAPTURE", "MIC_DEVICE", "SYSTEM_DEVICE",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def make_app_config(**overrides) -> AppConfig:
    values = dict(
        env="test",
        log_level="INFO",
        deepgram_api_key="dg_env",
        deepgram_model="nova-2",
        deepgram_language="en-US",
        llm_provider="openai",
        llm_model="gpt-4o-mini",
        llm_stream=True,
        openai_api_key="sk_env",
        groq_api_key="gsk_env",
        audio_capture="remote",
        mic_device=None,
        system_device=None,
    )
    values.update(overrides)
    return AppConfig(**values)


# ---------------------------------------------------------------------
# AppConfig
# ---------------------------------------------------------------------

def test_load_from_env_defaults(clean_env):
    config = AppConfig.load_from_env()

    assert config.audio_capture == "remote"
    assert config.llm_provider == "openai"
    assert config.deepgram_model == RELAY_DEFAULT_MODEL
    assert config.deepgram_api_key is None
    assert config.llm_stream is True
    assert config.mic_device is None


def test_load_from_env_reads_values(clean_env):
    clean_env.setenv("AUDIO_CAPTURE", "LOCAL")
    clean_env.setenv("LLM_PROVIDER", "groq")
    clean_env.setenv("GROQ_API_KEY", "gsk_123")
    clean_env.setenv("LLM_STREAM", "0")
    clean_env.setenv("MIC_DEVICE", "3")

    config = AppConfig.load_from_env()

    assert config.audio_capture == "local"
    assert config.llm_api_key == "gsk_123"
    assert config.llm_stream is False
    assert config.mic_device == "3"


@pytest.mark.parametrize("name,value", [("AUDIO_CAPTURE", "pipe"), ("LLM_PROVIDER", "bard")])
def test_load_from_env_rejects_unsupported(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(ConfigError):
        AppConfig.load_from_env()


# ---------------------------------------------------------------------
# SessionConfig
# ---------------------------------------------------------------------

def test_from_dict_defaults():
    config = SessionConfig.from_dict({})

    assert config == SessionConfig()
    assert config.debounce_ms == AI_DEBOUNCE_MS
    assert config.max_suggestions_per_minute == AI_RATE_LIMIT_PER_MINUTE


def test_from_dict_accepts_camel_case():
    config = SessionConfig.from_dict({
        "enableSystemAudio": True,
        "autoTodos": False,
        "apiKeyStt": "dg_ui",
        "debounceMs": 500,
        "maxSuggestionsPerMinute": 5,
    })

    assert config.enable_system_audio is True
    assert config.auto_todos is False
    assert config.auto_suggestions is True
    assert config.api_key_stt == "dg_ui"
    assert config.debounce_ms == 500
    assert config.max_suggestions_per_minute == 5


def test_from_dict_keys_fall_back_to_app_config():
    app = make_app_config()

    config = SessionConfig.from_dict({"apiKeyLlm": ""}, defaults=app)
    overridden = SessionConfig.from_dict({"api_key_stt": "dg_ui"}, defaults=app)

    assert config.api_key_stt == "dg_env"
    assert config.api_key_llm == "sk_env"
    assert overridden.api_key_stt == "dg_ui"


@pytest.mark.parametrize("payload", [
    {"autoTodos": "yes"},
    {"debounceMs": "100"},
    {"debounceMs": True},
    {"apiKeyStt": 42},
    {"debounceMs": -1},
    {"maxSuggestionsPerMinute": 0},
])
def test_from_dict_rejects_bad_values(payload):
    with pytest.raises(ConfigError):
        SessionConfig.from_dict(payload)
