"""
Application and session configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Validate per-session settings sent by the UI collaborator
- Provide typed, immutable config objects

Non-responsibilities:
- No pipeline logic
- No protocol constants (see spec.py)
- No runtime mutation
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from spec import (
    AI_DEBOUNCE_MS,
    AI_RATE_LIMIT_PER_MINUTE,
    RELAY_DEFAULT_LANGUAGE,
    RELAY_DEFAULT_MODEL,
)


class ConfigError(ValueError):
    """Raised when a configuration value is missing or invalid."""


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to server/gateway/session code.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str
    log_level: str

    # ------------------------------------------------------------------
    # Speech-to-text relay
    # ------------------------------------------------------------------

    deepgram_api_key: str | None
    deepgram_model: str
    deepgram_language: str

    # ------------------------------------------------------------------
    # LLM configuration
    # ------------------------------------------------------------------

    llm_provider: str
    llm_model: str
    llm_stream: bool
    openai_api_key: str | None
    groq_api_key: str | None

    # ------------------------------------------------------------------
    # Audio capture
    # ------------------------------------------------------------------

    audio_capture: str  # "local" (sounddevice) | "remote" (WS binary frames)
    mic_device: str | None
    system_device: str | None

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def llm_api_key(self) -> str | None:
        """API key for the configured LLM provider."""
        if self.llm_provider.lower() == "groq":
            return self.groq_api_key
        return self.openai_api_key

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Raises:
            ConfigError if AUDIO_CAPTURE or LLM_PROVIDER is unsupported.
        """
        audio_capture = os.environ.get("AUDIO_CAPTURE", "remote").strip().lower()
        if audio_capture not in ("local", "remote"):
            raise ConfigError(f"Unsupported AUDIO_CAPTURE: {audio_capture}")

        llm_provider = os.environ.get("LLM_PROVIDER", "openai").strip().lower()
        if llm_provider not in ("openai", "groq"):
            raise ConfigError(f"Unsupported LLM_PROVIDER: {llm_provider}")

        return AppConfig(
            env=os.environ.get("ENV", "dev"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),

            deepgram_api_key=os.environ.get("DEEPGRAM_API_KEY"),
            deepgram_model=os.environ.get("DEEPGRAM_MODEL", RELAY_DEFAULT_MODEL),
            deepgram_language=os.environ.get("DEEPGRAM_LANGUAGE", RELAY_DEFAULT_LANGUAGE),

            llm_provider=llm_provider,
            llm_model=os.environ.get("LLM_MODEL", "gpt-4o-mini"),
            llm_stream=_env_flag("LLM_STREAM", "1"),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            groq_api_key=os.environ.get("GROQ_API_KEY"),

            audio_capture=audio_capture,
            mic_device=os.environ.get("MIC_DEVICE") or None,
            system_device=os.environ.get("SYSTEM_DEVICE") or None,
        )


@dataclass(frozen=True)
class SessionConfig:
    """
    Per-session settings supplied when a capture session starts.

    API keys fall back to the process-level AppConfig when omitted.
    """

    enable_system_audio: bool = False
    auto_todos: bool = True
    auto_suggestions: bool = True
    api_key_stt: str | None = None
    api_key_llm: str | None = None
    debounce_ms: int = AI_DEBOUNCE_MS
    max_suggestions_per_minute: int = AI_RATE_LIMIT_PER_MINUTE

    def __post_init__(self) -> None:
        if self.debounce_ms < 0:
            raise ConfigError("debounce_ms must be >= 0")
        if self.max_suggestions_per_minute < 1:
            raise ConfigError("max_suggestions_per_minute must be >= 1")

    @staticmethod
    def from_dict(
        data: Mapping[str, Any],
        *,
        defaults: AppConfig | None = None,
    ) -> SessionConfig:
        """
        Build a SessionConfig from a START message payload.

        Accepts camelCase keys (as sent by the UI) or snake_case keys.

        Raises:
            ConfigError on wrongly typed values.
        """

        def pick(snake: str, camel: str) -> Any:
            if snake in data:
                return data[snake]
            return data.get(camel)

        def as_bool(value: Any, default: bool, name: str) -> bool:
            if value is None:
                return default
            if not isinstance(value, bool):
                raise ConfigError(f"{name} must be a boolean")
            return value

        def as_int(value: Any, default: int, name: str) -> int:
            if value is None:
                return default
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer")
            return value

        def as_str(value: Any, name: str) -> str | None:
            if value is None or value == "":
                return None
            if not isinstance(value, str):
                raise ConfigError(f"{name} must be a string")
            return value

        api_key_stt = as_str(pick("api_key_stt", "apiKeyStt"), "api_key_stt")
        api_key_llm = as_str(pick("api_key_llm", "apiKeyLlm"), "api_key_llm")
        if defaults is not None:
            api_key_stt = api_key_stt or defaults.deepgram_api_key
            api_key_llm = api_key_llm or defaults.llm_api_key

        return SessionConfig(
            enable_system_audio=as_bool(
                pick("enable_system_audio", "enableSystemAudio"), False, "enable_system_audio"
            ),
            auto_todos=as_bool(pick("auto_todos", "autoTodos"), True, "auto_todos"),
            auto_suggestions=as_bool(
                pick("auto_suggestions", "autoSuggestions"), True, "auto_suggestions"
            ),
            api_key_stt=api_key_stt,
            api_key_llm=api_key_llm,
            debounce_ms=as_int(pick("debounce_ms", "debounceMs"), AI_DEBOUNCE_MS, "debounce_ms"),
            max_suggestions_per_minute=as_int(
                pick("max_suggestions_per_minute", "maxSuggestionsPerMinute"),
                AI_RATE_LIMIT_PER_MINUTE,
                "max_suggestions_per_minute",
            ),
        )
