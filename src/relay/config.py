"""
Configuration management for the call relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_SUPPORTED_LANGUAGES: Tuple[str, ...] = ("en", "es", "fr", "de", "pt", "it", "hi")


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-3"
    deepgram_endpointing_ms: int = 800

    # Decision service (n8n-style webhook returning TwiML)
    decision_service_url: str = ""
    decision_timeout_seconds: float = 15.0
    notify_call_start: bool = True

    # Twilio (optional: only needed to push call updates)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Language
    # - default_language is what the lock commits to after enough default-language votes
    # - supported_languages bounds what the classifier and the menu may select
    default_language: str = "en"
    supported_languages: Tuple[str, ...] = DEFAULT_SUPPORTED_LANGUAGES
    language_default_votes: int = 3
    language_unclassified_limit: int = 2

    # Session tuning
    audio_buffer_capacity: int = 500
    silence_window_seconds: float = 4.0
    min_utterance_chars: int = 2
    speech_lock_floor_seconds: float = 4.0
    speech_lock_per_word_seconds: float = 0.2
    speech_lock_base_seconds: float = 1.0
    recognizer_max_reconnects: int = 3

    @property
    def ws_base_url(self) -> str:
        """Get the WebSocket base URL Twilio streams audio to."""
        return f"wss://{self.public_host}"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def twilio_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    def stream_url(self, call_id: str, language: str = "") -> str:
        """Media stream URL for a call, optionally pinned to a language."""
        url = f"{self.ws_base_url}/stream/{call_id}"
        if language:
            url += f"/{language}"
        return url

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.decision_service_url:
            missing.append("DECISION_SERVICE_URL")
        if not self.public_host:
            missing.append("SERVER_URL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.default_language not in self.supported_languages:
            raise ConfigError(
                f"DEFAULT_LANGUAGE '{self.default_language}' is not in SUPPORTED_LANGUAGES "
                f"({', '.join(self.supported_languages)})."
            )
        if self.audio_buffer_capacity <= 0:
            raise ConfigError("AUDIO_BUFFER_CAPACITY must be positive.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            decision_service_url=self.decision_service_url,
            notify_call_start=self.notify_call_start,
            default_language=self.default_language,
            supported_languages=",".join(self.supported_languages),
            audio_buffer_capacity=self.audio_buffer_capacity,
            silence_window_seconds=self.silence_window_seconds,
            recognizer_max_reconnects=self.recognizer_max_reconnects,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
        )
        if not self.twilio_enabled:
            logger.warning("Twilio credentials not set; call updates will be skipped")


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_languages(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key, "")
    codes = [c.strip().lower() for c in raw.split(",") if c.strip()]
    return tuple(dict.fromkeys(codes)) or default


def normalize_public_host(value: str) -> str:
    """Strip scheme and trailing slash: "https://relay.example.com/" -> "relay.example.com"."""
    value = (value or "").strip()
    value = re.sub(r"^(?:https?|wss?)://", "", value)
    return value.rstrip("/")


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=normalize_public_host(os.getenv("SERVER_URL") or os.getenv("PUBLIC_HOST", "")),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-3"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 800),

        # Decision service
        decision_service_url=os.getenv("DECISION_SERVICE_URL") or os.getenv("N8N_WEBHOOK_URL", ""),
        decision_timeout_seconds=_get_float("DECISION_TIMEOUT_SECONDS", 15.0),
        notify_call_start=_get_bool("NOTIFY_CALL_START", True),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Language
        default_language=os.getenv("DEFAULT_LANGUAGE", "en").strip().lower()[:2] or "en",
        supported_languages=_get_languages("SUPPORTED_LANGUAGES", DEFAULT_SUPPORTED_LANGUAGES),
        language_default_votes=_get_int("LANGUAGE_DEFAULT_VOTES", 3),
        language_unclassified_limit=_get_int("LANGUAGE_UNCLASSIFIED_LIMIT", 2),

        # Session tuning
        audio_buffer_capacity=_get_int("AUDIO_BUFFER_CAPACITY", 500),
        silence_window_seconds=_get_float("SILENCE_WINDOW_SECONDS", 4.0),
        min_utterance_chars=_get_int("MIN_UTTERANCE_CHARS", 2),
        speech_lock_floor_seconds=_get_float("SPEECH_LOCK_FLOOR_SECONDS", 4.0),
        speech_lock_per_word_seconds=_get_float("SPEECH_LOCK_PER_WORD_SECONDS", 0.2),
        speech_lock_base_seconds=_get_float("SPEECH_LOCK_BASE_SECONDS", 1.0),
        recognizer_max_reconnects=_get_int("RECOGNIZER_MAX_RECONNECTS", 3),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
