"""Configuration helpers for the persona chat server."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    """Centralized environment-driven configuration.

    Values are read when the instance is created, so tests can monkeypatch the
    environment and build a fresh ``Settings()``.
    """

    port: int = field(default_factory=lambda: _env_int("PORT", 8082))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))
    server_public_url: str = field(
        default_factory=lambda: os.getenv("SERVER_PUBLIC_URL", f"http://localhost:{_env_int('PORT', 8082)}")
    )
    allowed_origins: list[str] = field(default_factory=lambda: _env_list("ALLOWED_ORIGINS", "*"))

    # Durable store + object store (Supabase). Both fall back to local-only
    # implementations when credentials are missing.
    supabase_url: Optional[str] = field(default_factory=lambda: os.getenv("SUPABASE_URL"))
    supabase_service_role_key: Optional[str] = field(
        default_factory=lambda: os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    )
    supabase_audio_bucket: str = field(default_factory=lambda: os.getenv("SUPABASE_AUDIO_BUCKET", "audio"))

    # Speech services (ASR + TTS share one vendor endpoint and key).
    voice_api_key: Optional[str] = field(default_factory=lambda: os.getenv("VOICE_API_KEY"))
    asr_base_url: str = field(default_factory=lambda: os.getenv("ASR_BASE_URL", "https://openai.qiniu.com/v1"))
    tts_base_url: str = field(default_factory=lambda: os.getenv("TTS_BASE_URL", "https://openai.qiniu.com/v1"))
    tts_max_chars: int = field(default_factory=lambda: _env_int("TTS_MAX_CHARS", 500))

    # Reply generation through any OpenAI-compatible chat completions API.
    completion_api_key: Optional[str] = field(default_factory=lambda: os.getenv("COMPLETION_API_KEY"))
    completion_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("COMPLETION_BASE_URL", "https://api.deepseek.com/v1")
    )
    completion_model: str = field(default_factory=lambda: os.getenv("COMPLETION_MODEL", "deepseek-chat"))

    # Pipeline policy knobs.
    scratch_dir: str = field(default_factory=lambda: os.getenv("SCRATCH_DIR", "temp"))
    upload_retries: int = field(default_factory=lambda: _env_int("UPLOAD_RETRIES", 3))
    upload_base_delay: float = field(default_factory=lambda: _env_float("UPLOAD_BASE_DELAY", 1.0))
    transcribe_retries: int = field(default_factory=lambda: _env_int("TRANSCRIBE_RETRIES", 3))
    transcribe_base_delay: float = field(default_factory=lambda: _env_float("TRANSCRIBE_BASE_DELAY", 2.0))
    history_limit: int = field(default_factory=lambda: _env_int("HISTORY_LIMIT", 4))

    def __post_init__(self) -> None:
        # An OpenAI key is only usable against the OpenAI endpoint.
        if not self.completion_api_key and "api.openai.com" in (self.completion_base_url or ""):
            self.completion_api_key = os.getenv("OPENAI_API_KEY")

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance to avoid repeated environment reads."""

    return Settings()


settings = get_settings()
