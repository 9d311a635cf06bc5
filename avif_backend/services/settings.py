"""Pipeline settings, read from the environment (and the active .env file)."""

from __future__ import annotations

import threading
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from avif_backend.services import env_utils  # noqa: F401  (loads the .env file)
from avif_backend.services import observability_utils as obs
from avif_backend.services.models import clamp_quality

logger = obs.get_logger("avif_backend.services.settings")


class AvifSettings(BaseSettings):
    COMPRESSION_QUALITY: int = 80
    ENABLE_OPTIMIZATION: bool = True
    ENABLE_AI: bool = False
    AI_STAGES: str = "noise_reduction"
    CDN_ENABLED: bool = False
    CDN_URL: Optional[str] = None
    CDN_API_KEY: Optional[str] = None
    CDN_ZONE_ID: Optional[str] = None
    CDN_TIMEOUT: float = 30.0
    CDN_RETRIES: int = 0
    DELETE_ORIGINALS: bool = True
    GENERATE_WEBP_FALLBACK: bool = False
    WEBP_FALLBACK_QUALITY: int = 80
    AVIF_SPEED: int = 6
    MAX_WORKERS: int = 1
    MEDIA_ROOT: Optional[str] = None
    API_TOKEN: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=None, case_sensitive=False, extra="ignore")

    @field_validator("COMPRESSION_QUALITY", "WEBP_FALLBACK_QUALITY")
    @classmethod
    def clamp_quality_fields(cls, v):
        return clamp_quality(v)

    @field_validator("MAX_WORKERS")
    @classmethod
    def validate_workers(cls, v):
        if v < 1:
            raise ValueError("MAX_WORKERS must be >= 1")
        return v

    @field_validator("CDN_RETRIES")
    @classmethod
    def validate_retries(cls, v):
        if v < 0:
            raise ValueError("CDN_RETRIES must be >= 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def ai_stage_list(self) -> List[str]:
        return [s.strip() for s in (self.AI_STAGES or "").split(",") if s.strip()]


_cached_settings: Optional[AvifSettings] = None
_settings_lock = threading.Lock()


def get_settings() -> AvifSettings:
    global _cached_settings
    if _cached_settings is not None:
        return _cached_settings
    with _settings_lock:
        if _cached_settings is None:
            _cached_settings = AvifSettings()
            logger.debug("AvifSettings loaded: quality=%s cdn_enabled=%s", _cached_settings.COMPRESSION_QUALITY, _cached_settings.CDN_ENABLED)
    return _cached_settings


def reset_cached_settings() -> None:
    global _cached_settings
    with _settings_lock:
        _cached_settings = None


__all__ = ["AvifSettings", "get_settings", "reset_cached_settings"]
