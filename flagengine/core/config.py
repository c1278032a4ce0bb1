"""Runtime settings for the flag engine."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    SERVICE_NAME: str = "flag-engine"
    ENVIRONMENT: str = "production"

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = False

    # Two-tier flag cache
    FLAG_L1_TTL_SECONDS: float = 10.0
    FLAG_L2_TTL_SECONDS: float = 60.0
    FLAG_L1_MAX_SIZE: int = 10000
    FLAG_CACHE_KEY_PREFIX: str = "flags"

    FLAG_INVALIDATION_CHANNEL: str = "flags:invalidate"
    # Deadline for a cache-miss store fetch; on timeout evaluation fails closed
    FLAG_STORE_TIMEOUT_SECONDS: float = 0.5

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_cache
    _settings_cache = None
