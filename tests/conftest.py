import os

import pytest

from flagengine.core.config import reset_settings


# Environment variables read by Settings that tests may modify
_ENV_VARS_TO_ISOLATE = [
    "LOG_LEVEL",
    "LOG_JSON",
    "SERVICE_NAME",
    "ENVIRONMENT",
    "REDIS_URL",
    "REDIS_ENABLED",
    "FLAG_L1_TTL_SECONDS",
    "FLAG_L2_TTL_SECONDS",
    "FLAG_L1_MAX_SIZE",
    "FLAG_CACHE_KEY_PREFIX",
    "FLAG_INVALIDATION_CHANNEL",
    "FLAG_STORE_TIMEOUT_SECONDS",
]


@pytest.fixture(autouse=True)
def env_isolation():
    """Isolate environment variables and cached settings between tests."""
    backup = {k: os.environ.get(k) for k in _ENV_VARS_TO_ISOLATE}
    reset_settings()
    try:
        yield
    finally:
        for k, v in backup.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        reset_settings()
