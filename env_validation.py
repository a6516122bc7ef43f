"""Environment variable validation and management."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "PROGRESSION_XP_HISTORY_LIMIT": "200",
    "PROGRESSION_MAX_WRITE_RETRIES": "3",
    "ENABLE_XAPI_ACHIEVEMENTS": "true",
}

_INTEGER_VARS: Dict[str, int] = {
    "PROGRESSION_XP_HISTORY_LIMIT": 0,
    "PROGRESSION_MAX_WRITE_RETRIES": 0,
}


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var, minimum in _INTEGER_VARS.items():
        raw = os.getenv(var, "")
        try:
            value = int(raw)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer, got {raw!r}")
        if value < minimum:
            raise EnvironmentError(f"{var} must be >= {minimum}, got {value}")

    catalog_path = os.getenv("BADGE_CATALOG_PATH")
    if catalog_path and not os.path.exists(catalog_path):
        raise EnvironmentError(f"BADGE_CATALOG_PATH points to a missing file: {catalog_path}")

    # Validate URLs
    url_vars = {"LRS_URL", "APP_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    optional_vars = {
        "PROGRESSION_ADMIN_TOKEN": "Token required by the administrative reset endpoint",
        "LRS_URL": "Learning Record Store URL",
        "LRS_AUTH": "Learning Record Store authentication",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default
