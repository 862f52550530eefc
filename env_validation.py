"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "quiz.db",
    "DB_MAX_CONNECTIONS": "10",
    "DB_BUSY_TIMEOUT": "5.0",
    "CACHE_MAX_ENTRIES": "10000",
    "QUESTION_POOL_SIZE": "20",
    "LOG_LEVEL": "INFO",
}

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class QuizSettings:
    db_path: str
    db_max_connections: int
    db_busy_timeout: float
    cache_max_entries: int
    question_pool_size: int
    log_level: str
    redis_url: Optional[str] = None
    question_bank_path: Optional[str] = None


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "REDIS_URL": "Redis cache URL (in-process cache is used when unset)",
        "QUESTION_BANK_PATH": "JSON question bank seeded at startup",
    }

    positive_ints = ("DB_MAX_CONNECTIONS", "CACHE_MAX_ENTRIES", "QUESTION_POOL_SIZE")
    for var in positive_ints:
        if get_env_int(var, 0) <= 0:
            raise EnvironmentError(f"{var} must be a positive integer: {os.getenv(var)}")

    if get_env_float("DB_BUSY_TIMEOUT", -1.0) < 0:
        raise EnvironmentError(f"DB_BUSY_TIMEOUT must be a non-negative number: {os.getenv('DB_BUSY_TIMEOUT')}")

    if os.getenv("LOG_LEVEL", "").upper() not in _LOG_LEVELS:
        raise EnvironmentError(f"Invalid LOG_LEVEL: {os.getenv('LOG_LEVEL')}")

    # Validate URLs
    redis_url = os.getenv("REDIS_URL")
    if redis_url and not (redis_url.startswith("redis://") or redis_url.startswith("rediss://")):
        raise EnvironmentError(f"Invalid URL format for REDIS_URL: {redis_url}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default

def load_settings() -> QuizSettings:
    """Validate the environment and return the resolved settings."""
    validate_environment()
    return QuizSettings(
        db_path=os.environ["DB_PATH"],
        db_max_connections=get_env_int("DB_MAX_CONNECTIONS", 10),
        db_busy_timeout=get_env_float("DB_BUSY_TIMEOUT", 5.0),
        cache_max_entries=get_env_int("CACHE_MAX_ENTRIES", 10000),
        question_pool_size=get_env_int("QUESTION_POOL_SIZE", 20),
        log_level=os.environ["LOG_LEVEL"].upper(),
        redis_url=os.getenv("REDIS_URL") or None,
        question_bank_path=os.getenv("QUESTION_BANK_PATH") or None,
    )
