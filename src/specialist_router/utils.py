"""
Utility functions for the Specialist Router.

This module provides:
- Environment variable validation and loading
- Logging configuration with structured JSON output
- Timing utilities for stage measurement
- Session ID generation
- Input sanitization for logs
"""

import os
import re
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from loguru import logger


APP_VERSION = "1.0.0"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


# Optional environment variables and their defaults
DEFAULT_SETTINGS: Dict[str, Any] = {
    "OPENROUTER_BASE_URL": "https://openrouter.ai/api/v1",
    "CLASSIFICATION_TIMEOUT_SECONDS": 2.0,
    "GENERATION_TIMEOUT_SECONDS": 20.0,
    "SESSION_IDLE_TIMEOUT_MINUTES": 30,
    "SESSION_CLEANUP_INTERVAL_SECONDS": 60,
    "MAX_CONTEXT_TURNS": 3,
    "FALLBACK_KEYWORD_WEIGHT": 0.5,
    "FALLBACK_INTENT_WEIGHT": 0.3,
    "FALLBACK_CONTEXT_WEIGHT": 0.2,
    "FALLBACK_CONTEXT_BONUS": 0.5,
    "CLASSIFIER_HINT_FLOOR": 0.3,
    "CLASSIFIER_HINT_WEIGHT": 0.2,
    "SPECIALISTS_CONFIG_PATH": "",
    "LOG_LEVEL": "INFO",
}

REQUIRED_SETTINGS = [
    "OPENROUTER_API_KEY",
    "CLASSIFICATION_MODEL",
    "GENERATION_MODEL",
]

_INT_SETTINGS = {"SESSION_IDLE_TIMEOUT_MINUTES", "SESSION_CLEANUP_INTERVAL_SECONDS", "MAX_CONTEXT_TURNS"}
_FLOAT_SETTINGS = {
    "CLASSIFICATION_TIMEOUT_SECONDS",
    "GENERATION_TIMEOUT_SECONDS",
    "FALLBACK_KEYWORD_WEIGHT",
    "FALLBACK_INTENT_WEIGHT",
    "FALLBACK_CONTEXT_WEIGHT",
    "FALLBACK_CONTEXT_BONUS",
    "CLASSIFIER_HINT_FLOOR",
    "CLASSIFIER_HINT_WEIGHT",
}


def setup_logging(level: str = "INFO") -> None:
    """
    Configure structured JSON logging with Loguru.
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stdout,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        level=level,
        serialize=True
    )

    logger.info("Logging configuration complete", level=level)


def _coerce(var: str, value: Any, default: Any) -> Any:
    """Convert an environment string to the type of its setting."""
    caster = int if var in _INT_SETTINGS else float if var in _FLOAT_SETTINGS else None
    if caster is None:
        return value
    try:
        return caster(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {var}: {value}, using default: {default}")
        return default


def validate_settings(config: Dict[str, Any]) -> None:
    """
    Check cross-field constraints on an already typed configuration.

    Raises:
        ConfigurationError: If weights, bounds or timeouts are invalid
    """
    weights = (
        config["FALLBACK_KEYWORD_WEIGHT"],
        config["FALLBACK_INTENT_WEIGHT"],
        config["FALLBACK_CONTEXT_WEIGHT"],
    )
    if any(w < 0 for w in weights) or abs(sum(weights) - 1.0) > 1e-6:
        raise ConfigurationError(f"Fallback scoring weights must be non-negative and sum to 1.0, got {weights}")

    for var in ("FALLBACK_CONTEXT_BONUS", "CLASSIFIER_HINT_FLOOR", "CLASSIFIER_HINT_WEIGHT"):
        if not 0.0 <= config[var] <= 1.0:
            raise ConfigurationError(f"{var} must be within [0, 1], got {config[var]}")

    for var in ("CLASSIFICATION_TIMEOUT_SECONDS", "GENERATION_TIMEOUT_SECONDS"):
        if config[var] <= 0:
            raise ConfigurationError(f"{var} must be positive, got {config[var]}")

    if config["MAX_CONTEXT_TURNS"] < 0:
        raise ConfigurationError("MAX_CONTEXT_TURNS cannot be negative")

    if config["SESSION_IDLE_TIMEOUT_MINUTES"] <= 0:
        raise ConfigurationError("SESSION_IDLE_TIMEOUT_MINUTES must be positive")


def load_and_validate_env() -> Dict[str, Any]:
    """
    Load and validate all required environment variables.

    Returns:
        Dict[str, Any]: Configuration dictionary with validated values

    Raises:
        ConfigurationError: If required environment variables are missing
    """
    load_dotenv()

    config: Dict[str, Any] = {}

    for var in REQUIRED_SETTINGS:
        value = os.getenv(var)
        if not value:
            raise ConfigurationError(f"Required environment variable {var} is not set")
        config[var] = value

    for var, default in DEFAULT_SETTINGS.items():
        config[var] = _coerce(var, os.getenv(var, default), default)

    validate_settings(config)

    logger.info("Environment configuration loaded and validated")
    return config


def generate_session_id() -> str:
    """
    Generate a unique session ID.

    Returns:
        str: Session ID of the form ``session_<16 hex chars>``
    """
    return f"session_{uuid.uuid4().hex[:16]}"


def sanitize_for_logging(text: str, max_length: int = 200) -> str:
    """
    Sanitize user input for safe logging by removing/masking sensitive information.

    Args:
        text: Input text to sanitize
        max_length: Maximum length of sanitized text

    Returns:
        str: Sanitized text safe for logging
    """
    if not text:
        return ""

    sensitive_patterns = [
        r'sk-[a-zA-Z0-9-]+',  # API keys starting with sk-
        r'Bearer\s+[a-zA-Z0-9._-]+',  # Bearer tokens
        r'\b[A-Za-z0-9]{20,}\b'  # Long alphanumeric strings (potential tokens)
    ]

    sanitized = text
    for pattern in sensitive_patterns:
        sanitized = re.sub(pattern, '[REDACTED]', sanitized, flags=re.IGNORECASE)

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


class Timer:
    """Context manager for timing operations."""

    def __init__(self, operation_name: str = "operation"):
        self.operation_name = operation_name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        logger.debug(f"Starting {self.operation_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()

        if exc_type is None:
            logger.debug(f"Completed {self.operation_name}", duration_ms=self.duration_ms)
        else:
            logger.error(f"Failed {self.operation_name}", duration_ms=self.duration_ms, error=str(exc_val))

    @property
    def duration_ms(self) -> float:
        """Get duration in milliseconds."""
        if self.start_time is not None and self.end_time is not None:
            return (self.end_time - self.start_time) * 1000
        return 0.0


def get_utc_datetime() -> datetime:
    """
    Get current datetime object in UTC timezone.

    Returns:
        datetime: Current UTC datetime object with timezone info
    """
    return datetime.now(timezone.utc)


def get_current_timestamp() -> str:
    """
    Get current timestamp in ISO format with UTC timezone.

    Returns:
        str: Current timestamp in ISO format with timezone
    """
    return get_utc_datetime().isoformat()


# Global configuration instance
_config: Optional[Dict[str, Any]] = None


def get_config() -> Dict[str, Any]:
    """
    Get the global configuration, loading it if not already loaded.

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    global _config
    if _config is None:
        _config = load_and_validate_env()
    return _config


def reset_config() -> None:
    """Forget the cached configuration so the next access reloads it."""
    global _config
    _config = None


def initialize_app() -> Dict[str, Any]:
    """
    Initialize the application with logging and configuration.
    Call this at app startup.
    """
    config = get_config()
    setup_logging(config["LOG_LEVEL"])

    logger.info(
        "Application initialization complete",
        models={
            "classification": config["CLASSIFICATION_MODEL"],
            "generation": config["GENERATION_MODEL"],
        },
        timeouts={
            "classification_s": config["CLASSIFICATION_TIMEOUT_SECONDS"],
            "generation_s": config["GENERATION_TIMEOUT_SECONDS"],
        },
        fallback_weights={
            "keyword": config["FALLBACK_KEYWORD_WEIGHT"],
            "intent": config["FALLBACK_INTENT_WEIGHT"],
            "context": config["FALLBACK_CONTEXT_WEIGHT"],
        }
    )
    return config
