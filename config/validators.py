"""
Configuration Validation for Album Sync Application

This module contains configuration validation logic.
Extracted from settings.py for better separation of concerns.
"""

from urllib.parse import urlparse

from utils.exceptions import ConfigurationError


def validate_settings():
    """
    Validate that all required settings are properly configured.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    # Import settings here to avoid circular imports
    from config import settings

    errors = []

    parsed = urlparse(settings.PIXELFED_INSTANCE or "")
    if not (parsed.scheme in ("http", "https") and parsed.netloc):
        errors.append(f"PIXELFED_INSTANCE must be an http(s) URL, got {settings.PIXELFED_INSTANCE!r}")

    if not settings.ALBUMS_DB_PATH:
        errors.append("Missing required setting: ALBUMS_DB_PATH")

    # Validate numeric settings are within reasonable bounds
    numeric_validations = [
        ("MIN_QUERY_LIMIT", settings.MIN_QUERY_LIMIT, 1, 40),
        ("MAX_QUERY_LIMIT", settings.MAX_QUERY_LIMIT, 1, 40),
        ("DEFAULT_QUERY_LIMIT", settings.DEFAULT_QUERY_LIMIT, settings.MIN_QUERY_LIMIT, settings.MAX_QUERY_LIMIT),
        ("JITTER_PERCENTAGE", settings.JITTER_PERCENTAGE, 0.0, 50.0),
        ("HTTP_MAX_ATTEMPTS", settings.HTTP_MAX_ATTEMPTS, 1, 10),
        ("FETCH_MAX_WORKERS", settings.FETCH_MAX_WORKERS, 1, 64),
        ("TAG_HEADROOM_CAP", settings.TAG_HEADROOM_CAP, 1, 1000),
        ("COMPOUND_HEADROOM_CAP", settings.COMPOUND_HEADROOM_CAP, 1, 1000),
    ]

    for name, value, min_val, max_val in numeric_validations:
        if value < min_val or value > max_val:
            errors.append(f"{name} must be between {min_val} and {max_val}, got {value}")

    # Validate timeout values are positive
    timeout_settings = [
        ("HTTP_TIMEOUT_SECONDS", settings.HTTP_TIMEOUT_SECONDS),
        ("SCHEDULER_TICK_SECONDS", settings.SCHEDULER_TICK_SECONDS),
        ("BASE_BACKOFF_SECONDS", settings.BASE_BACKOFF_SECONDS),
        ("MAX_BACKOFF_SECONDS", settings.MAX_BACKOFF_SECONDS),
        ("DEFAULT_REFRESH_INTERVAL_MS", settings.DEFAULT_REFRESH_INTERVAL_MS),
    ]

    for name, value in timeout_settings:
        if value <= 0:
            errors.append(f"{name} must be positive, got {value}")

    if settings.SCHEDULER_ALBUM_DELAY_SECONDS < 0:
        errors.append(f"SCHEDULER_ALBUM_DELAY_SECONDS must not be negative, got {settings.SCHEDULER_ALBUM_DELAY_SECONDS}")

    if settings.BASE_BACKOFF_SECONDS > settings.MAX_BACKOFF_SECONDS:
        errors.append("BASE_BACKOFF_SECONDS must not exceed MAX_BACKOFF_SECONDS")

    # Raise all errors at once
    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

    return True


def get_config_summary() -> dict:
    """
    Returns a summary of current configuration (without sensitive values).
    Useful for logging startup state.
    """
    # Import settings here to avoid circular imports
    from config import settings

    return {
        "instance": {
            "url": settings.PIXELFED_INSTANCE,
            "token_configured": bool(settings.PIXELFED_ACCESS_TOKEN),
            "timeout_seconds": settings.HTTP_TIMEOUT_SECONDS,
        },
        "database": {
            "path": settings.ALBUMS_DB_PATH,
        },
        "query": {
            "default_limit": settings.DEFAULT_QUERY_LIMIT,
            "limit_range": [settings.MIN_QUERY_LIMIT, settings.MAX_QUERY_LIMIT],
        },
        "scheduler": {
            "tick_seconds": settings.SCHEDULER_TICK_SECONDS,
            "album_delay_seconds": settings.SCHEDULER_ALBUM_DELAY_SECONDS,
            "jitter": f"{settings.JITTER_PERCENTAGE:g}%",
            "backoff_seconds": [settings.BASE_BACKOFF_SECONDS, settings.MAX_BACKOFF_SECONDS],
            "default_interval_ms": settings.DEFAULT_REFRESH_INTERVAL_MS,
        },
    }
