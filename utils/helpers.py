"""
Helper Utility Module

This module provides various helper functions used throughout the Album Sync
application: tag and account normalization, clamping, retries and
timestamp handling.
"""

import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from utils.exceptions import ValidationError

_PROFILE_PATH = re.compile(r"/@([^/]+)")


def normalize_tag(tag: Any) -> str:
    """
    Turn raw hashtag input into its canonical key.

    Args:
        tag: Raw input such as ``"#Italy"`` or ``" travel "``.

    Returns:
        str: Lowercase tag without the leading ``#``; empty if nothing is left.
    """
    if tag is None:
        return ""
    return str(tag).strip().lstrip("#").strip().lower()


def normalize_tags(tags: Optional[Iterable[Any]]) -> List[str]:
    """
    Normalize a list of hashtags, dropping blanks and duplicates.

    Args:
        tags: Raw hashtags; ``None`` is treated as empty.

    Returns:
        List[str]: Unique canonical tags in first-seen order.
    """
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]
    seen: Dict[str, None] = {}
    for tag in tags:
        key = normalize_tag(tag)
        if key:
            seen.setdefault(key, None)
    return list(seen)


def normalize_acct(acct: Any) -> str:
    """
    Normalize an account handle to ``name`` or ``name@host``.

    Accepts ``name``, ``@name``, ``name@host``, ``@name@host`` and profile
    URLs such as ``https://host/@name``.

    Args:
        acct: Raw account input.

    Returns:
        str: Lowercase canonical handle.

    Raises:
        ValidationError: If the input is empty or the host part is malformed.
    """
    value = str(acct or "").strip()
    if re.match(r"^https?://", value, flags=re.I):
        parsed = urlparse(value)
        match = _PROFILE_PATH.search(parsed.path)
        if match and parsed.hostname:
            value = f"{match.group(1)}@{parsed.hostname}"
    value = value.lstrip("@").strip()

    if not value:
        raise ValidationError("Missing account", {"acct": acct})

    if "@" in value:
        name, _, host = value.partition("@")
        if not name or not host or "." not in host or "@" in host:
            raise ValidationError("Invalid account format. Expected user@host", {"acct": acct})

    return value.lower()


def is_account_id(value: Any) -> bool:
    """Return True when ``value`` already looks like a numeric remote account id."""
    return str(value or "").strip().isdigit()


def clamp(value: Any, low: int, high: int, default: Optional[int] = None) -> int:
    """
    Clamp a numeric value into ``[low, high]``.

    Args:
        value: Value to clamp; non-numeric input falls back to ``default``.
        low: Lower bound.
        high: Upper bound.
        default: Used when ``value`` cannot be read as a number (``low`` if None).

    Returns:
        int: The clamped integer.
    """
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        number = low if default is None else default
    return max(low, min(high, number))


def retry(func: Callable[[], Any], max_attempts: int = 3, delay: float = 2,
          exceptions: Tuple = (Exception,), backoff: int = 2,
          sleep: Callable[[float], None] = time.sleep):
    """
    Retry a function multiple times if it fails.

    Args:
        func: The function to retry
        max_attempts: Maximum number of attempts
        delay: Initial delay between attempts in seconds
        exceptions: Tuple of exceptions to catch
        backoff: Multiplier for the delay between attempts
        sleep: Sleep function, replaceable in tests

    Returns:
        The result of the function call

    Raises:
        The last exception raised by the function
    """
    attempt = 0
    while True:
        try:
            return func()
        except exceptions:
            attempt += 1
            if attempt >= max_attempts:
                raise
            sleep(delay * (backoff ** (attempt - 1)))


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as returned by the remote API.

    Args:
        value: String such as ``2024-01-15T10:00:00.000Z`` or a datetime.

    Returns:
        Optional[datetime]: Aware UTC datetime, or None if unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as an ISO-8601 UTC string, passing None through."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()

