"""
Utility functions and helpers for the incident response orchestrator.

Identifier generation, naive-UTC timestamps, duration formatting and the
retry helper used around platform calls.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from incident_orchestrator.core.exceptions import TransientInfraError

T = TypeVar("T")

logger = logging.getLogger(__name__)

# =============================================================================
# ID Generation
# =============================================================================


def generate_id() -> str:
    """Generate a UUID4 string used as a primary key."""
    return str(uuid.uuid4())


def generate_alert_id() -> str:
    """Generate unique alert ID.

    Returns:
        Unique alert ID string.
    """
    return f"alert_{uuid.uuid4().hex[:12]}"


def generate_operation_id(prefix: str = "op") -> str:
    """Generate an identifier for an asynchronous platform operation."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# =============================================================================
# Timestamp Utilities
# =============================================================================


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a timestamp from various formats.

    Timezone-aware values are converted to naive UTC.

    Args:
        value: Timestamp string, datetime, or None.

    Returns:
        Parsed datetime or None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Duration Utilities
# =============================================================================


def format_duration(duration: timedelta) -> str:
    """Format a duration to a human-readable string.

    Args:
        duration: Duration to format.

    Returns:
        Human-readable duration string, e.g. ``"45s"``, ``"20m"``, ``"2h 5m"``.
    """
    total_seconds = int(duration.total_seconds())
    if total_seconds < 60:
        return f"{total_seconds}s"
    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    elif minutes < 1440:
        hours = minutes // 60
        mins = minutes % 60
        return f"{hours}h {mins}m" if mins > 0 else f"{hours}h"
    else:
        days = minutes // 1440
        hours = (minutes % 1440) // 60
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"


def sum_durations(durations: list[timedelta]) -> timedelta:
    return sum(durations, timedelta(0))


# =============================================================================
# Numeric Utilities
# =============================================================================


def coerce_float(value: Any) -> float | None:
    """Convert a raw metric value to a finite float.

    Returns:
        The float value, or None for non-numeric, NaN or infinite input.
    """
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def truncate_string(s: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate a string to a maximum length.

    Args:
        s: String to truncate.
        max_length: Maximum length.
        suffix: Suffix to add if truncated.

    Returns:
        Truncated string.
    """
    if len(s) <= max_length:
        return s
    return s[: max_length - len(suffix)] + suffix


# =============================================================================
# Retry
# =============================================================================


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    operation: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` retrying transient infrastructure errors.

    Delays double after every failed attempt, starting at ``base_delay``
    and capped at ``max_delay``. Any exception that is not a
    ``TransientInfraError`` propagates immediately.

    Args:
        func: Zero-argument callable to invoke.
        max_attempts: Total attempts including the first one.
        base_delay: Delay in seconds after the first failure.
        max_delay: Upper bound for a single delay.
        operation: Name used in log messages.
        sleep: Sleep function (injectable for tests).

    Returns:
        The value returned by ``func``.

    Raises:
        TransientInfraError: The last transient error once attempts run out.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return func()
        except TransientInfraError as e:
            if attempt >= attempts - 1:
                raise
            delay = min(base_delay * (2**attempt), max_delay)
            logger.warning(
                f"{operation} failed (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
    raise AssertionError("unreachable")
