"""Destruction instants: the correlation key shared by one cascade."""

from datetime import datetime, timezone
from typing import Optional

from ..config import LifecycleConfig, TimestampPrecision, get_config


def utc_now(config: Optional[LifecycleConfig] = None) -> datetime:
    """Return the current instant, normalized for storage."""
    config = config or get_config()
    return normalize_instant(datetime.now(timezone.utc), config)


def normalize_instant(
    instant: datetime, config: Optional[LifecycleConfig] = None
) -> datetime:
    """
    Normalize an instant to the configured precision and timezone handling.

    Aware instants are converted to UTC; they stay aware only when the
    configuration asks for timezone-aware storage. Naive instants are taken
    as UTC already.

    Args:
        instant: Instant supplied by a caller or produced by :func:`utc_now`
        config: Configuration to apply, defaults to the global one

    Returns:
        The instant exactly as it will be written to ``destroyed_at``
    """
    config = config or get_config()

    if instant.tzinfo is not None:
        instant = instant.astimezone(timezone.utc)
        if not config.timezone_aware:
            instant = instant.replace(tzinfo=None)
    elif config.timezone_aware:
        instant = instant.replace(tzinfo=timezone.utc)

    if config.timestamp_precision == TimestampPrecision.SECOND:
        instant = instant.replace(microsecond=0)
    elif config.timestamp_precision == TimestampPrecision.MILLISECOND:
        instant = instant.replace(microsecond=(instant.microsecond // 1000) * 1000)

    return instant
