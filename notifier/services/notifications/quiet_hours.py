"""Quiet-hours window evaluation on the local clock."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.preferences import QuietHoursConfig

logger = get_logger(__name__)


def parse_clock(value: str) -> int | None:
    """'HH:MM' -> minutes since midnight, or None when malformed."""
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        return None

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour * 60 + minute


def minutes_since_midnight(now: datetime) -> int:
    return now.hour * 60 + now.minute


def is_in_quiet_hours(config: QuietHoursConfig | Mapping[str, Any] | None, now: datetime) -> bool:
    """
    True when now falls inside the configured quiet window.

    Both bounds are inclusive. A window whose start is after its end wraps
    past midnight (e.g. 22:00-08:00).
    """
    if config is None:
        return False
    if isinstance(config, Mapping):
        config = QuietHoursConfig.model_validate(config)
    if not config.enabled:
        return False

    start = parse_clock(config.start)
    end = parse_clock(config.end)
    if start is None or end is None:
        logger.warning("Ignoring malformed quiet hours", start=config.start, end=config.end)
        return False

    current = minutes_since_midnight(now)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end
