"""Daily and weekly digest due-checks."""

from datetime import datetime

from notifier.models.domain.preferences import DEFAULT_DAILY_DIGEST_TIME, EmailPreference
from notifier.models.domain.report_domain import DigestDecision
from notifier.models.domain.timestamps import from_millis, start_of_day, start_of_week
from notifier.services.notifications.quiet_hours import minutes_since_midnight, parse_clock

DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]
WEEKLY_DIGEST_HOUR = 9


def day_index(now: datetime) -> int:
    """Day of week with Sunday=0."""
    return (now.weekday() + 1) % 7


def should_send_daily_digest(preferences: EmailPreference, now: datetime) -> DigestDecision:
    if not preferences.daily_digest:
        return DigestDecision(False, "Daily digest disabled")

    digest_time = preferences.daily_digest_time or DEFAULT_DAILY_DIGEST_TIME
    scheduled = parse_clock(digest_time)
    if scheduled is None:
        digest_time = DEFAULT_DAILY_DIGEST_TIME
        scheduled = parse_clock(digest_time)

    if minutes_since_midnight(now) < scheduled:
        return DigestDecision(False, f"Scheduled time ({digest_time}) not yet reached today")

    if preferences.last_daily_sent is not None:
        last_sent = from_millis(preferences.last_daily_sent, now.tzinfo)
        if start_of_day(last_sent) == start_of_day(now):
            return DigestDecision(
                False, f"Daily digest already sent today at {last_sent.strftime('%H:%M:%S')}"
            )

    return DigestDecision(True, "Scheduled time passed and not yet sent today")


def should_send_weekly_digest(preferences: EmailPreference, now: datetime) -> DigestDecision:
    if not preferences.weekly_digest:
        return DigestDecision(False, "Weekly digest disabled")

    digest_day = (preferences.digest_day or "monday").lower()
    if digest_day not in DAY_NAMES:
        return DigestDecision(False, "Invalid digest day configured")
    target_day = DAY_NAMES.index(digest_day)

    current_day = day_index(now)
    if current_day != target_day:
        return DigestDecision(
            False, f"Today is {DAY_NAMES[current_day]}, weekly digest scheduled for {digest_day}"
        )

    if now.hour < WEEKLY_DIGEST_HOUR:
        return DigestDecision(False, "Scheduled time (9:00 AM) not yet reached today")

    week_start = start_of_week(now)
    if preferences.last_weekly_sent is not None:
        last_sent = from_millis(preferences.last_weekly_sent, now.tzinfo)
        if last_sent >= week_start:
            return DigestDecision(
                False,
                f"Weekly digest already sent this week on {last_sent.strftime('%Y-%m-%d %H:%M:%S')}",
            )

    return DigestDecision(True, "Scheduled day and time passed, not yet sent this week")
