"""Anniversary alerts for a user's recurring milestones."""

import math
from datetime import date, datetime

from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.report_domain import PushUserResult
from notifier.models.domain.task_domain import (
    Milestone,
    MilestoneNotificationSettings,
    NotificationRecord,
    NotificationType,
    PushSubscription,
)
from notifier.models.domain.timestamps import MS_PER_DAY, from_millis, now_millis, start_of_day
from notifier.repositories.notification_repository import notification_repository
from notifier.services.notifications.delivery import (
    NotificationDelivery,
    build_notification_id,
    build_push_payload,
)

logger = get_logger(__name__)

# (days before the anniversary, settings flag, notificationType)
MILESTONE_RULES: tuple[tuple[int, str, str], ...] = (
    (0, "on_the_day", "on-the-day"),
    (1, "one_day_before", "one-day-before"),
    (3, "three_days_before", "three-days-before"),
    (7, "one_week_before", "one-week-before"),
    (30, "one_month_before", "one-month-before"),
)

DAYS_PER_YEAR = 365.25


def anniversary_in_year(original: date, year: int) -> date:
    # Feb 29 rolls over to Mar 1 in non-leap years
    try:
        return original.replace(year=year)
    except ValueError:
        return date(year, 3, 1)


def days_until_next_anniversary(original_ms: int, now: datetime) -> int:
    """Whole days from today to the next occurrence of the original month/day."""
    # Calendar-date difference, not a floor of elapsed ms since midnight: the
    # anniversary reads 0 for the whole local day.
    original = from_millis(original_ms, now.tzinfo).date()
    today = now.date()

    anniversary = anniversary_in_year(original, today.year)
    if anniversary < today:
        anniversary = anniversary_in_year(original, today.year + 1)
    return (anniversary - today).days


def match_notification_rule(days_until: int, settings: MilestoneNotificationSettings) -> str | None:
    for days, flag, notification_type in MILESTONE_RULES:
        if days_until == days and getattr(settings, flag):
            return notification_type
    return None


def years_since(original_ms: int, now_ms: int) -> int:
    return math.floor((now_ms - original_ms) / (DAYS_PER_YEAR * MS_PER_DAY))


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def build_milestone_message(milestone: Milestone, days_until: int, years: int) -> tuple[str, str]:
    """Title and body for a milestone alert; ``years`` is the floor since the original date."""
    upcoming = years + 1

    if days_until == 0:
        title = f"{milestone.display_icon} {milestone.title}"
        if milestone.is_recurring:
            body = f"Today marks {upcoming} year{_plural(upcoming)} since {milestone.title}!"
        else:
            body = f"Anniversary of {milestone.title} ({years} year{_plural(years)} ago)"
        return title, body

    if days_until == 1:
        time_text = "tomorrow"
    elif days_until == 7:
        time_text = "in 1 week"
    elif days_until == 30:
        time_text = "in 1 month"
    else:
        time_text = f"in {days_until} days"

    title = f"{milestone.display_icon} Upcoming {milestone.type_label}"
    if milestone.is_recurring:
        body = f"{milestone.title} is {time_text} ({upcoming} year{_plural(upcoming)})"
    else:
        body = f"{milestone.title} anniversary is {time_text}"
    return title, body


class MilestoneNotificationScanner:
    def __init__(self, repository=None, delivery: NotificationDelivery | None = None):
        self.repository = repository or notification_repository
        self.delivery = delivery or NotificationDelivery(repository=self.repository)

    async def scan_user(
        self,
        user_email: str,
        subscriptions: list[PushSubscription],
        now: datetime,
        result: PushUserResult,
    ) -> None:
        milestones = await self.repository.list_active_milestones(user_email)
        if not milestones:
            result.logs.append("No active milestones found")
            return

        result.logs.append(f"Found {len(milestones)} active milestones")
        for milestone in milestones:
            await self._process_milestone(user_email, milestone, subscriptions, now, result)

    async def _process_milestone(
        self,
        user_email: str,
        milestone: Milestone,
        subscriptions: list[PushSubscription],
        now: datetime,
        result: PushUserResult,
    ) -> None:
        # Only recurring milestones have a next anniversary
        if not milestone.is_recurring or milestone.original_date is None:
            result.logs.append(f"No anniversary for {milestone.title} (non-recurring)")
            return

        days_until = days_until_next_anniversary(milestone.original_date, now)
        notification_type = match_notification_rule(days_until, milestone.notification_settings)
        if notification_type is None:
            result.logs.append(f"No notification rule matches {milestone.title}, daysUntil={days_until}")
            return

        now_ms = now_millis(now)
        try:
            already_sent = await self.repository.has_milestone_notification_since(
                user_email, milestone.id, notification_type, now_millis(start_of_day(now))
            )
        except Exception as e:
            logger.error(
                "Milestone dedupe check failed, sending anyway",
                user_email=user_email,
                milestone_id=milestone.id,
                error=str(e),
            )
            already_sent = False

        if already_sent:
            result.logs.append(f"Skipped milestone {milestone.title} - already notified today")
            return

        years = years_since(milestone.original_date, now_ms)
        title, body = build_milestone_message(milestone, days_until, years)
        notification_id = build_notification_id(user_email, now_ms, "milestone")
        timestamp = now.isoformat()

        record = NotificationRecord(
            id=notification_id,
            user_email=user_email,
            title=title,
            body=body,
            related_milestone_id=milestone.id,
            created_at=now_ms,
            data={
                "type": NotificationType.MILESTONE_REMINDER,
                "milestoneId": milestone.id,
                "milestoneTitle": milestone.title,
                "milestoneType": milestone.type,
                "notificationType": notification_type,
                "daysUntil": days_until,
                "yearsSince": years + (1 if days_until == 0 else 0),
                "timestamp": timestamp,
            },
        )
        payload = build_push_payload(
            title=title,
            body=body,
            tag=f"milestone-{milestone.id}-{notification_type}",
            data={
                "type": NotificationType.MILESTONE_REMINDER,
                "milestoneId": milestone.id,
                "title": milestone.title,
                "notificationId": notification_id,
                "userEmail": user_email,
                "url": "/milestones",
                "timestamp": timestamp,
            },
        )

        outcome = await self.delivery.deliver(record, payload, subscriptions, now_ms)
        result.record_delivery(outcome)

        # Stamped whether or not any device accepted the push
        await self.repository.mark_milestone_notified(user_email, milestone.id, now_ms)
        result.milestones_sent += 1
        result.logs.append(f"Sent milestone notification: {title}")
        logger.info(
            "Milestone notification sent",
            user_email=user_email,
            milestone_id=milestone.id,
            notification_type=notification_type,
            days_until=days_until,
        )
