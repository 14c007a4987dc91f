"""
Per-user push notification scan: overdue alerts, upcoming reminders, then
milestone anniversaries.

Every alert follows the same sequence: unread-gate check, persist the
notification record, push to all devices, prune dead subscriptions, and stamp
the task so it is not picked up again inside its cool-down window.
"""

import math
from datetime import datetime

from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.preferences import NotificationPreference
from notifier.models.domain.report_domain import PushUserResult
from notifier.models.domain.task_domain import (
    NotificationRecord,
    NotificationType,
    PushSubscription,
    Task,
)
from notifier.models.domain.timestamps import MS_PER_HOUR, MS_PER_MINUTE, now_millis
from notifier.repositories.notification_repository import notification_repository
from notifier.services.notifications.delivery import (
    NotificationDelivery,
    build_notification_id,
    build_push_payload,
)
from notifier.services.notifications.milestone_scanner import MilestoneNotificationScanner
from notifier.services.notifications.quiet_hours import is_in_quiet_hours

logger = get_logger(__name__)

OVERDUE_COOLDOWN_MS = 24 * MS_PER_HOUR
REMINDER_COOLDOWN_MS = 30 * MS_PER_MINUTE
REMINDER_LOOKAHEAD_MS = 2 * MS_PER_HOUR


def is_overdue_candidate(task: Task, now_ms: int) -> bool:
    if task.reminder_at is None or task.completed_at:
        return False
    if task.notified_at is not None and task.notified_at >= now_ms - OVERDUE_COOLDOWN_MS:
        return False
    return task.reminder_at < now_ms


def is_reminder_candidate(task: Task, now_ms: int) -> bool:
    if task.reminder_at is None or task.completed_at:
        return False
    if task.last_reminded_at is not None and task.last_reminded_at >= now_ms - REMINDER_COOLDOWN_MS:
        return False
    if task.only_notify_at_reminder:
        return False
    return now_ms < task.reminder_at <= now_ms + REMINDER_LOOKAHEAD_MS


def minutes_until(reminder_at_ms: int, now_ms: int) -> int:
    """Minutes until due, rounded half-up."""
    return math.floor((reminder_at_ms - now_ms) / MS_PER_MINUTE + 0.5)


def preference_snapshot(preferences: NotificationPreference) -> dict:
    return {
        "enabled": preferences.enabled,
        "overdueAlerts": preferences.overdue_alerts,
        "taskReminders": preferences.task_reminders,
        "quietHours": preferences.quiet_hours.to_document() if preferences.quiet_hours else None,
    }


class TaskNotificationScanner:
    def __init__(
        self,
        repository=None,
        delivery: NotificationDelivery | None = None,
        milestone_scanner: MilestoneNotificationScanner | None = None,
    ):
        self.repository = repository or notification_repository
        self.delivery = delivery or NotificationDelivery(repository=self.repository)
        self.milestone_scanner = milestone_scanner or MilestoneNotificationScanner(
            repository=self.repository, delivery=self.delivery
        )

    async def scan_user(
        self,
        user_email: str,
        preferences: NotificationPreference,
        now: datetime,
        result: PushUserResult | None = None,
    ) -> PushUserResult:
        """
        Run the overdue, reminder and milestone passes for one user.

        Counters land on ``result`` as alerts go out, so a caller holding the
        same object still sees completed work if a later step raises.
        """
        if result is None:
            result = PushUserResult(user_email=user_email)
        result.preferences = preference_snapshot(preferences)

        if not preferences.enabled:
            result.status = "skipped_disabled"
            result.logs.append("Notifications disabled for user")
            return result

        if is_in_quiet_hours(preferences.quiet_hours, now):
            result.status = "skipped_quiet_hours"
            result.logs.append("User in quiet hours")
            logger.info("Skipping user in quiet hours", user_email=user_email)
            return result

        subscriptions = await self.repository.list_subscriptions(user_email)
        if not subscriptions:
            result.status = "skipped_no_subscriptions"
            result.logs.append("No push subscriptions found")
            return result

        result.subscriptions_total = len(subscriptions)
        result.logs.append(f"Found {len(subscriptions)} push subscriptions")

        tasks = await self.repository.list_tasks(user_email)
        result.tasks_total = len(tasks)
        result.logs.append(f"Found {len(tasks)} total tasks")

        # Tasks without a usable reminder time take no part in either pass
        scheduled = [task for task in tasks if task.reminder_at is not None]
        now_ms = now_millis(now)

        if preferences.overdue_alerts:
            await self._process_overdue(user_email, scheduled, subscriptions, now, now_ms, result)

        if preferences.task_reminders:
            await self._process_reminders(user_email, scheduled, subscriptions, now, now_ms, result)

        try:
            result.logs.append("Checking milestone notifications...")
            await self.milestone_scanner.scan_user(user_email, subscriptions, now, result)
        except Exception as e:
            logger.error("Milestone processing failed", user_email=user_email, error=str(e))
            result.errors.append(f"Milestone processing error: {e}")

        result.status = "processed"
        result.logs.append(f"Completed processing: {result.notifications_total} notifications sent")
        return result

    async def _process_overdue(
        self,
        user_email: str,
        tasks: list[Task],
        subscriptions: list[PushSubscription],
        now: datetime,
        now_ms: int,
        result: PushUserResult,
    ) -> None:
        candidates = [task for task in tasks if is_overdue_candidate(task, now_ms)]
        result.tasks_overdue = len(candidates)
        result.logs.append(f"{len(candidates)} overdue tasks to notify")

        for task in candidates:
            if await self._has_unread(user_email, task, NotificationType.OVERDUE_TASK):
                result.logs.append(f"Skipped overdue alert for {task.id}: unread alert exists")
                continue

            body = f'"{task.display_title}" is overdue!'
            await self._send_task_notification(
                user_email,
                task,
                NotificationType.OVERDUE_TASK,
                "Task Overdue",
                body,
                "overdue",
                subscriptions,
                now,
                now_ms,
                result,
            )
            result.overdue_sent += 1
            # Stamped even when every device failed
            await self.repository.mark_task_notified(task.id, now_ms)

    async def _process_reminders(
        self,
        user_email: str,
        tasks: list[Task],
        subscriptions: list[PushSubscription],
        now: datetime,
        now_ms: int,
        result: PushUserResult,
    ) -> None:
        candidates = [task for task in tasks if is_reminder_candidate(task, now_ms)]
        result.tasks_reminders = len(candidates)
        result.logs.append(f"{len(candidates)} upcoming tasks to remind")

        for task in candidates:
            if await self._has_unread(user_email, task, NotificationType.TASK_REMINDER):
                result.logs.append(f"Skipped reminder for {task.id}: unread reminder exists")
                continue

            body = f'"{task.display_title}" is due in {minutes_until(task.reminder_at, now_ms)} minutes'
            await self._send_task_notification(
                user_email,
                task,
                NotificationType.TASK_REMINDER,
                "Task Reminder",
                body,
                "reminder",
                subscriptions,
                now,
                now_ms,
                result,
            )
            result.reminders_sent += 1
            await self.repository.mark_task_reminded(task.id, now_ms)

    async def _has_unread(self, user_email: str, task: Task, notification_type: str) -> bool:
        try:
            return await self.repository.has_unread_task_notification(
                user_email, task.id, notification_type
            )
        except Exception as e:
            # Favour delivery over strict dedupe when the ledger can't be read
            logger.error(
                "Unread notification check failed, sending anyway",
                user_email=user_email,
                task_id=task.id,
                notification_type=notification_type,
                error=str(e),
            )
            return False

    async def _send_task_notification(
        self,
        user_email: str,
        task: Task,
        notification_type: str,
        title: str,
        body: str,
        id_suffix: str,
        subscriptions: list[PushSubscription],
        now: datetime,
        now_ms: int,
        result: PushUserResult,
    ) -> None:
        notification_id = build_notification_id(user_email, now_ms, id_suffix)
        timestamp = now.isoformat()

        record = NotificationRecord(
            id=notification_id,
            user_email=user_email,
            title=title,
            body=body,
            related_task_id=task.id,
            created_at=now_ms,
            data={
                "type": notification_type,
                "taskId": task.id,
                "title": task.display_title,
                "timestamp": timestamp,
            },
        )
        payload = build_push_payload(
            title=title,
            body=body,
            tag=f"{notification_type}-{task.id}",
            data={
                "type": notification_type,
                "taskId": task.id,
                "title": task.display_title,
                "notificationId": notification_id,
                "userEmail": user_email,
                "url": f"/task/{task.id}",
                "timestamp": timestamp,
            },
        )

        outcome = await self.delivery.deliver(record, payload, subscriptions, now_ms)
        result.record_delivery(outcome)
        result.logs.append(f"{title}: {task.display_title} ({outcome.sent} delivered)")
