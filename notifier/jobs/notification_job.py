"""
Notification check job: one full pass over every user.

Push notifications (tasks and milestones) and digest emails are independent
and run concurrently. Users inside each pass are processed one at a time so
the per-user dedupe writes never race each other.
"""

import asyncio
import time
from datetime import datetime

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.report_domain import DigestUserResult, PushUserResult
from notifier.models.domain.task_domain import NotificationRecord, NotificationType
from notifier.models.domain.timestamps import now_millis
from notifier.repositories.notification_repository import notification_repository
from notifier.services.notifications.delivery import (
    NotificationDelivery,
    build_notification_id,
    build_push_payload,
)
from notifier.services.notifications.digest_dispatcher import DigestDispatcher
from notifier.services.notifications.task_scanner import TaskNotificationScanner

logger = get_logger(__name__)

TEST_NOTIFICATION_TITLE = "Test Notification"
TEST_NOTIFICATION_BODY = "This is a test notification from MindMate."


class NotificationJobError(Exception):
    """Raised when a pass cannot load the users it should process."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _percent(numerator: float, denominator: float) -> str:
    if denominator <= 0:
        return "0%"
    return f"{numerator / denominator * 100:.2f}%"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PushNotificationResults:
    """Aggregated results of the push pass."""

    def __init__(self, start: datetime):
        self.start = start
        self.started = time.monotonic()
        self.total_users = 0
        self.users_processed = 0
        self.users_skipped = 0
        self.overdue_notifications = 0
        self.reminder_notifications = 0
        self.milestone_notifications = 0
        self.subscriptions_processed = 0
        self.invalid_subscriptions_removed = 0
        self.errors: list[str] = []
        self.success_logs: list[str] = []
        self.user_details: list[dict] = []
        self.summary: dict = {}

    @property
    def total_notifications_sent(self) -> int:
        return self.overdue_notifications + self.reminder_notifications + self.milestone_notifications

    def record_user(self, user: PushUserResult) -> None:
        self.user_details.append(user.to_dict())
        self.subscriptions_processed += user.subscriptions_total
        self.invalid_subscriptions_removed += user.subscriptions_removed

        if user.skipped:
            self.users_skipped += 1
            return

        self.users_processed += 1
        self.overdue_notifications += user.overdue_sent
        self.reminder_notifications += user.reminders_sent
        self.milestone_notifications += user.milestones_sent
        self.success_logs.append(
            f"User {user.user_email}: {user.notifications_total} notifications sent"
        )

    def record_user_error(self, user: PushUserResult, error: Exception) -> None:
        user.status = "error"
        user.errors.append(str(error))
        self.user_details.append(user.to_dict())
        self.subscriptions_processed += user.subscriptions_total
        self.invalid_subscriptions_removed += user.subscriptions_removed
        self.overdue_notifications += user.overdue_sent
        self.reminder_notifications += user.reminders_sent
        self.milestone_notifications += user.milestones_sent
        self.errors.append(f"User {user.user_email}: {error}")
        logger.error("Push processing failed for user", user_email=user.user_email, error=str(error))

    def finalize(self) -> None:
        considered = self.users_processed + self.users_skipped
        self.summary = {
            "totalUsers": self.total_users,
            "usersProcessed": self.users_processed,
            "usersSkipped": self.users_skipped,
            "successRate": _percent(self.users_processed, considered),
            "notificationTypes": {
                "overdue": self.overdue_notifications,
                "reminders": self.reminder_notifications,
                "milestones": self.milestone_notifications,
                "total": self.total_notifications_sent,
            },
            "subscriptions": {
                "total": self.subscriptions_processed,
                "invalidRemoved": self.invalid_subscriptions_removed,
            },
            "executionTime": _elapsed_ms(self.started),
            "endTime": datetime.now(self.start.tzinfo).isoformat(),
        }

    def to_dict(self) -> dict:
        return {
            "type": "push_notifications",
            "startTime": self.start.isoformat(),
            "usersProcessed": self.users_processed,
            "usersSkipped": self.users_skipped,
            "overdueNotifications": self.overdue_notifications,
            "reminderNotifications": self.reminder_notifications,
            "milestoneNotifications": self.milestone_notifications,
            "totalNotificationsSent": self.total_notifications_sent,
            "totalSubscriptionsProcessed": self.subscriptions_processed,
            "invalidSubscriptionsRemoved": self.invalid_subscriptions_removed,
            "errors": list(self.errors),
            "successLogs": list(self.success_logs),
            "userDetails": list(self.user_details),
            "summary": self.summary,
        }


class EmailDigestResults:
    """Aggregated results of the digest pass."""

    def __init__(self, start: datetime):
        self.start = start
        self.started = time.monotonic()
        self.total_users = 0
        self.users_processed = 0
        self.users_skipped = 0
        self.daily_digests_sent = 0
        self.weekly_digests_sent = 0
        self.email_errors = 0
        self.errors: list[str] = []
        self.success_logs: list[str] = []
        self.user_details: list[dict] = []
        self.summary: dict = {}

    def record_user(self, user: DigestUserResult) -> None:
        self.user_details.append(user.to_dict())
        self.users_processed += 1
        self.daily_digests_sent += int(user.daily.sent)
        self.weekly_digests_sent += int(user.weekly.sent)

        for digest, status in (("Daily", user.daily), ("Weekly", user.weekly)):
            if status.error is not None:
                self.email_errors += 1
                self.errors.append(f"{digest} digest failed for {user.user_email}: {status.error}")

        if user.digests_sent > 0:
            self.success_logs.append(f"User {user.user_email}: {user.digests_sent} digest(s) sent")

    def record_user_error(self, user: DigestUserResult, error: Exception) -> None:
        user.status = "error"
        user.errors.append(str(error))
        self.user_details.append(user.to_dict())
        self.daily_digests_sent += int(user.daily.sent)
        self.weekly_digests_sent += int(user.weekly.sent)
        self.email_errors += 1
        self.errors.append(f"Email digest check failed for {user.user_email}: {error}")
        logger.error("Digest processing failed for user", user_email=user.user_email, error=str(error))

    def finalize(self) -> None:
        self.summary = {
            "totalUsers": self.total_users,
            "usersProcessed": self.users_processed,
            "digestsSent": {
                "daily": self.daily_digests_sent,
                "weekly": self.weekly_digests_sent,
                "total": self.daily_digests_sent + self.weekly_digests_sent,
            },
            "errors": {
                "count": self.email_errors,
                "rate": _percent(self.email_errors, self.users_processed),
            },
            "successRate": _percent(self.users_processed - self.email_errors, self.users_processed),
            "executionTime": _elapsed_ms(self.started),
            "endTime": datetime.now(self.start.tzinfo).isoformat(),
        }

    def to_dict(self) -> dict:
        return {
            "type": "email_digests",
            "startTime": self.start.isoformat(),
            "usersProcessed": self.users_processed,
            "usersSkipped": self.users_skipped,
            "dailyDigestsSent": self.daily_digests_sent,
            "weeklyDigestsSent": self.weekly_digests_sent,
            "emailErrors": self.email_errors,
            "errors": list(self.errors),
            "successLogs": list(self.success_logs),
            "userDetails": list(self.user_details),
            "summary": self.summary,
        }


class NotificationCheckJob:
    """
    One notification cycle across all users.

    Collaborators are injectable so the routes, the loop and the tests can
    share a single construction path.
    """

    def __init__(
        self,
        repository=None,
        task_scanner: TaskNotificationScanner | None = None,
        digest_dispatcher: DigestDispatcher | None = None,
        delivery: NotificationDelivery | None = None,
    ):
        self.repository = repository or notification_repository
        self.delivery = delivery or NotificationDelivery(repository=self.repository)
        self.task_scanner = task_scanner or TaskNotificationScanner(
            repository=self.repository, delivery=self.delivery
        )
        self.digest_dispatcher = digest_dispatcher or DigestDispatcher(repository=self.repository)

    async def process_push_notifications(self, now: datetime) -> PushNotificationResults:
        results = PushNotificationResults(now)
        try:
            docs = await self.repository.list_notification_preferences()
        except Exception as e:
            raise NotificationJobError(
                f"Failed to load notification preferences: {e}", operation="load_push_preferences"
            ) from e

        results.total_users = len(docs)
        logger.info("Processing push notifications", user_count=len(docs))

        for doc in docs:
            user = PushUserResult(user_email=doc.id)
            try:
                preferences = self.repository.parse_notification_preference(doc)
                await self.task_scanner.scan_user(doc.id, preferences, now, user)
            except Exception as e:
                results.record_user_error(user, e)
                continue
            results.record_user(user)

        results.finalize()
        logger.info("Push notifications processing completed", **results.summary)
        return results

    async def process_email_digests(self, now: datetime) -> EmailDigestResults:
        results = EmailDigestResults(now)
        try:
            docs = await self.repository.list_email_preferences()
        except Exception as e:
            raise NotificationJobError(
                f"Failed to load email preferences: {e}", operation="load_email_preferences"
            ) from e

        results.total_users = len(docs)
        logger.info("Processing email digests", user_count=len(docs))

        for doc in docs:
            user = DigestUserResult(user_email=doc.id)
            try:
                preferences = self.repository.parse_email_preference(doc)
                await self.digest_dispatcher.dispatch_user(doc.id, preferences, now, user)
            except Exception as e:
                results.record_user_error(user, e)
                continue
            results.record_user(user)

        results.finalize()
        logger.info(
            "Email digests processing completed",
            users_processed=results.users_processed,
            daily=results.daily_digests_sent,
            weekly=results.weekly_digests_sent,
            errors=results.email_errors,
        )
        return results

    async def execute_notification_check(self, now: datetime | None = None) -> dict:
        """
        Run both passes once and build the combined cycle report.

        Returns:
            dict: Nested ``pushNotifications`` and ``emailDigests`` sections,
            an ``overall`` summary, flat counters kept for older report
            consumers, and prefixed ``logs``.

        Raises:
            NotificationJobError: If either preferences collection cannot be read
        """
        now = now or datetime.now(settings.tz())
        started = time.monotonic()
        logger.info("Executing notification check", timestamp=now.isoformat())

        # Both passes must finish before a failure in either is raised
        push, email = await asyncio.gather(
            self.process_push_notifications(now),
            self.process_email_digests(now),
            return_exceptions=True,
        )
        for outcome in (push, email):
            if isinstance(outcome, BaseException):
                raise outcome

        execution_time = _elapsed_ms(started)
        errors = push.errors + email.errors

        report = {
            "success": True,
            "timestamp": now.isoformat(),
            "executionTime": execution_time,
            "overall": {
                "totalUsersChecked": push.total_users + email.total_users,
                "totalUsersProcessed": push.users_processed + email.users_processed,
                "totalErrors": len(errors),
                "executionTime": execution_time,
            },
            "pushNotifications": {
                **push.to_dict(),
                "description": "Push notification processing results with detailed user information",
            },
            "emailDigests": {
                **email.to_dict(),
                "description": "Email digest processing results with detailed user information",
            },
            "usersProcessed": push.users_processed + email.users_processed,
            "overdueNotifications": push.overdue_notifications,
            "reminderNotifications": push.reminder_notifications,
            "milestoneNotifications": push.milestone_notifications,
            "totalNotificationsSent": push.total_notifications_sent,
            "dailyDigestsSent": email.daily_digests_sent,
            "weeklyDigestsSent": email.weekly_digests_sent,
            "emailErrors": email.email_errors,
            "errors": errors,
            "logs": {
                "success": push.success_logs + email.success_logs,
                "errors": list(errors),
                "combined": [
                    *(f"[PUSH] {line}" for line in push.success_logs),
                    *(f"[EMAIL] {line}" for line in email.success_logs),
                    *(f"[PUSH ERROR] {line}" for line in push.errors),
                    *(f"[EMAIL ERROR] {line}" for line in email.errors),
                ],
            },
        }

        logger.info("Notification check completed", **report["overall"])
        return report

    async def send_test_notifications(self, now: datetime | None = None) -> dict:
        """Push a test notification to every enabled user with a subscription."""
        now = now or datetime.now(settings.tz())
        now_ms = now_millis(now)
        total_sent = 0
        errors: list[str] = []

        for doc in await self.repository.list_notification_preferences():
            user_email = doc.id
            try:
                preferences = self.repository.parse_notification_preference(doc)
            except Exception as e:
                errors.append(f"User {user_email}: {e}")
                continue
            if not preferences.enabled:
                continue

            subscriptions = await self.repository.list_subscriptions(user_email)
            if not subscriptions:
                continue

            notification_id = build_notification_id(user_email, now_ms, "test")
            record = NotificationRecord(
                id=notification_id,
                user_email=user_email,
                title=TEST_NOTIFICATION_TITLE,
                body=TEST_NOTIFICATION_BODY,
                created_at=now_ms,
                data={"type": NotificationType.TEST, "timestamp": now.isoformat()},
            )
            payload = build_push_payload(
                title=TEST_NOTIFICATION_TITLE,
                body=TEST_NOTIFICATION_BODY,
                tag="test-notification",
                data={
                    "type": NotificationType.TEST,
                    "notificationId": notification_id,
                    "timestamp": now.isoformat(),
                },
            )

            outcome = await self.delivery.deliver(record, payload, subscriptions, now_ms)
            total_sent += outcome.sent
            errors.extend(f"User {user_email} {error}" for error in outcome.errors)

        logger.info("Test notifications sent", total_sent=total_sent, error_count=len(errors))
        return {"totalSent": total_sent, "errors": errors}


# Global instance
notification_check_job = NotificationCheckJob()


async def execute_notification_check(now: datetime | None = None) -> dict:
    """Convenience wrapper around the global job."""
    return await notification_check_job.execute_notification_check(now)
