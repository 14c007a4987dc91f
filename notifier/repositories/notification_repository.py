# notifier/repositories/notification_repository.py
"""
Typed access to every document the notification job reads or writes.

Documents are validated into domain models here, so timestamps are already
normalised to epoch milliseconds when the scanners see them.
"""

from pydantic import ValidationError

from notifier.db.documents import Document, document_store
from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.preferences import EmailPreference, NotificationPreference
from notifier.models.domain.task_domain import (
    Milestone,
    NotificationRecord,
    PushSubscription,
    Task,
)

logger = get_logger(__name__)

NOTIFICATION_PREFERENCES = "notificationPreferences"
EMAIL_PREFERENCES = "emailPreferences"
PUSH_SUBSCRIPTIONS = "pushSubscriptions"
TASKS = "tasks"


def notifications_path(user_email: str) -> str:
    return f"users/{user_email}/notifications"


def milestones_path(user_email: str) -> str:
    return f"users/{user_email}/milestones"


def _with_id(doc: Document) -> dict:
    return {**doc.data, "id": doc.id}


class NotificationRepository:
    def __init__(self, store=None):
        self.store = store or document_store

    # ---- preferences -------------------------------------------------

    # Preference documents are returned raw and parsed per user, so one
    # malformed document fails only that user's processing.

    async def list_notification_preferences(self) -> list[Document]:
        return await self.store.collection(NOTIFICATION_PREFERENCES).get()

    async def list_email_preferences(self) -> list[Document]:
        return await self.store.collection(EMAIL_PREFERENCES).get()

    @staticmethod
    def parse_notification_preference(doc: Document) -> NotificationPreference:
        return NotificationPreference.model_validate(doc.data)

    @staticmethod
    def parse_email_preference(doc: Document) -> EmailPreference:
        return EmailPreference.model_validate(doc.data)

    async def mark_daily_digest_sent(self, user_email: str, sent_at_ms: int) -> None:
        await self.store.update(EMAIL_PREFERENCES, user_email, {"lastDailySent": sent_at_ms})

    async def mark_weekly_digest_sent(self, user_email: str, sent_at_ms: int) -> None:
        await self.store.update(EMAIL_PREFERENCES, user_email, {"lastWeeklySent": sent_at_ms})

    # ---- subscriptions -----------------------------------------------

    async def list_subscriptions(self, user_email: str) -> list[PushSubscription]:
        docs = await self.store.collection(PUSH_SUBSCRIPTIONS).where(
            "userEmail", "==", user_email
        ).get()
        return [PushSubscription.model_validate(_with_id(doc)) for doc in docs]

    async def delete_subscription(self, subscription_id: str) -> bool:
        return await self.store.delete(PUSH_SUBSCRIPTIONS, subscription_id)

    # ---- tasks ---------------------------------------------------------

    async def list_tasks(self, user_email: str) -> list[Task]:
        docs = await self.store.collection(TASKS).where("userEmail", "==", user_email).get()
        tasks = []
        for doc in docs:
            try:
                tasks.append(Task.model_validate(_with_id(doc)))
            except ValidationError as e:
                logger.warning("Skipping unreadable task", task_id=doc.id, error=str(e))
        return tasks

    async def mark_task_notified(self, task_id: str, notified_at_ms: int) -> None:
        await self.store.update(TASKS, task_id, {"notifiedAt": notified_at_ms})

    async def mark_task_reminded(self, task_id: str, reminded_at_ms: int) -> None:
        await self.store.update(TASKS, task_id, {"lastRemindedAt": reminded_at_ms})

    # ---- milestones ----------------------------------------------------

    async def list_active_milestones(self, user_email: str) -> list[Milestone]:
        docs = await self.store.collection(milestones_path(user_email)).where(
            "isActive", "==", True
        ).get()
        milestones = []
        for doc in docs:
            try:
                milestones.append(Milestone.model_validate(_with_id(doc)))
            except ValidationError as e:
                logger.warning("Skipping unreadable milestone", milestone_id=doc.id, error=str(e))
        return milestones

    async def mark_milestone_notified(
        self, user_email: str, milestone_id: str, notified_at_ms: int
    ) -> None:
        await self.store.update(
            milestones_path(user_email), milestone_id, {"lastNotifiedAt": notified_at_ms}
        )

    # ---- notification ledger ------------------------------------------

    async def has_unread_task_notification(
        self, user_email: str, task_id: str, notification_type: str
    ) -> bool:
        docs = await (
            self.store.collection(notifications_path(user_email))
            .where("relatedTaskId", "==", task_id)
            .where("data.type", "==", notification_type)
            .where("isRead", "==", False)
            .limit(1)
            .get()
        )
        return len(docs) > 0

    async def has_milestone_notification_since(
        self, user_email: str, milestone_id: str, notification_type: str, since_ms: int
    ) -> bool:
        docs = await (
            self.store.collection(notifications_path(user_email))
            .where("relatedMilestoneId", "==", milestone_id)
            .where("data.type", "==", "milestone-reminder")
            .where("data.notificationType", "==", notification_type)
            .where("createdAt", ">=", since_ms)
            .limit(1)
            .get()
        )
        return len(docs) > 0

    async def create_notification(self, record: NotificationRecord) -> None:
        await self.store.set(notifications_path(record.user_email), record.id, record.to_document())

    async def mark_notification_sent(
        self, user_email: str, notification_id: str, sent_at_ms: int
    ) -> None:
        await self.store.update(notifications_path(user_email), notification_id, {"sentAt": sent_at_ms})

    async def dismiss_notification(self, user_email: str, notification_id: str, read_at_ms: int) -> int:
        path = notifications_path(user_email)
        if await self.store.get(path, notification_id) is None:
            return 0
        await self.store.update(path, notification_id, {"isRead": True, "readAt": read_at_ms})
        return 1

    async def dismiss_task_notifications(self, user_email: str, task_id: str, read_at_ms: int) -> int:
        path = notifications_path(user_email)
        docs = await (
            self.store.collection(path)
            .where("relatedTaskId", "==", task_id)
            .where("isRead", "==", False)
            .get()
        )
        for doc in docs:
            await self.store.update(path, doc.id, {"isRead": True, "readAt": read_at_ms})
        return len(docs)


# Global instance
notification_repository = NotificationRepository()
