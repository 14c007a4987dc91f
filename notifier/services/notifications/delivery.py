"""Persist-then-push delivery shared by every push notification kind."""

import uuid
from typing import Any

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.report_domain import DeliveryOutcome
from notifier.models.domain.task_domain import NotificationRecord, PushSubscription
from notifier.repositories.notification_repository import notification_repository
from notifier.services.notifications.push_service import push_sender

logger = get_logger(__name__)


def build_notification_id(user_email: str, now_ms: int, kind: str) -> str:
    safe_email = user_email.replace("@", "_").replace(".", "_")
    return f"notif_{safe_email}_{now_ms}_{kind}_{uuid.uuid4().hex[:8]}"


def build_push_payload(*, title: str, body: str, tag: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": title,
        "body": body,
        "icon": settings.PUSH_ICON_URL,
        "badge": settings.PUSH_ICON_URL,
        "tag": tag,
        "data": data,
    }


class NotificationDelivery:
    def __init__(self, repository=None, sender=None):
        self.repository = repository or notification_repository
        self.sender = sender or push_sender

    async def deliver(
        self,
        record: NotificationRecord,
        payload: dict[str, Any],
        subscriptions: list[PushSubscription],
        now_ms: int,
    ) -> DeliveryOutcome:
        """
        Save the record, push it to every subscription, and prune dead endpoints.

        The record is written before any push so it exists even when every
        delivery fails. Subscriptions reported gone (404/410) are deleted from
        the store and removed from ``subscriptions`` in place, so later
        notifications in the same scan skip them. ``sentAt`` is stamped only
        when at least one device accepted the push.
        """
        await self.repository.create_notification(record)
        logger.debug(
            "Saved notification", user_email=record.user_email, notification_id=record.id
        )

        outcome = DeliveryOutcome()
        for subscription in list(subscriptions):
            result = await self.sender.send(subscription.subscription, payload)
            if result.success:
                outcome.sent += 1
                continue

            outcome.failed += 1
            outcome.errors.append(f"Subscription {subscription.id}: {result.error}")

            if result.subscription_gone:
                await self.repository.delete_subscription(subscription.id)
                subscriptions.remove(subscription)
                outcome.removed += 1
                logger.info(
                    "Removed invalid push subscription",
                    user_email=record.user_email,
                    subscription_id=subscription.id,
                    status_code=result.status_code,
                )

        if outcome.sent > 0:
            await self.repository.mark_notification_sent(record.user_email, record.id, now_ms)

        logger.info(
            "Notification delivered",
            user_email=record.user_email,
            notification_id=record.id,
            kind=record.data.get("type"),
            sent=outcome.sent,
            failed=outcome.failed,
            removed=outcome.removed,
        )
        return outcome
