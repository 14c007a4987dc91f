"""Per-user digest email dispatch."""

from datetime import datetime

from notifier.infrastructure.observability.logging import get_logger
from notifier.models.domain.preferences import EmailPreference
from notifier.models.domain.report_domain import DigestDecision, DigestStatus, DigestUserResult
from notifier.models.domain.timestamps import now_millis
from notifier.repositories.notification_repository import notification_repository
from notifier.services.notifications.digest_schedule import (
    should_send_daily_digest,
    should_send_weekly_digest,
)
from notifier.services.notifications.email_service import email_client
from notifier.services.notifications.quiet_hours import is_in_quiet_hours

logger = get_logger(__name__)


def email_preference_snapshot(preferences: EmailPreference) -> dict:
    return {
        "dailyDigest": preferences.daily_digest,
        "weeklyDigest": preferences.weekly_digest,
        "dailyDigestTime": preferences.daily_digest_time,
        "digestDay": preferences.digest_day,
        "quietHours": preferences.quiet_hours.to_document() if preferences.quiet_hours else None,
        "lastDailySent": preferences.last_daily_sent,
        "lastWeeklySent": preferences.last_weekly_sent,
    }


class DigestDispatcher:
    def __init__(self, repository=None, client=None):
        self.repository = repository or notification_repository
        self.client = client or email_client

    async def dispatch_user(
        self,
        user_email: str,
        preferences: EmailPreference,
        now: datetime,
        result: DigestUserResult | None = None,
    ) -> DigestUserResult:
        """
        Send whichever digests are due for one user.

        Quiet hours come from the email preference and are checked for each
        due digest. The sent marker is written only after the email service
        confirms the send; a failed marker write is logged and the digest still
        counts as sent.
        """
        if result is None:
            result = DigestUserResult(user_email=user_email)
        result.preferences = email_preference_snapshot(preferences)
        result.logs.append("Started email digest check")
        now_ms = now_millis(now)

        daily = should_send_daily_digest(preferences, now)
        result.logs.append(f"Daily digest check: {daily.reason}")
        result.daily = await self._dispatch(
            user_email,
            "daily",
            daily,
            preferences,
            now,
            now_ms,
            result,
        )

        weekly = should_send_weekly_digest(preferences, now)
        result.logs.append(f"Weekly digest check: {weekly.reason}")
        result.weekly = await self._dispatch(
            user_email,
            "weekly",
            weekly,
            preferences,
            now,
            now_ms,
            result,
        )

        result.status = "digests_sent" if result.digests_sent > 0 else "no_digests_due"
        result.logs.append(f"Completed processing: {result.digests_sent} digests sent")
        return result

    async def _dispatch(
        self,
        user_email: str,
        digest: str,
        decision: DigestDecision,
        preferences: EmailPreference,
        now: datetime,
        now_ms: int,
        result: DigestUserResult,
    ) -> DigestStatus:
        status = DigestStatus(should_send=decision.should_send)
        if not decision.should_send:
            return status

        if is_in_quiet_hours(preferences.quiet_hours, now):
            result.logs.append(f"{digest.capitalize()} digest skipped - in quiet hours")
            logger.info("Skipping digest in quiet hours", digest=digest, user_email=user_email)
            return status

        if digest == "daily":
            outcome = await self.client.send_daily_digest(user_email)
        else:
            outcome = await self.client.send_weekly_digest(user_email)

        if not outcome.success:
            status.error = outcome.error or "Unknown error"
            result.errors.append(f"{digest.capitalize()} digest failed: {status.error}")
            return status

        status.sent = True
        try:
            if digest == "daily":
                await self.repository.mark_daily_digest_sent(user_email, now_ms)
            else:
                await self.repository.mark_weekly_digest_sent(user_email, now_ms)
        except Exception as e:
            logger.error(
                "Failed to record digest send", digest=digest, user_email=user_email, error=str(e)
            )

        result.logs.append(f"{digest.capitalize()} digest sent successfully and timestamp updated")
        logger.info("Digest sent", digest=digest, user_email=user_email)
        return status
