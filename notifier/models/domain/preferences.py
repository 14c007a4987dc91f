from notifier.models.domain.base import DocumentModel
from notifier.models.domain.timestamps import EpochMillis

DEFAULT_DAILY_DIGEST_TIME = "09:00"
DEFAULT_DIGEST_DAY = "monday"


class QuietHoursConfig(DocumentModel):
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"


class NotificationPreference(DocumentModel):
    """Push notification settings, keyed by user email."""

    enabled: bool = False
    overdue_alerts: bool = False
    task_reminders: bool = False
    quiet_hours: QuietHoursConfig | None = None


class EmailPreference(DocumentModel):
    """Digest email settings, keyed by user email."""

    daily_digest: bool = False
    weekly_digest: bool = False
    daily_digest_time: str = DEFAULT_DAILY_DIGEST_TIME
    digest_day: str = DEFAULT_DIGEST_DAY
    quiet_hours: QuietHoursConfig | None = None

    # Written only after a confirmed send
    last_daily_sent: EpochMillis = None
    last_weekly_sent: EpochMillis = None
