from typing import Any

from pydantic import Field

from notifier.models.domain.base import DocumentModel
from notifier.models.domain.timestamps import EpochMillis


class NotificationType:
    """Values of NotificationRecord.data.type."""

    OVERDUE_TASK = "overdue-task"
    TASK_REMINDER = "task-reminder"
    MILESTONE_REMINDER = "milestone-reminder"
    TEST = "test"


# Milestone type -> (label, fallback icon)
MILESTONE_TYPES: dict[str, tuple[str, str]] = {
    "birthday": ("Birthday", "🎂"),
    "anniversary": ("Anniversary", "💖"),
    "work_anniversary": ("Work Anniversary", "💼"),
    "graduation": ("Graduation", "🎓"),
    "exam_passed": ("Exam Passed", "📚"),
    "achievement": ("Achievement", "🏆"),
    "milestone": ("Milestone", "🎯"),
    "purchase": ("Purchase", "🛍️"),
    "relationship": ("Relationship", "❤️"),
    "travel": ("Travel", "✈️"),
    "custom": ("Custom", "⭐"),
}
DEFAULT_MILESTONE_TYPE = ("Milestone", "⭐")


class Task(DocumentModel):
    id: str
    title: str | None = None
    user_email: str | None = None
    reminder_at: EpochMillis = None
    completed_at: EpochMillis = None
    notified_at: EpochMillis = None
    last_reminded_at: EpochMillis = None
    only_notify_at_reminder: bool = False

    @property
    def display_title(self) -> str:
        return self.title or "Untitled Task"


class MilestoneNotificationSettings(DocumentModel):
    on_the_day: bool = False
    one_day_before: bool = False
    three_days_before: bool = False
    one_week_before: bool = False
    one_month_before: bool = False


class Milestone(DocumentModel):
    id: str
    title: str = "Untitled Milestone"
    type: str = "milestone"
    icon: str | None = None
    is_active: bool = True
    is_recurring: bool = False
    original_date: EpochMillis = None
    notification_settings: MilestoneNotificationSettings = Field(
        default_factory=MilestoneNotificationSettings
    )
    last_notified_at: EpochMillis = None

    @property
    def type_label(self) -> str:
        return MILESTONE_TYPES.get(self.type, DEFAULT_MILESTONE_TYPE)[0]

    @property
    def display_icon(self) -> str:
        return self.icon or MILESTONE_TYPES.get(self.type, DEFAULT_MILESTONE_TYPE)[1]


class PushSubscription(DocumentModel):
    """One browser endpoint registered by a user; opaque to everything but the transport."""

    id: str
    user_email: str | None = None
    subscription: dict[str, Any] = Field(default_factory=dict)


class NotificationRecord(DocumentModel):
    """Persisted notification; doubles as the dedupe ledger."""

    id: str
    user_email: str
    title: str
    body: str
    type: str = "push"
    related_task_id: str | None = None
    related_milestone_id: str | None = None
    is_read: bool = False
    created_at: EpochMillis = None
    sent_at: EpochMillis = None
    read_at: EpochMillis = None
    data: dict[str, Any] = Field(default_factory=dict)
