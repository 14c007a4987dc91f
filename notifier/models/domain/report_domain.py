"""
Per-user result records produced by the scanners and the digest dispatcher.

Attributes are snake_case; to_dict() renders the camelCase shape that report
consumers read.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DigestDecision:
    should_send: bool
    reason: str


@dataclass
class DeliveryOutcome:
    """Result of pushing one notification to every subscription of a user."""

    sent: int = 0
    failed: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class PushUserResult:
    user_email: str
    preferences: dict[str, Any] = field(default_factory=dict)
    status: str = ""

    overdue_sent: int = 0
    reminders_sent: int = 0
    milestones_sent: int = 0
    deliveries: int = 0

    subscriptions_total: int = 0
    subscriptions_removed: int = 0

    tasks_total: int = 0
    tasks_overdue: int = 0
    tasks_reminders: int = 0

    errors: list[str] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)

    @property
    def notifications_total(self) -> int:
        return self.overdue_sent + self.reminders_sent + self.milestones_sent

    @property
    def skipped(self) -> bool:
        return self.status.startswith("skipped")

    def record_delivery(self, outcome: DeliveryOutcome) -> None:
        self.deliveries += outcome.sent
        self.subscriptions_removed += outcome.removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "userEmail": self.user_email,
            "preferences": self.preferences,
            "status": self.status,
            "notifications": {
                "overdue": self.overdue_sent,
                "reminders": self.reminders_sent,
                "milestones": self.milestones_sent,
                "total": self.notifications_total,
                "delivered": self.deliveries,
            },
            "subscriptions": {
                "total": self.subscriptions_total,
                "active": self.subscriptions_total - self.subscriptions_removed,
                "removed": self.subscriptions_removed,
            },
            "tasks": {
                "total": self.tasks_total,
                "overdue": self.tasks_overdue,
                "reminders": self.tasks_reminders,
            },
            "errors": list(self.errors),
            "logs": list(self.logs),
        }


@dataclass
class DigestStatus:
    should_send: bool = False
    sent: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"shouldSend": self.should_send, "sent": self.sent, "error": self.error}


@dataclass
class DigestUserResult:
    user_email: str
    preferences: dict[str, Any] = field(default_factory=dict)
    status: str = ""
    daily: DigestStatus = field(default_factory=DigestStatus)
    weekly: DigestStatus = field(default_factory=DigestStatus)
    errors: list[str] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)

    @property
    def digests_sent(self) -> int:
        return int(self.daily.sent) + int(self.weekly.sent)

    @property
    def failed_sends(self) -> int:
        return int(self.daily.error is not None) + int(self.weekly.error is not None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userEmail": self.user_email,
            "preferences": self.preferences,
            "status": self.status,
            "digests": {"daily": self.daily.to_dict(), "weekly": self.weekly.to_dict()},
            "errors": list(self.errors),
            "logs": list(self.logs),
        }
