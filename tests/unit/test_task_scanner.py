"""
Tests for the per-user task scan: overdue alerts, reminders and skips.
"""

import pytest

from notifier.models.domain.preferences import NotificationPreference
from notifier.models.domain.timestamps import MS_PER_HOUR, MS_PER_MINUTE
from notifier.services.notifications.push_service import PushResult
from notifier.services.notifications.task_scanner import TaskNotificationScanner, minutes_until

EMAIL = "ana@example.com"
NOTIFICATIONS = f"users/{EMAIL}/notifications"


@pytest.fixture
def scanner(repository, delivery):
    return TaskNotificationScanner(repository=repository, delivery=delivery)


def prefs(**overrides) -> NotificationPreference:
    fields = {"enabled": True, "overdueAlerts": True, "taskReminders": True}
    fields.update(overrides)
    return NotificationPreference.model_validate(fields)


def seed_task(store, task_id: str, **fields):
    store.seed("tasks", task_id, {"userEmail": EMAIL, "title": f"Task {task_id}", **fields})


@pytest.mark.asyncio
async def test_overdue_task_end_to_end(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", title="Pay rent", reminderAt=now_ms - MS_PER_HOUR)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.status == "processed"
    assert result.overdue_sent == 1
    assert result.deliveries == 1

    records = list(store.docs(NOTIFICATIONS).values())
    assert len(records) == 1
    record = records[0]
    assert record["relatedTaskId"] == "t1"
    assert record["data"]["type"] == "overdue-task"
    assert record["isRead"] is False
    assert record["sentAt"] == now_ms
    assert record["body"] == '"Pay rent" is overdue!'

    assert store.docs("tasks")["t1"]["notifiedAt"] == now_ms

    _, payload = push_sender.sent[0]
    assert payload["title"] == "Task Overdue"
    assert payload["tag"] == "overdue-task-t1"
    assert payload["data"]["url"] == "/task/t1"
    assert payload["data"]["notificationId"] == record["id"]


@pytest.mark.asyncio
async def test_unread_alert_blocks_a_second_one(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)
    store.seed(
        NOTIFICATIONS,
        "existing",
        {"relatedTaskId": "t1", "isRead": False, "data": {"type": "overdue-task"}},
    )

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.overdue_sent == 0
    assert push_sender.sent == []
    assert len(store.docs(NOTIFICATIONS)) == 1


@pytest.mark.asyncio
async def test_read_alert_allows_a_new_one(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", reminderAt=now_ms - 3 * 24 * MS_PER_HOUR, notifiedAt=now_ms - 25 * MS_PER_HOUR)
    store.seed(
        NOTIFICATIONS,
        "existing",
        {"relatedTaskId": "t1", "isRead": True, "data": {"type": "overdue-task"}},
    )

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.overdue_sent == 1
    assert len(store.docs(NOTIFICATIONS)) == 2


@pytest.mark.asyncio
async def test_cooldown_prevents_repeat_within_a_day(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)

    await scanner.scan_user(EMAIL, prefs(), now)
    for doc in store.docs(NOTIFICATIONS).values():
        doc["isRead"] = True

    later = now.replace(hour=now.hour + 1)
    result = await scanner.scan_user(EMAIL, prefs(), later)

    assert result.overdue_sent == 0
    assert len(push_sender.sent) == 1


@pytest.mark.asyncio
async def test_gone_subscription_is_removed(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL, endpoints=("https://push.example/live", "https://push.example/dead"))
    push_sender.results["https://push.example/dead"] = PushResult(
        success=False, error="Push failed: 410 Gone", status_code=410
    )
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)
    seed_task(store, "t2", reminderAt=now_ms - 2 * MS_PER_HOUR)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.overdue_sent == 2
    assert result.subscriptions_removed == 1
    assert list(store.docs("pushSubscriptions")) == [f"{EMAIL}-sub-0"]
    # The dead endpoint is tried once, then skipped for the second alert
    assert len(push_sender.sent) == 3


@pytest.mark.asyncio
async def test_all_deliveries_failing_still_stamps(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL)
    push_sender.results["https://push.example/1"] = PushResult(success=False, error="timeout")
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.overdue_sent == 1
    assert result.deliveries == 0
    assert store.docs("tasks")["t1"]["notifiedAt"] == now_ms
    record = next(iter(store.docs(NOTIFICATIONS).values()))
    assert "sentAt" not in record
    assert len(store.docs("pushSubscriptions")) == 1


@pytest.mark.asyncio
async def test_reminder_for_upcoming_task(scanner, store, seed_user, push_sender, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", title="Call mom", reminderAt=now_ms + 45 * MS_PER_MINUTE)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.reminders_sent == 1
    assert result.overdue_sent == 0
    _, payload = push_sender.sent[0]
    assert payload["title"] == "Task Reminder"
    assert payload["body"] == '"Call mom" is due in 45 minutes'
    assert store.docs("tasks")["t1"]["lastRemindedAt"] == now_ms


@pytest.mark.asyncio
async def test_reminder_window_and_flags(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "far", reminderAt=now_ms + 3 * MS_PER_HOUR)
    seed_task(store, "quiet", reminderAt=now_ms + 10 * MS_PER_MINUTE, onlyNotifyAtReminder=True)
    seed_task(
        store,
        "recent",
        reminderAt=now_ms + 10 * MS_PER_MINUTE,
        lastRemindedAt=now_ms - 10 * MS_PER_MINUTE,
    )
    seed_task(store, "done", reminderAt=now_ms + 10 * MS_PER_MINUTE, completedAt=now_ms)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.reminders_sent == 0
    assert store.docs(NOTIFICATIONS) == {}


@pytest.mark.asyncio
async def test_completed_or_unscheduled_tasks_never_overdue(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "done", reminderAt=now_ms - MS_PER_HOUR, completedAt=now_ms - 1)
    seed_task(store, "someday")

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.tasks_total == 2
    assert result.overdue_sent == 0


@pytest.mark.asyncio
async def test_disabled_categories_are_not_scanned(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "late", reminderAt=now_ms - MS_PER_HOUR)
    seed_task(store, "soon", reminderAt=now_ms + 20 * MS_PER_MINUTE)

    result = await scanner.scan_user(EMAIL, prefs(overdueAlerts=False, taskReminders=False), now)

    assert result.status == "processed"
    assert result.notifications_total == 0


@pytest.mark.asyncio
async def test_skip_reasons(scanner, store, seed_user, now):
    disabled = await scanner.scan_user(EMAIL, prefs(enabled=False), now)
    assert disabled.status == "skipped_disabled"

    quiet = await scanner.scan_user(
        EMAIL, prefs(quietHours={"enabled": True, "start": "11:00", "end": "13:00"}), now
    )
    assert quiet.status == "skipped_quiet_hours"

    no_subs = await scanner.scan_user(EMAIL, prefs(), now)
    assert no_subs.status == "skipped_no_subscriptions"
    assert no_subs.skipped is True


@pytest.mark.asyncio
async def test_dedupe_failure_sends_anyway(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)
    store.fail_queries_on.add(NOTIFICATIONS)

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.overdue_sent == 1


@pytest.mark.asyncio
async def test_milestone_failure_is_recorded_not_raised(scanner, store, seed_user, now, now_ms):
    seed_user(EMAIL)
    seed_task(store, "t1", reminderAt=now_ms - MS_PER_HOUR)
    store.fail_queries_on.add(f"users/{EMAIL}/milestones")

    result = await scanner.scan_user(EMAIL, prefs(), now)

    assert result.status == "processed"
    assert result.overdue_sent == 1
    assert result.errors[0].startswith("Milestone processing error:")


def test_minutes_until_rounds_half_up():
    assert minutes_until(30 * MS_PER_MINUTE + 30_000, 0) == 31
    assert minutes_until(30 * MS_PER_MINUTE + 29_999, 0) == 30
