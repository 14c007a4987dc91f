"""
Tests for the notification cycle orchestrator.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from notifier.jobs.notification_job import NotificationCheckJob, NotificationJobError
from notifier.models.domain.timestamps import MS_PER_HOUR, now_millis
from notifier.services.notifications.digest_dispatcher import DigestDispatcher
from notifier.services.notifications.push_service import PushResult
from notifier.services.notifications.task_scanner import TaskNotificationScanner

# Monday 10:00
NOW = datetime(2024, 3, 4, 10, 0, tzinfo=UTC)
NOW_MS = now_millis(NOW)


@pytest.fixture
def job(repository, delivery, email_client):
    return NotificationCheckJob(
        repository=repository,
        task_scanner=TaskNotificationScanner(repository=repository, delivery=delivery),
        digest_dispatcher=DigestDispatcher(repository=repository, client=email_client),
        delivery=delivery,
    )


@pytest.mark.asyncio
async def test_cycle_report_combines_both_passes(job, store, seed_user):
    seed_user("ana@example.com")
    store.seed(
        "tasks", "t1", {"userEmail": "ana@example.com", "title": "Rent", "reminderAt": NOW_MS - MS_PER_HOUR}
    )
    seed_user("bo@example.com", enabled=False)
    store.seed("emailPreferences", "cy@example.com", {"dailyDigest": True})

    report = await job.execute_notification_check(NOW)

    assert report["success"] is True
    assert report["timestamp"] == NOW.isoformat()
    assert report["overdueNotifications"] == 1
    assert report["totalNotificationsSent"] == 1
    assert report["dailyDigestsSent"] == 1
    assert report["weeklyDigestsSent"] == 0
    assert report["usersProcessed"] == 2
    assert report["errors"] == []

    push = report["pushNotifications"]
    assert push["usersProcessed"] == 1
    assert push["usersSkipped"] == 1
    assert push["summary"]["successRate"] == "50.00%"
    assert len(push["userDetails"]) == 2
    assert push["description"].startswith("Push notification")

    email = report["emailDigests"]
    assert email["usersProcessed"] == 1
    assert email["userDetails"][0]["digests"]["daily"]["sent"] is True

    assert report["overall"]["totalUsersChecked"] == 3
    assert report["logs"]["combined"] == [
        "[PUSH] User ana@example.com: 1 notifications sent",
        "[EMAIL] User cy@example.com: 1 digest(s) sent",
    ]


@pytest.mark.asyncio
async def test_user_failure_does_not_stop_others(job, store, seed_user):
    store.seed("notificationPreferences", "bad@example.com", {"enabled": "sometimes"})
    seed_user("ana@example.com")
    store.seed(
        "tasks", "t1", {"userEmail": "ana@example.com", "reminderAt": NOW_MS - MS_PER_HOUR}
    )

    report = await job.execute_notification_check(NOW)

    assert report["overdueNotifications"] == 1
    assert len(report["errors"]) == 1
    assert report["errors"][0].startswith("User bad@example.com:")
    assert report["logs"]["combined"][-1].startswith("[PUSH ERROR] User bad@example.com:")
    details = {d["userEmail"]: d for d in report["pushNotifications"]["userDetails"]}
    assert details["bad@example.com"]["status"] == "error"


@pytest.mark.asyncio
async def test_user_failure_keeps_alerts_already_delivered(
    job, repository, store, seed_user, push_sender, monkeypatch
):
    seed_user("ana@example.com")
    store.seed("tasks", "late", {"userEmail": "ana@example.com", "reminderAt": NOW_MS - MS_PER_HOUR})
    store.seed("tasks", "soon", {"userEmail": "ana@example.com", "reminderAt": NOW_MS + 30 * 60 * 1000})
    monkeypatch.setattr(
        repository, "mark_task_reminded", AsyncMock(side_effect=RuntimeError("write rejected"))
    )

    report = await job.execute_notification_check(NOW)

    assert len(push_sender.sent) == 2
    assert report["overdueNotifications"] == 1
    assert report["reminderNotifications"] == 1
    assert report["totalNotificationsSent"] == 2
    assert report["errors"] == ["User ana@example.com: write rejected"]
    detail = report["pushNotifications"]["userDetails"][0]
    assert detail["status"] == "error"
    assert detail["notifications"]["delivered"] == 2
    assert report["pushNotifications"]["totalSubscriptionsProcessed"] == 1


@pytest.mark.asyncio
async def test_digest_exception_is_isolated(repository, delivery, store):
    dispatcher = DigestDispatcher(repository=repository)
    dispatcher.dispatch_user = AsyncMock(side_effect=RuntimeError("email service exploded"))
    job = NotificationCheckJob(repository=repository, digest_dispatcher=dispatcher, delivery=delivery)
    store.seed("emailPreferences", "ana@example.com", {"dailyDigest": True})
    store.seed("emailPreferences", "bo@example.com", {"dailyDigest": True})

    report = await job.execute_notification_check(NOW)

    assert report["emailErrors"] == 2
    assert dispatcher.dispatch_user.await_count == 2
    assert report["errors"][0] == "Email digest check failed for ana@example.com: email service exploded"


@pytest.mark.asyncio
async def test_unreadable_preferences_fail_the_cycle(job, store):
    store.fail_queries_on.add("notificationPreferences")

    with pytest.raises(NotificationJobError):
        await job.execute_notification_check(NOW)


@pytest.mark.asyncio
async def test_failed_pass_waits_for_the_other_pass(job, store, email_client):
    store.fail_queries_on.add("notificationPreferences")
    store.seed("emailPreferences", "cy@example.com", {"dailyDigest": True})
    send_daily = email_client.send_daily_digest

    async def slow_send(user_email):
        await asyncio.sleep(0.01)
        return await send_daily(user_email)

    email_client.send_daily_digest = slow_send

    with pytest.raises(NotificationJobError):
        await job.execute_notification_check(NOW)

    assert email_client.daily == ["cy@example.com"]
    assert store.docs("emailPreferences")["cy@example.com"]["lastDailySent"] == NOW_MS


@pytest.mark.asyncio
async def test_execution_time_is_wall_duration_not_age_of_now(job):
    report = await job.execute_notification_check(NOW)

    assert 0 <= report["executionTime"] < 60_000
    assert 0 <= report["pushNotifications"]["summary"]["executionTime"] < 60_000
    assert 0 <= report["emailDigests"]["summary"]["executionTime"] < 60_000


@pytest.mark.asyncio
async def test_test_notifications_reach_enabled_users(job, store, seed_user, push_sender):
    seed_user("ana@example.com", endpoints=("https://push.example/a", "https://push.example/gone"))
    seed_user("bo@example.com", enabled=False, endpoints=("https://push.example/b",))
    push_sender.results["https://push.example/gone"] = PushResult(
        success=False, error="410 Gone", status_code=410
    )

    result = await job.send_test_notifications(NOW)

    assert result["totalSent"] == 1
    assert len(result["errors"]) == 1
    assert [sub for sub, _ in push_sender.sent] == [
        {"endpoint": "https://push.example/a", "keys": {}},
        {"endpoint": "https://push.example/gone", "keys": {}},
    ]
    assert "ana@example.com-sub-1" not in store.docs("pushSubscriptions")
    record = next(iter(store.docs("users/ana@example.com/notifications").values()))
    assert record["data"]["type"] == "test"
    assert record["sentAt"] == NOW_MS
