"""
Tests for the continuous notification loop.
"""

import asyncio

import pytest

from notifier.jobs.notification_loop import NotificationLoop
from notifier.services.loop_lease import LEASE_KEY, LeaseError, LoopLease


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def cycle_report(**counts) -> dict:
    report = {
        "usersProcessed": 1,
        "overdueNotifications": 0,
        "reminderNotifications": 0,
        "totalNotificationsSent": 0,
        "dailyDigestsSent": 0,
        "weeklyDigestsSent": 0,
        "emailErrors": 0,
        "errors": [],
    }
    report.update(counts)
    return report


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lease(fake_redis):
    return LoopLease(redis_client=fake_redis, ttl_seconds=60)


def make_loop(run_cycle, lease, clock, **overrides) -> NotificationLoop:
    options = {
        "max_run_seconds": 100,
        "cycle_delay_seconds": 30,
        "error_delay_seconds": 5,
        "min_remaining_seconds": 60,
    }
    options.update(overrides)
    return NotificationLoop(
        run_cycle=run_cycle,
        lease=lease,
        sleep=clock.sleep,
        monotonic=clock.monotonic,
        **options,
    )


@pytest.mark.asyncio
async def test_second_invocation_is_a_no_op(lease, clock):
    calls = []

    async def run_cycle():
        calls.append(1)
        return cycle_report()

    assert await lease.acquire("someone-else") is True

    result = await make_loop(run_cycle, lease, clock).start()

    assert result == {"success": True, "message": "Loop already running"}
    assert calls == []
    assert await lease.is_held_by("someone-else") is True


@pytest.mark.asyncio
async def test_runs_until_time_budget_and_accumulates(lease, clock, fake_redis):
    async def run_cycle():
        return cycle_report(overdueNotifications=2, totalNotificationsSent=3, errors=["boom"])

    result = await make_loop(run_cycle, lease, clock).start()

    assert result["message"] == "Notification loop completed"
    totals = result["results"]
    # t=0 and t=30 sleep afterwards, t=60 leaves under a minute
    assert totals["cycles"] == 3
    assert totals["totalUsersProcessed"] == 3
    assert totals["totalOverdueNotifications"] == 6
    assert totals["totalNotificationsSent"] == 9
    assert totals["allErrors"] == ["boom", "boom", "boom"]
    assert totals["endTime"] != ""
    assert clock.sleeps == [30, 30]
    assert LEASE_KEY not in fake_redis.store
    assert (await lease.status())["isLoopRunning"] is False


@pytest.mark.asyncio
async def test_external_stop_ends_after_current_cycle(lease, clock):
    cycles = []

    async def run_cycle():
        cycles.append(1)
        if len(cycles) == 2:
            await lease.force_release()
        return cycle_report()

    result = await make_loop(run_cycle, lease, clock, max_run_seconds=10_000).start()

    assert result["results"]["cycles"] == 2
    assert len(cycles) == 2


@pytest.mark.asyncio
async def test_expired_lease_stops_the_loop(lease, clock, fake_redis):
    async def run_cycle():
        fake_redis.expire(LEASE_KEY)
        return cycle_report()

    result = await make_loop(run_cycle, lease, clock, max_run_seconds=10_000).start()

    assert result["results"]["cycles"] == 1


@pytest.mark.asyncio
async def test_cycle_error_is_recorded_and_delayed(lease, clock):
    attempts = []

    async def run_cycle():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("store unavailable")
        return cycle_report()

    result = await make_loop(run_cycle, lease, clock).start()

    totals = result["results"]
    assert totals["allErrors"][0] == "Cycle 1 error: store unavailable"
    assert clock.sleeps[0] == 5
    assert totals["cycles"] >= 1


@pytest.mark.asyncio
async def test_lease_is_released_when_the_store_fails(clock, fake_redis):
    class FlakyLease(LoopLease):
        async def renew(self, owner):
            raise LeaseError("redis down", operation="renew")

    lease = FlakyLease(redis_client=fake_redis, ttl_seconds=60)

    async def run_cycle():
        return cycle_report()

    with pytest.raises(LeaseError):
        await make_loop(run_cycle, lease, clock).start()

    assert LEASE_KEY not in fake_redis.store


@pytest.mark.asyncio
async def test_lease_outlives_a_cycle_longer_than_its_ttl(clock, fake_redis):
    fake_redis.clock = clock.monotonic
    lease = LoopLease(redis_client=fake_redis, ttl_seconds=600)
    contenders = []

    async def run_cycle():
        # Eleven minutes of per-user work
        for _ in range(11):
            clock.now += 60
            await asyncio.sleep(0)
        contenders.append(await lease.acquire("second-worker"))
        return cycle_report()

    result = await make_loop(run_cycle, lease, clock, heartbeat_seconds=0).start()

    assert contenders == [False]
    assert result["results"]["cycles"] == 1
    assert LEASE_KEY not in fake_redis.store


@pytest.mark.asyncio
async def test_heartbeat_failure_does_not_abort_the_cycle(clock, fake_redis):
    renewals = []

    class FlakyHeartbeatLease(LoopLease):
        async def renew(self, owner):
            renewals.append(owner)
            if len(renewals) > 1:
                raise LeaseError("redis blip", operation="renew")
            return await super().renew(owner)

    lease = FlakyHeartbeatLease(redis_client=fake_redis, ttl_seconds=60)

    async def run_cycle():
        for _ in range(3):
            await asyncio.sleep(0)
        return cycle_report(overdueNotifications=1)

    loop = make_loop(run_cycle, lease, clock, heartbeat_seconds=0, max_run_seconds=50)
    result = await loop.start()

    assert result["results"]["cycles"] == 1
    assert result["results"]["totalOverdueNotifications"] == 1
    assert len(renewals) > 1
