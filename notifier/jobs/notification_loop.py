"""
Continuous notification loop.

Runs notification cycles back to back for a bounded wall-clock budget while
holding the loop lease. The lease is renewed before every cycle and by a
heartbeat while a cycle runs, so a slow cycle never outlives its TTL. Losing
the lease (an emergency stop or an expired TTL) ends the loop after the
current cycle.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger
from notifier.jobs.notification_job import execute_notification_check
from notifier.services.loop_lease import LoopLease, loop_lease, new_owner_token

logger = get_logger(__name__)

CycleRunner = Callable[[], Awaitable[dict]]


class LoopTotals:
    """Counters accumulated across the cycles of one loop run."""

    def __init__(self):
        self.cycles = 0
        self.users_processed = 0
        self.overdue_notifications = 0
        self.reminder_notifications = 0
        self.notifications_sent = 0
        self.daily_digests_sent = 0
        self.weekly_digests_sent = 0
        self.email_errors = 0
        self.errors: list[str] = []
        self.start_time = datetime.now(UTC)
        self.end_time: datetime | None = None

    def add_cycle(self, report: dict) -> None:
        self.cycles += 1
        self.users_processed += report.get("usersProcessed", 0)
        self.overdue_notifications += report.get("overdueNotifications", 0)
        self.reminder_notifications += report.get("reminderNotifications", 0)
        self.notifications_sent += report.get("totalNotificationsSent", 0)
        self.daily_digests_sent += report.get("dailyDigestsSent", 0)
        self.weekly_digests_sent += report.get("weeklyDigestsSent", 0)
        self.email_errors += report.get("emailErrors", 0)
        self.errors.extend(report.get("errors", []))

    def to_dict(self) -> dict:
        return {
            "cycles": self.cycles,
            "totalUsersProcessed": self.users_processed,
            "totalOverdueNotifications": self.overdue_notifications,
            "totalReminderNotifications": self.reminder_notifications,
            "totalNotificationsSent": self.notifications_sent,
            "totalDailyDigestsSent": self.daily_digests_sent,
            "totalWeeklyDigestsSent": self.weekly_digests_sent,
            "totalEmailErrors": self.email_errors,
            "allErrors": list(self.errors),
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else "",
        }


class NotificationLoop:
    def __init__(
        self,
        run_cycle: CycleRunner | None = None,
        lease: LoopLease | None = None,
        max_run_seconds: float | None = None,
        cycle_delay_seconds: float | None = None,
        error_delay_seconds: float | None = None,
        min_remaining_seconds: float | None = None,
        heartbeat_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        heartbeat_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.run_cycle = run_cycle or execute_notification_check
        self.lease = lease or loop_lease
        self.max_run_seconds = (
            max_run_seconds if max_run_seconds is not None else settings.LOOP_MAX_RUN_SECONDS
        )
        self.cycle_delay_seconds = (
            cycle_delay_seconds
            if cycle_delay_seconds is not None
            else settings.LOOP_CYCLE_DELAY_SECONDS
        )
        self.error_delay_seconds = (
            error_delay_seconds
            if error_delay_seconds is not None
            else settings.LOOP_ERROR_DELAY_SECONDS
        )
        self.min_remaining_seconds = (
            min_remaining_seconds
            if min_remaining_seconds is not None
            else settings.LOOP_MIN_REMAINING_SECONDS
        )
        self.heartbeat_seconds = heartbeat_seconds
        self._sleep = sleep
        self._monotonic = monotonic
        self._heartbeat_sleep = heartbeat_sleep

    async def _heartbeat(self, owner: str) -> None:
        """Keep renewing the lease until cancelled or the lease is lost."""
        interval = (
            self.heartbeat_seconds
            if self.heartbeat_seconds is not None
            else self.lease.ttl_seconds / 3
        )
        while True:
            await self._heartbeat_sleep(interval)
            try:
                if not await self.lease.renew(owner):
                    logger.warning("Notification loop lease lost mid-cycle", owner=owner)
                    return
            except Exception as e:
                # The renew before the next cycle surfaces a persistent outage
                logger.error("Lease heartbeat failed", owner=owner, error=str(e))

    async def _run_cycle_with_heartbeat(self, owner: str) -> dict:
        heartbeat = asyncio.create_task(self._heartbeat(owner))
        try:
            return await self.run_cycle()
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def start(self) -> dict:
        """
        Run cycles until the time budget runs out or the lease is lost.

        Returns:
            dict: ``{"success", "message"}`` plus accumulated ``results`` when
            this call actually ran the loop

        Raises:
            LeaseError: If the lease store is unreachable
        """
        owner = new_owner_token()
        if not await self.lease.acquire(owner):
            logger.info("Notification loop already running, skipping")
            return {"success": True, "message": "Loop already running"}

        totals = LoopTotals()
        started = self._monotonic()
        logger.info(
            "Starting notification loop",
            owner=owner,
            max_run_seconds=self.max_run_seconds,
            cycle_delay_seconds=self.cycle_delay_seconds,
        )

        try:
            while self._monotonic() - started < self.max_run_seconds:
                if not await self.lease.renew(owner):
                    logger.info("Notification loop stopped externally", cycles=totals.cycles)
                    break

                try:
                    logger.info("Starting notification cycle", cycle=totals.cycles + 1)
                    cycle_started = self._monotonic()
                    report = await self._run_cycle_with_heartbeat(owner)
                    totals.add_cycle(report)
                    logger.info(
                        "Notification cycle completed",
                        cycle=totals.cycles,
                        duration_ms=round((self._monotonic() - cycle_started) * 1000, 2),
                        users_processed=report.get("usersProcessed", 0),
                        notifications_sent=report.get("totalNotificationsSent", 0),
                    )

                    remaining = self.max_run_seconds - (self._monotonic() - started)
                    if remaining < self.min_remaining_seconds:
                        logger.info("Not enough time for another cycle, ending loop")
                        break

                    await self._sleep(self.cycle_delay_seconds)

                except Exception as e:
                    logger.error(
                        "Error in notification cycle",
                        cycle=totals.cycles + 1,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    totals.errors.append(f"Cycle {totals.cycles + 1} error: {e}")
                    await self._sleep(self.error_delay_seconds)

        finally:
            totals.end_time = datetime.now(UTC)
            try:
                await self.lease.release(owner)
            except Exception as e:
                logger.error("Failed to release notification loop lease", owner=owner, error=str(e))

            logger.info(
                "Notification loop completed",
                duration_minutes=round((totals.end_time - totals.start_time).total_seconds() / 60),
                **{k: v for k, v in totals.to_dict().items() if k != "allErrors"},
            )

        return {
            "success": True,
            "message": "Notification loop completed",
            "results": totals.to_dict(),
        }


# Global instance
notification_loop = NotificationLoop()


async def start_notification_loop() -> dict:
    """Run the loop once with the global configuration."""
    return await notification_loop.start()


async def start_notification_scheduler():
    """
    Keep a notification loop running for the lifetime of the worker.

    When another process holds the lease this worker idles for one cycle
    delay and tries again, so it takes over once the holder finishes.
    """
    logger.info("Starting notification loop scheduler")

    while True:
        try:
            result = await start_notification_loop()
            if "results" not in result:
                await asyncio.sleep(settings.LOOP_CYCLE_DELAY_SECONDS)

        except Exception as e:
            logger.error(
                "Error in notification loop scheduler", error=str(e), error_type=type(e).__name__
            )
            await asyncio.sleep(settings.LOOP_ERROR_DELAY_SECONDS)
