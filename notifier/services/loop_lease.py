"""
Redis-backed lease guarding the notification loop.

Only one loop may run at a time across processes. The holder is identified by
an owner token; the lease expires on its own if the holder dies, so a crash
can never leave the system stuck in the "running" state. A separate status key
keeps the human-readable bookkeeping (start time, last update) for operators.
"""

import json
import uuid
from datetime import UTC, datetime

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger
from notifier.services.redis_client import fast_redis

logger = get_logger(__name__)

LEASE_KEY = "notifications:loop:lease"
STATUS_KEY = "notifications:loop:status"


class LeaseError(Exception):
    """Raised when the lease store cannot be reached."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def format_status_time(moment: datetime | None = None) -> str:
    """Render 'MM/DD/YYYY, hh:mm:ss AM/PM' in the status timezone."""
    moment = moment or datetime.now(UTC)
    return moment.astimezone(settings.status_tz()).strftime("%m/%d/%Y, %I:%M:%S %p")


def new_owner_token() -> str:
    return uuid.uuid4().hex


class LoopLease:
    """Owner-token lease with TTL over the Redis client."""

    def __init__(self, redis_client=None, ttl_seconds: int | None = None):
        self.redis = redis_client or fast_redis
        self.ttl_seconds = ttl_seconds or settings.LOOP_LEASE_TTL_SECONDS

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    async def acquire(self, owner: str) -> bool:
        """Take the lease; False means another holder is running the loop."""
        try:
            acquired = await self.redis.set_if_absent(LEASE_KEY, owner, self.ttl_ms)
        except Exception as e:
            raise LeaseError(f"Failed to acquire loop lease: {e}", operation="acquire") from e

        if acquired:
            await self._write_status(
                is_running=True, owner=owner, started_at=datetime.now(UTC).isoformat()
            )
            logger.info("Notification loop lease acquired", owner=owner, ttl_s=self.ttl_seconds)
        else:
            logger.info("Notification loop lease held elsewhere", owner=owner)
        return acquired

    async def renew(self, owner: str) -> bool:
        """Extend the lease; False once it has been force-released or lost."""
        try:
            renewed = await self.redis.compare_and_expire(LEASE_KEY, owner, self.ttl_ms)
        except Exception as e:
            raise LeaseError(f"Failed to renew loop lease: {e}", operation="renew") from e

        if renewed:
            await self._touch_status()
        else:
            logger.warning("Notification loop lease no longer held", owner=owner)
        return renewed

    async def is_held_by(self, owner: str) -> bool:
        try:
            return await self.redis.get(LEASE_KEY) == owner
        except Exception as e:
            raise LeaseError(f"Failed to read loop lease: {e}", operation="read") from e

    async def release(self, owner: str) -> bool:
        """Give the lease back if we still own it."""
        try:
            released = await self.redis.compare_and_delete(LEASE_KEY, owner)
        except Exception as e:
            raise LeaseError(f"Failed to release loop lease: {e}", operation="release") from e

        if released:
            await self._write_status(is_running=False, owner=None, started_at=None)
        logger.info("Notification loop lease released", owner=owner, released=released)
        return released

    async def force_release(self) -> None:
        """Emergency stop: drop the lease regardless of owner."""
        try:
            await self.redis.delete(LEASE_KEY)
        except Exception as e:
            raise LeaseError(f"Failed to force-release loop lease: {e}", operation="force") from e

        await self._write_status(is_running=False, owner=None, started_at=None)
        logger.warning("Notification loop lease force-released")

    async def status(self) -> dict:
        try:
            owner = await self.redis.get(LEASE_KEY)
            raw = await self.redis.get(STATUS_KEY)
        except Exception as e:
            raise LeaseError(f"Failed to read loop status: {e}", operation="status") from e

        record = json.loads(raw) if raw else {}
        return {
            "isLoopRunning": owner is not None,
            "owner": owner,
            "loopStartTime": record.get("loopStartTime") if owner else None,
            "updatedAt": record.get("updatedAt"),
        }

    async def _write_status(self, *, is_running: bool, owner: str | None, started_at: str | None):
        record = {
            "isLoopRunning": is_running,
            "owner": owner,
            "loopStartTime": started_at,
            "updatedAt": format_status_time(),
        }
        try:
            await self.redis.set_with_ttl(STATUS_KEY, json.dumps(record))
        except Exception as e:
            # Status is informational; the lease key is authoritative
            logger.warning("Failed to write loop status", error=str(e))

    async def _touch_status(self) -> None:
        try:
            raw = await self.redis.get(STATUS_KEY)
            record = json.loads(raw) if raw else {}
            record["isLoopRunning"] = True
            record["updatedAt"] = format_status_time()
            await self.redis.set_with_ttl(STATUS_KEY, json.dumps(record))
        except Exception as e:
            logger.warning("Failed to refresh loop status", error=str(e))


# Global instance
loop_lease = LoopLease()
