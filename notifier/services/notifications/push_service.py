"""Web push transport (VAPID) built on pywebpush."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

from pywebpush import WebPushException, webpush

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GONE_STATUS_CODES = (404, 410)


@dataclass(frozen=True)
class PushResult:
    success: bool
    error: str | None = None
    status_code: int | None = None

    @property
    def subscription_gone(self) -> bool:
        """True when the push service reports the endpoint permanently invalid."""
        if self.success:
            return False
        if self.status_code in GONE_STATUS_CODES:
            return True
        return bool(self.error) and any(str(code) in self.error for code in GONE_STATUS_CODES)


class WebPushSender:
    """Sends one payload to one browser subscription."""

    def __init__(
        self,
        vapid_private_key: str | None = None,
        vapid_claims: dict | None = None,
        ttl_seconds: int | None = None,
    ):
        self.vapid_private_key = vapid_private_key or settings.VAPID_PRIVATE_KEY
        self.vapid_claims = vapid_claims or (
            settings.vapid_claims() if settings.VAPID_EMAIL else None
        )
        self.ttl_seconds = ttl_seconds or settings.PUSH_TTL_SECONDS

    async def send(self, subscription_info: dict[str, Any], payload: dict[str, Any]) -> PushResult:
        if not self.vapid_private_key or not self.vapid_claims:
            return PushResult(success=False, error="VAPID keys not configured")

        if not subscription_info.get("endpoint"):
            return PushResult(success=False, error="Subscription has no endpoint")

        try:
            # pywebpush is blocking; keep it off the event loop
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=json.dumps(payload),
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                ttl=self.ttl_seconds,
            )
            return PushResult(success=True)

        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            logger.warning(
                "Push delivery failed",
                status_code=status_code,
                endpoint=subscription_info.get("endpoint", "")[:60],
                error=str(e),
            )
            return PushResult(success=False, error=str(e), status_code=status_code)

        except Exception as e:
            logger.error("Push delivery error", error=str(e), error_type=type(e).__name__)
            return PushResult(success=False, error=str(e))


# Global instance
push_sender = WebPushSender()
