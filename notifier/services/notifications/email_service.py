"""HTTP client for the digest email endpoints."""

from dataclasses import dataclass

import httpx

from notifier.config import settings
from notifier.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DAILY_DIGEST_PATH = "/email/daily-digest"
WEEKLY_DIGEST_PATH = "/email/weekly-digest-enhanced"


@dataclass(frozen=True)
class EmailResult:
    success: bool
    error: str | None = None
    status_code: int | None = None


class DigestEmailClient:
    """Asks the email service to render and send a digest for one user."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.EMAIL_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.EMAIL_API_TIMEOUT_SECONDS
        self._transport = transport

    async def send_daily_digest(self, user_email: str) -> EmailResult:
        return await self._post(DAILY_DIGEST_PATH, user_email, digest="daily")

    async def send_weekly_digest(self, user_email: str) -> EmailResult:
        return await self._post(WEEKLY_DIGEST_PATH, user_email, digest="weekly")

    async def _post(self, path: str, user_email: str, *, digest: str) -> EmailResult:
        url = f"{self.base_url}{path}"
        logger.info("Requesting digest email", digest=digest, user_email=user_email, url=url)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json={"userEmail": user_email})
        except httpx.HTTPError as e:
            logger.error("Digest email request failed", digest=digest, user_email=user_email, error=str(e))
            return EmailResult(success=False, error=str(e) or type(e).__name__)

        if response.is_success:
            logger.info("Digest email sent", digest=digest, user_email=user_email)
            return EmailResult(success=True, status_code=response.status_code)

        error = _error_message(response)
        logger.error(
            "Digest email rejected",
            digest=digest,
            user_email=user_email,
            status_code=response.status_code,
            error=error,
        )
        return EmailResult(success=False, error=error, status_code=response.status_code)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.reason_phrase}"

    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


# Global instance
email_client = DigestEmailClient()
