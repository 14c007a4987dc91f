from datetime import UTC, datetime
from typing import Any

import pytest

from notifier.db.documents import CollectionQuery, Document, DocumentNotFoundError, FieldFilter
from notifier.models.domain.timestamps import now_millis
from notifier.repositories.notification_repository import NotificationRepository
from notifier.services.notifications.delivery import NotificationDelivery
from notifier.services.notifications.email_service import EmailResult
from notifier.services.notifications.push_service import PushResult

# Wednesday 2024-03-06 12:00 UTC
FIXED_NOW = datetime(2024, 3, 6, 12, 0, tzinfo=UTC)


class FakeRedis:
    """
    In-memory stand-in for FastRedisClient, including the lease primitives.

    Lease TTLs only run out when a ``clock`` (seconds) is given.
    """

    def __init__(self, clock=None):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.clock = clock
        self.deadlines: dict[str, float] = {}

    def _set_ttl(self, key: str, ttl_ms: int) -> None:
        self.ttls[key] = ttl_ms
        if self.clock is not None:
            self.deadlines[key] = self.clock() + ttl_ms / 1000

    def _purge_expired(self) -> None:
        if self.clock is None:
            return
        now = self.clock()
        for key, deadline in list(self.deadlines.items()):
            if now >= deadline:
                self.expire(key)

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        self._purge_expired()
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        self.deadlines.pop(key, None)
        return self.store.pop(key, None) is not None

    async def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        self._purge_expired()
        if key in self.store:
            return False
        self.store[key] = value
        self._set_ttl(key, ttl_ms)
        return True

    async def compare_and_expire(self, key: str, expected: str, ttl_ms: int) -> bool:
        self._purge_expired()
        if self.store.get(key) != expected:
            return False
        self._set_ttl(key, ttl_ms)
        return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        self._purge_expired()
        if self.store.get(key) != expected:
            return False
        return await self.delete(key)

    def expire(self, key: str) -> None:
        """Simulate the TTL running out."""
        self.store.pop(key, None)
        self.ttls.pop(key, None)
        self.deadlines.pop(key, None)


def _lookup(data: dict, field_path: str) -> tuple[bool, Any]:
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _matches(data: dict, flt: FieldFilter) -> bool:
    found, value = _lookup(data, flt.field)
    if not found:
        return False
    if flt.op == "==":
        return value == flt.value and type(value) is type(flt.value)
    if flt.op == "!=":
        return value != flt.value
    if _is_number(flt.value) != _is_number(value):
        return False
    if flt.op == "<":
        return value < flt.value
    if flt.op == "<=":
        return value <= flt.value
    if flt.op == ">":
        return value > flt.value
    return value >= flt.value


class InMemoryDocumentStore:
    """DocumentStore with the same collection/where/limit/get API, kept in dicts."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.fail_queries_on: set[str] = set()

    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        self.collections.setdefault(collection, {})[doc_id] = dict(data)

    def docs(self, collection: str) -> dict[str, dict]:
        return self.collections.get(collection, {})

    def collection(self, path: str) -> CollectionQuery:
        return CollectionQuery(self, path)

    async def ensure_schema(self) -> None:
        return None

    async def get(self, collection: str, doc_id: str) -> Document | None:
        data = self.docs(collection).get(doc_id)
        return Document(id=doc_id, data=dict(data)) if data is not None else None

    async def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = False) -> None:
        docs = self.collections.setdefault(collection, {})
        if merge and doc_id in docs:
            docs[doc_id] = {**docs[doc_id], **data}
        else:
            docs[doc_id] = dict(data)

    async def update(self, collection: str, doc_id: str, fields: dict) -> None:
        docs = self.docs(collection)
        if doc_id not in docs:
            raise DocumentNotFoundError(collection, doc_id)
        docs[doc_id] = {**docs[doc_id], **fields}

    async def delete(self, collection: str, doc_id: str) -> bool:
        return self.docs(collection).pop(doc_id, None) is not None

    async def run_query(self, collection, filters, limit=None) -> list[Document]:
        if collection in self.fail_queries_on:
            raise RuntimeError(f"query failed for {collection}")

        results = [
            Document(id=doc_id, data=dict(data))
            for doc_id, data in sorted(self.docs(collection).items())
            if all(_matches(data, flt) for flt in filters)
        ]
        return results[:limit] if limit is not None else results


class FakePushSender:
    """Records sends; per-endpoint results can be scripted."""

    def __init__(self):
        self.sent: list[tuple[dict, dict]] = []
        self.results: dict[str, PushResult] = {}

    async def send(self, subscription_info: dict, payload: dict) -> PushResult:
        self.sent.append((subscription_info, payload))
        return self.results.get(subscription_info.get("endpoint"), PushResult(success=True))


class FakeEmailClient:
    def __init__(self):
        self.daily: list[str] = []
        self.weekly: list[str] = []
        self.daily_result = EmailResult(success=True, status_code=200)
        self.weekly_result = EmailResult(success=True, status_code=200)

    async def send_daily_digest(self, user_email: str) -> EmailResult:
        self.daily.append(user_email)
        return self.daily_result

    async def send_weekly_digest(self, user_email: str) -> EmailResult:
        self.weekly.append(user_email)
        return self.weekly_result


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def now_ms(now):
    return now_millis(now)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def repository(store):
    return NotificationRepository(store=store)


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def email_client():
    return FakeEmailClient()


@pytest.fixture
def delivery(repository, push_sender):
    return NotificationDelivery(repository=repository, sender=push_sender)


@pytest.fixture
def seed_user(store):
    """Seed push preferences plus one subscription per endpoint."""

    def _seed(
        email: str = "ana@example.com",
        endpoints: tuple[str, ...] = ("https://push.example/1",),
        **preferences,
    ):
        prefs = {"enabled": True, "overdueAlerts": True, "taskReminders": True}
        prefs.update(preferences)
        store.seed("notificationPreferences", email, prefs)
        for index, endpoint in enumerate(endpoints):
            store.seed(
                "pushSubscriptions",
                f"{email}-sub-{index}",
                {"userEmail": email, "subscription": {"endpoint": endpoint, "keys": {}}},
            )
        return email

    return _seed
