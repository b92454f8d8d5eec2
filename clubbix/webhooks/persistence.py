"""Persistence gateway: merge-upserts subscription records, with retry.

Records are documents keyed by club id. Writes are a single conditional
upsert: the caller passes the version it read, and the write is rejected
with ``ConflictError`` if another writer got there first. Only fields
present on the new record are written; unknown fields already on the
stored document are left alone.

Transient datastore errors are retried with exponential backoff. Running
out of attempts or of the overall retry budget becomes ``FatalError``.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

import redis

from clubbix.webhooks.errors import ConflictError, FatalError, TransientError
from clubbix.webhooks.records import SubscriptionRecord

logger = logging.getLogger(__name__)

_KEY_PREFIX = "club:subscription"

T = TypeVar("T")


class SubscriptionStore(Protocol):
    """Document storage for subscription records.

    Implementations raise ``TransientError`` for retryable failures,
    ``ConflictError`` when *expected_version* does not match, and
    ``FatalError`` for everything else.
    """

    def load(self, club_id: str) -> SubscriptionRecord | None: ...

    def upsert(self, club_id: str, document: dict[str, Any], expected_version: int) -> None: ...


def _decode(club_id: str, doc: dict[str, Any]) -> SubscriptionRecord:
    try:
        return SubscriptionRecord.from_document(club_id, doc)
    except (TypeError, ValueError) as exc:
        raise FatalError(f"malformed subscription record for club {club_id}: {exc}") from exc


class RedisSubscriptionStore:
    """Subscription records as Redis hashes, one JSON-encoded value per field.

    Conditional writes use WATCH/MULTI on the record's ``version`` field.
    Per-attempt timeouts come from the client's ``socket_timeout``.
    """

    def __init__(self, client: redis.Redis):
        self._redis = client

    @staticmethod
    def key(club_id: str) -> str:
        return f"{_KEY_PREFIX}:{club_id}"

    def load(self, club_id: str) -> SubscriptionRecord | None:
        try:
            raw = self._redis.hgetall(self.key(club_id))
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            raise TransientError(f"load failed for club {club_id}: {exc}") from exc
        except redis.RedisError as exc:
            raise FatalError(f"load failed for club {club_id}: {exc}") from exc
        if not raw:
            return None
        try:
            doc = {field: json.loads(value) for field, value in raw.items()}
        except json.JSONDecodeError as exc:
            raise FatalError(f"malformed subscription record for club {club_id}: {exc}") from exc
        return _decode(club_id, doc)

    def upsert(self, club_id: str, document: dict[str, Any], expected_version: int) -> None:
        key = self.key(club_id)
        fields = {name: json.dumps(value) for name, value in document.items()}
        try:
            with self._redis.pipeline() as pipe:
                pipe.watch(key)
                stored = pipe.hget(key, "version")
                stored_version = int(json.loads(stored)) if stored is not None else 0
                if stored_version != expected_version:
                    raise ConflictError(
                        f"club {club_id} is at version {stored_version}, expected {expected_version}"
                    )
                pipe.multi()
                pipe.hset(key, mapping=fields)
                pipe.execute()
        except redis.WatchError as exc:
            raise ConflictError(f"concurrent write to club {club_id}") from exc
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            raise TransientError(f"upsert failed for club {club_id}: {exc}") from exc
        except redis.RedisError as exc:
            raise FatalError(f"upsert failed for club {club_id}: {exc}") from exc


class InMemorySubscriptionStore:
    """Thread-safe in-process store with the same merge and version semantics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: dict[str, dict[str, Any]] = {}
        self.writes = 0

    def load(self, club_id: str) -> SubscriptionRecord | None:
        with self._lock:
            doc = self._documents.get(club_id)
            doc = dict(doc) if doc is not None else None
        if doc is None:
            return None
        return _decode(club_id, doc)

    def upsert(self, club_id: str, document: dict[str, Any], expected_version: int) -> None:
        with self._lock:
            stored = self._documents.setdefault(club_id, {})
            stored_version = stored.get("version", 0)
            if stored_version != expected_version:
                if not stored:
                    del self._documents[club_id]
                raise ConflictError(
                    f"club {club_id} is at version {stored_version}, expected {expected_version}"
                )
            stored.update(document)
            self.writes += 1

    def document(self, club_id: str) -> dict[str, Any] | None:
        """Raw stored document (for audits and tests)."""
        with self._lock:
            doc = self._documents.get(club_id)
            return dict(doc) if doc is not None else None


def _compute_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    # Exponential backoff: base * 2^attempt
    return min(base_delay * (2**attempt), max_delay)


class PersistenceGateway:
    """Bounded-retry wrapper around a ``SubscriptionStore``.

    Parameters
    ----------
    store:
        The backing document store.
    max_attempts:
        Total attempts per operation (first try included).
    backoff_base:
        Delay before the first retry, in seconds; doubles each retry.
    retry_budget:
        Upper bound on time spent in one operation, retries included.
    sleep:
        Injected for tests.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        *,
        max_attempts: int = 3,
        backoff_base: float = 0.2,
        max_delay: float = 5.0,
        retry_budget: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._max_delay = max_delay
        self._retry_budget = retry_budget
        self._sleep = sleep

    def load(self, club_id: str) -> SubscriptionRecord | None:
        return self._with_retry("load", club_id, lambda: self._store.load(club_id))

    def apply(self, club_id: str, record: SubscriptionRecord, *, expected_version: int) -> None:
        """Merge-upsert *record* if the stored version is still *expected_version*.

        Raises:
            ConflictError: a concurrent writer changed the record; re-read
                and reconcile again.
            FatalError: non-retryable failure, or retries exhausted.
        """
        document = record.to_document()
        self._with_retry(
            "apply", club_id, lambda: self._store.upsert(club_id, document, expected_version)
        )
        logger.info(
            "Persisted subscription for club %s: status=%s version=%d source=%s",
            club_id,
            record.status.value,
            record.version,
            record.source_event_id,
        )

    def _with_retry(self, operation: str, club_id: str, fn: Callable[[], T]) -> T:
        started = time.monotonic()
        for attempt in range(self._max_attempts):
            try:
                return fn()
            except ConflictError:
                raise
            except TransientError as exc:
                if attempt + 1 >= self._max_attempts:
                    raise FatalError(
                        f"{operation} for club {club_id} failed after "
                        f"{self._max_attempts} attempts: {exc}"
                    ) from exc
                delay = _compute_delay(attempt, self._backoff_base, self._max_delay)
                if time.monotonic() - started + delay > self._retry_budget:
                    raise FatalError(
                        f"{operation} for club {club_id} exceeded retry budget: {exc}"
                    ) from exc
                logger.warning(
                    "Retry %d/%d for %s club=%s (%s), waiting %.2fs",
                    attempt + 1,
                    self._max_attempts - 1,
                    operation,
                    club_id,
                    exc,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")
