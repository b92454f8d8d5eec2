"""Idempotency ledger: which provider event ids have already been applied.

Security contract:
- check_and_reserve() is a single atomic SET NX; the insert is the reservation
- Reservations carry a short TTL so a crashed in-flight attempt expires and the
  provider's redelivery can retry
- commit() marks the entry applied and extends it to the replay window
- release() removes a reservation whose reconciliation failed
- Key pattern: webhook:ledger:{event_id}
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import redis

from clubbix.webhooks.errors import FatalError, TransientError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "webhook:ledger"

DEFAULT_REPLAY_WINDOW_SECONDS = 30 * 86400
DEFAULT_RESERVATION_TTL_SECONDS = 300


class LedgerStatus(StrEnum):
    FRESH = "fresh"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class LedgerEntry:
    """State of one event id in the ledger."""

    event_id: str
    state: str  # reserved, applied
    reserved_at: float | None = None
    applied_at: float | None = None
    record_version: int | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "state": self.state,
                "reserved_at": self.reserved_at,
                "applied_at": self.applied_at,
                "record_version": self.record_version,
            }
        )

    @classmethod
    def from_json(cls, event_id: str, raw: str) -> LedgerEntry:
        data = json.loads(raw)
        return cls(
            event_id=event_id,
            state=data.get("state", "applied"),
            reserved_at=data.get("reserved_at"),
            applied_at=data.get("applied_at"),
            record_version=data.get("record_version"),
        )


class IdempotencyLedger(Protocol):
    def check_and_reserve(self, event_id: str) -> LedgerStatus: ...

    def commit(self, event_id: str, record_version: int | None) -> None: ...

    def release(self, event_id: str) -> None: ...

    def get(self, event_id: str) -> LedgerEntry | None: ...


def ledger_key(event_id: str) -> str:
    return f"{_KEY_PREFIX}:{event_id}"


def _translate(exc: redis.RedisError, action: str) -> Exception:
    if isinstance(exc, (redis.ConnectionError, redis.TimeoutError)):
        return TransientError(f"ledger {action} failed: {exc}")
    return FatalError(f"ledger {action} failed: {exc}")


class RedisLedger:
    """Redis-backed ledger shared by every worker process."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        replay_window_seconds: int | None = DEFAULT_REPLAY_WINDOW_SECONDS,
        reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS,
    ):
        self._redis = client
        self._replay_window = replay_window_seconds
        self._reservation_ttl = reservation_ttl_seconds

    def check_and_reserve(self, event_id: str) -> LedgerStatus:
        """Atomically reserve *event_id*.

        Returns:
            FRESH if this caller now owns the event, ALREADY_PROCESSED if
            another delivery applied or is applying it.

        Raises:
            TransientError / FatalError: Redis failed.
        """
        entry = LedgerEntry(event_id=event_id, state="reserved", reserved_at=time.time())
        try:
            # SET NX returns True if key was set (new), None if it already existed
            was_set = self._redis.set(
                ledger_key(event_id), entry.to_json(), nx=True, ex=self._reservation_ttl
            )
        except redis.RedisError as exc:
            raise _translate(exc, "reserve") from exc
        if not was_set:
            logger.info("Duplicate webhook event: %s", event_id)
            return LedgerStatus.ALREADY_PROCESSED
        return LedgerStatus.FRESH

    def commit(self, event_id: str, record_version: int | None) -> None:
        entry = LedgerEntry(
            event_id=event_id,
            state="applied",
            applied_at=time.time(),
            record_version=record_version,
        )
        try:
            self._redis.set(ledger_key(event_id), entry.to_json(), ex=self._replay_window)
        except redis.RedisError as exc:
            raise _translate(exc, "commit") from exc

    def release(self, event_id: str) -> None:
        try:
            self._redis.delete(ledger_key(event_id))
        except redis.RedisError as exc:
            raise _translate(exc, "release") from exc

    def get(self, event_id: str) -> LedgerEntry | None:
        try:
            raw = self._redis.get(ledger_key(event_id))
        except redis.RedisError as exc:
            raise _translate(exc, "read") from exc
        if raw is None:
            return None
        return LedgerEntry.from_json(event_id, raw)


class InMemoryLedger:
    """Thread-safe in-process ledger with the same semantics as RedisLedger.

    Suitable for unit tests and single-process deployments.
    """

    def __init__(
        self,
        *,
        replay_window_seconds: int | None = DEFAULT_REPLAY_WINDOW_SECONDS,
        reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS,
    ):
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[LedgerEntry, float | None]] = {}
        self._replay_window = replay_window_seconds
        self._reservation_ttl = reservation_ttl_seconds

    def _live(self, event_id: str, now: float) -> LedgerEntry | None:
        found = self._entries.get(event_id)
        if found is None:
            return None
        entry, expires_at = found
        if expires_at is not None and expires_at <= now:
            del self._entries[event_id]
            return None
        return entry

    def check_and_reserve(self, event_id: str) -> LedgerStatus:
        now = time.time()
        with self._lock:
            if self._live(event_id, now) is not None:
                logger.info("Duplicate webhook event: %s", event_id)
                return LedgerStatus.ALREADY_PROCESSED
            entry = LedgerEntry(event_id=event_id, state="reserved", reserved_at=now)
            self._entries[event_id] = (entry, now + self._reservation_ttl)
            return LedgerStatus.FRESH

    def commit(self, event_id: str, record_version: int | None) -> None:
        now = time.time()
        entry = LedgerEntry(
            event_id=event_id, state="applied", applied_at=now, record_version=record_version
        )
        expires_at = None if self._replay_window is None else now + self._replay_window
        with self._lock:
            self._entries[event_id] = (entry, expires_at)

    def release(self, event_id: str) -> None:
        with self._lock:
            self._entries.pop(event_id, None)

    def get(self, event_id: str) -> LedgerEntry | None:
        with self._lock:
            return self._live(event_id, time.time())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
