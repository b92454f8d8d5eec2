"""Reconciliation engine: one call per inbound webhook.

Pipeline:
1. Verify the Stripe signature over the raw body
2. Normalize the envelope into a DomainEvent
3. Reserve the event id in the idempotency ledger
4. Under the club's lock: load, reconcile, conditionally upsert
   (re-read and retry when a concurrent writer wins the race)
5. Commit the ledger entry, or release it if persistence failed
6. Publish the action descriptor

Every failure comes back as a typed ``ProcessingResult``; the HTTP layer
decides status codes and log severity.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from clubbix.webhooks.errors import (
    AuthenticationError,
    ConflictError,
    FatalError,
    NormalizationError,
    TransientError,
    WebhookError,
)
from clubbix.webhooks.events import DomainEvent, Unrecognized
from clubbix.webhooks.idempotency import IdempotencyLedger, LedgerStatus
from clubbix.webhooks.normalizer import EventNormalizer
from clubbix.webhooks.notifier import ActionNotifier, NullNotifier
from clubbix.webhooks.persistence import PersistenceGateway
from clubbix.webhooks.reconciler import ReconcileOutcome, Reconciliation, reconcile
from clubbix.webhooks.records import Action, SubscriptionRecord
from clubbix.webhooks.verification import DEFAULT_TOLERANCE_SECONDS, verify_signature

logger = logging.getLogger(__name__)

_CONFLICT_RETRIES = 5
_LOCK_TIMEOUT_SECONDS = 30.0


class Outcome(StrEnum):
    APPLIED = "applied"
    AUDITED = "audited"
    STALE = "stale"
    BACKFILLED = "backfilled"
    DUPLICATE = "duplicate"
    UNRECOGNIZED = "unrecognized"
    INVALID = "invalid"
    REJECTED = "rejected"
    FAILED = "failed"


_FROM_RECONCILE = {
    ReconcileOutcome.APPLIED: Outcome.APPLIED,
    ReconcileOutcome.AUDITED: Outcome.AUDITED,
    ReconcileOutcome.STALE: Outcome.STALE,
    ReconcileOutcome.BACKFILLED: Outcome.BACKFILLED,
    # The record already reflects this event: same as a ledger duplicate
    ReconcileOutcome.REPLAYED: Outcome.DUPLICATE,
    ReconcileOutcome.IGNORED: Outcome.UNRECOGNIZED,
}


@dataclass(frozen=True)
class ProcessingResult:
    """Typed outcome of processing one webhook delivery."""

    outcome: Outcome
    event: DomainEvent | None = None
    record: SubscriptionRecord | None = None
    action: Action | None = None
    error: WebhookError | None = None
    reason: str = ""

    @property
    def event_id(self) -> str:
        if self.event is not None:
            return self.event.event_id
        return getattr(self.error, "event_id", "") or ""

    @property
    def event_type(self) -> str:
        if self.event is not None:
            return self.event.event_type
        return getattr(self.error, "event_type", "") or ""


class ClubLocks:
    """Per-club mutual exclusion; entries disappear once nobody holds them."""

    def __init__(self, timeout: float = _LOCK_TIMEOUT_SECONDS) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list[Any]] = {}  # club_id -> [lock, holders]
        self._timeout = timeout

    @contextmanager
    def hold(self, club_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(club_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            if not entry[0].acquire(timeout=self._timeout):
                raise FatalError(f"timed out waiting for lock on club {club_id}")
            try:
                yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[club_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ReconciliationEngine:
    """Turns verified Stripe webhooks into persisted subscription records.

    Parameters
    ----------
    secret:
        Webhook signing secret.
    normalizer, ledger, gateway:
        Pipeline collaborators.
    notifier:
        Receives the action descriptor of every handled event.
    """

    def __init__(
        self,
        *,
        secret: str,
        normalizer: EventNormalizer,
        ledger: IdempotencyLedger,
        gateway: PersistenceGateway,
        notifier: ActionNotifier | None = None,
        signature_tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        locks: ClubLocks | None = None,
    ):
        self._secret = secret
        self._normalizer = normalizer
        self._ledger = ledger
        self._gateway = gateway
        self._notifier = notifier or NullNotifier()
        self._tolerance = signature_tolerance
        self._locks = locks if locks is not None else ClubLocks()

    def process(self, body: bytes, signature_header: str | None) -> ProcessingResult:
        """Full pipeline for one raw delivery."""
        try:
            verify_signature(body, signature_header, self._secret, tolerance=self._tolerance)
        except AuthenticationError as exc:
            return ProcessingResult(Outcome.REJECTED, error=exc)

        try:
            envelope = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ProcessingResult(
                Outcome.INVALID, error=NormalizationError("body is not valid JSON")
            )
        return self.handle(envelope)

    def handle(self, envelope: Any) -> ProcessingResult:
        """Normalize and apply an already-verified, parsed envelope."""
        try:
            event = self._normalizer.normalize(envelope)
        except NormalizationError as exc:
            return ProcessingResult(Outcome.INVALID, error=exc)
        except (TransientError, FatalError) as exc:
            return ProcessingResult(Outcome.FAILED, error=exc)

        if isinstance(event, Unrecognized):
            return ProcessingResult(Outcome.UNRECOGNIZED, event=event)
        return self.apply_event(event)

    def apply_event(self, event: DomainEvent) -> ProcessingResult:
        """Deduplicate, reconcile and persist a normalized event."""
        try:
            status = self._ledger.check_and_reserve(event.event_id)
        except (TransientError, FatalError) as exc:
            return ProcessingResult(Outcome.FAILED, event=event, error=exc)

        if status is LedgerStatus.ALREADY_PROCESSED:
            return ProcessingResult(Outcome.DUPLICATE, event=event, reason="event id already in ledger")

        try:
            result = self._reconcile_and_persist(event)
        except Exception as exc:
            self._release(event.event_id)
            if isinstance(exc, FatalError):
                error = exc
            else:
                error = FatalError(f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc
            return ProcessingResult(Outcome.FAILED, event=event, error=error)

        record_version = result.record.version if result.record else None
        try:
            self._ledger.commit(event.event_id, record_version)
        except (TransientError, FatalError):
            # Record is persisted; a redelivery is caught as a replay
            logger.warning("Ledger commit failed for %s", event.event_id, exc_info=True)

        if result.action is not None:
            self._notifier.notify(
                result.action, event_id=event.event_id, event_type=event.event_type
            )

        return ProcessingResult(
            _FROM_RECONCILE[result.outcome],
            event=event,
            record=result.record,
            action=result.action,
            reason=result.reason,
        )

    def _reconcile_and_persist(self, event: DomainEvent) -> Reconciliation:
        if not event.club_id:
            return reconcile(None, event)

        club_id = event.club_id
        with self._locks.hold(club_id):
            for attempt in range(_CONFLICT_RETRIES):
                current = self._gateway.load(club_id)
                result = reconcile(current, event)
                if result.record is None:
                    return result
                try:
                    self._gateway.apply(
                        club_id,
                        result.record,
                        expected_version=current.version if current else 0,
                    )
                except ConflictError:
                    logger.info(
                        "Write conflict on club %s for %s (attempt %d), re-reading",
                        club_id,
                        event.event_id,
                        attempt + 1,
                    )
                    continue
                return result
        raise FatalError(f"club {club_id} kept changing; gave up after {_CONFLICT_RETRIES} attempts")

    def _release(self, event_id: str) -> None:
        try:
            self._ledger.release(event_id)
        except (TransientError, FatalError):
            # The reservation TTL frees it for redelivery anyway
            logger.warning("Ledger release failed for %s", event_id, exc_info=True)
