"""End-to-end tests for the reconciliation engine (in-memory collaborators)."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from clubbix.webhooks.engine import ClubLocks, Outcome, ReconciliationEngine
from clubbix.webhooks.errors import ConflictError, FatalError, TransientError
from clubbix.webhooks.events import SubscriptionStatus
from clubbix.webhooks.idempotency import InMemoryLedger
from clubbix.webhooks.normalizer import EventNormalizer
from clubbix.webhooks.persistence import InMemorySubscriptionStore, PersistenceGateway
from clubbix.webhooks.records import ActionType

WEBHOOK_SECRET = "whsec_test_secret"

CHECKOUT = {
    "id": "cs_1",
    "mode": "subscription",
    "subscription": "sub_1",
    "payment_status": "paid",
    "metadata": {"clubId": "club456", "userId": "user123"},
}


def _subscription(status: str) -> dict:
    return {
        "id": "sub_1",
        "status": status,
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "metadata": {"clubId": "club456"},
    }


def _engine(store, ledger=None, notifier=None, **kwargs) -> ReconciliationEngine:
    return ReconciliationEngine(
        secret=WEBHOOK_SECRET,
        normalizer=kwargs.pop("normalizer", EventNormalizer()),
        ledger=ledger if ledger is not None else InMemoryLedger(),
        gateway=PersistenceGateway(store, sleep=lambda _: None),
        notifier=notifier,
        **kwargs,
    )


class FailingStore(InMemorySubscriptionStore):
    def __init__(self, error: Exception, failures: int = 1):
        super().__init__()
        self.error = error
        self.failures = failures

    def upsert(self, club_id, document, expected_version):
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        super().upsert(club_id, document, expected_version)


class TestProcess:
    def test_checkout_completed_creates_active_record(self, engine, store, ledger, notifier, make_body, sign):
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = engine.process(body, sign(body))

        assert result.outcome is Outcome.APPLIED
        record = store.load("club456")
        assert record.status is SubscriptionStatus.ACTIVE
        assert record.user_id == "user123"
        assert record.source_event_id == "evt_1"
        assert ledger.get("evt_1").state == "applied"
        assert ledger.get("evt_1").record_version == 1

        notifier.notify.assert_called_once()
        action = notifier.notify.call_args.args[0]
        assert action.type is ActionType.UPDATE_SUBSCRIPTION_STATUS
        assert notifier.notify.call_args.kwargs == {
            "event_id": "evt_1",
            "event_type": "checkout.session.completed",
        }

    def test_redelivery_is_duplicate(self, engine, store, notifier, make_body, sign):
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        engine.process(body, sign(body))
        result = engine.process(body, sign(body))

        assert result.outcome is Outcome.DUPLICATE
        assert store.writes == 1
        assert notifier.notify.call_count == 1

    def test_missing_club_is_invalid_without_writes(self, engine, store, ledger, make_body, sign):
        body = make_body(
            "evt_2", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1", "amount_due": 2999}
        )
        result = engine.process(body, sign(body))

        assert result.outcome is Outcome.INVALID
        assert result.event_id == "evt_2"
        assert result.event_type == "invoice.payment_failed"
        assert store.writes == 0
        assert len(ledger) == 0

    def test_bad_signature_rejected(self, engine, store, make_body, sign):
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = engine.process(body, sign(body, secret="whsec_other"))
        assert result.outcome is Outcome.REJECTED
        assert store.writes == 0

    def test_invalid_json(self, engine, sign):
        body = b"{not json"
        assert engine.process(body, sign(body)).outcome is Outcome.INVALID

    def test_unrecognized_bypasses_ledger(self, engine, ledger, make_body, sign):
        body = make_body("evt_9", "charge.refunded", {"id": "ch_1"})
        result = engine.process(body, sign(body))
        assert result.outcome is Outcome.UNRECOGNIZED
        assert len(ledger) == 0

    def test_payment_succeeded_is_audited(self, engine, store, notifier, make_body, sign):
        body = make_body("evt_3", "invoice.payment_succeeded", {"id": "in_1", "amount_paid": 2999})
        result = engine.process(body, sign(body))
        assert result.outcome is Outcome.AUDITED
        assert store.writes == 0
        assert notifier.notify.call_args.args[0].type is ActionType.RECORD_PAYMENT

    def test_out_of_order_delivery(self, engine, store, make_body, sign):
        deleted = make_body("evt_b", "customer.subscription.deleted", _subscription("canceled"), created=200)
        updated = make_body("evt_a", "customer.subscription.updated", _subscription("active"), created=100)

        assert engine.process(deleted, sign(deleted)).outcome is Outcome.APPLIED
        result = engine.process(updated, sign(updated))

        assert result.outcome is Outcome.STALE
        record = store.load("club456")
        assert record.status is SubscriptionStatus.CANCELLED
        assert record.source_event_id == "evt_b"
        assert store.writes == 1


class TestFailures:
    def test_persistence_failure_releases_reservation(self, ledger, notifier, make_body, sign):
        store = FailingStore(FatalError("permission denied"))
        engine = _engine(store, ledger, notifier)
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)

        result = engine.process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, FatalError)
        assert ledger.get("evt_1") is None
        notifier.notify.assert_not_called()

        # Provider redelivers after the 500
        assert engine.process(body, sign(body)).outcome is Outcome.APPLIED

    def test_transient_errors_exhausted(self, ledger, make_body, sign):
        store = FailingStore(TransientError("timeout"), failures=10)
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = _engine(store, ledger).process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert len(ledger) == 0

    def test_unexpected_exception_wrapped(self, make_body, sign):
        store = FailingStore(RuntimeError("bug"))
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = _engine(store).process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert isinstance(result.error, FatalError)
        assert isinstance(result.error.__cause__, RuntimeError)

    def test_conflict_rereads_and_retries(self, make_body, sign):
        store = FailingStore(ConflictError("raced"), failures=2)
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = _engine(store).process(body, sign(body))
        assert result.outcome is Outcome.APPLIED
        assert store.writes == 1

    def test_endless_conflicts_fail(self, make_body, sign):
        store = FailingStore(ConflictError("raced"), failures=100)
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = _engine(store).process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert "gave up" in str(result.error)

    def test_ledger_unavailable_fails(self, store, make_body, sign):
        ledger = MagicMock()
        ledger.check_and_reserve.side_effect = TransientError("redis down")
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)
        result = _engine(store, ledger).process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert store.writes == 0

    def test_ledger_commit_failure_still_applied(self, store, make_body, sign, caplog):
        ledger = MagicMock(wraps=InMemoryLedger())
        ledger.commit.side_effect = TransientError("redis down")
        body = make_body("evt_1", "checkout.session.completed", CHECKOUT)

        with caplog.at_level(logging.WARNING, logger="clubbix.webhooks.engine"):
            result = _engine(store, ledger).process(body, sign(body))

        assert result.outcome is Outcome.APPLIED
        assert "Ledger commit failed" in caplog.text

    def test_lookup_failure_is_failed(self, store, make_body, sign):
        lookup = MagicMock()
        lookup.metadata_for.side_effect = TransientError("stripe down")
        body = make_body("evt_4", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})
        result = _engine(store, normalizer=EventNormalizer(lookup)).process(body, sign(body))
        assert result.outcome is Outcome.FAILED
        assert store.writes == 0


class TestConcurrency:
    @pytest.mark.parametrize("run", range(5))
    def test_concurrent_events_for_one_club(self, make_body, sign, run):
        store = InMemorySubscriptionStore()
        locks = ClubLocks()
        engine = _engine(store, locks=locks)
        bodies = [
            make_body("evt_upd", "customer.subscription.updated", _subscription("active"), created=100),
            make_body("evt_del", "customer.subscription.deleted", _subscription("canceled"), created=200),
        ]
        if run % 2:
            bodies.reverse()

        barrier = threading.Barrier(len(bodies))
        outcomes: list[Outcome] = []

        def deliver(body):
            barrier.wait()
            outcomes.append(engine.process(body, sign(body)).outcome)

        threads = [threading.Thread(target=deliver, args=(b,)) for b in bodies]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert Outcome.FAILED not in outcomes
        assert store.load("club456").status is SubscriptionStatus.CANCELLED
        assert len(locks) == 0

    def test_lock_timeout_is_fatal(self):
        locks = ClubLocks(timeout=0.05)
        with locks.hold("club456"):
            errors: list[Exception] = []

            def contender():
                try:
                    with locks.hold("club456"):
                        pass
                except FatalError as exc:
                    errors.append(exc)

            t = threading.Thread(target=contender)
            t.start()
            t.join()
        assert len(errors) == 1
        assert len(locks) == 0


class TestLateSubscriptionCreated:
    def test_created_after_checkout_fills_provider_period(self, engine, store, notifier, make_body, sign):
        checkout = make_body("evt_co", "checkout.session.completed", CHECKOUT, created=1700000001)
        created = make_body("evt_sc", "customer.subscription.created", _subscription("active"), created=1700000000)

        assert engine.process(checkout, sign(checkout)).outcome is Outcome.APPLIED
        assert store.load("club456").period_synthesized is True

        result = engine.process(created, sign(created))

        assert result.outcome is Outcome.BACKFILLED
        record = store.load("club456")
        assert record.current_period_start == datetime.fromtimestamp(1700000000, tz=UTC)
        assert record.current_period_end == datetime.fromtimestamp(1702592000, tz=UTC)
        assert record.period_synthesized is False
        # Ordering state still belongs to the newer checkout
        assert record.status is SubscriptionStatus.ACTIVE
        assert record.source_event_id == "evt_co"
        assert record.reconciled_at == 1700000001
        assert record.version == 2
        assert notifier.notify.call_args.args[0].type is ActionType.CREATE_SUBSCRIPTION

    def test_late_created_with_nothing_to_add_is_stale(self, engine, store, make_body, sign):
        updated = make_body("evt_b", "customer.subscription.updated", _subscription("past_due"), created=200)
        created = make_body("evt_a", "customer.subscription.created", _subscription("active"), created=100)

        engine.process(updated, sign(updated))
        result = engine.process(created, sign(created))

        assert result.outcome is Outcome.STALE
        assert store.load("club456").status is SubscriptionStatus.PAST_DUE
        assert store.writes == 1
