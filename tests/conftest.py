"""Shared fixtures for the webhook reconciliation test suite."""

from __future__ import annotations

import json
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

from clubbix.webhooks.engine import ReconciliationEngine
from clubbix.webhooks.idempotency import InMemoryLedger
from clubbix.webhooks.normalizer import EventNormalizer
from clubbix.webhooks.persistence import InMemorySubscriptionStore, PersistenceGateway
from clubbix.webhooks.verification import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture()
def secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture()
def sign():
    """Return a function producing a valid Stripe-Signature header."""

    def _sign(body: bytes, *, timestamp: int | None = None, secret: str = WEBHOOK_SECRET) -> str:
        ts = timestamp or int(time.time())
        return f"t={ts},v1={compute_signature(secret, ts, body)}"

    return _sign


@pytest.fixture()
def make_event():
    """Return a function building a Stripe event envelope."""

    def _make(
        event_id: str,
        event_type: str,
        obj: dict[str, Any],
        *,
        created: int = 1700000000,
    ) -> dict[str, Any]:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture()
def make_body(make_event):
    """Return a function building a raw JSON body for an envelope."""

    def _body(*args: Any, **kwargs: Any) -> bytes:
        return json.dumps(make_event(*args, **kwargs)).encode()

    return _body


@pytest.fixture()
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture()
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def engine(store, ledger, notifier) -> ReconciliationEngine:
    return ReconciliationEngine(
        secret=WEBHOOK_SECRET,
        normalizer=EventNormalizer(),
        ledger=ledger,
        gateway=PersistenceGateway(store, sleep=lambda _: None),
        notifier=notifier,
    )
