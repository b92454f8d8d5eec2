"""Security test fixtures.

- Builds the FastAPI `app` with an in-memory reconciliation engine
  (no Redis, no Stripe)
- Wraps it in a TestClient that returns 500s instead of raising
- Scoped to tests/security/ only

The global tests/conftest.py provides signing and event-building helpers.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from clubbix.app import create_app
from clubbix.webhooks import handlers


@pytest.fixture
def app(engine):
    """FastAPI app wired to the shared in-memory engine fixture."""
    return create_app(engine=engine)


@pytest.fixture
def client(app):
    """TestClient from the provider's perspective (no auth headers)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture(autouse=True)
def _reset_webhook_counts():
    handlers._webhook_counts.clear()
    yield
    handlers._webhook_counts.clear()
