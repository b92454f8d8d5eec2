"""FastAPI application factory.

Collaborators (Redis client, Stripe client) are constructed here once per
process and passed down explicitly.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime

import redis
import stripe
from fastapi import FastAPI

from clubbix.config import WebhookSettings
from clubbix.webhooks.engine import ReconciliationEngine
from clubbix.webhooks.handlers import register_webhook_routes
from clubbix.webhooks.idempotency import RedisLedger
from clubbix.webhooks.normalizer import EventNormalizer, StripeSubscriptionLookup
from clubbix.webhooks.notifier import RedisStreamNotifier
from clubbix.webhooks.persistence import PersistenceGateway, RedisSubscriptionStore

logger = logging.getLogger(__name__)


def build_engine(
    settings: WebhookSettings,
    *,
    redis_client: redis.Redis | None = None,
    stripe_client: stripe.StripeClient | None = None,
) -> ReconciliationEngine:
    """Wire the reconciliation pipeline against Redis and Stripe."""
    if redis_client is None:
        redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.persistence_attempt_timeout_seconds,
            socket_connect_timeout=settings.persistence_attempt_timeout_seconds,
        )

    if stripe_client is None and settings.stripe_secret_key:
        stripe_client = stripe.StripeClient(api_key=settings.stripe_secret_key)
    if stripe_client is None:
        logger.warning("STRIPE_SECRET_KEY not set, subscription metadata lookups disabled")
        lookup = None
    else:
        lookup = StripeSubscriptionLookup(stripe_client)

    gateway = PersistenceGateway(
        RedisSubscriptionStore(redis_client),
        max_attempts=settings.persistence_max_attempts,
        backoff_base=settings.persistence_backoff_base_ms / 1000,
        retry_budget=settings.persistence_retry_budget_seconds,
    )
    ledger = RedisLedger(
        redis_client,
        replay_window_seconds=settings.ledger_replay_window_seconds,
        reservation_ttl_seconds=settings.ledger_reservation_ttl_seconds,
    )
    return ReconciliationEngine(
        secret=settings.webhook_secret,
        normalizer=EventNormalizer(lookup),
        ledger=ledger,
        gateway=gateway,
        notifier=RedisStreamNotifier(redis_client, settings.actions_stream),
        signature_tolerance=settings.signature_tolerance_seconds,
    )


def create_app(
    settings: WebhookSettings | None = None,
    *,
    engine: ReconciliationEngine | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Raises:
        ConfigurationError: no engine was injected and the environment
            lacks STRIPE_WEBHOOK_SECRET.
    """
    if engine is None:
        settings = settings or WebhookSettings.from_env()
        engine = build_engine(settings)
    if settings is not None:
        logging.getLogger("clubbix").setLevel(settings.log_level)

    app = FastAPI(title="Clubbix Backend API", version="1.0.0")
    app.state.webhook_engine = engine
    app.state.started_at = time.time()

    register_webhook_routes(app)

    @app.get("/api/health")
    async def health():
        """Basic liveness check."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": round(time.time() - app.state.started_at, 3),
        }

    return app
