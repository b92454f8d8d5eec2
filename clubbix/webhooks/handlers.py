"""Webhook HTTP handlers: FastAPI routes for inbound Stripe webhooks.

The handler:
1. Reads the raw body (needed for HMAC verification; never parsed first)
2. Runs the reconciliation engine off the event loop, shielded so a
   dropped connection does not abort a half-finished write
3. Maps the typed outcome to an HTTP status and a log severity

Security contract:
- Never return error details to the webhook caller
- 200 for processed, duplicate, stale, unrecognized and malformed events
  (redelivering them cannot help)
- 400 only for signature failures
- 500 when persistence failed, so Stripe redelivers
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clubbix.webhooks.engine import Outcome, ProcessingResult, ReconciliationEngine
from clubbix.webhooks.verification import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/stripe/webhooks"

# Webhook receive counter per outcome, for monitoring
_webhook_counts: dict[str, int] = {}

_STATUS_CODES: dict[Outcome, int] = {
    Outcome.APPLIED: 200,
    Outcome.AUDITED: 200,
    Outcome.STALE: 200,
    Outcome.BACKFILLED: 200,
    Outcome.DUPLICATE: 200,
    Outcome.UNRECOGNIZED: 200,
    Outcome.INVALID: 200,
    Outcome.REJECTED: 400,
    Outcome.FAILED: 500,
}

_LOG_LEVELS: dict[Outcome, int] = {
    Outcome.INVALID: logging.WARNING,
    Outcome.REJECTED: logging.WARNING,
    Outcome.FAILED: logging.ERROR,
}


class WebhookAck(BaseModel):
    """Response body consumed by collaborators that don't share the datastore."""

    success: bool = True
    event_type: str | None = None
    timestamp: str
    data: dict[str, Any] | None = None
    message: str
    action_required: dict[str, Any] | None = None


class WebhookFailure(BaseModel):
    success: bool = False
    error: str


def _message(result: ProcessingResult) -> str:
    if result.outcome in (Outcome.APPLIED, Outcome.AUDITED) and result.event is not None:
        return result.event.message
    if result.outcome is Outcome.DUPLICATE:
        return "Event already processed"
    if result.outcome is Outcome.STALE:
        return "Event is older than the current subscription state; no change"
    if result.outcome is Outcome.BACKFILLED:
        return "Event is older than the current subscription state; missing details recorded"
    if result.outcome is Outcome.UNRECOGNIZED:
        return f"Unhandled event type: {result.event_type}"
    return "Event acknowledged but could not be processed"


def build_response(result: ProcessingResult) -> JSONResponse:
    """Map an engine outcome onto the HTTP response Stripe receives."""
    status_code = _STATUS_CODES[result.outcome]

    if result.outcome is Outcome.REJECTED:
        body = WebhookFailure(error="Webhook signature verification failed")
    elif result.outcome is Outcome.FAILED:
        body = WebhookFailure(error="Error processing webhook")
    else:
        body = WebhookAck(
            event_type=result.event_type or None,
            timestamp=datetime.now(UTC).isoformat(),
            data=result.event.data() if result.event is not None else None,
            message=_message(result),
            action_required=result.action.to_dict() if result.action is not None else None,
        )
    return JSONResponse(body.model_dump(), status_code=status_code)


def _log_webhook(result: ProcessingResult, elapsed_ms: float) -> None:
    """Audit log for webhook activity."""
    status = result.outcome.value
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    level = _LOG_LEVELS.get(result.outcome, logging.INFO)
    logger.log(
        level,
        "WEBHOOK_AUDIT provider=stripe event=%s id=%s status=%s reason=%s elapsed_ms=%.1f",
        result.event_type or "unknown",
        result.event_id or "unknown",
        status,
        result.error or result.reason or "-",
        elapsed_ms,
        exc_info=result.error if result.outcome is Outcome.FAILED else None,
    )


async def _handle_stripe_webhook(request: Request) -> JSONResponse:
    start = time.time()
    engine: ReconciliationEngine = request.app.state.webhook_engine

    # Raw bytes: any re-serialization would break the signature
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    # Finishes even if the client disconnects mid-request
    result = await asyncio.shield(asyncio.to_thread(engine.process, body, signature))

    _log_webhook(result, (time.time() - start) * 1000)
    return build_response(result)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app.

    Expects ``app.state.webhook_engine`` to hold a ReconciliationEngine.
    """

    @app.post(WEBHOOK_PATH)
    async def stripe_webhook(request: Request):
        """Receive Stripe webhooks (signature-verified)."""
        return await _handle_stripe_webhook(request)

    @app.get(f"{WEBHOOK_PATH}/status")
    async def webhook_status():
        """Webhook receive counts per outcome."""
        return {"counts": dict(_webhook_counts)}

    logger.info("Webhook routes registered: %s", WEBHOOK_PATH)
