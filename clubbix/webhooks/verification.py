"""Stripe webhook signature verification (v1 scheme, constant-time HMAC).

Security contract:
- Operates on the raw body bytes exactly as received; never re-serialize
- All comparisons use hmac.compare_digest() (no timing attacks)
- Missing secret -> verification always fails (fail-closed)
- Timestamp tolerance (default 300s) prevents replay of captured payloads
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from clubbix.webhooks.errors import AuthenticationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

DEFAULT_TOLERANCE_SECONDS = 300


def _parse_header(signature_header: str) -> tuple[str | None, list[str]]:
    """Split ``t=<ts>,v1=<sig>[,v1=<sig>...]`` into (timestamp, v1 signatures)."""
    timestamp = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp = value
        elif key == "v1":
            # Multiple v1 signatures are sent during secret rotation
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """Return the hex HMAC-SHA256 Stripe computes over ``{timestamp}.{body}``."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a Stripe-Signature header against the raw request body.

    Args:
        body: Raw request body bytes, untouched
        signature_header: Value of the Stripe-Signature header
        secret: Webhook signing secret (whsec_...)
        tolerance: Maximum allowed clock difference in seconds
        now: Current epoch time, for tests

    Raises:
        AuthenticationError: if the signature is missing, malformed,
            outside the tolerance window, or does not match.
    """
    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
        raise AuthenticationError("webhook secret not configured")
    if not signature_header:
        raise AuthenticationError("missing signature header")

    timestamp_str, signatures = _parse_header(signature_header)
    if not timestamp_str:
        raise AuthenticationError("signature header has no timestamp")

    try:
        timestamp = int(timestamp_str)
    except (ValueError, TypeError):
        raise AuthenticationError("signature timestamp is not an integer") from None

    if not signatures:
        raise AuthenticationError("signature header has no v1 signature")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
        raise AuthenticationError("signature timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise AuthenticationError("no matching v1 signature")
