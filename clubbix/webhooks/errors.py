"""Typed failures raised by the webhook pipeline.

Lower layers raise these; the engine turns them into a ``ProcessingResult``
and only the HTTP handler decides status codes and log severity.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook pipeline failures."""


class ConfigurationError(WebhookError):
    """Required configuration is missing or malformed (startup-fatal)."""


class AuthenticationError(WebhookError):
    """Signature missing, malformed, stale, or not matching the secret."""


class NormalizationError(WebhookError):
    """Provider payload cannot be mapped to a domain event.

    Acknowledged to the provider: redelivering the same payload won't fix it.
    """

    def __init__(self, message: str, *, event_id: str = "", event_type: str = ""):
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(message)


class TransientError(WebhookError):
    """Temporary datastore or network failure; safe to retry."""


class ConflictError(TransientError):
    """A conditional write lost a race against a concurrent writer."""


class FatalError(WebhookError):
    """Permission, configuration or programming error; not retried."""
