"""Environment-driven settings for the webhook service."""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clubbix.webhooks.errors import ConfigurationError

_DEFAULT_REDIS_URL = "redis://localhost:6381/0"


class WebhookSettings(BaseSettings):
    """Runtime configuration for webhook reconciliation.

    Every field is read from the environment variable named by its alias.
    Blank variables fall back to the default.
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        env_ignore_empty=True,
        str_strip_whitespace=True,
    )

    webhook_secret: str = Field(min_length=1, validation_alias="STRIPE_WEBHOOK_SECRET")
    stripe_secret_key: str = Field("", validation_alias="STRIPE_SECRET_KEY")
    redis_url: str = Field(_DEFAULT_REDIS_URL, validation_alias="REDIS_URL")

    signature_tolerance_seconds: int = Field(
        300, ge=1, validation_alias="WEBHOOK_SIGNATURE_TOLERANCE_SECONDS"
    )
    # 0 keeps ledger entries indefinitely
    ledger_replay_window_days: int = Field(30, ge=0, validation_alias="LEDGER_REPLAY_WINDOW_DAYS")
    ledger_reservation_ttl_seconds: int = Field(
        300, ge=1, validation_alias="LEDGER_RESERVATION_TTL_SECONDS"
    )

    persistence_max_attempts: int = Field(3, ge=1, validation_alias="PERSISTENCE_MAX_ATTEMPTS")
    persistence_backoff_base_ms: int = Field(200, ge=1, validation_alias="PERSISTENCE_BACKOFF_BASE_MS")
    persistence_attempt_timeout_seconds: float = Field(
        2.0, gt=0, validation_alias="PERSISTENCE_ATTEMPT_TIMEOUT_SECONDS"
    )
    persistence_retry_budget_seconds: float = Field(
        10.0, gt=0, validation_alias="PERSISTENCE_RETRY_BUDGET_SECONDS"
    )

    actions_stream: str = Field("clubbix:billing:actions", min_length=1, validation_alias="ACTIONS_STREAM")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def ledger_replay_window_seconds(self) -> int | None:
        """Ledger TTL in seconds, or None to retain entries indefinitely."""
        if self.ledger_replay_window_days == 0:
            return None
        return self.ledger_replay_window_days * 86400

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WebhookSettings:
        """Build settings from the process environment, or from *environ*.

        Raises:
            ConfigurationError: STRIPE_WEBHOOK_SECRET is missing, or an
                option is malformed or out of range.
        """
        try:
            if environ is None:
                return cls()
            return cls.model_validate({k: v for k, v in environ.items() if v.strip()})
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigurationError(f"invalid configuration: {problems}") from None
