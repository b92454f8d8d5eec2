"""Canonical domain events.

One class per reconciliation rule. Nothing downstream of the normalizer
reads the provider's freeform payload; it only sees these types.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar


class SubscriptionStatus(StrEnum):
    """Closed set of persisted subscription states."""

    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class CheckoutMode(StrEnum):
    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"
    SETUP = "setup"


@dataclass(frozen=True)
class Period:
    """Billing period boundaries.

    ``synthesized`` is True when the provider sent no period and the
    normalizer substituted the normalization instant.
    """

    start: datetime
    end: datetime
    synthesized: bool = False

    @classmethod
    def from_epoch(cls, start: int, end: int) -> Period:
        return cls(
            start=datetime.fromtimestamp(start, tz=UTC),
            end=datetime.fromtimestamp(end, tz=UTC),
        )

    @classmethod
    def synthesize(cls, now: datetime) -> Period:
        return cls(start=now, end=now, synthesized=True)


@dataclass(frozen=True)
class DomainEvent:
    """Fields shared by every canonical event."""

    event_id: str
    event_type: str
    timestamp: int
    subscription_id: str | None = None
    club_id: str | None = None
    user_id: str | None = None
    plan: str | None = None
    billing_cycle: str | None = None
    period: Period | None = None

    # Whether the event cannot be reconciled without a club id
    requires_club: ClassVar[bool] = True
    message: ClassVar[str] = "Event processed"

    def data(self) -> dict[str, Any]:
        """Summary of the event for the webhook response body."""
        data: dict[str, Any] = {
            "event_id": self.event_id,
            "subscription_id": self.subscription_id,
            "metadata": {"clubId": self.club_id, "userId": self.user_id},
            "plan": self.plan,
            "billing_cycle": self.billing_cycle,
        }
        if self.period is not None:
            data["current_period_start"] = int(self.period.start.timestamp())
            data["current_period_end"] = int(self.period.end.timestamp())
            data["period_synthesized"] = self.period.synthesized
        return data


@dataclass(frozen=True)
class CheckoutCompleted(DomainEvent):
    mode: CheckoutMode = CheckoutMode.SUBSCRIPTION
    session_id: str | None = None
    payment_status: str | None = None
    amount: int | None = None
    currency: str | None = None

    @property
    def message(self) -> str:  # type: ignore[override]
        if self.mode is CheckoutMode.SUBSCRIPTION:
            return "Subscription checkout completed successfully"
        return "Checkout completed successfully"

    def data(self) -> dict[str, Any]:
        data = super().data()
        data.update(
            session_id=self.session_id,
            mode=self.mode.value,
            payment_status=self.payment_status,
            amount_total=self.amount,
            currency=self.currency,
        )
        return data


@dataclass(frozen=True)
class CheckoutExpired(DomainEvent):
    session_id: str | None = None

    message: ClassVar[str] = "Checkout session expired"

    def data(self) -> dict[str, Any]:
        data = super().data()
        data["session_id"] = self.session_id
        return data


@dataclass(frozen=True)
class SubscriptionChange(DomainEvent):
    # None when the provider sent a status outside the known set
    status: SubscriptionStatus | None = None
    provider_status: str | None = None
    cancel_at_period_end: bool = False

    def data(self) -> dict[str, Any]:
        data = super().data()
        data.update(
            status=self.provider_status,
            cancel_at_period_end=self.cancel_at_period_end,
        )
        return data


@dataclass(frozen=True)
class SubscriptionCreated(SubscriptionChange):
    message: ClassVar[str] = "Subscription created successfully"


@dataclass(frozen=True)
class SubscriptionUpdated(SubscriptionChange):
    message: ClassVar[str] = "Subscription updated successfully"


@dataclass(frozen=True)
class SubscriptionDeleted(SubscriptionChange):
    message: ClassVar[str] = "Subscription cancelled"


@dataclass(frozen=True)
class InvoicePayment(DomainEvent):
    invoice_id: str | None = None
    amount: int | None = None
    currency: str | None = None

    def data(self) -> dict[str, Any]:
        data = super().data()
        data.update(invoice_id=self.invoice_id, amount=self.amount, currency=self.currency)
        return data


@dataclass(frozen=True)
class InvoicePaymentSucceeded(InvoicePayment):
    requires_club: ClassVar[bool] = False
    message: ClassVar[str] = "Payment succeeded"


@dataclass(frozen=True)
class InvoicePaymentFailed(InvoicePayment):
    message: ClassVar[str] = "Payment failed"


@dataclass(frozen=True)
class Unrecognized(DomainEvent):
    requires_club: ClassVar[bool] = False
    message: ClassVar[str] = "Event type not handled"


EVENT_TYPES: tuple[type[DomainEvent], ...] = (
    CheckoutCompleted,
    CheckoutExpired,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    Unrecognized,
)
