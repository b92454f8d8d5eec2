"""Persisted subscription record and the action descriptor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from clubbix.webhooks.events import SubscriptionStatus

# Record attribute -> datastore document field
_DOCUMENT_FIELDS: dict[str, str] = {
    "subscription_id": "subscriptionId",
    "plan": "plan",
    "billing_cycle": "billingCycle",
    "status": "status",
    "current_period_start": "currentPeriodStart",
    "current_period_end": "currentPeriodEnd",
    "cancel_at_period_end": "cancelAtPeriodEnd",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "source_event_id": "sourceEventId",
    "reconciled_at": "reconciledAt",
    "version": "version",
    "user_id": "userId",
    "period_synthesized": "periodSynthesized",
}

_INSTANT_FIELDS = {"current_period_start", "current_period_end", "created_at", "updated_at"}


@dataclass(frozen=True)
class SubscriptionRecord:
    """Reconciled subscription state for one club.

    ``reconciled_at`` is the provider timestamp of the event that produced
    this version; later events are only applied when they are not older.
    """

    club_id: str
    status: SubscriptionStatus
    created_at: datetime
    updated_at: datetime
    source_event_id: str
    reconciled_at: int
    version: int = 1
    subscription_id: str | None = None
    plan: str | None = None
    billing_cycle: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    user_id: str | None = None
    period_synthesized: bool = False

    def to_document(self) -> dict[str, Any]:
        """Datastore representation. Fields that are None are omitted so an
        upsert never clears a value written by someone else."""
        doc: dict[str, Any] = {}
        for attr, key in _DOCUMENT_FIELDS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if attr in _INSTANT_FIELDS:
                value = value.isoformat()
            elif attr == "status":
                value = value.value
            doc[key] = value
        return doc

    @classmethod
    def from_document(cls, club_id: str, doc: dict[str, Any]) -> SubscriptionRecord:
        kwargs: dict[str, Any] = {}
        for attr, key in _DOCUMENT_FIELDS.items():
            value = doc.get(key)
            if value is None:
                continue
            if attr in _INSTANT_FIELDS:
                value = datetime.fromisoformat(value)
            elif attr == "status":
                value = SubscriptionStatus(value)
            kwargs[attr] = value
        return cls(club_id=club_id, **kwargs)


class ActionType(StrEnum):
    UPDATE_SUBSCRIPTION_STATUS = "update_subscription_status"
    UPDATE_PAYMENT_STATUS = "update_payment_status"
    CREATE_SUBSCRIPTION = "create_subscription"
    UPDATE_SUBSCRIPTION = "update_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    RECORD_PAYMENT = "record_payment"


@dataclass(frozen=True)
class Action:
    """What a consumer without datastore access must now change."""

    type: ActionType
    fields: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type.value}
        out.update({k: v for k, v in self.fields.items() if v is not None})
        return out
