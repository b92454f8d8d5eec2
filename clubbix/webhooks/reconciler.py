"""State reconciler: (current record, domain event) -> (next record, action).

Pure: no I/O, no clock. Ordering rule for every record-mutating event:
the event is applied only when no record exists, or its provider timestamp
is not older than the record's ``reconciled_at``. Equal timestamps are
broken by event id; the lexically greater id wins. An event whose id is
already the record's ``source_event_id`` is a replay and changes nothing.

Events without an ordering precondition (checkout, subscription creation,
payment failure) that arrive late do not move status or ``reconciled_at``,
but still fill fields the record lacks: ids, plan, billing cycle, and a
provider period in place of a missing or synthesized one.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from clubbix.webhooks.events import (
    CheckoutCompleted,
    CheckoutExpired,
    CheckoutMode,
    DomainEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChange,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionStatus,
    SubscriptionUpdated,
    Unrecognized,
)
from clubbix.webhooks.records import Action, ActionType, SubscriptionRecord


class ReconcileOutcome(StrEnum):
    APPLIED = "applied"  # record changes
    AUDITED = "audited"  # action only, record untouched
    STALE = "stale"  # older than the stored record
    REPLAYED = "replayed"  # event already reflected in the record
    BACKFILLED = "backfilled"  # older event; only fills gaps in the record
    IGNORED = "ignored"  # unrecognized event


@dataclass(frozen=True)
class Reconciliation:
    """Result of reconciling one event.

    ``record`` is the full next record to persist, or None when nothing
    should be written.
    """

    outcome: ReconcileOutcome
    record: SubscriptionRecord | None = None
    action: Action | None = None
    reason: str = ""


def supersedes(event: DomainEvent, record: SubscriptionRecord) -> bool:
    """True if *event* is not older than the event that produced *record*."""
    if event.timestamp != record.reconciled_at:
        return event.timestamp > record.reconciled_at
    # Arbitrary but reproducible tie-break
    return event.event_id >= record.source_event_id


def _action(
    action_type: ActionType, event: DomainEvent, record: SubscriptionRecord | None, **extra: Any
) -> Action:
    fields: dict[str, Any] = {
        "subscription_id": record.subscription_id if record else event.subscription_id,
        "user_id": event.user_id or (record.user_id if record else None),
        "club_id": event.club_id,
    }
    fields.update(extra)
    return Action(type=action_type, fields=fields)


def _backfill(current: SubscriptionRecord, event: DomainEvent) -> SubscriptionRecord | None:
    """Copy what *event* knows and *current* lacks; None if nothing to add."""
    changes: dict[str, Any] = {}
    for name in ("subscription_id", "plan", "billing_cycle", "user_id"):
        value = getattr(event, name)
        if value and getattr(current, name) is None:
            changes[name] = value

    period = event.period
    if period is not None and not period.synthesized:
        if current.current_period_start is None or current.period_synthesized:
            changes.update(
                current_period_start=period.start,
                current_period_end=period.end,
                period_synthesized=False,
            )

    if not changes:
        return None
    return dataclasses.replace(current, version=current.version + 1, **changes)


def _transition(
    current: SubscriptionRecord | None,
    event: DomainEvent,
    status: SubscriptionStatus | None,
    action_type: ActionType,
    *,
    default_status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE,
    ordered: bool = False,
    **action_extra: Any,
) -> Reconciliation:
    if current is not None:
        if event.event_id == current.source_event_id:
            return Reconciliation(
                ReconcileOutcome.REPLAYED, reason=f"{event.event_id} already applied"
            )
        if not supersedes(event, current):
            # Ordered events are dropped; the rest may still fill gaps
            filled = None if ordered else _backfill(current, event)
            if filled is not None:
                action = _action(
                    action_type, event, filled, status=filled.status.value, **action_extra
                )
                return Reconciliation(
                    ReconcileOutcome.BACKFILLED,
                    record=filled,
                    action=action,
                    reason=f"{event.event_id}@{event.timestamp} only filled missing fields",
                )
            return Reconciliation(
                ReconcileOutcome.STALE,
                reason=(
                    f"{event.event_id}@{event.timestamp} older than "
                    f"{current.source_event_id}@{current.reconciled_at}"
                ),
            )

    instant = datetime.fromtimestamp(event.timestamp, tz=UTC)

    period = event.period
    if period is not None and period.synthesized and current is not None:
        if current.current_period_start is not None:
            # A provider-supplied period outranks a synthesized one
            period = None

    if isinstance(event, SubscriptionChange):
        cancel_at_period_end = event.cancel_at_period_end
    else:
        cancel_at_period_end = current.cancel_at_period_end if current else False

    if current is None:
        record = SubscriptionRecord(
            club_id=event.club_id or "",
            status=status or default_status,
            created_at=instant,
            updated_at=instant,
            source_event_id=event.event_id,
            reconciled_at=event.timestamp,
            version=1,
            subscription_id=event.subscription_id,
            plan=event.plan,
            billing_cycle=event.billing_cycle,
            current_period_start=period.start if period else None,
            current_period_end=period.end if period else None,
            cancel_at_period_end=cancel_at_period_end,
            user_id=event.user_id,
            period_synthesized=period.synthesized if period else False,
        )
    else:
        changes: dict[str, Any] = {
            "status": status or current.status,
            "updated_at": max(current.updated_at, instant),
            "source_event_id": event.event_id,
            "reconciled_at": event.timestamp,
            "version": current.version + 1,
            "subscription_id": event.subscription_id or current.subscription_id,
            "plan": event.plan or current.plan,
            "billing_cycle": event.billing_cycle or current.billing_cycle,
            "cancel_at_period_end": cancel_at_period_end,
            "user_id": event.user_id or current.user_id,
        }
        if period is not None:
            changes.update(
                current_period_start=period.start,
                current_period_end=period.end,
                period_synthesized=period.synthesized,
            )
        record = dataclasses.replace(current, **changes)

    action = _action(action_type, event, record, status=record.status.value, **action_extra)
    return Reconciliation(ReconcileOutcome.APPLIED, record=record, action=action)


def _checkout_completed(current: SubscriptionRecord | None, event: CheckoutCompleted) -> Reconciliation:
    if event.mode is not CheckoutMode.SUBSCRIPTION:
        action = _action(
            ActionType.UPDATE_PAYMENT_STATUS,
            event,
            None,
            status=event.payment_status,
            session_id=event.session_id,
            amount=event.amount,
            currency=event.currency,
        )
        return Reconciliation(ReconcileOutcome.AUDITED, action=action)
    return _transition(
        current,
        event,
        SubscriptionStatus.ACTIVE,
        ActionType.UPDATE_SUBSCRIPTION_STATUS,
        session_id=event.session_id,
    )


def _checkout_expired(current: SubscriptionRecord | None, event: CheckoutExpired) -> Reconciliation:
    return _transition(
        current,
        event,
        SubscriptionStatus.INCOMPLETE,
        ActionType.UPDATE_SUBSCRIPTION_STATUS,
        session_id=event.session_id,
    )


def _subscription_created(current: SubscriptionRecord | None, event: SubscriptionCreated) -> Reconciliation:
    return _transition(
        current,
        event,
        event.status,
        ActionType.CREATE_SUBSCRIPTION,
        default_status=SubscriptionStatus.ACTIVE,
    )


def _subscription_updated(current: SubscriptionRecord | None, event: SubscriptionUpdated) -> Reconciliation:
    return _transition(current, event, event.status, ActionType.UPDATE_SUBSCRIPTION, ordered=True)


def _subscription_deleted(current: SubscriptionRecord | None, event: SubscriptionDeleted) -> Reconciliation:
    return _transition(
        current, event, SubscriptionStatus.CANCELLED, ActionType.CANCEL_SUBSCRIPTION, ordered=True
    )


def _payment_succeeded(current: SubscriptionRecord | None, event: InvoicePaymentSucceeded) -> Reconciliation:
    # Audit only: a successful payment never changes the stored status
    action = _action(
        ActionType.RECORD_PAYMENT,
        event,
        None,
        invoice_id=event.invoice_id,
        amount=event.amount,
        currency=event.currency,
    )
    return Reconciliation(ReconcileOutcome.AUDITED, action=action)


def _payment_failed(current: SubscriptionRecord | None, event: InvoicePaymentFailed) -> Reconciliation:
    return _transition(
        current,
        event,
        SubscriptionStatus.PAST_DUE,
        ActionType.UPDATE_SUBSCRIPTION_STATUS,
        invoice_id=event.invoice_id,
    )


def _unrecognized(current: SubscriptionRecord | None, event: Unrecognized) -> Reconciliation:
    return Reconciliation(ReconcileOutcome.IGNORED, reason=f"unhandled type {event.event_type}")


_TRANSITIONS: dict[type[DomainEvent], Callable[[SubscriptionRecord | None, Any], Reconciliation]] = {
    CheckoutCompleted: _checkout_completed,
    CheckoutExpired: _checkout_expired,
    SubscriptionCreated: _subscription_created,
    SubscriptionUpdated: _subscription_updated,
    SubscriptionDeleted: _subscription_deleted,
    InvoicePaymentSucceeded: _payment_succeeded,
    InvoicePaymentFailed: _payment_failed,
    Unrecognized: _unrecognized,
}


def reconcile(current: SubscriptionRecord | None, event: DomainEvent) -> Reconciliation:
    """Compute the next record and action for *event* against *current*."""
    try:
        transition = _TRANSITIONS[type(event)]
    except KeyError:
        raise TypeError(f"no reconciliation rule for {type(event).__name__}") from None
    return transition(current, event)
