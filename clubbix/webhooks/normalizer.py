"""Event normalizer: maps Stripe event envelopes onto canonical domain events.

Metadata (club id, user id, plan, billing cycle) may live on different
objects depending on the event family. Precedence, per key:

1. metadata on the event's own object (session, subscription, invoice)
2. metadata embedded by Stripe for a related subscription
   (``subscription_data`` / ``subscription_details``)
3. metadata of the referenced subscription, fetched through the injected
   ``SubscriptionLookup`` (only when the club id is still unresolved)

Unknown event types become ``Unrecognized``; they are acknowledged, never
rejected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

import stripe

from clubbix.webhooks.errors import FatalError, NormalizationError, TransientError
from clubbix.webhooks.events import (
    CheckoutCompleted,
    CheckoutExpired,
    CheckoutMode,
    DomainEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    Period,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionStatus,
    SubscriptionUpdated,
    Unrecognized,
)

logger = logging.getLogger(__name__)

# Canonical field -> accepted metadata keys, in lookup order
_METADATA_KEYS: dict[str, tuple[str, ...]] = {
    "club_id": ("clubId", "club_id"),
    "user_id": ("userId", "user_id"),
    "plan": ("plan",),
    "billing_cycle": ("billingCycle", "billing_cycle"),
}

# Stripe subscription status -> persisted status
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "paused": SubscriptionStatus.INCOMPLETE,
}

_SUBSCRIPTION_EVENTS: dict[str, type[DomainEvent]] = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
}

_INVOICE_EVENTS: dict[str, type[DomainEvent]] = {
    "invoice.payment_succeeded": InvoicePaymentSucceeded,
    "invoice.paid": InvoicePaymentSucceeded,
    "invoice.payment_failed": InvoicePaymentFailed,
}

_CHECKOUT_EVENTS: dict[str, type[DomainEvent]] = {
    "checkout.session.completed": CheckoutCompleted,
    "checkout.session.expired": CheckoutExpired,
}


class SubscriptionLookup(Protocol):
    """Fetches metadata of a provider subscription by id."""

    def metadata_for(self, subscription_id: str) -> Mapping[str, Any]:
        """Return the subscription's metadata, or {} if it does not exist.

        Raises
        ------
        TransientError
            The provider could not be reached.
        FatalError
            Credentials are invalid or lack permission.
        """
        ...


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeSubscriptionLookup:
    """``SubscriptionLookup`` backed by an explicitly constructed StripeClient."""

    def __init__(self, client: stripe.StripeClient):
        self._client = client

    def metadata_for(self, subscription_id: str) -> Mapping[str, Any]:
        try:
            subscription = self._client.subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError:
            logger.warning("Stripe subscription %s not found", subscription_id)
            return {}
        except (stripe.AuthenticationError, stripe.PermissionError) as exc:
            raise FatalError(f"Stripe rejected credentials: {exc}") from exc
        except stripe.StripeError as exc:
            raise TransientError(f"Stripe lookup failed for {subscription_id}: {exc}") from exc
        return _as_dict(getattr(subscription, "metadata", None))


def _object_id(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, Mapping):
        value = value.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _minor_units(value: Any, field_name: str) -> int | None:
    """Amounts are integer minor currency units; floats are rejected."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise NormalizationError(f"{field_name} must be an integer amount, got {value!r}")
    return value


def _first_item(container: Any) -> Mapping[str, Any]:
    data = container.get("data") if isinstance(container, Mapping) else None
    if isinstance(data, list) and data and isinstance(data[0], Mapping):
        return data[0]
    return {}


def _epoch(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


class EventNormalizer:
    """Turns a verified, parsed Stripe event envelope into one DomainEvent.

    Parameters
    ----------
    lookup:
        Optional provider lookup for metadata inherited from a referenced
        subscription.
    clock:
        Returns the normalization instant (used for synthesized periods).
    """

    def __init__(
        self,
        lookup: SubscriptionLookup | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lookup = lookup
        self._clock = clock or (lambda: datetime.now(UTC))

    def normalize(self, envelope: Any) -> DomainEvent:
        if not isinstance(envelope, Mapping):
            raise NormalizationError("event payload is not a JSON object")

        event_id = envelope.get("id")
        event_type = envelope.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise NormalizationError("event has no id")
        if not isinstance(event_type, str) or not event_type:
            raise NormalizationError("event has no type", event_id=event_id)

        timestamp = _epoch(envelope.get("created"))
        if timestamp is None:
            raise NormalizationError(
                "event has no creation timestamp", event_id=event_id, event_type=event_type
            )

        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, Mapping) else None
        obj = obj if isinstance(obj, Mapping) else {}

        common = {"event_id": event_id, "event_type": event_type, "timestamp": timestamp}
        try:
            if event_type in _CHECKOUT_EVENTS:
                event = self._checkout(_CHECKOUT_EVENTS[event_type], obj, common)
            elif event_type in _SUBSCRIPTION_EVENTS:
                event = self._subscription(_SUBSCRIPTION_EVENTS[event_type], obj, common)
            elif event_type in _INVOICE_EVENTS:
                event = self._invoice(_INVOICE_EVENTS[event_type], obj, common)
            else:
                logger.info("Unrecognized Stripe event type: %s (%s)", event_type, event_id)
                return Unrecognized(**common)
        except NormalizationError as exc:
            exc.event_id = exc.event_id or event_id
            exc.event_type = exc.event_type or event_type
            raise

        if event.requires_club and not event.club_id:
            raise NormalizationError(
                f"{event_type} has no club id in metadata",
                event_id=event_id,
                event_type=event_type,
            )
        return event

    # -- metadata ---------------------------------------------------------

    def _metadata(
        self, layers: list[Any], subscription_id: str | None, *, inherit: bool = True
    ) -> dict[str, str | None]:
        resolved = self._resolve(layers)
        if inherit and resolved["club_id"] is None and subscription_id and self._lookup:
            inherited = self._lookup.metadata_for(subscription_id)
            fallback = self._resolve([inherited])
            for key, value in fallback.items():
                if resolved[key] is None:
                    resolved[key] = value
        return resolved

    @staticmethod
    def _resolve(layers: list[Any]) -> dict[str, str | None]:
        resolved: dict[str, str | None] = dict.fromkeys(_METADATA_KEYS)
        for name, keys in _METADATA_KEYS.items():
            for layer in layers:
                if not isinstance(layer, Mapping):
                    continue
                value = next(
                    (layer[k] for k in keys if layer.get(k) not in (None, "")), None
                )
                if value is not None and str(value).strip():
                    resolved[name] = str(value).strip()
                    break
        return resolved

    def _period(self, start: Any, end: Any) -> Period:
        start, end = _epoch(start), _epoch(end)
        if start is None or end is None:
            return Period.synthesize(self._clock())
        return Period.from_epoch(start, end)

    @staticmethod
    def _price_defaults(item: Mapping[str, Any]) -> tuple[str | None, str | None]:
        price = item.get("price")
        if not isinstance(price, Mapping):
            return None, None
        plan = price.get("lookup_key") or price.get("id")
        recurring = price.get("recurring")
        cycle = recurring.get("interval") if isinstance(recurring, Mapping) else None
        return plan, cycle

    # -- families ---------------------------------------------------------

    def _checkout(
        self, cls: type[DomainEvent], session: Mapping[str, Any], common: dict[str, Any]
    ) -> DomainEvent:
        subscription_id = _object_id(session.get("subscription"))
        subscription_data = session.get("subscription_data")
        meta = self._metadata(
            [
                session.get("metadata"),
                subscription_data.get("metadata") if isinstance(subscription_data, Mapping) else None,
            ],
            subscription_id,
        )
        fields: dict[str, Any] = dict(
            common,
            subscription_id=subscription_id,
            period=Period.synthesize(self._clock()),
            session_id=_object_id(session.get("id")),
            **meta,
        )
        if cls is CheckoutCompleted:
            raw_mode = session.get("mode") or CheckoutMode.SUBSCRIPTION.value
            try:
                mode = CheckoutMode(raw_mode)
            except ValueError:
                raise NormalizationError(f"unknown checkout mode {raw_mode!r}") from None
            fields.update(
                mode=mode,
                payment_status=session.get("payment_status"),
                amount=_minor_units(session.get("amount_total"), "amount_total"),
                currency=session.get("currency"),
            )
        return cls(**fields)

    def _subscription(
        self, cls: type[DomainEvent], subscription: Mapping[str, Any], common: dict[str, Any]
    ) -> DomainEvent:
        item = _first_item(subscription.get("items"))
        meta = self._metadata(
            [subscription.get("metadata")], _object_id(subscription.get("id")), inherit=False
        )
        plan, cycle = self._price_defaults(item)
        meta["plan"] = meta["plan"] or plan
        meta["billing_cycle"] = meta["billing_cycle"] or cycle

        start = subscription.get("current_period_start")
        end = subscription.get("current_period_end")
        if start is None or end is None:
            # Newer API versions moved the period onto subscription items
            start, end = item.get("current_period_start"), item.get("current_period_end")

        provider_status = subscription.get("status")
        status = _STATUS_MAP.get(provider_status) if isinstance(provider_status, str) else None
        if status is None and cls is not SubscriptionDeleted:
            logger.warning(
                "Unknown subscription status %r on %s, keeping stored status",
                provider_status,
                common["event_id"],
            )

        return cls(
            **common,
            subscription_id=_object_id(subscription.get("id")),
            period=self._period(start, end),
            status=status,
            provider_status=provider_status if isinstance(provider_status, str) else None,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            **meta,
        )

    def _invoice(
        self, cls: type[DomainEvent], invoice: Mapping[str, Any], common: dict[str, Any]
    ) -> DomainEvent:
        details = invoice.get("subscription_details")
        parent = invoice.get("parent")
        if not isinstance(details, Mapping) and isinstance(parent, Mapping):
            # Newer API versions nest subscription details under ``parent``
            details = parent.get("subscription_details")
        details = details if isinstance(details, Mapping) else {}

        subscription_id = _object_id(invoice.get("subscription")) or _object_id(
            details.get("subscription")
        )
        meta = self._metadata([invoice.get("metadata"), details.get("metadata")], subscription_id)

        line = _first_item(invoice.get("lines"))
        plan, cycle = self._price_defaults(line)
        meta["plan"] = meta["plan"] or plan
        meta["billing_cycle"] = meta["billing_cycle"] or cycle

        line_period = line.get("period") if isinstance(line.get("period"), Mapping) else {}
        amount_field = "amount_paid" if cls is InvoicePaymentSucceeded else "amount_due"

        return cls(
            **common,
            subscription_id=subscription_id,
            period=self._period(line_period.get("start"), line_period.get("end")),
            invoice_id=_object_id(invoice.get("id")),
            amount=_minor_units(invoice.get(amount_field), amount_field),
            currency=invoice.get("currency"),
            **meta,
        )
