"""Gateway event parsing and the processed-event log.

Stripe delivers events as ``{"id", "type", "created", "data": {"object"}}``.
``parse_event`` reduces one to a ``LifecycleEvent`` holding only the fields
the engine reads. Subscription, invoice and checkout objects differ across
Stripe API versions, so nested fields are looked up in both the older and
newer locations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from src.core import constants as c
from src.core.exceptions import MalformedEventError
from src.core.logging import get_logger
from src.core.types import EventType, LifecycleEvent, ProcessedEvent, Receipt

log = get_logger(__name__)

EVENT_TYPES: dict[str, EventType] = {
    c.EVT_SUBSCRIPTION_CREATED: EventType.SUBSCRIPTION_CREATED,
    c.EVT_SUBSCRIPTION_UPDATED: EventType.SUBSCRIPTION_UPDATED,
    c.EVT_SUBSCRIPTION_DELETED: EventType.SUBSCRIPTION_DELETED,
    c.EVT_INVOICE_PAID: EventType.INVOICE_PAID,
    "invoice.paid": EventType.INVOICE_PAID,
    c.EVT_INVOICE_FAILED: EventType.INVOICE_FAILED,
    c.EVT_TRIAL_WILL_END: EventType.TRIAL_WILL_END,
    c.EVT_CHECKOUT_COMPLETED: EventType.CHECKOUT_COMPLETED,
}

SUBSCRIPTION_OBJECT_EVENTS = frozenset({
    EventType.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED,
    EventType.SUBSCRIPTION_DELETED,
    EventType.TRIAL_WILL_END,
})
INVOICE_OBJECT_EVENTS = frozenset({EventType.INVOICE_PAID, EventType.INVOICE_FAILED})


def _event_time(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        msg = f"invalid epoch timestamp: {value!r}"
        raise MalformedEventError(msg) from exc


def _from_epoch(value: Any) -> datetime | None:
    return None if value is None else _event_time(value)


def _ref(value: Any) -> str | None:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return str(value)


def _first_item(sub: dict[str, Any]) -> dict[str, Any]:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items and isinstance(items[0], dict) else {}


def _cents(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(int(value)) / Decimal(100)


def _subscription_fields(sub: dict[str, Any]) -> dict[str, Any]:
    item = _first_item(sub)
    period_end = sub.get("current_period_end", item.get("current_period_end"))

    payment_status: str | None = None
    invoice = sub.get("latest_invoice")
    if isinstance(invoice, dict):
        intent = invoice.get("payment_intent")
        if isinstance(intent, dict):
            payment_status = intent.get("status")

    return {
        "subscription_ref": _ref(sub.get("id")),
        "customer_ref": _ref(sub.get("customer")),
        "price_ref": _ref(item.get("price")),
        "gateway_status": sub.get("status"),
        "payment_status": payment_status,
        "payment_method_attached": bool(sub.get("default_payment_method")),
        "current_period_end": _from_epoch(period_end),
    }


def _invoice_fields(invoice: dict[str, Any]) -> dict[str, Any]:
    subscription = invoice.get("subscription")
    if subscription is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    paid = invoice.get("amount_paid")
    amount = paid if paid else invoice.get("amount_due")
    return {
        "subscription_ref": _ref(subscription),
        "customer_ref": _ref(invoice.get("customer")),
        "invoice_ref": _ref(invoice.get("id")),
        "amount": _cents(amount),
        "currency": invoice.get("currency"),
    }


def _checkout_fields(session: dict[str, Any]) -> dict[str, Any]:
    return {
        "subscription_ref": _ref(session.get("subscription")),
        "customer_ref": _ref(session.get("customer")),
        "client_reference_id": session.get("client_reference_id"),
    }


def parse_event(payload: dict[str, Any]) -> LifecycleEvent:
    """Reduce a verified gateway event to a LifecycleEvent.

    Raises MalformedEventError when required envelope fields are missing.
    Unrecognised event types parse to ``EventType.UNKNOWN``.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError("event payload is not a JSON object")

    event_id = payload.get("id")
    raw_type = payload.get("type")
    created = payload.get("created")
    data = payload.get("data")
    obj = data.get("object") if isinstance(data, dict) else None

    missing = [
        name
        for name, value in (("id", event_id), ("type", raw_type), ("created", created))
        if not value
    ]
    if missing or not isinstance(obj, dict):
        if not isinstance(obj, dict):
            missing.append("data.object")
        msg = f"event is missing required fields: {', '.join(missing)}"
        raise MalformedEventError(msg, {"event_id": event_id, "missing": missing})

    event_type = EVENT_TYPES.get(str(raw_type), EventType.UNKNOWN)

    fields: dict[str, Any] = {}
    try:
        if event_type in SUBSCRIPTION_OBJECT_EVENTS:
            fields = _subscription_fields(obj)
        elif event_type in INVOICE_OBJECT_EVENTS:
            fields = _invoice_fields(obj)
        elif event_type == EventType.CHECKOUT_COMPLETED:
            fields = _checkout_fields(obj)
    except (AttributeError, TypeError, ValueError) as exc:
        msg = f"cannot read {raw_type} object: {exc}"
        raise MalformedEventError(msg, {"event_id": event_id}) from exc

    return LifecycleEvent(
        event_id=str(event_id),
        event_type=event_type,
        raw_type=str(raw_type),
        occurred_at=_event_time(created),
        **fields,
    )


def event_to_dict(event: LifecycleEvent) -> dict[str, Any]:
    """JSON-safe form of a parsed event, for parking it until it can be applied."""
    data = asdict(event)
    data["event_type"] = event.event_type.value
    data["occurred_at"] = event.occurred_at.isoformat()
    if event.current_period_end is not None:
        data["current_period_end"] = event.current_period_end.isoformat()
    if event.amount is not None:
        data["amount"] = str(event.amount)
    return data


def event_from_dict(data: dict[str, Any]) -> LifecycleEvent:
    fields = dict(data)
    fields["event_type"] = EventType(fields["event_type"])
    fields["occurred_at"] = datetime.fromisoformat(fields["occurred_at"])
    if fields.get("current_period_end"):
        fields["current_period_end"] = datetime.fromisoformat(fields["current_period_end"])
    if fields.get("amount") is not None:
        fields["amount"] = Decimal(fields["amount"])
    return LifecycleEvent(**fields)


# ── Processed-event log ──────────────────────────────────────────


class ProcessedEventLog(ABC):
    """Durable record of handled event ids, payment receipts and parked events."""

    @abstractmethod
    async def is_processed(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_processed(self, record: ProcessedEvent) -> None:
        """Record an event id as handled. Recording the same id twice is a no-op."""
        ...

    @abstractmethod
    async def get(self, event_id: str) -> ProcessedEvent | None:
        ...

    @abstractmethod
    async def record_receipt(self, receipt: Receipt) -> None:
        """Store an invoice receipt; re-recording the same invoice is a no-op."""
        ...

    @abstractmethod
    async def list_receipts(self, tenant_id: str) -> list[Receipt]:
        ...

    @abstractmethod
    async def park(self, event: LifecycleEvent) -> None:
        """Hold an event no tenant could be resolved for. Parking twice is a no-op."""
        ...

    @abstractmethod
    async def parked_for(
        self, subscription_ref: str | None, customer_ref: str | None
    ) -> list[LifecycleEvent]:
        """Parked events naming either reference, oldest first."""
        ...

    @abstractmethod
    async def discard_parked(self, event_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""


class InMemoryProcessedEventLog(ProcessedEventLog):
    def __init__(self) -> None:
        self._events: dict[str, ProcessedEvent] = {}
        self._receipts: dict[str, Receipt] = {}
        self._parked: dict[str, LifecycleEvent] = {}

    async def is_processed(self, event_id: str) -> bool:
        return event_id in self._events

    async def mark_processed(self, record: ProcessedEvent) -> None:
        self._events.setdefault(record.event_id, record)

    async def get(self, event_id: str) -> ProcessedEvent | None:
        return self._events.get(event_id)

    async def record_receipt(self, receipt: Receipt) -> None:
        self._receipts.setdefault(receipt.invoice_ref, receipt)

    async def list_receipts(self, tenant_id: str) -> list[Receipt]:
        return sorted(
            (r for r in self._receipts.values() if r.tenant_id == tenant_id),
            key=lambda r: r.paid_at,
            reverse=True,
        )

    async def park(self, event: LifecycleEvent) -> None:
        self._parked.setdefault(event.event_id, event)

    async def parked_for(
        self, subscription_ref: str | None, customer_ref: str | None
    ) -> list[LifecycleEvent]:
        matches = [
            e
            for e in self._parked.values()
            if (subscription_ref and e.subscription_ref == subscription_ref)
            or (customer_ref and e.customer_ref == customer_ref)
        ]
        return sorted(matches, key=lambda e: e.occurred_at)

    async def discard_parked(self, event_id: str) -> None:
        self._parked.pop(event_id, None)
