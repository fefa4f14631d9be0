"""System-wide shared types — the single source of truth for all data structures."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from uuid_extensions import uuid7


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────

class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    AGENCY = "agency"

    @classmethod
    def parse(cls, value: str | PlanTier) -> PlanTier | None:
        """Return the tier for ``value``, or None when it is not a known tier."""
        try:
            return cls(value)
        except ValueError:
            return None


class LifecycleStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"
    PENDING_PAYMENT = "pending_payment"


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    TRIAL_WILL_END = "trial_will_end"
    CHECKOUT_COMPLETED = "checkout_completed"
    UNKNOWN = "unknown"


class OverageStatus(str, Enum):
    PENDING = "pending"
    BILLED = "billed"


class EventOutcome(str, Enum):
    APPLIED = "applied"          # entitlement changed
    UNCHANGED = "unchanged"      # valid event, no entitlement effect
    STALE = "stale"              # older than the last applied event
    DUPLICATE = "duplicate"      # event id already processed
    UNRESOLVED = "unresolved"    # no tenant for the gateway references
    IGNORED = "ignored"          # event type we do not handle


ENTITLED_STATUSES = frozenset({LifecycleStatus.ACTIVE, LifecycleStatus.TRIALING})


# ── Entitlement ──────────────────────────────────────────────────

@dataclass
class Entitlement:
    """What a tenant may do right now: plan, lifecycle status, renewal.

    ``plan`` holds the raw stored string when it is not a known tier, so the
    gate can fail closed instead of silently mapping it to some tier.
    """

    tenant_id: str
    plan: PlanTier | str = PlanTier.FREE
    status: LifecycleStatus = LifecycleStatus.INACTIVE
    renewal_at: datetime | None = None
    subscription_ref: str | None = None
    customer_ref: str | None = None
    overage_enabled: bool = False
    last_event_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def tier(self) -> PlanTier | None:
        return PlanTier.parse(self.plan)

    @property
    def is_paid_tier(self) -> bool:
        return self.tier is not PlanTier.FREE

    @property
    def has_active_payment(self) -> bool:
        return self.status in ENTITLED_STATUSES


@dataclass(frozen=True)
class Transition:
    """Fields a lifecycle event changes on an entitlement.

    ``None`` means "leave as is"; ``clear_renewal`` is the only way to null
    the renewal date. Transitions with ``advances_clock`` set are the
    state-bearing ones that move ``last_event_at`` forward and are subject
    to the ordering check.
    """

    event_id: str
    event_at: datetime
    plan: PlanTier | None = None
    status: LifecycleStatus | None = None
    renewal_at: datetime | None = None
    clear_renewal: bool = False
    subscription_ref: str | None = None
    customer_ref: str | None = None
    advances_clock: bool = True

    def is_stale_for(self, current: Entitlement) -> bool:
        if not self.advances_clock or current.last_event_at is None:
            return False
        return self.event_at < current.last_event_at

    def applied_to(self, current: Entitlement) -> Entitlement:
        """Pure: the entitlement that results from applying this transition."""
        if self.is_stale_for(current):
            return current
        changes: dict[str, object] = {}
        if self.plan is not None:
            changes["plan"] = self.plan
        if self.status is not None:
            changes["status"] = self.status
        if self.clear_renewal:
            changes["renewal_at"] = None
        elif self.renewal_at is not None:
            changes["renewal_at"] = self.renewal_at
        if self.subscription_ref is not None:
            changes["subscription_ref"] = self.subscription_ref
        if self.customer_ref is not None:
            changes["customer_ref"] = self.customer_ref
        if self.advances_clock:
            changes["last_event_at"] = self.event_at
        return replace(current, **changes)


# ── Usage ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IncrementResult:
    """Outcome of one atomic ledger increment."""

    allowed_count: int  # units of the request that fit under the limit
    new_total: int      # counter value after the call


@dataclass
class OverageRecord:
    """Append-only fact: units consumed past quota and their unit price."""

    tenant_id: str
    units: int
    unit_price: Decimal
    period_key: str
    status: OverageStatus = OverageStatus.PENDING
    record_id: str = field(default_factory=lambda: str(uuid7()))
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.units <= 0:
            msg = f"overage units must be positive: {self.units}"
            raise ValueError(msg)
        if self.unit_price < 0:
            msg = f"overage unit price cannot be negative: {self.unit_price}"
            raise ValueError(msg)

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.units


# ── Gateway Events ───────────────────────────────────────────────

@dataclass(frozen=True)
class LifecycleEvent:
    """A verified gateway event, reduced to the fields the engine reads."""

    event_id: str
    event_type: EventType
    raw_type: str
    occurred_at: datetime
    subscription_ref: str | None = None
    customer_ref: str | None = None
    price_ref: str | None = None
    gateway_status: str | None = None
    payment_status: str | None = None
    payment_method_attached: bool = False
    current_period_end: datetime | None = None
    client_reference_id: str | None = None
    invoice_ref: str | None = None
    amount: Decimal | None = None
    currency: str | None = None


@dataclass(frozen=True)
class Receipt:
    invoice_ref: str
    tenant_id: str
    amount: Decimal
    currency: str
    paid_at: datetime


@dataclass(frozen=True)
class ProcessedEvent:
    event_id: str
    event_type: str
    outcome: EventOutcome
    tenant_id: str | None = None
    processed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AdminOverride:
    """Audit record of an entitlement change made outside the state machine."""

    tenant_id: str
    actor: str
    reason: str
    old_plan: str
    old_status: str
    new_plan: str
    new_status: str
    override_id: str = field(default_factory=lambda: str(uuid7()))
    created_at: datetime = field(default_factory=utcnow)
