"""Subscription state machine — (entitlement, lifecycle event) -> transition.

This is the only place raw gateway subscription statuses are interpreted.
Every rule is a pure function of its inputs so the activation policy can
be tested without storage or HTTP.

Rules:
- created/updated, gateway status active or trialing -> plan from price, active
- created/updated, incomplete with payment settling (confirmation succeeded
  or awaiting confirmation, or none yet but a payment method is attached)
  -> treated as active
- created/updated, any other incomplete status -> no change
- created/updated, past_due or unpaid -> past_due, plan kept
- created/updated, canceled -> free / canceled, renewal cleared
- deleted -> free / inactive, renewal cleared
- invoice payment failed -> past_due, plan kept
- invoice paid, trial ending, unknown types -> no change
- checkout completed -> link gateway references to the tenant only

Events that name a subscription other than the tenant's current one concern
a superseded subscription and are ignored. A different subscription takes
over only through a created event, or once the current one is inactive or
canceled.
"""

from __future__ import annotations

from src.billing.plans import PlanCatalog
from src.core.constants import (
    GW_ACTIVE_STATUSES,
    GW_CANCELED,
    GW_DELINQUENT_STATUSES,
    GW_INCOMPLETE,
    GW_PAYMENT_SETTLING_STATUSES,
)
from src.core.logging import get_logger
from src.core.types import (
    Entitlement,
    EventType,
    LifecycleEvent,
    LifecycleStatus,
    PlanTier,
    Transition,
)

log = get_logger(__name__)

SUBSCRIPTION_CHANGE_EVENTS = frozenset({
    EventType.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED,
})
RELEASED_STATUSES = frozenset({LifecycleStatus.INACTIVE, LifecycleStatus.CANCELED})


def payment_is_settling(event: LifecycleEvent) -> bool:
    """Whether an incomplete subscription should be activated optimistically."""
    if event.payment_status is not None:
        return event.payment_status in GW_PAYMENT_SETTLING_STATUSES
    return event.payment_method_attached


def _is_superseded(current: Entitlement, event: LifecycleEvent) -> bool:
    return (
        current.subscription_ref is not None
        and event.subscription_ref is not None
        and event.subscription_ref != current.subscription_ref
    )


def _may_take_over(current: Entitlement, event: LifecycleEvent) -> bool:
    """Whether an activation for another subscription may replace the current one."""
    return (
        event.event_type == EventType.SUBSCRIPTION_CREATED
        or current.status in RELEASED_STATUSES
    )


class SubscriptionStateMachine:
    """Maps lifecycle events onto entitlement transitions."""

    def __init__(self, catalog: PlanCatalog) -> None:
        self._catalog = catalog

    def transition(self, current: Entitlement, event: LifecycleEvent) -> Transition | None:
        """Transition for ``event``, or None when it has no entitlement effect."""
        if event.event_type in SUBSCRIPTION_CHANGE_EVENTS:
            return self._subscription_changed(current, event)
        if event.event_type == EventType.SUBSCRIPTION_DELETED:
            if _is_superseded(current, event):
                return self._superseded(current, event)
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                plan=PlanTier.FREE,
                status=LifecycleStatus.INACTIVE,
                clear_renewal=True,
            )
        if event.event_type == EventType.INVOICE_FAILED:
            if _is_superseded(current, event):
                return self._superseded(current, event)
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                status=LifecycleStatus.PAST_DUE,
            )
        if event.event_type == EventType.CHECKOUT_COMPLETED:
            if not (event.customer_ref or event.subscription_ref):
                return None
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
                advances_clock=False,
            )
        # invoice paid, trial ending and unknown types carry no entitlement change
        return None

    def next_entitlement(self, current: Entitlement, event: LifecycleEvent) -> Entitlement:
        """Pure composition: the entitlement after ``event`` is applied."""
        change = self.transition(current, event)
        if change is None:
            return current
        return change.applied_to(current)

    def _subscription_changed(
        self, current: Entitlement, event: LifecycleEvent
    ) -> Transition | None:
        status = (event.gateway_status or "").lower()

        if status in GW_ACTIVE_STATUSES or (
            status == GW_INCOMPLETE and payment_is_settling(event)
        ):
            if _is_superseded(current, event) and not _may_take_over(current, event):
                return self._superseded(current, event)
            plan = self._catalog.plan_for_price(event.price_ref)
            if plan is None:
                log.warning(
                    "unknown_price_ref",
                    event_id=event.event_id,
                    price_ref=event.price_ref,
                    tenant_id=current.tenant_id,
                )
                return None
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                plan=plan,
                status=LifecycleStatus.ACTIVE,
                renewal_at=event.current_period_end,
                subscription_ref=event.subscription_ref,
                customer_ref=event.customer_ref,
            )

        if status == GW_INCOMPLETE:
            log.info(
                "subscription_incomplete_not_activated",
                event_id=event.event_id,
                tenant_id=current.tenant_id,
                payment_status=event.payment_status,
            )
            return None

        if status in GW_DELINQUENT_STATUSES:
            if _is_superseded(current, event):
                return self._superseded(current, event)
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                status=LifecycleStatus.PAST_DUE,
            )

        if status == GW_CANCELED:
            if _is_superseded(current, event):
                return self._superseded(current, event)
            return Transition(
                event_id=event.event_id,
                event_at=event.occurred_at,
                plan=PlanTier.FREE,
                status=LifecycleStatus.CANCELED,
                clear_renewal=True,
            )

        log.info(
            "subscription_status_without_effect",
            event_id=event.event_id,
            gateway_status=status,
        )
        return None

    @staticmethod
    def _superseded(current: Entitlement, event: LifecycleEvent) -> None:
        log.info(
            "event_for_superseded_subscription",
            event_id=event.event_id,
            tenant_id=current.tenant_id,
            event_subscription=event.subscription_ref,
            current_subscription=current.subscription_ref,
        )
        return None
