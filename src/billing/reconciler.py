"""Event reconciler — turns signed gateway deliveries into entitlement changes.

Handling order for one delivery:
1. verify the signature (fail closed)
2. skip event ids already processed
3. resolve the tenant from the gateway references; events no tenant matches
   are parked and replayed once a checkout binds their references
4. drop events older than the tenant's last applied event, else apply
5. record the event id, only after the entitlement write committed

A crash between 4 and 5 means the gateway redelivers and the same
transition is applied again, which leaves the entitlement unchanged.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import stripe

from src.billing.entitlements import EntitlementStore
from src.billing.events import ProcessedEventLog, parse_event
from src.billing.state_machine import SubscriptionStateMachine
from src.core.constants import DEFAULT_WEBHOOK_TOLERANCE
from src.core.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    MalformedEventError,
    TenantNotFoundError,
)
from src.core.logging import get_logger
from src.core.types import (
    Entitlement,
    EventOutcome,
    EventType,
    LifecycleEvent,
    ProcessedEvent,
    Receipt,
)

log = get_logger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Acknowledgement for one delivery. Every outcome here is a 2xx."""

    event_id: str
    event_type: str
    outcome: EventOutcome
    tenant_id: str | None = None
    entitlement: Entitlement | None = None


class EventReconciler:
    """Verifies, deduplicates, orders and applies gateway lifecycle events."""

    def __init__(
        self,
        entitlements: EntitlementStore,
        event_log: ProcessedEventLog,
        state_machine: SubscriptionStateMachine,
        webhook_secret: str,
        tolerance_seconds: int = DEFAULT_WEBHOOK_TOLERANCE,
    ) -> None:
        self._entitlements = entitlements
        self._events = event_log
        self._machine = state_machine
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """Check the signature and decode the JSON body."""
        if not self._secret:
            log.error("webhook_secret_not_configured")
            raise ConfigurationError("webhook signing secret is not configured")
        if not signature_header:
            log.warning("webhook_signature_missing")
            raise InvalidSignatureError("missing webhook signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEventError("webhook body is not UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(
                body, signature_header, self._secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            log.warning("webhook_signature_invalid", reason=str(exc))
            raise InvalidSignatureError(f"invalid webhook signature: {exc}") from exc

        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            log.warning("webhook_payload_invalid_json", reason=str(exc))
            raise MalformedEventError(f"invalid JSON payload: {exc}") from exc

    async def handle(self, payload: bytes, signature_header: str | None) -> ReconcileResult:
        """Full pipeline for one webhook delivery.

        Raises IntegrityError subclasses for deliveries that must be rejected
        and lets StorageError propagate so the gateway redelivers.
        """
        raw = self.verify(payload, signature_header)
        try:
            event = parse_event(raw)
        except MalformedEventError as exc:
            log.warning("webhook_payload_malformed", reason=str(exc), **exc.context)
            raise
        log.info("webhook_received", event_id=event.event_id, event_type=event.raw_type)
        return await self.reconcile(event)

    async def reconcile(self, event: LifecycleEvent) -> ReconcileResult:
        """Apply an already verified event (steps 2-5)."""
        if await self._events.is_processed(event.event_id):
            log.info("webhook_duplicate", event_id=event.event_id, event_type=event.raw_type)
            return ReconcileResult(event.event_id, event.raw_type, EventOutcome.DUPLICATE)

        if event.event_type == EventType.UNKNOWN:
            log.info("webhook_unhandled_type", event_id=event.event_id, event_type=event.raw_type)
            return await self._finish(event, EventOutcome.IGNORED)

        tenant = await self._resolve_tenant(event)
        if tenant is None:
            log.warning(
                "webhook_tenant_unresolved",
                event_id=event.event_id,
                event_type=event.raw_type,
                subscription_ref=event.subscription_ref,
                customer_ref=event.customer_ref,
            )
            if event.event_type != EventType.CHECKOUT_COMPLETED:
                await self._events.park(event)
            return await self._finish(event, EventOutcome.UNRESOLVED)

        outcome, entitlement = await self._apply(tenant, event)
        if event.event_type == EventType.CHECKOUT_COMPLETED and outcome == EventOutcome.APPLIED:
            entitlement = await self._replay_parked(entitlement)
        return await self._finish(event, outcome, entitlement)

    async def _apply(
        self, tenant: Entitlement, event: LifecycleEvent
    ) -> tuple[EventOutcome, Entitlement]:
        if event.event_type == EventType.INVOICE_PAID:
            await self._record_receipt(tenant, event)
        elif event.event_type == EventType.TRIAL_WILL_END:
            log.info("trial_ending", tenant_id=tenant.tenant_id, event_id=event.event_id)

        change = self._machine.transition(tenant, event)
        if change is None:
            return EventOutcome.UNCHANGED, tenant

        if change.is_stale_for(tenant):
            log.info(
                "webhook_stale_event",
                event_id=event.event_id,
                tenant_id=tenant.tenant_id,
                event_at=event.occurred_at.isoformat(),
                last_event_at=tenant.last_event_at.isoformat() if tenant.last_event_at else None,
            )
            return EventOutcome.STALE, tenant

        updated = await self._entitlements.apply(tenant.tenant_id, change)
        outcome = EventOutcome.STALE if change.is_stale_for(updated) else EventOutcome.APPLIED
        if outcome == EventOutcome.APPLIED:
            log.info(
                "entitlement_applied",
                tenant_id=tenant.tenant_id,
                event_id=event.event_id,
                event_type=event.raw_type,
                plan=str(getattr(updated.plan, "value", updated.plan)),
                status=updated.status.value,
            )
        return outcome, updated

    async def _replay_parked(self, bound: Entitlement) -> Entitlement:
        """Apply events parked before checkout tied their references to a tenant.

        Each event is discarded only after it was applied, so a crash in
        between replays it again on the checkout redelivery.
        """
        parked = await self._events.parked_for(bound.subscription_ref, bound.customer_ref)
        current = bound
        for event in parked:
            outcome, current = await self._apply(current, event)
            await self._events.discard_parked(event.event_id)
            log.info(
                "parked_event_replayed",
                event_id=event.event_id,
                event_type=event.raw_type,
                tenant_id=current.tenant_id,
                outcome=outcome.value,
            )
        return current

    async def _resolve_tenant(self, event: LifecycleEvent) -> Entitlement | None:
        if event.subscription_ref:
            found = await self._entitlements.find_by_subscription_ref(event.subscription_ref)
            if found is not None:
                return found
        if event.customer_ref:
            found = await self._entitlements.find_by_customer_ref(event.customer_ref)
            if found is not None:
                return found
        if event.event_type == EventType.CHECKOUT_COMPLETED and event.client_reference_id:
            try:
                return await self._entitlements.get(event.client_reference_id)
            except TenantNotFoundError:
                return None
        return None

    async def _record_receipt(self, tenant: Entitlement, event: LifecycleEvent) -> None:
        if not event.invoice_ref:
            return
        await self._events.record_receipt(
            Receipt(
                invoice_ref=event.invoice_ref,
                tenant_id=tenant.tenant_id,
                amount=event.amount if event.amount is not None else Decimal("0"),
                currency=event.currency or "usd",
                paid_at=event.occurred_at,
            )
        )
        log.info(
            "payment_recorded",
            tenant_id=tenant.tenant_id,
            invoice_ref=event.invoice_ref,
            amount=str(event.amount),
        )

    async def _finish(
        self,
        event: LifecycleEvent,
        outcome: EventOutcome,
        entitlement: Entitlement | None = None,
    ) -> ReconcileResult:
        tenant_id = entitlement.tenant_id if entitlement else None
        await self._events.mark_processed(
            ProcessedEvent(
                event_id=event.event_id,
                event_type=event.raw_type,
                outcome=outcome,
                tenant_id=tenant_id,
            )
        )
        return ReconcileResult(event.event_id, event.raw_type, outcome, tenant_id, entitlement)
