"""Tests for webhook verification and event reconciliation."""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from collections.abc import Callable
from typing import Any

import pytest

from src.billing.entitlements import InMemoryEntitlementStore
from src.billing.events import InMemoryProcessedEventLog
from src.billing.plans import PlanCatalog
from src.billing.reconciler import EventReconciler
from src.billing.state_machine import SubscriptionStateMachine
from src.core.exceptions import (
    ConfigurationError,
    InvalidSignatureError,
    MalformedEventError,
)
from src.core.types import EventOutcome, LifecycleStatus, PlanTier

CREATED = "customer.subscription.created"

T0 = 1_777_636_800


def subscription_event(
    event_id: str,
    created: int,
    status: str,
    price: str = "price_pro",
    subscription: str = "sub_1",
    customer: str = "cus_1",
    event_type: str = "customer.subscription.updated",
) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": event_type,
            "created": created,
            "data": {
                "object": {
                    "id": subscription,
                    "customer": customer,
                    "status": status,
                    "current_period_end": created + 30 * 86400,
                    "items": {"data": [{"price": {"id": price}}]},
                }
            },
        }
    ).encode()


def envelope(event_id: str, event_type: str, obj: dict[str, Any], created: int = T0) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}
    ).encode()


class _Harness:
    def __init__(self, signer: Callable[..., str], secret: str) -> None:
        self.sign = signer
        self.store = InMemoryEntitlementStore()
        self.log = InMemoryProcessedEventLog()
        catalog = PlanCatalog(price_map={"price_pro": "pro", "price_basic": "basic"})
        self.reconciler = EventReconciler(
            self.store, self.log, SubscriptionStateMachine(catalog), webhook_secret=secret
        )

    async def deliver(self, payload: bytes) -> Any:
        return await self.reconciler.handle(payload, self.sign(payload))


@pytest.fixture()
def harness(sign: Callable[..., str], webhook_secret: str) -> _Harness:
    return _Harness(sign, webhook_secret)


class TestVerification:
    def test_valid_signature_returns_payload(self, harness: _Harness) -> None:
        payload = subscription_event("evt_1", T0, "active")
        data = harness.reconciler.verify(payload, harness.sign(payload))
        assert data["id"] == "evt_1"

    def test_missing_header(self, harness: _Harness) -> None:
        with pytest.raises(InvalidSignatureError):
            harness.reconciler.verify(b"{}", None)

    def test_wrong_secret(self, harness: _Harness) -> None:
        payload = subscription_event("evt_1", T0, "active")
        with pytest.raises(InvalidSignatureError):
            harness.reconciler.verify(payload, harness.sign(payload, secret="whsec_other"))

    def test_tampered_body(self, harness: _Harness) -> None:
        payload = subscription_event("evt_1", T0, "active")
        header = harness.sign(payload)
        with pytest.raises(InvalidSignatureError):
            harness.reconciler.verify(payload.replace(b"price_pro", b"price_agy"), header)

    def test_expired_timestamp(self, harness: _Harness) -> None:
        payload = subscription_event("evt_1", T0, "active")
        with pytest.raises(InvalidSignatureError):
            harness.reconciler.verify(
                payload, harness.sign(payload, timestamp=int(time.time()) - 3600)
            )

    def test_no_secret_configured(self, sign: Callable[..., str]) -> None:
        harness = _Harness(sign, secret="")
        payload = subscription_event("evt_1", T0, "active")
        with pytest.raises(ConfigurationError):
            harness.reconciler.verify(payload, harness.sign(payload))

    def test_signed_garbage_is_malformed(self, harness: _Harness) -> None:
        payload = b"not json at all"
        with pytest.raises(MalformedEventError):
            harness.reconciler.verify(payload, harness.sign(payload))

    @pytest.mark.asyncio
    async def test_signed_but_incomplete_event(self, harness: _Harness) -> None:
        payload = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode()
        with pytest.raises(MalformedEventError):
            await harness.deliver(payload)

    @pytest.mark.asyncio
    async def test_signed_event_with_scalar_data(self, harness: _Harness) -> None:
        payload = json.dumps(
            {"id": "evt_1", "type": "invoice.paid", "created": T0, "data": "in_1"}
        ).encode()
        with pytest.raises(MalformedEventError):
            await harness.deliver(payload)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_activation_applied(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        result = await harness.deliver(subscription_event("evt_1", T0, "active"))
        assert result.outcome == EventOutcome.APPLIED
        assert result.tenant_id == "t1"
        ent = await harness.store.get("t1")
        assert ent.plan == PlanTier.PRO
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.subscription_ref == "sub_1"

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        payload = subscription_event("evt_1", T0, "active")
        await harness.deliver(payload)
        once = await harness.store.get("t1")
        second = await harness.deliver(payload)
        assert second.outcome == EventOutcome.DUPLICATE
        assert await harness.store.get("t1") == once

    @pytest.mark.asyncio
    async def test_late_past_due_does_not_override_newer_active(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        await harness.deliver(subscription_event("evt_a", T0 + 60, "active"))
        late = await harness.deliver(subscription_event("evt_b", T0, "past_due"))
        assert late.outcome == EventOutcome.STALE
        ent = await harness.store.get("t1")
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.plan == PlanTier.PRO

    @pytest.mark.asyncio
    async def test_in_order_past_due_then_active(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        await harness.deliver(subscription_event("evt_b", T0, "past_due"))
        await harness.deliver(subscription_event("evt_a", T0 + 60, "active"))
        ent = await harness.store.get("t1")
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.plan == PlanTier.PRO

    @pytest.mark.asyncio
    async def test_deletion_reverts_to_free(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        await harness.deliver(subscription_event("evt_1", T0, "active"))
        payload = envelope(
            "evt_2",
            "customer.subscription.deleted",
            {"id": "sub_1", "customer": "cus_1", "status": "canceled"},
            created=T0 + 120,
        )
        result = await harness.deliver(payload)
        assert result.outcome == EventOutcome.APPLIED
        ent = await harness.store.get("t1")
        assert ent.plan == PlanTier.FREE
        assert ent.status == LifecycleStatus.INACTIVE
        assert ent.renewal_at is None

    @pytest.mark.asyncio
    async def test_unresolved_tenant_is_acknowledged(self, harness: _Harness) -> None:
        result = await harness.deliver(
            subscription_event("evt_1", T0, "active", customer="cus_nobody", subscription="sub_x")
        )
        assert result.outcome == EventOutcome.UNRESOLVED
        recorded = await harness.log.get("evt_1")
        assert recorded is not None
        assert recorded.outcome == EventOutcome.UNRESOLVED
        parked = await harness.log.parked_for("sub_x", None)
        assert [e.event_id for e in parked] == ["evt_1"]

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, harness: _Harness) -> None:
        result = await harness.deliver(envelope("evt_1", "customer.created", {"id": "cus_1"}))
        assert result.outcome == EventOutcome.IGNORED
        assert await harness.log.is_processed("evt_1")

    @pytest.mark.asyncio
    async def test_invoice_paid_records_receipt(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        payload = envelope(
            "evt_1",
            "invoice.payment_succeeded",
            {"id": "in_1", "customer": "cus_1", "amount_paid": 1900, "currency": "usd"},
        )
        result = await harness.deliver(payload)
        assert result.outcome == EventOutcome.UNCHANGED
        receipts = await harness.log.list_receipts("t1")
        assert [r.invoice_ref for r in receipts] == ["in_1"]

    @pytest.mark.asyncio
    async def test_checkout_binds_tenant(self, harness: _Harness) -> None:
        await harness.store.create("t1")
        checkout = envelope(
            "evt_1",
            "checkout.session.completed",
            {"customer": "cus_9", "subscription": "sub_9", "client_reference_id": "t1"},
        )
        result = await harness.deliver(checkout)
        assert result.outcome == EventOutcome.APPLIED

        activated = await harness.deliver(
            subscription_event("evt_2", T0, "active", subscription="sub_9", customer="cus_9")
        )
        assert activated.tenant_id == "t1"
        assert (await harness.store.get("t1")).plan == PlanTier.PRO

    @pytest.mark.asyncio
    async def test_checkout_for_unknown_tenant(self, harness: _Harness) -> None:
        checkout = envelope(
            "evt_1",
            "checkout.session.completed",
            {"customer": "cus_9", "client_reference_id": "ghost"},
        )
        result = await harness.deliver(checkout)
        assert result.outcome == EventOutcome.UNRESOLVED
        assert await harness.log.parked_for(None, "cus_9") == []


class TestCheckoutOrdering:
    @staticmethod
    def _checkout(created: int) -> bytes:
        return envelope(
            "evt_checkout",
            "checkout.session.completed",
            {"customer": "cus_9", "subscription": "sub_9", "client_reference_id": "t1"},
            created=created,
        )

    @pytest.mark.asyncio
    async def test_subscription_before_checkout_is_replayed(self, harness: _Harness) -> None:
        await harness.store.create("t1")
        early = await harness.deliver(
            subscription_event(
                "evt_sub", T0, "active", subscription="sub_9", customer="cus_9", event_type=CREATED
            )
        )
        assert early.outcome == EventOutcome.UNRESOLVED

        result = await harness.deliver(self._checkout(T0 + 1))
        assert result.outcome == EventOutcome.APPLIED
        assert result.tenant_id == "t1"

        ent = await harness.store.get("t1")
        assert ent.plan == PlanTier.PRO
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.subscription_ref == "sub_9"
        assert ent.customer_ref == "cus_9"
        assert ent.last_event_at == datetime.fromtimestamp(T0, tz=timezone.utc)
        assert result.entitlement == ent
        assert await harness.log.parked_for("sub_9", "cus_9") == []

    @pytest.mark.asyncio
    async def test_parked_events_replay_in_event_order(self, harness: _Harness) -> None:
        await harness.store.create("t1")
        deleted = envelope(
            "evt_deleted",
            "customer.subscription.deleted",
            {"id": "sub_9", "customer": "cus_9", "status": "canceled"},
            created=T0 + 60,
        )
        await harness.deliver(deleted)
        await harness.deliver(
            subscription_event("evt_sub", T0, "active", subscription="sub_9", customer="cus_9")
        )

        await harness.deliver(self._checkout(T0 + 90))

        ent = await harness.store.get("t1")
        assert ent.plan == PlanTier.FREE
        assert ent.status == LifecycleStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_later_subscription_event_applies_normally(self, harness: _Harness) -> None:
        await harness.store.create("t1")
        await harness.deliver(self._checkout(T0))
        result = await harness.deliver(
            subscription_event("evt_sub", T0 + 5, "active", subscription="sub_9", customer="cus_9")
        )
        assert result.outcome == EventOutcome.APPLIED
        assert (await harness.store.get("t1")).plan == PlanTier.PRO


class TestSupersededSubscription:
    @pytest.mark.asyncio
    async def test_old_subscription_events_do_not_demote(self, harness: _Harness) -> None:
        await harness.store.create("t1", customer_ref="cus_1")
        await harness.deliver(
            subscription_event(
                "evt_1", T0, "active", price="price_basic", subscription="sub_old",
                event_type=CREATED,
            )
        )
        await harness.deliver(
            subscription_event("evt_2", T0 + 10, "active", subscription="sub_new", event_type=CREATED)
        )
        late = await harness.deliver(
            subscription_event("evt_3", T0 + 20, "active", price="price_basic", subscription="sub_old")
        )
        assert late.outcome == EventOutcome.UNCHANGED

        deleted = envelope(
            "evt_4",
            "customer.subscription.deleted",
            {"id": "sub_old", "customer": "cus_1", "status": "canceled"},
            created=T0 + 30,
        )
        assert (await harness.deliver(deleted)).outcome == EventOutcome.UNCHANGED

        ent = await harness.store.get("t1")
        assert ent.plan == PlanTier.PRO
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.subscription_ref == "sub_new"
