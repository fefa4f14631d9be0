"""PostgreSQL-backed entitlement store, usage ledger and processed-event log.

Every write goes through a single statement (or one transaction) so the
database does the serialising: counters use an upsert with ``RETURNING``,
entitlement transitions use a conditional ``UPDATE``.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from src.billing.entitlements import EntitlementStore
from src.billing.events import ProcessedEventLog, event_from_dict, event_to_dict
from src.billing.ledger import UsageLedger, check_amount, units_within
from src.core.exceptions import TenantNotFoundError
from src.core.logging import get_logger
from src.core.types import (
    AdminOverride,
    Entitlement,
    EventOutcome,
    IncrementResult,
    LifecycleEvent,
    LifecycleStatus,
    OverageRecord,
    OverageStatus,
    PlanTier,
    ProcessedEvent,
    Receipt,
    Transition,
    utcnow,
)
from src.storage.db import storage_errors

log = get_logger(__name__)


def _not_found(tenant_id: str) -> TenantNotFoundError:
    return TenantNotFoundError(f"no entitlement for tenant {tenant_id}", {"tenant_id": tenant_id})


# ── Entitlements ─────────────────────────────────────────────────


class PostgresEntitlementStore(EntitlementStore):
    """Async PostgreSQL entitlement storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(self, tenant_id: str, customer_ref: str | None = None) -> Entitlement:
        now = utcnow()
        with storage_errors("entitlement_create", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text(
                        """
                        INSERT INTO entitlements
                            (tenant_id, plan, status, customer_ref,
                             overage_enabled, created_at, updated_at)
                        VALUES
                            (:tid, 'free', 'inactive', :customer,
                             false, :now, :now)
                        ON CONFLICT (tenant_id) DO NOTHING
                        RETURNING tenant_id
                        """
                    ),
                    {"tid": tenant_id, "customer": customer_ref, "now": now},
                )
                created = result.first() is not None
        if created:
            log.info("entitlement_created", tenant_id=tenant_id)
        return await self.get(tenant_id)

    async def get(self, tenant_id: str) -> Entitlement:
        found = await self._find_one(
            "SELECT * FROM entitlements WHERE tenant_id = :tid", {"tid": tenant_id}
        )
        if found is None:
            raise _not_found(tenant_id)
        return found

    async def apply(self, tenant_id: str, transition: Transition) -> Entitlement:
        sets: list[str] = ["updated_at = :now"]
        params: dict[str, Any] = {"tid": tenant_id, "now": utcnow()}

        if transition.plan is not None:
            sets.append("plan = :plan")
            params["plan"] = transition.plan.value
        if transition.status is not None:
            sets.append("status = :status")
            params["status"] = transition.status.value
        if transition.clear_renewal:
            sets.append("renewal_at = NULL")
        elif transition.renewal_at is not None:
            sets.append("renewal_at = :renewal_at")
            params["renewal_at"] = transition.renewal_at
        if transition.subscription_ref is not None:
            sets.append("subscription_ref = :subscription_ref")
            params["subscription_ref"] = transition.subscription_ref
        if transition.customer_ref is not None:
            sets.append("customer_ref = :customer_ref")
            params["customer_ref"] = transition.customer_ref

        where = "tenant_id = :tid"
        if transition.advances_clock:
            sets.append("last_event_at = :event_at")
            where += " AND (last_event_at IS NULL OR last_event_at <= :event_at)"
            params["event_at"] = transition.event_at

        query = f"UPDATE entitlements SET {', '.join(sets)} WHERE {where} RETURNING *"  # noqa: S608
        with storage_errors("entitlement_apply", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), params)
                row = result.mappings().first()

        if row is None:
            # Either the tenant is gone or a later event already landed.
            current = await self.get(tenant_id)
            log.info(
                "entitlement_write_skipped_stale",
                tenant_id=tenant_id,
                event_id=transition.event_id,
            )
            return current
        return self._row_to_entitlement(row)

    async def override_admin(
        self,
        tenant_id: str,
        plan: PlanTier,
        status: LifecycleStatus,
        *,
        actor: str,
        reason: str = "",
    ) -> Entitlement:
        with storage_errors("entitlement_override", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text("SELECT * FROM entitlements WHERE tenant_id = :tid FOR UPDATE"),
                    {"tid": tenant_id},
                )
                row = result.mappings().first()
                if row is None:
                    raise _not_found(tenant_id)

                override = AdminOverride(
                    tenant_id=tenant_id,
                    actor=actor,
                    reason=reason,
                    old_plan=row["plan"],
                    old_status=row["status"],
                    new_plan=plan.value,
                    new_status=status.value,
                )
                result = await conn.execute(
                    text(
                        "UPDATE entitlements "
                        "SET plan = :plan, status = :status, updated_at = :now "
                        "WHERE tenant_id = :tid RETURNING *"
                    ),
                    {
                        "plan": plan.value,
                        "status": status.value,
                        "now": override.created_at,
                        "tid": tenant_id,
                    },
                )
                updated = result.mappings().first()
                await conn.execute(
                    text(
                        """
                        INSERT INTO entitlement_overrides
                            (override_id, tenant_id, actor, reason,
                             old_plan, old_status, new_plan, new_status, created_at)
                        VALUES
                            (:oid, :tid, :actor, :reason,
                             :old_plan, :old_status, :new_plan, :new_status, :created_at)
                        """
                    ),
                    {
                        "oid": override.override_id,
                        "tid": tenant_id,
                        "actor": actor,
                        "reason": reason,
                        "old_plan": override.old_plan,
                        "old_status": override.old_status,
                        "new_plan": override.new_plan,
                        "new_status": override.new_status,
                        "created_at": override.created_at,
                    },
                )

        self._audit_override(override)
        return self._row_to_entitlement(updated)

    async def find_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        return await self._find_one(
            "SELECT * FROM entitlements WHERE subscription_ref = :ref",
            {"ref": subscription_ref},
        )

    async def find_by_customer_ref(self, customer_ref: str) -> Entitlement | None:
        return await self._find_one(
            "SELECT * FROM entitlements WHERE customer_ref = :ref "
            "ORDER BY updated_at DESC LIMIT 1",
            {"ref": customer_ref},
        )

    async def set_overage_enabled(self, tenant_id: str, enabled: bool) -> Entitlement:
        with storage_errors("overage_consent", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text(
                        "UPDATE entitlements SET overage_enabled = :enabled, updated_at = :now "
                        "WHERE tenant_id = :tid RETURNING *"
                    ),
                    {"enabled": enabled, "now": utcnow(), "tid": tenant_id},
                )
                row = result.mappings().first()
        if row is None:
            raise _not_found(tenant_id)
        log.info("overage_consent_changed", tenant_id=tenant_id, enabled=enabled)
        return self._row_to_entitlement(row)

    async def list_overrides(self, tenant_id: str) -> list[AdminOverride]:
        with storage_errors("list_overrides", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text(
                        "SELECT * FROM entitlement_overrides WHERE tenant_id = :tid "
                        "ORDER BY created_at"
                    ),
                    {"tid": tenant_id},
                )
                rows = result.mappings().all()
        return [
            AdminOverride(
                tenant_id=r["tenant_id"],
                actor=r["actor"],
                reason=r["reason"],
                old_plan=r["old_plan"],
                old_status=r["old_status"],
                new_plan=r["new_plan"],
                new_status=r["new_status"],
                override_id=r["override_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def _find_one(self, query: str, params: dict[str, Any]) -> Entitlement | None:
        with storage_errors("entitlement_lookup"):
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), params)
                row = result.mappings().first()
        if row is None:
            return None
        return self._row_to_entitlement(row)

    @staticmethod
    def _row_to_entitlement(r: Any) -> Entitlement:
        """Convert a DB row mapping to an Entitlement.

        Unknown plan strings are kept as-is so the gate can refuse them.
        """
        plan_str: str = r["plan"]
        plan: PlanTier | str = PlanTier.parse(plan_str) or plan_str
        if not isinstance(plan, PlanTier):
            log.warning("unknown_stored_plan", tenant_id=r["tenant_id"], plan=plan_str)

        try:
            status = LifecycleStatus(r["status"])
        except ValueError:
            log.warning("unknown_stored_status", tenant_id=r["tenant_id"], status=r["status"])
            status = LifecycleStatus.INACTIVE

        return Entitlement(
            tenant_id=r["tenant_id"],
            plan=plan,
            status=status,
            renewal_at=r.get("renewal_at"),
            subscription_ref=r.get("subscription_ref"),
            customer_ref=r.get("customer_ref"),
            overage_enabled=bool(r.get("overage_enabled")),
            last_event_at=r.get("last_event_at"),
            updated_at=r["updated_at"],
        )


# ── Usage ledger ─────────────────────────────────────────────────

_UPSERT_COUNTER = """
    INSERT INTO usage_counters (tenant_id, period_key, count, updated_at)
    VALUES (:tid, :period, :amount, :now)
    ON CONFLICT (tenant_id, period_key) DO UPDATE SET
        count = usage_counters.count + EXCLUDED.count,
        updated_at = EXCLUDED.updated_at
    {guard}
    RETURNING count
"""


class PostgresUsageLedger(UsageLedger):
    """Counters in ``usage_counters``; the upsert is the atomic step."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def try_increment(
        self,
        tenant_id: str,
        period_key: str,
        amount: int = 1,
        limit: int | None = None,
        count_rejected: bool = True,
    ) -> IncrementResult:
        check_amount(amount)
        all_or_nothing = limit is not None and not count_rejected
        if all_or_nothing and amount > limit:
            return IncrementResult(0, await self.current_count(tenant_id, period_key))

        guard = "WHERE usage_counters.count + EXCLUDED.count <= :limit" if all_or_nothing else ""
        params: dict[str, Any] = {
            "tid": tenant_id,
            "period": period_key,
            "amount": amount,
            "now": utcnow(),
        }
        if all_or_nothing:
            params["limit"] = limit

        with storage_errors("usage_increment", tenant_id=tenant_id, period=period_key):
            async with self._engine.begin() as conn:
                result = await conn.execute(text(_UPSERT_COUNTER.format(guard=guard)), params)
                new_total = result.scalar_one_or_none()

        if new_total is None:
            # guard rejected the update; nothing was written
            return IncrementResult(0, await self.current_count(tenant_id, period_key))

        allowed = units_within(new_total - amount, amount, limit)
        log.debug(
            "usage_incremented",
            tenant_id=tenant_id,
            period=period_key,
            amount=amount,
            total=new_total,
        )
        return IncrementResult(allowed_count=allowed, new_total=int(new_total))

    async def current_count(self, tenant_id: str, period_key: str) -> int:
        with storage_errors("usage_read", tenant_id=tenant_id, period=period_key):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text(
                        "SELECT count FROM usage_counters "
                        "WHERE tenant_id = :tid AND period_key = :period"
                    ),
                    {"tid": tenant_id, "period": period_key},
                )
                value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def record_overage(self, record: OverageRecord) -> None:
        with storage_errors("overage_record", tenant_id=record.tenant_id):
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO overage_records
                            (record_id, tenant_id, units, unit_price,
                             period_key, status, created_at)
                        VALUES
                            (:rid, :tid, :units, :price, :period, :status, :created_at)
                        """
                    ),
                    {
                        "rid": record.record_id,
                        "tid": record.tenant_id,
                        "units": record.units,
                        "price": record.unit_price,
                        "period": record.period_key,
                        "status": record.status.value,
                        "created_at": record.created_at,
                    },
                )
        log.info(
            "overage_recorded",
            tenant_id=record.tenant_id,
            units=record.units,
            unit_price=str(record.unit_price),
            period=record.period_key,
        )

    async def list_overages(
        self, tenant_id: str, period_key: str | None = None
    ) -> list[OverageRecord]:
        query = "SELECT * FROM overage_records WHERE tenant_id = :tid"
        params: dict[str, Any] = {"tid": tenant_id}
        if period_key is not None:
            query += " AND period_key = :period"
            params["period"] = period_key
        query += " ORDER BY created_at DESC"

        with storage_errors("overage_list", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(text(query), params)
                rows = result.mappings().all()
        return [
            OverageRecord(
                tenant_id=r["tenant_id"],
                units=int(r["units"]),
                unit_price=Decimal(str(r["unit_price"])),
                period_key=r["period_key"],
                status=OverageStatus(r["status"]),
                record_id=r["record_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]


# ── Processed events ─────────────────────────────────────────────


class PostgresProcessedEventLog(ProcessedEventLog):
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def is_processed(self, event_id: str) -> bool:
        return await self.get(event_id) is not None

    async def mark_processed(self, record: ProcessedEvent) -> None:
        with storage_errors("event_mark_processed", event_id=record.event_id):
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO processed_events
                            (event_id, event_type, outcome, tenant_id, processed_at)
                        VALUES (:eid, :etype, :outcome, :tid, :at)
                        ON CONFLICT (event_id) DO NOTHING
                        """
                    ),
                    {
                        "eid": record.event_id,
                        "etype": record.event_type,
                        "outcome": record.outcome.value,
                        "tid": record.tenant_id,
                        "at": record.processed_at,
                    },
                )

    async def get(self, event_id: str) -> ProcessedEvent | None:
        with storage_errors("event_lookup", event_id=event_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text("SELECT * FROM processed_events WHERE event_id = :eid"),
                    {"eid": event_id},
                )
                r = result.mappings().first()
        if r is None:
            return None
        return ProcessedEvent(
            event_id=r["event_id"],
            event_type=r["event_type"],
            outcome=EventOutcome(r["outcome"]),
            tenant_id=r.get("tenant_id"),
            processed_at=r["processed_at"],
        )

    async def record_receipt(self, receipt: Receipt) -> None:
        with storage_errors("receipt_record", invoice_ref=receipt.invoice_ref):
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO receipts
                            (invoice_ref, tenant_id, amount, currency, paid_at)
                        VALUES (:ref, :tid, :amount, :currency, :paid_at)
                        ON CONFLICT (invoice_ref) DO NOTHING
                        """
                    ),
                    {
                        "ref": receipt.invoice_ref,
                        "tid": receipt.tenant_id,
                        "amount": receipt.amount,
                        "currency": receipt.currency,
                        "paid_at": receipt.paid_at,
                    },
                )

    async def list_receipts(self, tenant_id: str) -> list[Receipt]:
        with storage_errors("receipt_list", tenant_id=tenant_id):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text("SELECT * FROM receipts WHERE tenant_id = :tid ORDER BY paid_at DESC"),
                    {"tid": tenant_id},
                )
                rows = result.mappings().all()
        return [
            Receipt(
                invoice_ref=r["invoice_ref"],
                tenant_id=r["tenant_id"],
                amount=Decimal(str(r["amount"])),
                currency=r["currency"],
                paid_at=r["paid_at"],
            )
            for r in rows
        ]

    async def park(self, event: LifecycleEvent) -> None:
        with storage_errors("event_park", event_id=event.event_id):
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO parked_events
                            (event_id, subscription_ref, customer_ref, occurred_at, payload)
                        VALUES (:eid, :sub, :cus, :at, :payload)
                        ON CONFLICT (event_id) DO NOTHING
                        """
                    ),
                    {
                        "eid": event.event_id,
                        "sub": event.subscription_ref,
                        "cus": event.customer_ref,
                        "at": event.occurred_at,
                        "payload": json.dumps(event_to_dict(event)),
                    },
                )

    async def parked_for(
        self, subscription_ref: str | None, customer_ref: str | None
    ) -> list[LifecycleEvent]:
        if not (subscription_ref or customer_ref):
            return []
        with storage_errors("event_parked_lookup", subscription_ref=subscription_ref):
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    text(
                        """
                        SELECT payload FROM parked_events
                        WHERE subscription_ref = :sub OR customer_ref = :cus
                        ORDER BY occurred_at
                        """
                    ),
                    {"sub": subscription_ref, "cus": customer_ref},
                )
                rows = result.mappings().all()
        return [event_from_dict(json.loads(r["payload"])) for r in rows]

    async def discard_parked(self, event_id: str) -> None:
        with storage_errors("event_discard_parked", event_id=event_id):
            async with self._engine.begin() as conn:
                await conn.execute(
                    text("DELETE FROM parked_events WHERE event_id = :eid"),
                    {"eid": event_id},
                )
