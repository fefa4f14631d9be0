"""Tests for the PostgreSQL stores — SQL shape and row mapping with a mocked engine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from src.core.exceptions import StorageError, TenantNotFoundError
from src.core.types import (
    EventOutcome,
    EventType,
    LifecycleEvent,
    LifecycleStatus,
    OverageRecord,
    PlanTier,
    ProcessedEvent,
    Transition,
)
from src.storage.db import missing_tables
from src.storage.postgres import (
    PostgresEntitlementStore,
    PostgresProcessedEventLog,
    PostgresUsageLedger,
)

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeMapping(dict):  # type: ignore[type-arg]
    """Dict subclass standing in for a RowMapping."""
    pass


def _make_row(**kwargs: object) -> _FakeMapping:
    defaults = {
        "tenant_id": "t1",
        "plan": "free",
        "status": "inactive",
        "renewal_at": None,
        "subscription_ref": None,
        "customer_ref": "cus_1",
        "overage_enabled": False,
        "last_event_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    defaults.update(kwargs)
    return _FakeMapping(defaults)


def _mock_engine(mock_conn: AsyncMock) -> MagicMock:
    """Create a mock engine with proper async context manager for begin()."""
    engine = MagicMock()

    @asynccontextmanager
    async def _begin() -> AsyncIterator[AsyncMock]:
        yield mock_conn

    engine.begin = _begin
    return engine


def _row_result(row: object) -> MagicMock:
    result = MagicMock()
    result.mappings.return_value.first.return_value = row
    return result


def _scalar_result(value: object) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


def _sql(mock_conn: AsyncMock, call: int = -1) -> str:
    return str(mock_conn.execute.call_args_list[call][0][0])


def _params(mock_conn: AsyncMock, call: int = -1) -> dict[str, object]:
    return mock_conn.execute.call_args_list[call][0][1]


class TestRowToEntitlement:
    def test_basic_conversion(self) -> None:
        ent = PostgresEntitlementStore._row_to_entitlement(
            _make_row(plan="pro", status="active", subscription_ref="sub_1")
        )
        assert ent.plan == PlanTier.PRO
        assert ent.status == LifecycleStatus.ACTIVE
        assert ent.subscription_ref == "sub_1"

    def test_unknown_plan_kept_raw(self) -> None:
        ent = PostgresEntitlementStore._row_to_entitlement(_make_row(plan="enterprise"))
        assert ent.plan == "enterprise"
        assert ent.tier is None

    def test_unknown_status_is_inactive(self) -> None:
        ent = PostgresEntitlementStore._row_to_entitlement(_make_row(status="frozen"))
        assert ent.status == LifecycleStatus.INACTIVE


class TestEntitlementStore:
    @pytest.mark.asyncio
    async def test_get_not_found(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _row_result(None)
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        with pytest.raises(TenantNotFoundError):
            await store.get("ghost")

    @pytest.mark.asyncio
    async def test_create_uses_on_conflict(self) -> None:
        mock_conn = AsyncMock()
        insert = MagicMock()
        insert.first.return_value = ("t1",)
        mock_conn.execute.side_effect = [insert, _row_result(_make_row())]
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        ent = await store.create("t1", customer_ref="cus_1")
        assert ent.tenant_id == "t1"
        assert "ON CONFLICT (tenant_id) DO NOTHING" in _sql(mock_conn, 0)

    @pytest.mark.asyncio
    async def test_apply_is_conditional_on_event_time(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _row_result(
            _make_row(plan="pro", status="active", last_event_at=NOW)
        )
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        change = Transition(
            event_id="evt_1", event_at=NOW, plan=PlanTier.PRO, status=LifecycleStatus.ACTIVE
        )
        ent = await store.apply("t1", change)
        sql = _sql(mock_conn)
        assert "last_event_at IS NULL OR last_event_at <= :event_at" in sql
        assert "plan = :plan" in sql
        assert "renewal_at" not in sql
        assert _params(mock_conn)["plan"] == "pro"
        assert ent.plan == PlanTier.PRO

    @pytest.mark.asyncio
    async def test_apply_clear_renewal(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _row_result(_make_row())
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        await store.apply(
            "t1", Transition(event_id="e", event_at=NOW, plan=PlanTier.FREE, clear_renewal=True)
        )
        assert "renewal_at = NULL" in _sql(mock_conn)

    @pytest.mark.asyncio
    async def test_apply_binding_has_no_time_condition(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _row_result(_make_row(customer_ref="cus_9"))
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        await store.apply(
            "t1",
            Transition(event_id="e", event_at=NOW, customer_ref="cus_9", advances_clock=False),
        )
        assert "last_event_at" not in _sql(mock_conn)

    @pytest.mark.asyncio
    async def test_stale_apply_returns_current(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.side_effect = [
            _row_result(None),
            _row_result(_make_row(plan="pro", status="active")),
        ]
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        ent = await store.apply(
            "t1", Transition(event_id="e", event_at=NOW, status=LifecycleStatus.PAST_DUE)
        )
        assert ent.status == LifecycleStatus.ACTIVE
        assert mock_conn.execute.call_count == 2

    @pytest.mark.asyncio
    async def test_override_writes_audit_row(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.side_effect = [
            _row_result(_make_row()),
            _row_result(_make_row(plan="agency", status="active")),
            MagicMock(),
        ]
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        ent = await store.override_admin(
            "t1", PlanTier.AGENCY, LifecycleStatus.ACTIVE, actor="ops", reason="comp"
        )
        assert ent.plan == PlanTier.AGENCY
        assert "FOR UPDATE" in _sql(mock_conn, 0)
        assert "INSERT INTO entitlement_overrides" in _sql(mock_conn, 2)
        assert _params(mock_conn, 2)["old_plan"] == "free"

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_error(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.side_effect = OperationalError("SELECT", {}, Exception("gone"))
        store = PostgresEntitlementStore(_mock_engine(mock_conn))
        with pytest.raises(StorageError):
            await store.get("t1")


class TestUsageLedger:
    @pytest.mark.asyncio
    async def test_count_attempt_upsert(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _scalar_result(6)
        ledger = PostgresUsageLedger(_mock_engine(mock_conn))
        result = await ledger.try_increment("t1", "2026-05", 1, limit=5)
        assert result.allowed_count == 0
        assert result.new_total == 6
        sql = _sql(mock_conn)
        assert "count = usage_counters.count + EXCLUDED.count" in sql
        assert ":limit" not in sql

    @pytest.mark.asyncio
    async def test_within_limit(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _scalar_result(5)
        ledger = PostgresUsageLedger(_mock_engine(mock_conn))
        result = await ledger.try_increment("t1", "2026-05", 1, limit=5)
        assert result.allowed_count == 1

    @pytest.mark.asyncio
    async def test_hard_stop_guarded_upsert(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.side_effect = [_scalar_result(None), _scalar_result(5)]
        ledger = PostgresUsageLedger(_mock_engine(mock_conn))
        result = await ledger.try_increment("t1", "2026-05", 1, limit=5, count_rejected=False)
        assert result.allowed_count == 0
        assert result.new_total == 5
        assert "WHERE usage_counters.count + EXCLUDED.count <= :limit" in _sql(mock_conn, 0)

    @pytest.mark.asyncio
    async def test_hard_stop_amount_over_limit_skips_write(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _scalar_result(None)
        ledger = PostgresUsageLedger(_mock_engine(mock_conn))
        result = await ledger.try_increment("t1", "2026-05", 9, limit=5, count_rejected=False)
        assert result.allowed_count == 0
        assert result.new_total == 0
        assert mock_conn.execute.call_count == 1
        assert _sql(mock_conn).startswith("SELECT")

    @pytest.mark.asyncio
    async def test_record_and_list_overages(self) -> None:
        mock_conn = AsyncMock()
        ledger = PostgresUsageLedger(_mock_engine(mock_conn))
        record = OverageRecord(
            tenant_id="t1", units=2, unit_price=Decimal("0.08"), period_key="2026-05"
        )
        await ledger.record_overage(record)
        assert _params(mock_conn)["price"] == Decimal("0.08")

        listing = MagicMock()
        listing.mappings.return_value.all.return_value = [
            _FakeMapping(
                record_id=record.record_id,
                tenant_id="t1",
                units=2,
                unit_price=Decimal("0.0800"),
                period_key="2026-05",
                status="pending",
                created_at=NOW,
            )
        ]
        mock_conn.execute.return_value = listing
        records = await ledger.list_overages("t1", "2026-05")
        assert records[0].amount == Decimal("0.16")
        assert "period_key = :period" in _sql(mock_conn)


class TestProcessedEventLog:
    @pytest.mark.asyncio
    async def test_mark_processed_ignores_conflicts(self) -> None:
        mock_conn = AsyncMock()
        log = PostgresProcessedEventLog(_mock_engine(mock_conn))
        await log.mark_processed(ProcessedEvent("evt_1", "invoice.paid", EventOutcome.APPLIED))
        assert "ON CONFLICT (event_id) DO NOTHING" in _sql(mock_conn)
        assert _params(mock_conn)["outcome"] == "applied"

    @pytest.mark.asyncio
    async def test_is_processed(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.execute.return_value = _row_result(
            _FakeMapping(
                event_id="evt_1",
                event_type="invoice.paid",
                outcome="stale",
                tenant_id="t1",
                processed_at=NOW,
            )
        )
        log = PostgresProcessedEventLog(_mock_engine(mock_conn))
        assert await log.is_processed("evt_1")
        record = await log.get("evt_1")
        assert record is not None
        assert record.outcome == EventOutcome.STALE

    @pytest.mark.asyncio
    async def test_park_and_replay_lookup(self) -> None:
        mock_conn = AsyncMock()
        log = PostgresProcessedEventLog(_mock_engine(mock_conn))
        event = LifecycleEvent(
            event_id="evt_1",
            event_type=EventType.SUBSCRIPTION_CREATED,
            raw_type="customer.subscription.created",
            occurred_at=NOW,
            subscription_ref="sub_9",
            customer_ref="cus_9",
            price_ref="price_pro",
            gateway_status="active",
        )
        await log.park(event)
        assert "INSERT INTO parked_events" in _sql(mock_conn)
        assert "ON CONFLICT (event_id) DO NOTHING" in _sql(mock_conn)
        stored = _params(mock_conn)["payload"]

        listing = MagicMock()
        listing.mappings.return_value.all.return_value = [_FakeMapping(payload=stored)]
        mock_conn.execute.return_value = listing
        assert await log.parked_for("sub_9", "cus_9") == [event]
        assert "ORDER BY occurred_at" in _sql(mock_conn)

        await log.discard_parked("evt_1")
        assert _sql(mock_conn).startswith("DELETE FROM parked_events")

    @pytest.mark.asyncio
    async def test_parked_lookup_without_refs_skips_query(self) -> None:
        mock_conn = AsyncMock()
        log = PostgresProcessedEventLog(_mock_engine(mock_conn))
        assert await log.parked_for(None, None) == []
        mock_conn.execute.assert_not_called()


class TestSchemaStatus:
    @pytest.mark.asyncio
    async def test_missing_tables(self) -> None:
        mock_conn = AsyncMock()
        mock_conn.run_sync.return_value = {"entitlements", "usage_counters", "legacy"}
        engine = MagicMock()

        @asynccontextmanager
        async def _connect() -> AsyncIterator[AsyncMock]:
            yield mock_conn

        engine.connect = _connect
        with patch("src.storage.db.get_engine", AsyncMock(return_value=engine)):
            missing = await missing_tables()

        assert "entitlements" not in missing
        assert "legacy" not in missing
        assert missing == [
            "entitlement_overrides",
            "overage_records",
            "parked_events",
            "processed_events",
            "receipts",
        ]
