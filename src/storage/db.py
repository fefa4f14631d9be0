"""PostgreSQL connection and schema definitions."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    inspect,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config.settings import get_settings
from src.core.exceptions import StorageError
from src.core.logging import get_logger

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

entitlements = Table(
    "entitlements",
    metadata,
    Column("tenant_id", String, primary_key=True),
    Column("plan", String, nullable=False, server_default="free"),
    Column("status", String, nullable=False, server_default="inactive"),
    Column("renewal_at", DateTime(timezone=True)),
    Column("subscription_ref", String, unique=True),
    Column("customer_ref", String, index=True),
    Column("overage_enabled", Boolean, nullable=False, server_default="false"),
    Column("last_event_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

usage_counters = Table(
    "usage_counters",
    metadata,
    Column("tenant_id", String, primary_key=True),
    Column("period_key", String, primary_key=True),   # YYYY-MM or YYYY-MM-DD
    Column("count", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("count >= 0", name="usage_counters_count_non_negative"),
)

overage_records = Table(
    "overage_records",
    metadata,
    Column("record_id", String, primary_key=True),
    Column("tenant_id", String, nullable=False, index=True),
    Column("units", Integer, nullable=False),
    Column("unit_price", Numeric(10, 4), nullable=False),
    Column("period_key", String, nullable=False, index=True),
    Column("status", String, nullable=False, server_default="pending"),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

processed_events = Table(
    "processed_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("outcome", String, nullable=False),
    Column("tenant_id", String, index=True),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)

parked_events = Table(
    "parked_events",
    metadata,
    Column("event_id", String, primary_key=True),
    Column("subscription_ref", String, index=True),
    Column("customer_ref", String, index=True),
    Column("occurred_at", DateTime(timezone=True), nullable=False),
    Column("payload", Text, nullable=False),   # JSON of the parsed event
)

receipts = Table(
    "receipts",
    metadata,
    Column("invoice_ref", String, primary_key=True),
    Column("tenant_id", String, nullable=False, index=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("paid_at", DateTime(timezone=True), nullable=False),
)

entitlement_overrides = Table(
    "entitlement_overrides",
    metadata,
    Column("override_id", String, primary_key=True),
    Column("tenant_id", String, nullable=False, index=True),
    Column("actor", String, nullable=False),
    Column("reason", Text, nullable=False),
    Column("old_plan", String, nullable=False),
    Column("old_status", String, nullable=False),
    Column("new_plan", String, nullable=False),
    Column("new_status", String, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


@contextmanager
def storage_errors(operation: str, **context: Any) -> Iterator[None]:
    """Re-raise driver failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as exc:
        log.error("storage_failure", operation=operation, error=str(exc), **context)
        raise StorageError(f"{operation} failed: {exc}", context) from exc


# ── Engine ───────────────────────────────────────────────────────

_engine: AsyncEngine | None = None


async def get_engine() -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    global _engine  # noqa: PLW0603
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url.get_secret_value()
        _engine = create_async_engine(
            db_url,
            echo=False,
            pool_size=10,
            max_overflow=20,
        )
        log.info("database_engine_created", host=db_url.split("@")[-1].split("?")[0])
    return _engine


async def init_schema() -> None:
    """Create all tables."""
    engine = await get_engine()

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    log.info("schema_initialized", tables=sorted(metadata.tables))


async def missing_tables() -> list[str]:
    """Names of the tables in ``metadata`` that the database does not have yet."""
    engine = await get_engine()
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return sorted(set(metadata.tables) - set(existing))


async def close_engine() -> None:
    """Dispose the database engine."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        log.info("database_engine_closed")
