"""Engine container — wires stores, state machine, reconciler and gate.

Built once by the host (the FastAPI lifespan, a worker, a test) and closed
by the same host. Nothing in the billing package keeps module-level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from config.settings import Settings, get_settings
from src.billing.entitlements import EntitlementStore, InMemoryEntitlementStore
from src.billing.events import InMemoryProcessedEventLog, ProcessedEventLog
from src.billing.gate import ConsumptionPolicy, UsageGate
from src.billing.ledger import InMemoryUsageLedger, UsageLedger
from src.billing.plans import PlanCatalog
from src.billing.reconciler import EventReconciler
from src.billing.state_machine import SubscriptionStateMachine
from src.core.logging import get_logger
from src.core.types import utcnow

log = get_logger(__name__)


@dataclass
class BillingEngine:
    catalog: PlanCatalog
    entitlements: EntitlementStore
    ledger: UsageLedger
    event_log: ProcessedEventLog
    state_machine: SubscriptionStateMachine
    reconciler: EventReconciler
    gate: UsageGate
    checkout_url: str = ""
    _owns_db_engine: bool = field(default=False, repr=False)

    async def close(self) -> None:
        """Release every backend, then the shared database engine if we made it."""
        await self.ledger.close()
        await self.entitlements.close()
        await self.event_log.close()
        if self._owns_db_engine:
            from src.storage.db import close_engine

            await close_engine()
        log.info("billing_engine_closed")


async def build_engine(
    settings: Settings | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingEngine:
    """Create the engine for the configured storage and ledger backends."""
    settings = settings or get_settings()
    catalog = PlanCatalog(price_map=settings.price_map)

    entitlements: EntitlementStore
    event_log: ProcessedEventLog
    ledger: UsageLedger
    owns_db_engine = False

    ledger_backend = settings.effective_ledger_backend
    if settings.storage_backend == "postgres" or ledger_backend == "postgres":
        from src.storage.db import get_engine

        db_engine = await get_engine()
        owns_db_engine = True

    if settings.storage_backend == "postgres":
        from src.storage.postgres import PostgresEntitlementStore, PostgresProcessedEventLog

        entitlements = PostgresEntitlementStore(db_engine)
        event_log = PostgresProcessedEventLog(db_engine)
    else:
        entitlements = InMemoryEntitlementStore()
        event_log = InMemoryProcessedEventLog()

    if ledger_backend == "postgres":
        from src.storage.postgres import PostgresUsageLedger

        ledger = PostgresUsageLedger(db_engine)
    elif ledger_backend == "redis":
        from src.storage.redis_ledger import RedisUsageLedger

        overages: UsageLedger | None = None
        if settings.storage_backend == "postgres":
            from src.storage.postgres import PostgresUsageLedger

            overages = PostgresUsageLedger(db_engine)
        ledger = RedisUsageLedger(settings.redis_url.get_secret_value(), overages=overages)
    else:
        ledger = InMemoryUsageLedger()

    state_machine = SubscriptionStateMachine(catalog)
    reconciler = EventReconciler(
        entitlements,
        event_log,
        state_machine,
        webhook_secret=settings.stripe_webhook_secret.get_secret_value(),
        tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )
    gate = UsageGate(
        entitlements,
        ledger,
        catalog,
        policy=ConsumptionPolicy(settings.consumption_policy),
        clock=clock,
    )

    log.info(
        "billing_engine_built",
        storage=settings.storage_backend,
        ledger=ledger_backend,
        policy=settings.consumption_policy,
    )
    return BillingEngine(
        catalog=catalog,
        entitlements=entitlements,
        ledger=ledger,
        event_log=event_log,
        state_machine=state_machine,
        reconciler=reconciler,
        gate=gate,
        checkout_url=settings.billing_checkout_url,
        _owns_db_engine=owns_db_engine,
    )
