"""Billing core — plans, usage metering, entitlements and gateway reconciliation."""

from src.billing.engine import BillingEngine, build_engine
from src.billing.entitlements import EntitlementStore, InMemoryEntitlementStore
from src.billing.events import InMemoryProcessedEventLog, ProcessedEventLog, parse_event
from src.billing.gate import (
    Allowed,
    AllowedWithOverage,
    ConsumptionPolicy,
    Denied,
    DenialReason,
    UsageDecision,
    UsageGate,
    UsageSummary,
)
from src.billing.ledger import InMemoryUsageLedger, UsageLedger
from src.billing.plans import PLAN_LIMITS, PlanCatalog, PlanLimits
from src.billing.reconciler import EventReconciler, ReconcileResult
from src.billing.state_machine import SubscriptionStateMachine

__all__ = [
    "Allowed",
    "AllowedWithOverage",
    "BillingEngine",
    "ConsumptionPolicy",
    "Denied",
    "DenialReason",
    "EntitlementStore",
    "EventReconciler",
    "InMemoryEntitlementStore",
    "InMemoryProcessedEventLog",
    "InMemoryUsageLedger",
    "PLAN_LIMITS",
    "PlanCatalog",
    "PlanLimits",
    "ProcessedEventLog",
    "ReconcileResult",
    "SubscriptionStateMachine",
    "UsageDecision",
    "UsageGate",
    "UsageLedger",
    "UsageSummary",
    "build_engine",
    "parse_event",
]
