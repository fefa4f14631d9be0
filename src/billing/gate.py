"""Usage gate — the allow/deny decision for every metered request.

Decisions are values, not exceptions: ``Allowed``, ``AllowedWithOverage``
or ``Denied`` with a reason that tells the user what to do next
(upgrade / wait for the period to reset / enable overage).

The gate never reads a counter to decide. Every decision comes from the
result of the ledger's atomic ``try_increment``, so two concurrent requests
can never both take the last unit of quota.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable

from src.billing.entitlements import EntitlementStore
from src.billing.ledger import UsageLedger, day_key, month_key
from src.billing.plans import PlanCatalog
from src.core.logging import get_logger
from src.core.types import Entitlement, OverageRecord, PlanTier, utcnow

log = get_logger(__name__)


class DenialReason(str, Enum):
    SUBSCRIPTION_REQUIRED = "subscription_required"
    DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
    MONTHLY_LIMIT_EXCEEDED = "monthly_limit_exceeded"


class ConsumptionPolicy(str, Enum):
    """What happens to the ledger when a request is denied for quota.

    COUNT_ATTEMPT keeps the increment for denied attempts; HARD_STOP only
    writes increments that fit. A request let through as overage is always
    counted.
    """

    COUNT_ATTEMPT = "count_attempt"
    HARD_STOP = "hard_stop"


@dataclass(frozen=True)
class Allowed:
    monthly_used: int
    monthly_quota: int

    @property
    def is_allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class AllowedWithOverage:
    unit_price: Decimal
    overage_units: int
    record_id: str
    monthly_used: int
    monthly_quota: int

    @property
    def is_allowed(self) -> bool:
        return True

    @property
    def charge(self) -> Decimal:
        return self.unit_price * self.overage_units


@dataclass(frozen=True)
class Denied:
    reason: DenialReason
    message: str
    plan: str
    upgrade_to: PlanTier | None = None
    used: int | None = None
    quota: int | None = None
    overage_unit_price: Decimal | None = None

    @property
    def is_allowed(self) -> bool:
        return False


UsageDecision = Allowed | AllowedWithOverage | Denied


@dataclass
class UsageSummary:
    """Display-only usage view for dashboards and usage meters."""

    tenant_id: str
    plan: str
    status: str
    period: str
    monthly_used: int
    monthly_quota: int
    monthly_remaining: int
    daily_used: int | None
    daily_quota: int | None
    percent_used: float
    at_monthly_limit: bool
    at_daily_limit: bool
    overage_enabled: bool
    overage_unit_price: Decimal
    pending_overage_total: Decimal
    upgrade_to: PlanTier | None
    renewal_at: datetime | None


def _plan_label(entitlement: Entitlement) -> str:
    return str(getattr(entitlement.plan, "value", entitlement.plan))


class UsageGate:
    """Checks entitlement and quota, and consumes units in one step."""

    def __init__(
        self,
        entitlements: EntitlementStore,
        ledger: UsageLedger,
        catalog: PlanCatalog,
        policy: ConsumptionPolicy = ConsumptionPolicy.COUNT_ATTEMPT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entitlements = entitlements
        self._ledger = ledger
        self._catalog = catalog
        self._policy = policy
        self._clock = clock

    @property
    def policy(self) -> ConsumptionPolicy:
        return self._policy

    async def check_and_consume(
        self,
        tenant_id: str,
        units: int = 1,
        allow_overage: bool = False,
    ) -> UsageDecision:
        """Decide whether ``units`` metered actions may proceed, and count them.

        ``allow_overage`` is the request-level opt-in; the tenant's stored
        consent has the same effect. Raises TenantNotFoundError for unknown
        tenants and lets storage errors propagate.
        """
        if units <= 0:
            msg = f"units must be positive: {units}"
            raise ValueError(msg)

        entitlement = await self._entitlements.get(tenant_id)
        plan = _plan_label(entitlement)

        if not self._catalog.is_known(entitlement.plan):
            log.warning("gate_unknown_plan_denied", tenant_id=tenant_id, plan=plan)
            return self._deny(
                DenialReason.SUBSCRIPTION_REQUIRED,
                entitlement,
                "Your plan could not be verified. Contact support to restore access.",
            )

        if entitlement.is_paid_tier and not entitlement.has_active_payment:
            return self._deny(
                DenialReason.SUBSCRIPTION_REQUIRED,
                entitlement,
                f"The {plan} plan requires an active subscription "
                f"(current status: {entitlement.status.value}). "
                "Update your payment method to continue.",
            )

        limits = self._catalog.limits_for(entitlement.plan)
        overage_ok = entitlement.overage_enabled or allow_overage
        count_rejected = self._policy == ConsumptionPolicy.COUNT_ATTEMPT or overage_ok
        now = self._clock()
        overage_units = 0

        if limits.daily_quota is not None:
            daily = await self._ledger.try_increment(
                tenant_id, day_key(now), units, limits.daily_quota, count_rejected
            )
            over_daily = units - daily.allowed_count
            if over_daily > 0:
                if not overage_ok:
                    return self._deny(
                        DenialReason.DAILY_LIMIT_EXCEEDED,
                        entitlement,
                        f"Daily limit of {limits.daily_quota} reached. "
                        "Try again tomorrow or enable overage billing.",
                        used=daily.new_total,
                        quota=limits.daily_quota,
                    )
                overage_units = over_daily

        month = month_key(now)
        monthly = await self._ledger.try_increment(
            tenant_id, month, units, limits.monthly_quota, count_rejected
        )
        over_monthly = units - monthly.allowed_count
        if over_monthly > 0 and not overage_ok:
            # Under COUNT_ATTEMPT the increment above stays on the ledger even
            # though the request is denied; only this decision gates the action.
            upgrade = self._catalog.upgrade_for(entitlement.plan)
            upgrade_hint = f"Upgrade to {upgrade.value} or enable" if upgrade else "Enable"
            return self._deny(
                DenialReason.MONTHLY_LIMIT_EXCEEDED,
                entitlement,
                f"Monthly limit of {limits.monthly_quota} reached. {upgrade_hint} "
                f"overage billing at ${limits.overage_unit_price} per use.",
                used=monthly.new_total,
                quota=limits.monthly_quota,
            )
        overage_units = max(overage_units, over_monthly)

        if overage_units == 0:
            return Allowed(monthly_used=monthly.new_total, monthly_quota=limits.monthly_quota)

        record = OverageRecord(
            tenant_id=tenant_id,
            units=overage_units,
            unit_price=limits.overage_unit_price,
            period_key=month,
        )
        await self._ledger.record_overage(record)
        log.info(
            "usage_overage_allowed",
            tenant_id=tenant_id,
            plan=plan,
            units=overage_units,
            unit_price=str(limits.overage_unit_price),
        )
        return AllowedWithOverage(
            unit_price=limits.overage_unit_price,
            overage_units=overage_units,
            record_id=record.record_id,
            monthly_used=monthly.new_total,
            monthly_quota=limits.monthly_quota,
        )

    async def usage_summary(self, tenant_id: str) -> UsageSummary:
        """Current usage against the plan's limits. Never used for gating."""
        entitlement = await self._entitlements.get(tenant_id)
        limits = self._catalog.limits_for(entitlement.plan)
        now = self._clock()
        month = month_key(now)

        monthly_used = await self._ledger.current_count(tenant_id, month)
        daily_used: int | None = None
        if limits.daily_quota is not None:
            daily_used = await self._ledger.current_count(tenant_id, day_key(now))

        quota = limits.monthly_quota
        return UsageSummary(
            tenant_id=tenant_id,
            plan=_plan_label(entitlement),
            status=entitlement.status.value,
            period=month,
            monthly_used=monthly_used,
            monthly_quota=quota,
            monthly_remaining=max(0, quota - monthly_used),
            daily_used=daily_used,
            daily_quota=limits.daily_quota,
            percent_used=min(100.0, round(monthly_used / max(quota, 1) * 100, 1)),
            at_monthly_limit=monthly_used >= quota,
            at_daily_limit=(
                limits.daily_quota is not None
                and daily_used is not None
                and daily_used >= limits.daily_quota
            ),
            overage_enabled=entitlement.overage_enabled,
            overage_unit_price=limits.overage_unit_price,
            pending_overage_total=await self._ledger.pending_overage_total(tenant_id),
            upgrade_to=self._catalog.upgrade_for(entitlement.plan),
            renewal_at=entitlement.renewal_at,
        )

    def _deny(
        self,
        reason: DenialReason,
        entitlement: Entitlement,
        message: str,
        used: int | None = None,
        quota: int | None = None,
    ) -> Denied:
        plan = _plan_label(entitlement)
        log.info(
            "usage_denied",
            tenant_id=entitlement.tenant_id,
            plan=plan,
            reason=reason.value,
            used=used,
            quota=quota,
        )
        known = self._catalog.is_known(entitlement.plan)
        quota_reason = reason != DenialReason.SUBSCRIPTION_REQUIRED
        return Denied(
            reason=reason,
            message=message,
            plan=plan,
            upgrade_to=(
                self._catalog.upgrade_for(entitlement.plan) if known and quota_reason else None
            ),
            used=used,
            quota=quota,
            overage_unit_price=(
                self._catalog.limits_for(entitlement.plan).overage_unit_price if known else None
            ),
        )
