"""Entitlement store — the record of each tenant's plan, status and renewal.

Entitlements change in two ways only: through a state-machine
``Transition`` (``apply``) or through an audited administrative override.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace

from src.core.exceptions import TenantNotFoundError
from src.core.logging import get_audit_logger, get_logger
from src.core.types import (
    AdminOverride,
    Entitlement,
    LifecycleStatus,
    PlanTier,
    Transition,
    utcnow,
)

log = get_logger(__name__)
audit = get_audit_logger()


class EntitlementStore(ABC):
    """Interface for entitlement storage backends."""

    @abstractmethod
    async def create(self, tenant_id: str, customer_ref: str | None = None) -> Entitlement:
        """Create the default free/inactive entitlement; return the existing one if present."""
        ...

    @abstractmethod
    async def get(self, tenant_id: str) -> Entitlement:
        """Current entitlement. Raises TenantNotFoundError for unknown tenants."""
        ...

    @abstractmethod
    async def apply(self, tenant_id: str, transition: Transition) -> Entitlement:
        """Persist a transition atomically for this tenant.

        The write is skipped when the tenant already holds a later
        state-bearing event; the stored entitlement is returned either way.
        """
        ...

    @abstractmethod
    async def override_admin(
        self,
        tenant_id: str,
        plan: PlanTier,
        status: LifecycleStatus,
        *,
        actor: str,
        reason: str = "",
    ) -> Entitlement:
        """Set plan and status directly, bypassing the state machine."""
        ...

    @abstractmethod
    async def find_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        ...

    @abstractmethod
    async def find_by_customer_ref(self, customer_ref: str) -> Entitlement | None:
        ...

    @abstractmethod
    async def set_overage_enabled(self, tenant_id: str, enabled: bool) -> Entitlement:
        ...

    @abstractmethod
    async def list_overrides(self, tenant_id: str) -> list[AdminOverride]:
        ...

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""

    @staticmethod
    def _audit_override(override: AdminOverride) -> None:
        audit.warning(
            "entitlement_admin_override",
            tenant_id=override.tenant_id,
            actor=override.actor,
            reason=override.reason,
            old_plan=override.old_plan,
            old_status=override.old_status,
            new_plan=override.new_plan,
            new_status=override.new_status,
            override_id=override.override_id,
        )


class InMemoryEntitlementStore(EntitlementStore):
    """Dict-backed store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._rows: dict[str, Entitlement] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._overrides: dict[str, list[AdminOverride]] = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        return self._locks.setdefault(tenant_id, asyncio.Lock())

    def _require(self, tenant_id: str) -> Entitlement:
        row = self._rows.get(tenant_id)
        if row is None:
            raise TenantNotFoundError(
                f"no entitlement for tenant {tenant_id}", {"tenant_id": tenant_id}
            )
        return row

    async def create(self, tenant_id: str, customer_ref: str | None = None) -> Entitlement:
        async with self._lock_for(tenant_id):
            existing = self._rows.get(tenant_id)
            if existing is not None:
                return replace(existing)
            row = Entitlement(tenant_id=tenant_id, customer_ref=customer_ref)
            self._rows[tenant_id] = row
        log.info("entitlement_created", tenant_id=tenant_id)
        return replace(row)

    async def get(self, tenant_id: str) -> Entitlement:
        return replace(self._require(tenant_id))

    async def apply(self, tenant_id: str, transition: Transition) -> Entitlement:
        async with self._lock_for(tenant_id):
            current = self._require(tenant_id)
            if transition.is_stale_for(current):
                log.info(
                    "entitlement_write_skipped_stale",
                    tenant_id=tenant_id,
                    event_id=transition.event_id,
                )
                return replace(current)
            updated = replace(transition.applied_to(current), updated_at=utcnow())
            self._rows[tenant_id] = updated
        return replace(updated)

    async def override_admin(
        self,
        tenant_id: str,
        plan: PlanTier,
        status: LifecycleStatus,
        *,
        actor: str,
        reason: str = "",
    ) -> Entitlement:
        async with self._lock_for(tenant_id):
            current = self._require(tenant_id)
            override = AdminOverride(
                tenant_id=tenant_id,
                actor=actor,
                reason=reason,
                old_plan=str(getattr(current.plan, "value", current.plan)),
                old_status=current.status.value,
                new_plan=plan.value,
                new_status=status.value,
            )
            updated = replace(current, plan=plan, status=status, updated_at=utcnow())
            self._rows[tenant_id] = updated
            self._overrides.setdefault(tenant_id, []).append(override)
        self._audit_override(override)
        return replace(updated)

    async def find_by_subscription_ref(self, subscription_ref: str) -> Entitlement | None:
        for row in self._rows.values():
            if row.subscription_ref == subscription_ref:
                return replace(row)
        return None

    async def find_by_customer_ref(self, customer_ref: str) -> Entitlement | None:
        for row in self._rows.values():
            if row.customer_ref == customer_ref:
                return replace(row)
        return None

    async def set_overage_enabled(self, tenant_id: str, enabled: bool) -> Entitlement:
        async with self._lock_for(tenant_id):
            current = self._require(tenant_id)
            updated = replace(current, overage_enabled=enabled, updated_at=utcnow())
            self._rows[tenant_id] = updated
        log.info("overage_consent_changed", tenant_id=tenant_id, enabled=enabled)
        return replace(updated)

    async def list_overrides(self, tenant_id: str) -> list[AdminOverride]:
        return list(self._overrides.get(tenant_id, []))
