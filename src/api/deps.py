"""FastAPI dependency injection — shared instances for routes."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from src.billing.engine import BillingEngine
from src.billing.gate import UsageGate
from src.billing.reconciler import EventReconciler

# ── Engine container ──────────────────────────────────────────────


async def get_billing_engine(request: Request) -> BillingEngine:
    """Provide the engine built by the application lifespan."""
    engine: BillingEngine | None = getattr(request.app.state, "billing", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing engine is not ready",
        )
    return engine


async def get_gate(engine: BillingEngine = Depends(get_billing_engine)) -> UsageGate:
    return engine.gate


async def get_reconciler(
    engine: BillingEngine = Depends(get_billing_engine),
) -> EventReconciler:
    return engine.reconciler


# ── Tenant identity ───────────────────────────────────────────────


async def require_tenant(
    x_tenant_id: str | None = Header(default=None),
) -> str:
    """Return the tenant id set by the upstream auth layer."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header",
        )
    return tenant_id
