"""Usage metering endpoints — tenant-scoped quota checks and usage information."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from src.api.deps import get_billing_engine, require_tenant
from src.api.models.schemas import (
    ConsumeRequest,
    ConsumeResponse,
    DeniedDetail,
    OverageConsent,
    OverageConsentOut,
    OverageListOut,
    OverageRecordOut,
    UsageOut,
)
from src.billing.engine import BillingEngine
from src.billing.gate import AllowedWithOverage, Denied, DenialReason
from src.core.exceptions import TenantNotFoundError

router = APIRouter(prefix="/usage", tags=["usage"])

DENIAL_STATUS: dict[DenialReason, int] = {
    DenialReason.SUBSCRIPTION_REQUIRED: status.HTTP_402_PAYMENT_REQUIRED,
    DenialReason.MONTHLY_LIMIT_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    DenialReason.DAILY_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
}


def _tenant_not_found(tenant_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"No subscription record for tenant {tenant_id}",
    )


def _denied_response(decision: Denied, checkout_url: str) -> JSONResponse:
    upgrade = decision.upgrade_to.value if decision.upgrade_to else None
    detail = DeniedDetail(
        reason=decision.reason.value,
        message=decision.message,
        plan=decision.plan,
        upgrade_to=upgrade,
        checkout_url=f"{checkout_url}?plan={upgrade}" if upgrade and checkout_url else None,
        used=decision.used,
        quota=decision.quota,
        overage_unit_price=decision.overage_unit_price,
    )
    return JSONResponse(
        status_code=DENIAL_STATUS[decision.reason],
        content={"detail": detail.model_dump(mode="json")},
    )


@router.get("", response_model=UsageOut)
async def get_usage(
    tenant_id: str = Depends(require_tenant),
    engine: BillingEngine = Depends(get_billing_engine),
) -> UsageOut:
    """Get current usage and limits for the tenant. Display only."""
    try:
        summary = await engine.gate.usage_summary(tenant_id)
    except TenantNotFoundError as exc:
        raise _tenant_not_found(tenant_id) from exc

    return UsageOut(
        tenant_id=summary.tenant_id,
        plan=summary.plan,
        status=summary.status,
        period=summary.period,
        monthly_used=summary.monthly_used,
        monthly_quota=summary.monthly_quota,
        monthly_remaining=summary.monthly_remaining,
        daily_used=summary.daily_used,
        daily_quota=summary.daily_quota,
        percent_used=summary.percent_used,
        at_monthly_limit=summary.at_monthly_limit,
        at_daily_limit=summary.at_daily_limit,
        overage_enabled=summary.overage_enabled,
        overage_unit_price=summary.overage_unit_price,
        pending_overage_total=summary.pending_overage_total,
        upgrade_to=summary.upgrade_to.value if summary.upgrade_to else None,
        renewal_at=summary.renewal_at,
    )


@router.post(
    "/consume",
    response_model=ConsumeResponse,
    responses={402: {"model": DeniedDetail}, 429: {"model": DeniedDetail}},
)
async def consume(
    body: ConsumeRequest | None = None,
    tenant_id: str = Depends(require_tenant),
    engine: BillingEngine = Depends(get_billing_engine),
) -> ConsumeResponse | JSONResponse:
    """Check quota and count one metered action (or ``units`` of them)."""
    body = body or ConsumeRequest()
    try:
        decision = await engine.gate.check_and_consume(
            tenant_id, units=body.units, allow_overage=body.allow_overage
        )
    except TenantNotFoundError as exc:
        raise _tenant_not_found(tenant_id) from exc

    if isinstance(decision, Denied):
        return _denied_response(decision, engine.checkout_url)

    if isinstance(decision, AllowedWithOverage):
        return ConsumeResponse(
            decision="allowed_with_overage",
            monthly_used=decision.monthly_used,
            monthly_quota=decision.monthly_quota,
            overage_units=decision.overage_units,
            overage_unit_price=decision.unit_price,
            overage_charge=decision.charge,
            overage_record_id=decision.record_id,
        )

    return ConsumeResponse(
        decision="allowed",
        monthly_used=decision.monthly_used,
        monthly_quota=decision.monthly_quota,
    )


@router.put("/overage", response_model=OverageConsentOut)
async def set_overage(
    body: OverageConsent,
    tenant_id: str = Depends(require_tenant),
    engine: BillingEngine = Depends(get_billing_engine),
) -> OverageConsentOut:
    """Opt in to (or out of) pay-per-use billing past the monthly quota."""
    try:
        entitlement = await engine.entitlements.set_overage_enabled(tenant_id, body.enabled)
    except TenantNotFoundError as exc:
        raise _tenant_not_found(tenant_id) from exc
    return OverageConsentOut(tenant_id=tenant_id, overage_enabled=entitlement.overage_enabled)


@router.get("/overages", response_model=OverageListOut)
async def list_overages(
    period: str | None = None,
    tenant_id: str = Depends(require_tenant),
    engine: BillingEngine = Depends(get_billing_engine),
) -> OverageListOut:
    """Overage records for the tenant, newest first."""
    records = await engine.ledger.list_overages(tenant_id, period)
    return OverageListOut(
        tenant_id=tenant_id,
        records=[
            OverageRecordOut(
                record_id=r.record_id,
                units=r.units,
                unit_price=r.unit_price,
                amount=r.amount,
                period_key=r.period_key,
                status=r.status.value,
                created_at=r.created_at,
            )
            for r in records
        ],
        pending_total=await engine.ledger.pending_overage_total(tenant_id),
    )
