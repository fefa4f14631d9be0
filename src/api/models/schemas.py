"""Pydantic V2 request/response schemas for TALLY API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


# ── Webhook ───────────────────────────────────────────────────────

class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment gateway."""

    received: bool = True
    event_id: str
    event_type: str
    outcome: str


# ── Usage ─────────────────────────────────────────────────────────

class ConsumeRequest(BaseModel):
    units: int = Field(1, ge=1, le=1000)
    allow_overage: bool = False


class ConsumeResponse(BaseModel):
    """Outcome of an allowed request."""

    decision: Literal["allowed", "allowed_with_overage"]
    monthly_used: int
    monthly_quota: int
    overage_units: int = 0
    overage_unit_price: Decimal | None = None
    overage_charge: Decimal | None = None
    overage_record_id: str | None = None


class DeniedDetail(BaseModel):
    """Body of a 402/429 denial: what happened and what the user can do."""

    reason: str
    message: str
    plan: str
    upgrade_to: str | None = None
    checkout_url: str | None = None
    used: int | None = None
    quota: int | None = None
    overage_unit_price: Decimal | None = None


class UsageOut(BaseModel):
    tenant_id: str
    plan: str
    status: str
    period: str
    monthly_used: int
    monthly_quota: int
    monthly_remaining: int
    daily_used: int | None = None
    daily_quota: int | None = None
    percent_used: float
    at_monthly_limit: bool
    at_daily_limit: bool
    overage_enabled: bool
    overage_unit_price: Decimal
    pending_overage_total: Decimal
    upgrade_to: str | None = None
    renewal_at: datetime | None = None


class OverageConsent(BaseModel):
    enabled: bool


class OverageConsentOut(BaseModel):
    tenant_id: str
    overage_enabled: bool


class OverageRecordOut(BaseModel):
    record_id: str
    units: int
    unit_price: Decimal
    amount: Decimal
    period_key: str
    status: str
    created_at: datetime


class OverageListOut(BaseModel):
    tenant_id: str
    records: list[OverageRecordOut] = Field(default_factory=list)
    pending_total: Decimal


# ── Health ────────────────────────────────────────────────────────

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    environment: str
    storage_backend: str
    ledger_backend: str
