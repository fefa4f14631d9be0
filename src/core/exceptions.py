"""Custom exception hierarchy for TALLY."""

from __future__ import annotations

from typing import Any


class TallyBaseError(Exception):
    """Base exception for all TALLY errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Integrity (rejected at the boundary, never retried locally) ──

class IntegrityError(TallyBaseError):
    """Inbound gateway data cannot be trusted or understood."""


class InvalidSignatureError(IntegrityError):
    """Webhook signature missing, expired, or not produced with our secret."""


class MalformedEventError(IntegrityError):
    """Webhook payload is not valid JSON or lacks required event fields."""


# ── Storage (transient, always propagated) ───────────────────────

class StorageError(TallyBaseError):
    """Entitlement, ledger, or event-log write failed."""


# ── Lookup / Setup ───────────────────────────────────────────────

class TenantNotFoundError(TallyBaseError):
    """No entitlement row exists for the tenant id."""


class ConfigurationError(TallyBaseError):
    """Engine cannot run with the current settings."""
