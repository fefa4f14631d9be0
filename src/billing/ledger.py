"""Usage ledger — per-tenant, per-period counters with atomic increments.

Counters are keyed by period (``YYYY-MM`` for the month, ``YYYY-MM-DD`` for
the day). A key springs into existence at zero the first time it is
touched, so a new month needs no reset job, and there is no way to
decrement or reset a counter.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from src.core.constants import DAY_KEY_FORMAT, MONTH_KEY_FORMAT
from src.core.logging import get_logger
from src.core.types import IncrementResult, OverageRecord, OverageStatus

log = get_logger(__name__)


def month_key(at: datetime) -> str:
    return at.strftime(MONTH_KEY_FORMAT)


def day_key(at: datetime) -> str:
    return at.strftime(DAY_KEY_FORMAT)


def units_within(previous: int, amount: int, limit: int | None) -> int:
    """How many of ``amount`` new units fit when ``previous`` are already used."""
    if limit is None:
        return amount
    return max(0, min(amount, limit - previous))


def check_amount(amount: int) -> None:
    if amount <= 0:
        msg = f"increment amount must be positive: {amount}"
        raise ValueError(msg)


class UsageLedger(ABC):
    """Interface for counter storage backends."""

    @abstractmethod
    async def try_increment(
        self,
        tenant_id: str,
        period_key: str,
        amount: int = 1,
        limit: int | None = None,
        count_rejected: bool = True,
    ) -> IncrementResult:
        """Atomically add ``amount`` to the counter and report what fit.

        With ``count_rejected`` the full amount is always added and
        ``allowed_count`` says how much of it was within ``limit``. Without
        it the increment is all-or-nothing: when the whole amount does not
        fit, nothing is written and ``allowed_count`` is 0.
        """
        ...

    @abstractmethod
    async def current_count(self, tenant_id: str, period_key: str) -> int:
        """Read-only counter value. Never use this to gate."""
        ...

    @abstractmethod
    async def record_overage(self, record: OverageRecord) -> None:
        ...

    @abstractmethod
    async def list_overages(
        self, tenant_id: str, period_key: str | None = None
    ) -> list[OverageRecord]:
        ...

    async def pending_overage_total(self, tenant_id: str) -> Decimal:
        """Sum of overage amounts not yet billed."""
        records = await self.list_overages(tenant_id)
        return sum(
            (r.amount for r in records if r.status == OverageStatus.PENDING),
            Decimal("0"),
        )

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""


class InMemoryUsageLedger(UsageLedger):
    """Single-process ledger. Each (tenant, period) key has its own lock."""

    def __init__(self) -> None:
        # tenant_id -> period_key -> count
        self._counts: dict[str, dict[str, int]] = defaultdict(dict)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._overages: dict[str, list[OverageRecord]] = defaultdict(list)

    def _lock_for(self, tenant_id: str, period_key: str) -> asyncio.Lock:
        return self._locks.setdefault((tenant_id, period_key), asyncio.Lock())

    async def try_increment(
        self,
        tenant_id: str,
        period_key: str,
        amount: int = 1,
        limit: int | None = None,
        count_rejected: bool = True,
    ) -> IncrementResult:
        check_amount(amount)
        async with self._lock_for(tenant_id, period_key):
            previous = self._counts[tenant_id].get(period_key, 0)
            allowed = units_within(previous, amount, limit)

            if not count_rejected and allowed < amount:
                return IncrementResult(allowed_count=0, new_total=previous)

            new_total = previous + amount
            self._counts[tenant_id][period_key] = new_total

        log.debug(
            "usage_incremented",
            tenant_id=tenant_id,
            period=period_key,
            amount=amount,
            total=new_total,
        )
        return IncrementResult(allowed_count=allowed, new_total=new_total)

    async def current_count(self, tenant_id: str, period_key: str) -> int:
        return self._counts.get(tenant_id, {}).get(period_key, 0)

    async def record_overage(self, record: OverageRecord) -> None:
        self._overages[record.tenant_id].append(record)
        log.info(
            "overage_recorded",
            tenant_id=record.tenant_id,
            units=record.units,
            unit_price=str(record.unit_price),
            period=record.period_key,
        )

    async def list_overages(
        self, tenant_id: str, period_key: str | None = None
    ) -> list[OverageRecord]:
        records = list(self._overages.get(tenant_id, []))
        if period_key is not None:
            records = [r for r in records if r.period_key == period_key]
        return sorted(records, key=lambda r: r.created_at, reverse=True)
