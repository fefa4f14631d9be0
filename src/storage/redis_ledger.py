"""Redis-backed usage ledger for deployments that meter across processes.

Only the counters live in Redis. Overage records are billing facts and go
to the ledger passed as ``overages``, normally the PostgreSQL one.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import get_settings
from src.billing.ledger import InMemoryUsageLedger, UsageLedger, check_amount
from src.core.constants import USAGE_COUNTER_TTL, USAGE_KEY_PREFIX
from src.core.exceptions import StorageError
from src.core.logging import get_logger
from src.core.types import IncrementResult, OverageRecord

log = get_logger(__name__)

# KEYS[1] counter key
# ARGV: amount, limit (-1 = none), count_rejected (1/0), ttl seconds
# Returns {allowed_count, new_total}.
_TRY_INCREMENT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local amount = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local allowed = amount
if limit >= 0 then
    allowed = math.max(0, math.min(amount, limit - current))
end
if ARGV[3] ~= '1' and allowed < amount then
    return {0, current}
end
local total = redis.call('INCRBY', KEYS[1], amount)
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[4]))
return {allowed, total}
"""


def _usage_key(tenant_id: str, period_key: str) -> str:
    return f"{USAGE_KEY_PREFIX}:{tenant_id}:{period_key}"


class RedisUsageLedger(UsageLedger):
    """Counters live in plain integer keys; increments run as one Lua script."""

    def __init__(
        self,
        redis_url: str | None = None,
        client: aioredis.Redis | None = None,
        overages: UsageLedger | None = None,
    ) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._overages = overages if overages is not None else InMemoryUsageLedger()

    async def connect(self) -> None:
        """Initialize the Redis connection."""
        if self._redis is None:
            url = self._redis_url or get_settings().redis_url.get_secret_value()
            self._redis = aioredis.from_url(url, decode_responses=True)
            log.info("redis_connected")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            log.info("redis_closed")
        await self._overages.close()

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    async def try_increment(
        self,
        tenant_id: str,
        period_key: str,
        amount: int = 1,
        limit: int | None = None,
        count_rejected: bool = True,
    ) -> IncrementResult:
        check_amount(amount)
        r = await self._get_redis()
        try:
            allowed, total = await r.eval(
                _TRY_INCREMENT,
                1,
                _usage_key(tenant_id, period_key),
                amount,
                -1 if limit is None else limit,
                1 if count_rejected else 0,
                USAGE_COUNTER_TTL,
            )
        except RedisError as exc:
            log.error("redis_increment_failed", tenant_id=tenant_id, error=str(exc))
            raise StorageError(
                f"usage increment failed: {exc}",
                {"tenant_id": tenant_id, "period": period_key},
            ) from exc

        log.debug(
            "usage_incremented",
            tenant_id=tenant_id,
            period=period_key,
            amount=amount,
            total=total,
        )
        return IncrementResult(allowed_count=int(allowed), new_total=int(total))

    async def current_count(self, tenant_id: str, period_key: str) -> int:
        r = await self._get_redis()
        try:
            raw = await r.get(_usage_key(tenant_id, period_key))
        except RedisError as exc:
            raise StorageError(f"usage read failed: {exc}", {"tenant_id": tenant_id}) from exc
        return int(raw) if raw is not None else 0

    async def record_overage(self, record: OverageRecord) -> None:
        await self._overages.record_overage(record)

    async def list_overages(
        self, tenant_id: str, period_key: str | None = None
    ) -> list[OverageRecord]:
        return await self._overages.list_overages(tenant_id, period_key)
