"""Durable backends — PostgreSQL stores and the Redis usage ledger."""

from src.storage.postgres import (
    PostgresEntitlementStore,
    PostgresProcessedEventLog,
    PostgresUsageLedger,
)
from src.storage.redis_ledger import RedisUsageLedger

__all__ = [
    "PostgresEntitlementStore",
    "PostgresProcessedEventLog",
    "PostgresUsageLedger",
    "RedisUsageLedger",
]
