"""Tests for settings validation and the engine factory."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from config.settings import Settings
from src.billing.engine import build_engine
from src.billing.entitlements import InMemoryEntitlementStore
from src.billing.gate import ConsumptionPolicy
from src.billing.ledger import InMemoryUsageLedger
from src.storage.postgres import PostgresEntitlementStore, PostgresUsageLedger
from src.storage.redis_ledger import RedisUsageLedger


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.tally_env == "dev"
        assert settings.effective_ledger_backend == "memory"
        assert settings.stripe_webhook_tolerance_seconds == 300

    def test_ledger_follows_storage(self) -> None:
        settings = Settings(_env_file=None, storage_backend="postgres")
        assert settings.effective_ledger_backend == "postgres"
        settings = Settings(_env_file=None, storage_backend="postgres", ledger_backend="redis")
        assert settings.effective_ledger_backend == "redis"

    def test_price_map(self) -> None:
        settings = Settings(_env_file=None, stripe_price_pro="price_123")
        assert settings.price_map["price_123"] == "pro"

    def test_prod_requires_webhook_secret(self) -> None:
        with pytest.raises(ValidationError, match="STRIPE_WEBHOOK_SECRET"):
            Settings(_env_file=None, tally_env="prod", storage_backend="postgres")

    def test_prod_rejects_memory_storage(self) -> None:
        with pytest.raises(ValidationError, match="In-memory storage"):
            Settings(_env_file=None, tally_env="prod", stripe_webhook_secret="whsec_x")

    def test_prod_rejects_memory_ledger(self) -> None:
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None,
                tally_env="prod",
                stripe_webhook_secret="whsec_x",
                storage_backend="postgres",
                ledger_backend="memory",
            )

    def test_prod_accepts_durable_config(self) -> None:
        settings = Settings(
            _env_file=None,
            tally_env="prod",
            stripe_webhook_secret="whsec_x",
            storage_backend="postgres",
        )
        assert settings.tally_env == "prod"


class TestBuildEngine:
    @pytest.mark.asyncio
    async def test_memory_backends(self) -> None:
        engine = await build_engine(Settings(_env_file=None, consumption_policy="hard_stop"))
        assert isinstance(engine.entitlements, InMemoryEntitlementStore)
        assert isinstance(engine.ledger, InMemoryUsageLedger)
        assert engine.gate.policy == ConsumptionPolicy.HARD_STOP
        await engine.close()

    @pytest.mark.asyncio
    async def test_redis_ledger_with_memory_store(self) -> None:
        engine = await build_engine(Settings(_env_file=None, ledger_backend="redis"))
        assert isinstance(engine.ledger, RedisUsageLedger)
        assert isinstance(engine.entitlements, InMemoryEntitlementStore)
        await engine.close()

    @pytest.mark.asyncio
    async def test_redis_ledger_keeps_overages_in_postgres(self) -> None:
        with patch("src.storage.db.get_engine", AsyncMock(return_value=MagicMock())):
            engine = await build_engine(
                Settings(_env_file=None, storage_backend="postgres", ledger_backend="redis")
            )
        assert isinstance(engine.ledger, RedisUsageLedger)
        assert isinstance(engine.ledger._overages, PostgresUsageLedger)
        assert isinstance(engine.entitlements, PostgresEntitlementStore)
        await engine.close()
