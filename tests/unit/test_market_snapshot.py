"""
============================================================================
Stake Reward Distributor v1.0.0
Unit Tests - Market Snapshot
============================================================================

Tests for:
- Primary, backup and CoinGecko price sources
- Provider statistics parsing (apr, locked, serviceFee)
- Cache and static fallbacks
- DataUnavailable when a field has no source
- Cache write failures do not abort a resolved snapshot

Reliability Level: L6 Critical
============================================================================
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from app.config import DistributionConfig
from app.errors import DataUnavailable
from data_ingestion.adapters.market_adapter import (
    MarketAdapter,
    extract_hourly_price,
    extract_provider_stats,
)
from data_ingestion.schemas import parse_service_fee
from data_ingestion.snapshot_cache import SnapshotCache


TOKEN = "COLS-9d91b7"

ECONOMICS = ("api.test", "/economics")
HOURLY = ("api.test", f"/mex/tokens/prices/hourly/{TOKEN}")
TOKEN_PRICE = ("api-backup.test", f"/tokens/{TOKEN}")
PROVIDER = ("api.test", "/providers/erd1delegation")
COINGECKO = ("coingecko.test", "/api/v3/simple/price")

PROVIDER_STATS = {
    "apr": 10,
    "locked": "100000000000000000000000",
    "serviceFee": 0.1,
}


def routes():
    return {
        ECONOMICS: {"price": 10},
        HOURLY: [{"value": "0.9"}, {"value": "1"}],
        PROVIDER: PROVIDER_STATS,
    }


def client_for(table) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        payload = table.get((request.url.host, request.url.path))
        if payload is None:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def config(tmp_path) -> DistributionConfig:
    return DistributionConfig(
        api_primary_url="https://api.test",
        api_backup_url="https://api-backup.test",
        coingecko_url="https://coingecko.test/api/v3",
        delegation_contract="erd1delegation",
        fetch_retries=1,
        output_dir=str(tmp_path),
    )


async def fetch_market(config, table, cache=None):
    async with client_for(table) as client:
        adapter = MarketAdapter(config, client=client, cache=cache, correlation_id="test-market")
        return await adapter.fetch()


# =============================================================================
# Extractors
# =============================================================================

class TestExtractors:

    def test_provider_stats_smallest_units(self) -> None:
        stats = extract_provider_stats(18)({
            "apr": "9.87",
            "locked": "3000000000000000000000000",
            "serviceFee": "10%",
        })
        assert stats["base_yield_rate_pct"] == Decimal("9.87")
        assert stats["locked_principal"] == Decimal("3000000")
        assert stats["platform_fee_fraction"] == Decimal("0.1")

    def test_locked_in_whole_tokens_is_kept(self) -> None:
        stats = extract_provider_stats(18)({"apr": 8, "locked": "1250000", "serviceFee": 0.08})
        assert stats["locked_principal"] == Decimal("1250000")

    @pytest.mark.parametrize("raw,expected", [
        ("10%", Decimal("0.1")),
        ("12.5", Decimal("0.125")),
        (0.1, Decimal("0.1")),
        (0, Decimal("0")),
    ])
    def test_service_fee_forms(self, raw, expected) -> None:
        assert parse_service_fee(raw) == expected

    def test_service_fee_out_of_range(self) -> None:
        with pytest.raises(ValueError):
            parse_service_fee("150")

    def test_hourly_series_uses_last_point(self) -> None:
        assert extract_hourly_price([{"value": 1}, {"value": "1.2"}]) == Decimal("1.2")
        with pytest.raises(ValueError):
            extract_hourly_price([])


# =============================================================================
# Market Adapter
# =============================================================================

class TestMarketAdapter:

    @pytest.mark.asyncio
    async def test_primary_sources(self, config) -> None:
        market = await fetch_market(config, routes())

        assert market.reward_token_price == Decimal("1")
        assert market.base_asset_price == Decimal("10")
        assert market.base_yield_rate_pct == Decimal("10")
        assert market.locked_principal == Decimal("100000")
        assert market.platform_fee_fraction == Decimal("0.1")
        assert set(market.sources.values()) == {"primary"}

        cache = SnapshotCache(config.snapshot_cache_path)
        assert cache.get("base_asset_price") == Decimal("10")
        assert cache.get("locked_principal") == Decimal("100000")

    @pytest.mark.asyncio
    async def test_reward_price_from_backup(self, config) -> None:
        table = routes()
        del table[HOURLY]
        table[TOKEN_PRICE] = {"price": "1.05"}
        market = await fetch_market(config, table)

        assert market.reward_token_price == Decimal("1.05")
        assert market.sources["reward_token_price"] == "backup"

    @pytest.mark.asyncio
    async def test_base_price_from_coingecko(self, config) -> None:
        table = routes()
        del table[ECONOMICS]
        table[COINGECKO] = {"elrond-erd-2": {"usd": 23.9}}
        market = await fetch_market(config, table)

        assert market.base_asset_price == Decimal("23.9")
        assert market.sources["base_asset_price"] == "backup"

    @pytest.mark.asyncio
    async def test_provider_stats_from_cache(self, config) -> None:
        cache = SnapshotCache(config.snapshot_cache_path, 24)
        cache.store({
            "base_yield_rate_pct": Decimal("9.5"),
            "locked_principal": Decimal("250000"),
            "platform_fee_fraction": Decimal("0.12"),
        })
        table = routes()
        table.pop(PROVIDER)

        market = await fetch_market(config, table, cache=cache)

        assert market.base_yield_rate_pct == Decimal("9.5")
        assert market.locked_principal == Decimal("250000")
        assert market.platform_fee_fraction == Decimal("0.12")
        assert market.sources["locked_principal"] == "cache"
        assert market.sources["base_asset_price"] == "primary"

    @pytest.mark.asyncio
    async def test_stale_cache_falls_through_to_static(self, config) -> None:
        cache = SnapshotCache(config.snapshot_cache_path, 24)
        cache.store(
            {"base_yield_rate_pct": Decimal("9.5")},
            now=datetime.now(timezone.utc) - timedelta(hours=30),
        )
        config.static_base_yield_rate_pct = Decimal("8")
        config.static_locked_principal = Decimal("500000")
        config.static_platform_fee_fraction = Decimal("0.1")
        table = routes()
        table.pop(PROVIDER)

        market = await fetch_market(config, table, cache=cache)

        assert market.base_yield_rate_pct == Decimal("8")
        assert market.sources["base_yield_rate_pct"] == "static"

    @pytest.mark.asyncio
    async def test_no_source_raises(self, config) -> None:
        table = routes()
        table.pop(PROVIDER)

        with pytest.raises(DataUnavailable) as exc_info:
            await fetch_market(config, table)
        assert exc_info.value.field_name == "base_yield_rate_pct"

    @pytest.mark.asyncio
    async def test_zero_price_is_never_used(self, config) -> None:
        table = routes()
        table[ECONOMICS] = {"price": 0}
        with pytest.raises(DataUnavailable) as exc_info:
            await fetch_market(config, table)
        assert exc_info.value.field_name == "base_asset_price"

    @pytest.mark.asyncio
    async def test_cache_write_failure_keeps_resolved_market(self, config) -> None:
        class ReadOnlyCache(SnapshotCache):
            def store(self, values, now=None) -> None:
                raise PermissionError("read-only filesystem")

        cache = ReadOnlyCache(config.snapshot_cache_path, 24)
        market = await fetch_market(config, routes(), cache=cache)

        assert market.base_asset_price == Decimal("10")
        assert set(market.sources.values()) == {"primary"}
