"""
============================================================================
Market Adapter - Prices, Yield, Locked Principal and Platform Fee
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All values use decimal.Decimal
Traceability: Every resolved value is logged with its source tier

SOURCES:
    base_asset_price     {api}/economics -> price; CoinGecko simple/price
    reward_token_price   {primary api}/mex/tokens/prices/hourly/{token} -> last
                         point value; backup {backup api}/tokens/{token} -> price
    base_yield_rate_pct  {api}/providers/{delegation} -> apr
    locked_principal     {api}/providers/{delegation} -> locked
    platform_fee_fraction {api}/providers/{delegation} -> serviceFee

RESOLUTION ORDER (per field):
    primary -> backup -> last-known-good cache (fresh only)
    -> operator static fallback (only if configured) -> DataUnavailable
============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List
import asyncio
import logging

import httpx

from app.allocation.models import MarketParameters
from app.config import DistributionConfig
from app.errors import DataUnavailable
from app.observability.metrics import record_snapshot_source
from data_ingestion.adapters.base_adapter import AdapterErrorCode, AdapterStatus, BaseAdapter
from data_ingestion.schemas import (
    FetchResult,
    ResolvedValue,
    SourceMode,
    normalize_locked_principal,
    parse_service_fee,
    positive_decimal,
)
from data_ingestion.snapshot_cache import SnapshotCache

# Configure module logger
logger = logging.getLogger(__name__)


MARKET_FIELDS = (
    "reward_token_price",
    "base_asset_price",
    "base_yield_rate_pct",
    "locked_principal",
    "platform_fee_fraction",
)


# =============================================================================
# Payload Extractors
# =============================================================================

def extract_economics_price(payload: Dict[str, Any]) -> Decimal:
    return positive_decimal(payload["price"], "economics.price")


def extract_coingecko_price(asset_id: str):
    def _extract(payload: Dict[str, Any]) -> Decimal:
        return positive_decimal(payload[asset_id]["usd"], f"coingecko.{asset_id}.usd")
    return _extract


def extract_hourly_price(payload: List[Dict[str, Any]]) -> Decimal:
    """Last point of the DEX hourly price series."""
    if not isinstance(payload, list) or not payload:
        raise ValueError("empty hourly price series")
    return positive_decimal(payload[-1]["value"], "hourly.value")


def extract_token_price(payload: Dict[str, Any]) -> Decimal:
    return positive_decimal(payload["price"], "token.price")


def extract_provider_stats(decimals: int):
    def _extract(payload: Dict[str, Any]) -> Dict[str, Decimal]:
        return {
            "base_yield_rate_pct": positive_decimal(payload["apr"], "provider.apr"),
            "locked_principal": normalize_locked_principal(payload["locked"], decimals),
            "platform_fee_fraction": parse_service_fee(payload["serviceFee"]),
        }
    return _extract


# =============================================================================
# Market Adapter
# =============================================================================

class MarketAdapter(BaseAdapter):
    """
    Resolves the MarketParameters of one cycle.

    Reliability Level: L6 Critical
    Side Effects: Network I/O, snapshot cache writes

    Example Usage:
        async with MarketAdapter(config) as adapter:
            market = await adapter.fetch()
    """

    name = "market"

    def __init__(
        self,
        config: DistributionConfig,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[SnapshotCache] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(config, client, correlation_id)
        self.cache = cache or SnapshotCache(
            config.snapshot_cache_path, config.snapshot_cache_max_age_hours
        )

    # =========================================================================
    # Remote reads
    # =========================================================================

    async def fetch_base_asset_price(self) -> FetchResult:
        """Network economics on primary/public API, then CoinGecko."""
        try:
            return await self._fetch(
                "base_asset_price",
                f"{self.config.api_primary_url}/economics",
                f"{self.config.api_backup_url}/economics",
                extract=extract_economics_price,
            )
        except DataUnavailable:
            logger.warning(
                f"[MARKET] Economics endpoints failed, trying CoinGecko | "
                f"correlation_id={self.correlation_id}"
            )
        asset_id = self.config.coingecko_base_asset_id
        result = await self._fetch(
            "base_asset_price",
            f"{self.config.coingecko_url}/simple/price",
            params={"ids": asset_id, "vs_currencies": "usd"},
            extract=extract_coingecko_price(asset_id),
        )
        return FetchResult(data=result.data, mode=SourceMode.BACKUP, url=result.url, attempts=result.attempts)

    async def fetch_reward_token_price(self) -> FetchResult:
        token = self.config.reward_token_id
        return await self._fetch(
            "reward_token_price",
            f"{self.config.api_primary_url}/mex/tokens/prices/hourly/{token}",
            f"{self.config.api_backup_url}/tokens/{token}",
            extract=extract_hourly_price,
            backup_extract=extract_token_price,
        )

    async def fetch_provider_stats(self) -> FetchResult:
        path = f"/providers/{self.config.delegation_contract}"
        return await self._fetch(
            "provider_stats",
            f"{self.config.api_primary_url}{path}",
            f"{self.config.api_backup_url}{path}",
            extract=extract_provider_stats(self.config.token_decimals),
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    def _fallback(self, field_name: str, reason: str) -> ResolvedValue:
        cached = self.cache.get(field_name)
        if cached is not None:
            logger.warning(
                f"[MARKET] Using cached value | field={field_name} | value={cached} | "
                f"reason={reason} | correlation_id={self.correlation_id}"
            )
            return ResolvedValue(field_name, cached, SourceMode.CACHE)

        static = self.config.static_fallbacks().get(field_name)
        if static is not None:
            logger.warning(
                f"[MARKET] Using static fallback | field={field_name} | value={static} | "
                f"reason={reason} | correlation_id={self.correlation_id}"
            )
            return ResolvedValue(field_name, static, SourceMode.STATIC)

        self._record_error(
            AdapterErrorCode.CONNECTION_FAIL,
            f"No source for {field_name} | reason={reason}",
        )
        raise DataUnavailable(
            f"{field_name} unavailable from every source ({reason})",
            field_name=field_name,
        )

    async def resolve(self) -> Dict[str, ResolvedValue]:
        """Fetch all market fields concurrently and resolve each one."""
        base_price, reward_price, stats = await asyncio.gather(
            self.fetch_base_asset_price(),
            self.fetch_reward_token_price(),
            self.fetch_provider_stats(),
            return_exceptions=True,
        )

        fetched: Dict[str, Any] = {
            "base_asset_price": base_price,
            "reward_token_price": reward_price,
        }
        for name in ("base_yield_rate_pct", "locked_principal", "platform_fee_fraction"):
            if isinstance(stats, FetchResult):
                fetched[name] = FetchResult(
                    data=stats.data[name], mode=stats.mode, url=stats.url, attempts=stats.attempts
                )
            else:
                fetched[name] = stats

        resolved: Dict[str, ResolvedValue] = {}
        for name in MARKET_FIELDS:
            outcome = fetched[name]
            if isinstance(outcome, FetchResult):
                resolved[name] = ResolvedValue(name, outcome.data, outcome.mode)
            elif isinstance(outcome, DataUnavailable):
                resolved[name] = self._fallback(name, outcome.message)
            else:
                raise outcome
        return resolved

    async def fetch(self) -> MarketParameters:
        """
        Resolve and validate the cycle's market parameters.

        Raises:
            DataUnavailable: Any required value missing or non-positive
        """
        self._set_status(AdapterStatus.FETCHING)
        try:
            resolved = await self.resolve()
            market = MarketParameters(
                reward_token_price=resolved["reward_token_price"].value,
                base_asset_price=resolved["base_asset_price"].value,
                base_yield_rate_pct=resolved["base_yield_rate_pct"].value,
                locked_principal=resolved["locked_principal"].value,
                platform_fee_fraction=resolved["platform_fee_fraction"].value,
                sources={name: r.source.value for name, r in resolved.items()},
            ).validate()
        except DataUnavailable:
            self._set_status(AdapterStatus.ERROR)
            raise

        for name, value in resolved.items():
            record_snapshot_source(name, value.source.value)
            logger.info(
                f"[MARKET] Value resolved | field={name} | value={value.value} | "
                f"source={value.source.value} | correlation_id={self.correlation_id}"
            )

        fresh = {
            name: r.value for name, r in resolved.items()
            if r.source in (SourceMode.PRIMARY, SourceMode.BACKUP)
        }
        try:
            self.cache.store(fresh)
        except OSError as e:
            # resolved values stand; only the next cycle's fallback is lost
            logger.warning(
                f"{AdapterErrorCode.CACHE_WRITE_FAIL} Snapshot cache write failed | "
                f"path={self.cache.path} | error={e} | correlation_id={self.correlation_id}"
            )
        self._set_status(AdapterStatus.READY)
        return market
