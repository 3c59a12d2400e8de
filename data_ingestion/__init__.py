"""
============================================================================
Stake Reward Distributor v1.0.0
Data Ingestion Package - Market and Stake Snapshots
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All values use decimal.Decimal
Traceability: All operations include correlation_id for audit

SNAPSHOT PIPELINE:
    1. Market snapshot: prices, base yield, locked principal, platform fee
    2. Stake snapshot: reward-token stakers merged with delegators

    Every remote read goes through fetch_with_failover (primary, then
    backup); market values additionally fall back to the last-known-good
    cache and operator-configured static values.

============================================================================
"""

from data_ingestion.schemas import (
    FetchResult,
    ResolvedValue,
    SourceMode,
    StakeSnapshot,
)
from data_ingestion.failover import fetch_with_failover
from data_ingestion.snapshot_cache import SnapshotCache
from data_ingestion.provider_factory import (
    CycleSnapshots,
    ProviderFactory,
)

__all__ = [
    # Schemas
    "FetchResult",
    "ResolvedValue",
    "SourceMode",
    "StakeSnapshot",
    # Fetching
    "fetch_with_failover",
    "SnapshotCache",
    # Factory
    "CycleSnapshots",
    "ProviderFactory",
]
