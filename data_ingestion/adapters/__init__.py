"""
============================================================================
Data Ingestion Adapters Package
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All adapters output Decimal-based data

ADAPTERS:
    1. MarketAdapter - prices, yield, locked principal, platform fee
    2. StakeAdapter - reward-token stakers and base-asset delegators

All adapters implement the BaseAdapter interface for consistency.
============================================================================
"""

from data_ingestion.adapters.base_adapter import (
    BaseAdapter,
    AdapterStatus,
    AdapterErrorCode,
    AdapterHealth,
)
from data_ingestion.adapters.market_adapter import MarketAdapter
from data_ingestion.adapters.stake_adapter import StakeAdapter

__all__ = [
    "BaseAdapter",
    "AdapterStatus",
    "AdapterErrorCode",
    "AdapterHealth",
    "MarketAdapter",
    "StakeAdapter",
]
