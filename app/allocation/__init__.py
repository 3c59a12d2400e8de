"""
============================================================================
Stake Reward Distributor v1.0.0
Allocation Module - Payout Table Construction
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts use decimal.Decimal
============================================================================
"""

from app.allocation.models import (
    AllocationRow,
    CalibrationResult,
    MarketParameters,
    ParticipantStake,
    PayoutTable,
    PoolKind,
    PoolTargets,
)
from app.allocation.engine import AllocationEngine, distribute_exact, merge_stakes

__all__ = [
    "AllocationRow",
    "CalibrationResult",
    "MarketParameters",
    "ParticipantStake",
    "PayoutTable",
    "PoolKind",
    "PoolTargets",
    "AllocationEngine",
    "distribute_exact",
    "merge_stakes",
]
