"""
============================================================================
Stake Reward Distributor v1.0.0
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: None
Side Effects: Updates Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    TRANSFERS_SUBMITTED,
    TRANSFERS_FAILED,
    VERIFICATIONS,
    POOL_TARGET,
    POOL_DISTRIBUTED,
    CURVE_MAX,
    SNAPSHOT_SOURCE,
    record_transfer_submitted,
    record_transfer_failed,
    record_verification,
    update_pool_metrics,
    update_curve_max,
    record_snapshot_source,
    export_metrics,
)

__all__ = [
    "TRANSFERS_SUBMITTED",
    "TRANSFERS_FAILED",
    "VERIFICATIONS",
    "POOL_TARGET",
    "POOL_DISTRIBUTED",
    "CURVE_MAX",
    "SNAPSHOT_SOURCE",
    "record_transfer_submitted",
    "record_transfer_failed",
    "record_verification",
    "update_pool_metrics",
    "update_curve_max",
    "record_snapshot_source",
    "export_metrics",
]
