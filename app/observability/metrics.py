"""
============================================================================
Stake Reward Distributor v1.0.0
Prometheus Metrics - Distribution Observability
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: All token values must be Decimal
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- distribution_transfers_submitted_total: transfers accepted by the ledger
- distribution_transfers_failed_total: transfers rejected or failed
- distribution_verifications_total: verification outcomes
- distribution_pool_target_tokens: daily pool targets
- distribution_pool_distributed_tokens: amounts allocated per pool
- distribution_curve_max_pct: calibrated bonus curve ceiling
- distribution_snapshot_source_total: which source produced each value

The job is a daily batch, so metrics are exported to a textfile for the
node exporter's textfile collector rather than served over HTTP.

ZERO-FLOAT MANDATE
------------------
Decimal values are converted to float ONLY at the Prometheus boundary.

============================================================================
"""

import logging
from decimal import Decimal
from typing import Optional

from prometheus_client import Counter, Gauge, REGISTRY, write_to_textfile

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

TRANSFERS_SUBMITTED = Counter(
    "distribution_transfers_submitted_total",
    "Reward transfers accepted by the ledger gateway",
    ["pool"]
)

TRANSFERS_FAILED = Counter(
    "distribution_transfers_failed_total",
    "Reward transfers rejected at submission",
    ["pool", "error_code"]
)

VERIFICATIONS = Counter(
    "distribution_verifications_total",
    "Settlement verification outcomes",
    ["outcome"]
)

POOL_TARGET = Gauge(
    "distribution_pool_target_tokens",
    "Daily pool target in reward-token units",
    ["pool"]
)

POOL_DISTRIBUTED = Gauge(
    "distribution_pool_distributed_tokens",
    "Reward tokens allocated by the payout table",
    ["pool"]
)

CURVE_MAX = Gauge(
    "distribution_curve_max_pct",
    "Calibrated bonus curve ceiling in percent"
)

SNAPSHOT_SOURCE = Counter(
    "distribution_snapshot_source_total",
    "Snapshot values resolved per source mode",
    ["field", "source"]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_transfer_submitted(pool: str, correlation_id: Optional[str] = None) -> None:
    try:
        TRANSFERS_SUBMITTED.labels(pool=pool).inc()
        logger.debug(
            "Metric: transfer_submitted | pool=%s | correlation_id=%s",
            pool, correlation_id
        )
    except Exception as e:
        logger.error("[OBS-001] Failed to record transfer_submitted metric | error=%s", str(e))


def record_transfer_failed(
    pool: str,
    error_code: str,
    correlation_id: Optional[str] = None
) -> None:
    try:
        TRANSFERS_FAILED.labels(pool=pool, error_code=error_code).inc()
        logger.debug(
            "Metric: transfer_failed | pool=%s | error_code=%s | correlation_id=%s",
            pool, error_code, correlation_id
        )
    except Exception as e:
        logger.error("[OBS-002] Failed to record transfer_failed metric | error=%s", str(e))


def record_verification(outcome: str, correlation_id: Optional[str] = None) -> None:
    """
    Record one verification outcome.

    Args:
        outcome: confirmed, failed, mismatch or submitted (still pending)
    """
    try:
        VERIFICATIONS.labels(outcome=outcome).inc()
    except Exception as e:
        logger.error("[OBS-003] Failed to record verification metric | error=%s", str(e))


def update_pool_metrics(
    pool: str,
    target: Decimal,
    distributed: Decimal,
    correlation_id: Optional[str] = None
) -> None:
    """
    Update pool target and distributed gauges.

    ZERO-FLOAT MANDATE: Decimal converted to float at Prometheus boundary.
    """
    try:
        if not isinstance(target, Decimal) or not isinstance(distributed, Decimal):
            logger.error(
                "[OBS-000] pool metrics must be Decimal, got %s/%s",
                type(target).__name__, type(distributed).__name__
            )
            return
        POOL_TARGET.labels(pool=pool).set(float(target))
        POOL_DISTRIBUTED.labels(pool=pool).set(float(distributed))
        logger.debug(
            "Metric: pool updated | pool=%s | target=%s | distributed=%s | correlation_id=%s",
            pool, str(target), str(distributed), correlation_id
        )
    except Exception as e:
        logger.error("[OBS-004] Failed to update pool metrics | error=%s", str(e))


def update_curve_max(curve_max: Decimal) -> None:
    try:
        CURVE_MAX.set(float(curve_max))
    except Exception as e:
        logger.error("[OBS-005] Failed to update curve_max metric | error=%s", str(e))


def record_snapshot_source(field: str, source: str) -> None:
    try:
        SNAPSHOT_SOURCE.labels(field=field, source=source).inc()
    except Exception as e:
        logger.error("[OBS-006] Failed to record snapshot source metric | error=%s", str(e))


def export_metrics(path: str) -> bool:
    """
    Write the registry to a textfile collector file.

    Returns:
        True on success; failures are logged, never raised
    """
    try:
        write_to_textfile(path, REGISTRY)
        logger.info("[OBS] Metrics exported | path=%s", path)
        return True
    except Exception as e:
        logger.error("[OBS-007] Failed to export metrics | path=%s | error=%s", path, str(e))
        return False
