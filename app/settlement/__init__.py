"""
============================================================================
Stake Reward Distributor v1.0.0
Settlement Module - Batching, Run Store & Verification
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts use decimal.Decimal
============================================================================
"""

from app.settlement.models import (
    Outcome,
    PoolTotals,
    RunState,
    RunSummary,
    SettlementRecord,
    SettlementRun,
)
from app.settlement.state_machine import FINISHED_STATES, transition, validate_transition
from app.settlement.run_store import RunStore, RunNotFound
from app.settlement.batcher import PlannedTransfer, SettlementBatcher, final_state
from app.settlement.verifier import (
    SettlementVerifier,
    VerificationFinding,
    VerificationMode,
    VerificationReport,
    sample_indices,
)

__all__ = [
    "Outcome",
    "PoolTotals",
    "RunState",
    "RunSummary",
    "SettlementRecord",
    "SettlementRun",
    "FINISHED_STATES",
    "transition",
    "validate_transition",
    "RunStore",
    "RunNotFound",
    "PlannedTransfer",
    "SettlementBatcher",
    "final_state",
    "SettlementVerifier",
    "VerificationFinding",
    "VerificationMode",
    "VerificationReport",
    "sample_indices",
]
