"""
============================================================================
Stake Reward Distributor v1.0.0
Settlement Models - Records, Runs, Summaries
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Amounts are decimal.Decimal in whole token units
Traceability: Every record carries run_date and the run's correlation_id

OWNERSHIP:
    SettlementRecord is created by the SettlementBatcher and mutated only by
    the batcher (submission, resend) and the SettlementVerifier (outcome).
============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List

from app.allocation.models import PoolKind


class Outcome(Enum):
    """Per-transfer settlement outcome."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class RunState(Enum):
    """Settlement run lifecycle state (one run per calendar day)."""
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIALLY_FAILED = "PARTIALLY_FAILED"


@dataclass
class SettlementRecord:
    """
    One payout line and its settlement status.

    With combined transfers, two line items (bonus and proportional) of the
    same recipient share reference_id and sequence_number.
    """
    run_date: str
    line_index: int
    recipient: str
    amount: Decimal
    pool_kind: PoolKind
    outcome: Outcome = Outcome.PENDING
    sequence_number: Optional[int] = None
    reference_id: Optional[str] = None
    error: Optional[str] = None
    attempt: int = 0
    run_attempt: int = 1
    verified_amount: Optional[int] = None
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_mismatch(self) -> bool:
        return self.outcome == Outcome.FAILED and bool(self.error) and "VRFY-001" in self.error

    @property
    def is_unconfirmed(self) -> bool:
        return self.outcome == Outcome.FAILED and bool(self.error) and "SETL-007" in self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "line_index": self.line_index,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "pool_kind": self.pool_kind.value,
            "outcome": self.outcome.value,
            "sequence_number": self.sequence_number,
            "reference_id": self.reference_id,
            "error": self.error,
            "attempt": self.attempt,
            "run_attempt": self.run_attempt,
            "verified_amount": str(self.verified_amount) if self.verified_amount is not None else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }


@dataclass
class SettlementRun:
    """Persisted state of the run for one date key."""
    run_date: str
    state: RunState = RunState.NOT_STARTED
    attempt: int = 1
    correlation_id: Optional[str] = None
    starting_sequence: Optional[int] = None
    completed_at: Optional[datetime] = None
    payout_snapshot: Optional[str] = None
    summary: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_completion_marker(self) -> bool:
        return self.completed_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "state": self.state.value,
            "attempt": self.attempt,
            "correlation_id": self.correlation_id,
            "starting_sequence": self.starting_sequence,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class PoolTotals:
    """Per-pool amounts at each settlement stage."""
    planned: Decimal = Decimal("0")
    submitted: Decimal = Decimal("0")
    confirmed: Decimal = Decimal("0")
    failed: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, str]:
        return {
            "planned": str(self.planned),
            "submitted": str(self.submitted),
            "confirmed": str(self.confirmed),
            "failed": str(self.failed),
        }


@dataclass
class RunSummary:
    """
    Machine-readable end-of-run summary.

    Emitted after every CLI action regardless of individual failures.
    """
    run_date: str
    state: RunState
    attempt: int = 1
    total_records: int = 0
    pending: int = 0
    submitted: int = 0
    confirmed: int = 0
    failed: int = 0
    mismatched: int = 0
    interrupted: bool = False
    pools: Dict[str, PoolTotals] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_records(
        cls,
        run_date: str,
        state: RunState,
        records: List[SettlementRecord],
        attempt: int = 1,
        interrupted: bool = False,
        correlation_id: Optional[str] = None,
        message: Optional[str] = None
    ) -> "RunSummary":
        summary = cls(
            run_date=run_date,
            state=state,
            attempt=attempt,
            total_records=len(records),
            interrupted=interrupted,
            correlation_id=correlation_id,
            message=message,
            pools={kind.value: PoolTotals() for kind in PoolKind},
        )
        for record in records:
            totals = summary.pools[record.pool_kind.value]
            totals.planned += record.amount
            if record.reference_id:
                totals.submitted += record.amount

            if record.outcome == Outcome.PENDING:
                summary.pending += 1
            elif record.outcome == Outcome.SUBMITTED:
                summary.submitted += 1
            elif record.outcome == Outcome.CONFIRMED:
                summary.confirmed += 1
                totals.confirmed += record.amount
            else:
                summary.failed += 1
                totals.failed += record.amount
                if record.is_mismatch:
                    summary.mismatched += 1
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "state": self.state.value,
            "attempt": self.attempt,
            "total_records": self.total_records,
            "pending": self.pending,
            "submitted": self.submitted,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "mismatched": self.mismatched,
            "interrupted": self.interrupted,
            "pools": {k: v.to_dict() for k, v in self.pools.items()},
            "correlation_id": self.correlation_id,
            "message": self.message,
        }
