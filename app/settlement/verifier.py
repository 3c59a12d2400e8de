"""
============================================================================
Stake Reward Distributor v1.0.0
Settlement Verifier - Event-Log Confirmation of Reward Transfers
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: All findings carry reference_id and correlation_id

VERIFICATION RULES:
    - pending / unknown ledger status     -> record stays SUBMITTED
    - failed / invalid ledger status      -> FAILED (LEDGER_FAILED)
    - success + transfer event for the expected asset, receiver and amount
                                          -> CONFIRMED
    - success without that event, or with a different amount
                                          -> FAILED (VRFY-001 mismatch)

    A ledger "success" alone is never treated as proof that value moved.
    A CONFIRMED record is never re-opened, and a pending or unknown reading
    never replaces an outcome an earlier pass decided.

SAMPLING:
    Sample mode checks the first N transfers, the 25/50/75% positions and
    the last one. Full mode checks every submitted transfer.

CONCURRENCY:
    Inspections run on a thread pool; records are mutated only on the
    calling thread after all futures finish.

ERROR CODES:
    - VRFY-001: Success without the expected transfer event
============================================================================
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple, Callable
import json
import logging
import time

from app.config import DistributionConfig
from app.errors import DistributionErrorCode, VerificationMismatch
from app.ledger.decimal_gateway import DecimalGateway
from app.ledger.gateway_client import TRANSFER_EVENT_IDENTIFIERS
from app.ledger.ledger_interface import InspectionStatus, LedgerInspection, LedgerInterface
from app.observability.metrics import record_verification
from app.settlement.models import Outcome, RunState, RunSummary, SettlementRecord
from app.settlement.run_store import RunStore
from app.settlement.state_machine import FINISHED_STATES

# Configure module logger
logger = logging.getLogger(__name__)

LEDGER_FAILED = "LEDGER_FAILED"


class VerificationMode(Enum):
    SAMPLE = "sample"
    FULL = "full"


def sample_indices(count: int, head: int = 6) -> List[int]:
    """First `head` positions, the quartile positions and the last one."""
    if count <= 0:
        return []
    picks = set(range(min(head, count)))
    picks.update({count // 4, count // 2, (3 * count) // 4, count - 1})
    return sorted(i for i in picks if 0 <= i < count)


@dataclass
class VerificationFinding:
    """Verification result of one reference id."""
    reference_id: str
    recipient: str
    expected_amount: int
    outcome: Outcome
    status: str
    error: Optional[str] = None
    verified_amount: Optional[int] = None

    @property
    def is_mismatch(self) -> bool:
        return bool(self.error) and DistributionErrorCode.VERIFICATION_MISMATCH in self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "recipient": self.recipient,
            "expected_amount": str(self.expected_amount),
            "outcome": self.outcome.value,
            "status": self.status,
            "error": self.error,
            "verified_amount": str(self.verified_amount) if self.verified_amount is not None else None,
        }


@dataclass
class VerificationReport:
    """Aggregate of one verification pass."""
    run_date: Optional[str]
    mode: VerificationMode
    total_transfers: int = 0
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    mismatched: int = 0
    still_pending: int = 0
    findings: List[VerificationFinding] = field(default_factory=list)
    run_summary: Optional[RunSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_date": self.run_date,
            "mode": self.mode.value,
            "total_transfers": self.total_transfers,
            "checked": self.checked,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "mismatched": self.mismatched,
            "still_pending": self.still_pending,
            "findings": [f.to_dict() for f in self.findings if f.outcome != Outcome.CONFIRMED],
            "run_summary": self.run_summary.to_dict() if self.run_summary else None,
        }


class SettlementVerifier:
    """
    Confirms that submitted transfers actually moved the reward token.

    Reliability Level: L6 Critical
    Thread Safety: ledger.inspect must be thread-safe
    Side Effects: Ledger reads, optional run store writes
    """

    def __init__(
        self,
        ledger: LedgerInterface,
        asset_id: str,
        store: Optional[RunStore] = None,
        token_decimals: int = 18,
        workers: int = 4,
        sample_head: int = 6,
        inspect_delay_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
        correlation_id: Optional[str] = None
    ):
        self.ledger = ledger
        self.asset_id = asset_id
        self.store = store
        self.gateway = DecimalGateway(token_decimals)
        self.workers = workers
        self.sample_head = sample_head
        self.inspect_delay_seconds = inspect_delay_seconds
        self._sleep = sleep
        self.correlation_id = correlation_id

    @classmethod
    def from_config(
        cls,
        config: DistributionConfig,
        ledger: LedgerInterface,
        store: Optional[RunStore] = None,
        correlation_id: Optional[str] = None
    ) -> "SettlementVerifier":
        return cls(
            ledger=ledger,
            asset_id=config.reward_token_id,
            store=store,
            token_decimals=config.token_decimals,
            workers=config.verify_workers,
            sample_head=config.verify_sample_head,
            inspect_delay_seconds=config.verify_delay_seconds,
            correlation_id=correlation_id,
        )

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(
        self,
        inspection: LedgerInspection,
        recipient: str,
        expected_amount: int
    ) -> VerificationFinding:
        """Apply the verification rules to one inspection."""
        status = inspection.raw_status or inspection.status.value

        if inspection.status in (InspectionStatus.PENDING, InspectionStatus.UNKNOWN):
            return VerificationFinding(
                reference_id=inspection.reference_id,
                recipient=recipient,
                expected_amount=expected_amount,
                outcome=Outcome.SUBMITTED,
                status=status,
            )

        if inspection.status == InspectionStatus.FAILED:
            return VerificationFinding(
                reference_id=inspection.reference_id,
                recipient=recipient,
                expected_amount=expected_amount,
                outcome=Outcome.FAILED,
                status=status,
                error=f"{LEDGER_FAILED}: ledger status {status}",
            )

        transfers = [
            e for e in inspection.events
            if e.identifier in TRANSFER_EVENT_IDENTIFIERS
            and e.asset_id == self.asset_id
            and (e.receiver is None or e.receiver == recipient)
        ]
        if not transfers:
            finding = VerificationMismatch(
                f"ledger status {status} but no {self.asset_id} transfer event"
            )
            return VerificationFinding(
                reference_id=inspection.reference_id,
                recipient=recipient,
                expected_amount=expected_amount,
                outcome=Outcome.FAILED,
                status=status,
                error=str(finding),
            )

        for event in transfers:
            if event.amount is None or event.amount == expected_amount:
                return VerificationFinding(
                    reference_id=inspection.reference_id,
                    recipient=recipient,
                    expected_amount=expected_amount,
                    outcome=Outcome.CONFIRMED,
                    status=status,
                    verified_amount=event.amount if event.amount is not None else expected_amount,
                )

        moved = transfers[0].amount
        finding = VerificationMismatch(
            f"transfer event amount {moved} differs from expected {expected_amount}"
        )
        return VerificationFinding(
            reference_id=inspection.reference_id,
            recipient=recipient,
            expected_amount=expected_amount,
            outcome=Outcome.FAILED,
            status=status,
            error=str(finding),
            verified_amount=moved,
        )

    # =========================================================================
    # Verification
    # =========================================================================

    def _group_by_reference(
        self,
        records: List[SettlementRecord]
    ) -> List[Tuple[str, List[SettlementRecord]]]:
        groups: Dict[str, List[SettlementRecord]] = {}
        for record in sorted(records, key=lambda r: r.line_index):
            if record.reference_id:
                groups.setdefault(record.reference_id, []).append(record)
        return list(groups.items())

    @staticmethod
    def _should_apply(record: SettlementRecord, finding: VerificationFinding) -> bool:
        """
        CONFIRMED is final; an inconclusive reading (pending, unknown) never
        replaces an outcome an earlier pass already decided.
        """
        if record.outcome == Outcome.CONFIRMED:
            return False
        if finding.outcome == Outcome.SUBMITTED:
            return record.outcome == Outcome.SUBMITTED
        return True

    def _inspect(self, reference_id: str) -> LedgerInspection:
        if self.inspect_delay_seconds > 0:
            self._sleep(self.inspect_delay_seconds)
        return self.ledger.inspect(reference_id)

    def verify_records(
        self,
        records: List[SettlementRecord],
        full: bool = False,
        run_date: Optional[str] = None
    ) -> VerificationReport:
        """
        Verify records in place (sample or full) and return the report.

        Records are mutated on the calling thread only.
        """
        mode = VerificationMode.FULL if full else VerificationMode.SAMPLE
        groups = self._group_by_reference(records)
        if full:
            selected = groups
        else:
            selected = [groups[i] for i in sample_indices(len(groups), self.sample_head)]

        report = VerificationReport(run_date=run_date, mode=mode, total_transfers=len(groups))
        if not selected:
            return report

        references = [reference for reference, _ in selected]
        with ThreadPoolExecutor(max_workers=max(1, self.workers)) as pool:
            inspections = list(pool.map(self._inspect, references))

        for (reference, lines), inspection in zip(selected, inspections):
            expected = sum(self.gateway.to_smallest_unit(r.amount) for r in lines)
            finding = self.evaluate(inspection, lines[0].recipient, expected)
            report.findings.append(finding)
            report.checked += 1

            if finding.outcome == Outcome.CONFIRMED:
                report.confirmed += 1
                record_verification("confirmed", self.correlation_id)
            elif finding.outcome == Outcome.SUBMITTED:
                report.still_pending += 1
                record_verification("submitted", self.correlation_id)
            else:
                report.failed += 1
                if finding.is_mismatch:
                    report.mismatched += 1
                    record_verification("mismatch", self.correlation_id)
                    logger.error(
                        f"[{DistributionErrorCode.VERIFICATION_MISMATCH}] Transfer not confirmed "
                        f"by event log | reference_id={reference} | recipient={lines[0].recipient} | "
                        f"status={finding.status} | error={finding.error} | "
                        f"correlation_id={self.correlation_id}"
                    )
                else:
                    record_verification("failed", self.correlation_id)
                    logger.warning(
                        f"[VRFY] Ledger reported failure | reference_id={reference} | "
                        f"recipient={lines[0].recipient} | status={finding.status} | "
                        f"correlation_id={self.correlation_id}"
                    )

            for record in lines:
                if not self._should_apply(record, finding):
                    logger.info(
                        f"[VRFY] Keeping prior outcome | reference_id={reference} | "
                        f"line={record.line_index} | outcome={record.outcome.value} | "
                        f"status={finding.status} | correlation_id={self.correlation_id}"
                    )
                    continue
                record.outcome = finding.outcome
                record.error = finding.error
                if finding.outcome == Outcome.CONFIRMED:
                    record.verified_amount = self.gateway.to_smallest_unit(record.amount)
                else:
                    record.verified_amount = finding.verified_amount

        logger.info(
            f"[VRFY] Verification pass complete | run_date={run_date} | mode={mode.value} | "
            f"checked={report.checked}/{report.total_transfers} | confirmed={report.confirmed} | "
            f"failed={report.failed} | mismatched={report.mismatched} | "
            f"pending={report.still_pending} | correlation_id={self.correlation_id}"
        )
        return report

    def verify_run(self, run_date: str, full: bool = False, persist: bool = True) -> VerificationReport:
        """
        Verify the latest attempt of a stored run.

        With persist, changed records are written back and the run state is
        recomputed: all confirmed -> COMPLETED, any failed -> PARTIALLY_FAILED.
        """
        if self.store is None:
            raise RuntimeError("verify_run requires a RunStore")

        run = self.store.require_run(run_date)
        records = self.store.load_records(run_date, run.attempt)
        before = {r.line_index: (r.outcome, r.error) for r in records}

        report = self.verify_records(records, full=full, run_date=run_date)

        state = run.state
        if persist:
            for record in records:
                if before[record.line_index] != (record.outcome, record.error):
                    self.store.update_record(record)

            if run.state in FINISHED_STATES:
                if any(r.outcome in (Outcome.FAILED, Outcome.PENDING) for r in records):
                    state = RunState.PARTIALLY_FAILED
                elif all(r.outcome == Outcome.CONFIRMED for r in records):
                    state = RunState.COMPLETED
                summary = RunSummary.from_records(
                    run_date, state, records, attempt=run.attempt,
                    correlation_id=self.correlation_id,
                )
                self.store.set_state(
                    run_date, state, json.dumps(summary.to_dict()), self.correlation_id
                )

        report.run_summary = RunSummary.from_records(
            run_date, state, records, attempt=run.attempt,
            interrupted=run.state == RunState.IN_PROGRESS,
            correlation_id=self.correlation_id,
        )
        return report
