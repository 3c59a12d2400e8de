"""
============================================================================
Stake Reward Distributor v1.0.0
Simulated Ledger - Dry-Run Settlement with Real Payout Tables
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Every submission is recorded with its sequence number

SIMULATED LEDGER:
    In-memory LedgerInterface used for DRY_RUN executions and tests:
    - Per-account sequence numbers and token balances
    - Transfer data is built with the same encoder as live submissions
    - Failure injection per recipient: rejection, on-ledger failure,
      missing transfer event (verification mismatch), stuck pending

SOVEREIGN MANDATE:
    A dry run exercises every code path of a live run except the network.
============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, List, Set
import hashlib
import logging
import threading

from app.errors import SubmissionRejected
from app.ledger.ledger_interface import (
    InspectionStatus,
    LedgerEvent,
    LedgerInspection,
    LedgerInterface,
)
from app.ledger.transactions import TRANSFER_FUNCTION, build_transfer_data, parse_transfer_data

logger = logging.getLogger(__name__)


@dataclass
class SimulatedSubmission:
    """One accepted submission, kept for inspection and test assertions."""
    reference_id: str
    sender: str
    recipient: str
    asset_id: str
    amount_smallest_unit: int
    sequence: int
    data: str
    status: InspectionStatus = InspectionStatus.SUCCESS
    emit_event: bool = True


@dataclass
class FailureInjection:
    """Recipients that should misbehave, by failure kind."""
    reject: Set[str] = field(default_factory=set)
    fail_on_ledger: Set[str] = field(default_factory=set)
    omit_event: Set[str] = field(default_factory=set)
    pending: Set[str] = field(default_factory=set)


class SimulatedLedger(LedgerInterface):
    """
    In-memory settlement ledger.

    Sequence rule: a sequence number lower than the account's next expected
    value is rejected as a duplicate; gaps are accepted.

    Example Usage:
        ledger = SimulatedLedger()
        ledger.fund("erd1sender...", "COLS-9d91b7", 10**21)
        ref = ledger.submit("erd1sender...", "erd1rcpt...", "COLS-9d91b7", 10**18, 0)
    """

    def __init__(
        self,
        starting_sequences: Optional[Dict[str, int]] = None,
        failures: Optional[FailureInjection] = None
    ):
        self._sequences: Dict[str, int] = dict(starting_sequences or {})
        self._balances: Dict[str, Dict[str, int]] = {}
        self.failures = failures or FailureInjection()
        self.submissions: List[SimulatedSubmission] = []
        self.attempted_sequences: List[int] = []
        self._by_reference: Dict[str, SimulatedSubmission] = {}
        self._lock = threading.Lock()

    def fund(self, address: str, asset_id: str, amount_smallest_unit: int) -> None:
        with self._lock:
            account = self._balances.setdefault(address, {})
            account[asset_id] = account.get(asset_id, 0) + amount_smallest_unit

    # ========================================================================
    # LedgerInterface
    # ========================================================================

    def get_sequence(self, address: str) -> int:
        with self._lock:
            return self._sequences.get(address, 0)

    def get_asset_balance(self, address: str, asset_id: str) -> int:
        with self._lock:
            return self._balances.get(address, {}).get(asset_id, 0)

    def submit(
        self,
        sender: str,
        recipient: str,
        asset_id: str,
        amount_smallest_unit: int,
        sequence: int
    ) -> str:
        with self._lock:
            self.attempted_sequences.append(sequence)
            expected = self._sequences.get(sender, 0)

            if recipient in self.failures.reject:
                raise SubmissionRejected(f"Simulated rejection for {recipient}")

            if sequence < expected:
                raise SubmissionRejected(
                    f"Sequence {sequence} already used (next expected {expected})"
                )

            balance = self._balances.get(sender, {}).get(asset_id, 0)
            if balance < amount_smallest_unit:
                raise SubmissionRejected(
                    f"Insufficient funds: balance={balance} amount={amount_smallest_unit}"
                )

            data = build_transfer_data(asset_id, amount_smallest_unit)
            reference_id = hashlib.sha256(
                f"{sender}:{sequence}:{recipient}:{data}".encode("utf-8")
            ).hexdigest()

            status = InspectionStatus.SUCCESS
            if recipient in self.failures.fail_on_ledger:
                status = InspectionStatus.FAILED
            elif recipient in self.failures.pending:
                status = InspectionStatus.PENDING

            if status == InspectionStatus.SUCCESS:
                sender_account = self._balances.setdefault(sender, {})
                sender_account[asset_id] = balance - amount_smallest_unit
                recipient_account = self._balances.setdefault(recipient, {})
                recipient_account[asset_id] = (
                    recipient_account.get(asset_id, 0) + amount_smallest_unit
                )

            submission = SimulatedSubmission(
                reference_id=reference_id,
                sender=sender,
                recipient=recipient,
                asset_id=asset_id,
                amount_smallest_unit=amount_smallest_unit,
                sequence=sequence,
                data=data,
                status=status,
                emit_event=recipient not in self.failures.omit_event,
            )
            self.submissions.append(submission)
            self._by_reference[reference_id] = submission
            self._sequences[sender] = sequence + 1

        logger.debug(
            f"[SIM-LEDGER] Transfer accepted | recipient={recipient} | "
            f"sequence={sequence} | amount={amount_smallest_unit} | status={status.value}"
        )
        return reference_id

    def inspect(self, reference_id: str) -> LedgerInspection:
        with self._lock:
            submission = self._by_reference.get(reference_id)

        if submission is None:
            return LedgerInspection(reference_id=reference_id, status=InspectionStatus.UNKNOWN)

        events: List[LedgerEvent] = []
        if submission.status == InspectionStatus.SUCCESS and submission.emit_event:
            decoded = parse_transfer_data(submission.data)
            events.append(LedgerEvent(
                identifier=TRANSFER_FUNCTION,
                asset_id=decoded["asset_id"],
                amount=decoded["amount"],
                receiver=submission.recipient,
            ))
        elif submission.status == InspectionStatus.SUCCESS:
            events.append(LedgerEvent(identifier="completedTxEvent"))

        return LedgerInspection(
            reference_id=reference_id,
            status=submission.status,
            events=events,
            raw_status=submission.status.value,
        )

    def settle_pending(self, recipient: str) -> None:
        """Resolve a stuck pending transfer to success (test helper)."""
        with self._lock:
            self.failures.pending.discard(recipient)
            for submission in self.submissions:
                if submission.recipient == recipient and submission.status == InspectionStatus.PENDING:
                    submission.status = InspectionStatus.SUCCESS
