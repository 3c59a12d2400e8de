"""
============================================================================
Stake Reward Distributor v1.0.0
Settlement Batcher - Sequenced, Paced, Idempotent Reward Transfers
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Amounts converted to smallest units with ROUND_DOWN
Traceability: All operations include correlation_id

SETTLEMENT PROCEDURE:
    1. Idempotency: a run date with a completion marker is refused unless
       forced; a run left IN_PROGRESS is refused and must be resent.
    2. Plan: one record per (recipient, pool) line with amount > 0, bonus
       lines first. With combine_pools, the lines of one recipient travel in
       a single transfer and share its reference id.
    3. Pre-flight: sender balance must cover the whole plan; balance and
       starting sequence are read before any run state is written.
    4. Sequencing: the sender's sequence number is read ONCE; every attempt
       consumes the next number, successful or not.
    5. Pacing: fixed delay between transfers, longer pause between batches.
    6. Every record is persisted before the next transfer is sent; the
       completion marker is written only after the last transfer.

SOVEREIGN MANDATE:
    Replay must never duplicate a payout. Resend is an explicit operator
    action and is never triggered automatically.

ERROR CODES:
    - SETL-001: Malformed hex amount (record failed, nothing sent)
    - SETL-002: Ledger rejected the transfer (record failed, run continues)
    - SETL-003: Insufficient sender balance (run aborted before sending)
    - SETL-004: Run already executed for this date
    - SETL-005: Run interrupted, resend required
    - SETL-007: Send outcome unknown (record failed, excluded from default resend)
============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Callable, Iterable, Dict, Set
import json
import logging
import threading
import time

from app.allocation.models import PayoutTable, PoolKind
from app.config import DistributionConfig
from app.errors import (
    DistributionError,
    DistributionErrorCode,
    EncodingInvalid,
    InsufficientBalance,
    RunAlreadyExecuted,
    RunInterrupted,
    SubmissionRejected,
    SubmissionUnconfirmed,
)
from app.ledger.decimal_gateway import DecimalGateway, assert_even_hex, encode_units_hex
from app.ledger.ledger_interface import LedgerInterface
from app.ledger.rate_limiter import SubmissionPacer
from app.observability.metrics import record_transfer_failed, record_transfer_submitted
from app.settlement.models import Outcome, RunState, RunSummary, SettlementRecord
from app.settlement.run_store import RunStore

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class PlannedTransfer:
    """One ledger transfer carrying one or more record line items."""
    recipient: str
    amount_smallest_unit: int
    records: List[SettlementRecord] = field(default_factory=list)

    @property
    def pools(self) -> str:
        return "+".join(r.pool_kind.value for r in self.records)


def final_state(records: Iterable[SettlementRecord]) -> RunState:
    """PARTIALLY_FAILED if any line failed or never went out, else COMPLETED."""
    for record in records:
        if record.outcome in (Outcome.FAILED, Outcome.PENDING):
            return RunState.PARTIALLY_FAILED
    return RunState.COMPLETED


class SettlementBatcher:
    """
    Turns a PayoutTable into sequenced ledger transfers.

    Reliability Level: L6 Critical
    Input Constraints: PayoutTable is frozen; sender owns the ledger key
    Side Effects: Ledger submissions, run store writes, sleeps between sends

    Example Usage:
        batcher = SettlementBatcher.from_config(config, ledger, store, sender)
        summary = batcher.execute("2026-01-15", table)
    """

    def __init__(
        self,
        ledger: LedgerInterface,
        store: RunStore,
        sender: str,
        asset_id: str,
        token_decimals: int = 18,
        batch_size: int = 100,
        submission_delay_seconds: float = 0.1,
        batch_pause_seconds: float = 6.0,
        combine_pools: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None
    ):
        self.ledger = ledger
        self.store = store
        self.sender = sender
        self.asset_id = asset_id
        self.gateway = DecimalGateway(token_decimals)
        self.batch_size = batch_size
        self.submission_delay_seconds = submission_delay_seconds
        self.batch_pause_seconds = batch_pause_seconds
        self.combine_pools = combine_pools
        self._sleep = sleep
        self.cancel_event = cancel_event or threading.Event()
        self.correlation_id = correlation_id

    @classmethod
    def from_config(
        cls,
        config: DistributionConfig,
        ledger: LedgerInterface,
        store: RunStore,
        sender: str,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None
    ) -> "SettlementBatcher":
        return cls(
            ledger=ledger,
            store=store,
            sender=sender,
            asset_id=config.reward_token_id,
            token_decimals=config.token_decimals,
            batch_size=config.settlement_batch_size,
            submission_delay_seconds=config.submission_delay_seconds,
            batch_pause_seconds=config.batch_pause_seconds,
            combine_pools=config.combine_pools,
            sleep=sleep,
            cancel_event=cancel_event,
            correlation_id=correlation_id,
        )

    # =========================================================================
    # Planning
    # =========================================================================

    def plan_records(self, run_date: str, table: PayoutTable, run_attempt: int = 1) -> List[SettlementRecord]:
        """One pending record per non-zero pool line; bonus lines first."""
        records: List[SettlementRecord] = []
        for pool in (PoolKind.BONUS, PoolKind.PROPORTIONAL):
            for row in table.rows:
                amount = self.gateway.quantize_amount(row.amount_for(pool))
                if amount <= 0:
                    continue
                records.append(SettlementRecord(
                    run_date=run_date,
                    line_index=len(records),
                    recipient=row.address,
                    amount=amount,
                    pool_kind=pool,
                    run_attempt=run_attempt,
                ))
        return records

    def group_transfers(self, records: List[SettlementRecord]) -> List[PlannedTransfer]:
        """
        Map records to ledger transfers in plan order.

        Separate mode: one transfer per record. Combined mode: one transfer
        per recipient, positioned at the recipient's first line.
        """
        transfers: List[PlannedTransfer] = []
        by_recipient: Dict[str, PlannedTransfer] = {}
        for record in records:
            units = self.gateway.to_smallest_unit(record.amount)
            if self.combine_pools and record.recipient in by_recipient:
                transfer = by_recipient[record.recipient]
                transfer.amount_smallest_unit += units
                transfer.records.append(record)
                continue
            transfer = PlannedTransfer(
                recipient=record.recipient,
                amount_smallest_unit=units,
                records=[record],
            )
            transfers.append(transfer)
            by_recipient[record.recipient] = transfer
        return [t for t in transfers if t.amount_smallest_unit > 0]

    def check_balance(self, transfers: List[PlannedTransfer]) -> int:
        """
        Pre-flight: the sender must hold the whole plan.

        Raises:
            InsufficientBalance: Before any transfer is sent (SETL-003)
        """
        required = sum(t.amount_smallest_unit for t in transfers)
        available = self.ledger.get_asset_balance(self.sender, self.asset_id)
        if available < required:
            logger.error(
                f"[{DistributionErrorCode.INSUFFICIENT_BALANCE}] Sender balance too low | "
                f"required={self.gateway.from_smallest_unit(required)} | "
                f"available={self.gateway.from_smallest_unit(available)} | "
                f"asset={self.asset_id} | correlation_id={self.correlation_id}"
            )
            raise InsufficientBalance(
                f"Sender holds {self.gateway.from_smallest_unit(available)} {self.asset_id}, "
                f"plan requires {self.gateway.from_smallest_unit(required)}",
                required=required,
                available=available,
            )
        return required

    # =========================================================================
    # Execute
    # =========================================================================

    def execute(self, run_date: str, table: PayoutTable, force: bool = False) -> RunSummary:
        """
        Settle a payout table for one run date.

        Raises:
            RunAlreadyExecuted: Completion marker present and not forced
            RunInterrupted: Previous attempt stopped mid-run and not forced
            InsufficientBalance: Sender cannot cover the plan
        """
        self.check_idempotency(run_date, force)

        records = self.plan_records(run_date, table)
        transfers = self.group_transfers(records)
        self.check_balance(transfers)
        # no run state is written until every ledger pre-read succeeded
        starting_sequence = self.ledger.get_sequence(self.sender)

        run = self.store.begin_run(
            run_date,
            correlation_id=self.correlation_id or "",
            payout_snapshot=json.dumps(table.to_dict()),
        )
        for record in records:
            record.run_attempt = run.attempt
        self.store.save_records(records)
        self.store.set_starting_sequence(run_date, starting_sequence)

        logger.info(
            f"[SETL] Settlement started | run_date={run_date} | attempt={run.attempt} | "
            f"records={len(records)} | transfers={len(transfers)} | "
            f"starting_sequence={starting_sequence} | combine_pools={self.combine_pools} | "
            f"correlation_id={self.correlation_id}"
        )

        interrupted = self._submit_all(transfers, starting_sequence)
        return self._close_run(run_date, run.attempt, records, interrupted)

    def check_idempotency(self, run_date: str, force: bool = False) -> None:
        """
        Refuse a run date that already executed or was left in progress.

        Raises:
            RunAlreadyExecuted: Completion marker present and not forced
            RunInterrupted: Previous attempt stopped mid-run and not forced
        """
        existing = self.store.get_run(run_date)
        if existing is not None and not force:
            if existing.has_completion_marker:
                logger.warning(
                    f"[{DistributionErrorCode.RUN_ALREADY_EXECUTED}] Run already executed | "
                    f"run_date={run_date} | state={existing.state.value} | "
                    f"completed_at={existing.completed_at} | correlation_id={self.correlation_id}"
                )
                raise RunAlreadyExecuted(
                    f"Distribution for {run_date} already executed ({existing.state.value}); "
                    f"use --force to run again"
                )
            if existing.state == RunState.IN_PROGRESS:
                logger.warning(
                    f"[{DistributionErrorCode.RUN_INTERRUPTED}] Run left in progress | "
                    f"run_date={run_date} | attempt={existing.attempt} | "
                    f"correlation_id={self.correlation_id}"
                )
                raise RunInterrupted(
                    f"Distribution for {run_date} was interrupted; use resend to finish it"
                )

    # =========================================================================
    # Resend
    # =========================================================================

    @staticmethod
    def resend_candidates(
        records: Iterable[SettlementRecord],
        recipients: Optional[Iterable[str]] = None,
        include_mismatched: bool = False,
        include_unconfirmed: bool = False
    ) -> List[SettlementRecord]:
        """Failed and never-sent lines, optionally limited to some recipients."""
        wanted: Optional[Set[str]] = set(recipients) if recipients else None

        def resendable(r: SettlementRecord) -> bool:
            if r.outcome == Outcome.PENDING:
                return True
            if r.outcome != Outcome.FAILED:
                return False
            if r.is_mismatch:
                return include_mismatched
            if r.is_unconfirmed:
                return include_unconfirmed
            return True

        return [
            r for r in records
            if resendable(r) and (wanted is None or r.recipient in wanted)
        ]

    def resend(
        self,
        run_date: str,
        recipients: Optional[Iterable[str]] = None,
        include_mismatched: bool = False,
        include_unconfirmed: bool = False
    ) -> RunSummary:
        """
        Operator-triggered resend of failed and never-sent lines.

        Verification mismatches and sends with an unknown outcome are only
        resent when explicitly included, since value may already have moved.
        """
        run = self.store.require_run(run_date)
        records = self.store.load_records(run_date, run.attempt)
        candidates = self.resend_candidates(
            records, recipients, include_mismatched, include_unconfirmed
        )

        if not candidates:
            logger.info(
                f"[SETL] Nothing to resend | run_date={run_date} | "
                f"correlation_id={self.correlation_id}"
            )
            return RunSummary.from_records(
                run_date, run.state, records, attempt=run.attempt,
                correlation_id=self.correlation_id, message="nothing to resend",
            )

        transfers = self.group_transfers(candidates)
        self.check_balance(transfers)
        starting_sequence = self.ledger.get_sequence(self.sender)
        self.store.reopen_run(run_date, self.correlation_id)

        logger.info(
            f"[SETL] Resend started | run_date={run_date} | lines={len(candidates)} | "
            f"transfers={len(transfers)} | starting_sequence={starting_sequence} | "
            f"correlation_id={self.correlation_id}"
        )

        interrupted = self._submit_all(transfers, starting_sequence)
        return self._close_run(run_date, run.attempt, records, interrupted)

    # =========================================================================
    # Submission
    # =========================================================================

    def _submit_all(self, transfers: List[PlannedTransfer], starting_sequence: int) -> bool:
        """
        Submit transfers strictly in order.

        Returns:
            True if cancelled or interrupted before the last transfer
        """
        pacer = SubmissionPacer(
            batch_size=self.batch_size,
            delay_seconds=self.submission_delay_seconds,
            batch_pause_seconds=self.batch_pause_seconds,
            sleep=self._sleep,
            correlation_id=self.correlation_id,
        )
        sequence = starting_sequence
        try:
            for index, transfer in enumerate(transfers):
                if self.cancel_event.is_set():
                    logger.warning(
                        f"[SETL] Cancellation requested | sent={index}/{len(transfers)} | "
                        f"next_sequence={sequence} | correlation_id={self.correlation_id}"
                    )
                    return True
                pacer.wait()
                self._submit_one(transfer, sequence)
                sequence += 1
        except KeyboardInterrupt:
            logger.warning(
                f"[SETL] Interrupted by operator | next_sequence={sequence} | "
                f"correlation_id={self.correlation_id}"
            )
            return True
        return False

    def _submit_one(self, transfer: PlannedTransfer, sequence: int) -> None:
        now = datetime.now(timezone.utc)
        try:
            assert_even_hex(
                encode_units_hex(transfer.amount_smallest_unit),
                context=f"{transfer.recipient}:{sequence}",
            )
            reference_id = self.ledger.submit(
                self.sender,
                transfer.recipient,
                self.asset_id,
                transfer.amount_smallest_unit,
                sequence,
            )
        except (EncodingInvalid, SubmissionRejected, SubmissionUnconfirmed) as e:
            self._record_failure(transfer, sequence, e, now)
            return
        except Exception as e:
            # the request may have reached the ledger before failing
            self._record_failure(
                transfer, sequence,
                SubmissionUnconfirmed(f"{type(e).__name__}: {e}"), now,
            )
            return

        for record in transfer.records:
            record.outcome = Outcome.SUBMITTED
            record.sequence_number = sequence
            record.reference_id = reference_id
            record.error = None
            record.verified_amount = None
            record.attempt += 1
            record.submitted_at = now
            self.store.update_record(record)
            record_transfer_submitted(record.pool_kind.value, self.correlation_id)

        logger.info(
            f"[SETL] Transfer submitted | recipient={transfer.recipient} | "
            f"pools={transfer.pools} | amount={self.gateway.from_smallest_unit(transfer.amount_smallest_unit)} | "
            f"sequence={sequence} | reference_id={reference_id} | "
            f"correlation_id={self.correlation_id}"
        )

    def _record_failure(
        self,
        transfer: PlannedTransfer,
        sequence: int,
        error: DistributionError,
        now: datetime
    ) -> None:
        for record in transfer.records:
            record.outcome = Outcome.FAILED
            record.sequence_number = sequence
            record.reference_id = None
            record.error = str(error)
            record.attempt += 1
            record.submitted_at = now
            self.store.update_record(record)
            record_transfer_failed(record.pool_kind.value, error.error_code, self.correlation_id)
        logger.warning(
            f"[{error.error_code}] Transfer failed | recipient={transfer.recipient} | "
            f"pools={transfer.pools} | sequence={sequence} | error={error.message} | "
            f"correlation_id={self.correlation_id}"
        )

    def _close_run(
        self,
        run_date: str,
        run_attempt: int,
        records: List[SettlementRecord],
        interrupted: bool
    ) -> RunSummary:
        if interrupted:
            summary = RunSummary.from_records(
                run_date, RunState.IN_PROGRESS, records, attempt=run_attempt,
                interrupted=True, correlation_id=self.correlation_id,
                message="interrupted; finish with resend",
            )
            logger.warning(
                f"[{DistributionErrorCode.RUN_INTERRUPTED}] Run left in progress, no marker written | "
                f"run_date={run_date} | pending={summary.pending} | "
                f"correlation_id={self.correlation_id}"
            )
            return summary

        state = final_state(records)
        summary = RunSummary.from_records(
            run_date, state, records, attempt=run_attempt, correlation_id=self.correlation_id,
        )
        self.store.finish_run(
            run_date, state, json.dumps(summary.to_dict()), self.correlation_id
        )
        logger.info(
            f"[SETL] Settlement finished | run_date={run_date} | state={state.value} | "
            f"submitted={summary.submitted} | failed={summary.failed} | "
            f"correlation_id={self.correlation_id}"
        )
        return summary
