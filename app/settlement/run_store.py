"""
============================================================================
Stake Reward Distributor v1.0.0
Run Store - Durable Idempotency Marker & Settlement Records
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Decimal Integrity: Amounts stored as strings, restored as decimal.Decimal
Traceability: Every run row carries its correlation_id

TABLES:
    distribution_runs   - one row per run date; completed_at is the
                          idempotency marker, written only on clean finish
    settlement_records  - one row per payout line per run attempt; updated
                          after every submission and verification

SOVEREIGN MANDATE:
    Each record update commits before the next transfer is sent, so an
    interrupted run can always be resumed with the resend pass.

ERROR CODES:
    - STORE-001: Run not found
============================================================================
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Iterable
import logging

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    insert,
    select,
    update,
    func,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.allocation.models import PoolKind
from app.database.session import (
    build_engine,
    build_session_factory,
    check_database_connection,
    get_database_url,
)
from app.settlement.models import Outcome, RunState, SettlementRecord, SettlementRun
from app.settlement.state_machine import transition

logger = logging.getLogger(__name__)


metadata = MetaData()

distribution_runs = Table(
    "distribution_runs",
    metadata,
    Column("run_date", String(10), primary_key=True),
    Column("state", String(32), nullable=False),
    Column("attempt", Integer, nullable=False, default=1),
    Column("correlation_id", String(64)),
    Column("starting_sequence", Integer),
    Column("completed_at", DateTime(timezone=True)),
    Column("payout_snapshot", Text),
    Column("summary", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

settlement_records = Table(
    "settlement_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("run_date", String(10), ForeignKey("distribution_runs.run_date"), nullable=False),
    Column("run_attempt", Integer, nullable=False),
    Column("line_index", Integer, nullable=False),
    Column("recipient", String(128), nullable=False),
    Column("amount", String(64), nullable=False),
    Column("pool_kind", String(16), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("sequence_number", Integer),
    Column("reference_id", String(128)),
    Column("error", Text),
    Column("attempt", Integer, nullable=False, default=0),
    Column("verified_amount", String(64)),
    Column("submitted_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("run_date", "run_attempt", "line_index", name="uq_record_line"),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunNotFound(LookupError):
    """No run row exists for the requested date (STORE-001)."""


class RunStore:
    """
    SQLAlchemy-backed persistence of settlement runs.

    Reliability Level: SOVEREIGN TIER
    Thread Safety: One session per call; safe to share across threads

    Example Usage:
        store = RunStore.from_url("sqlite:///./data/distribution.db")
        run = store.get_run("2026-01-15")
    """

    def __init__(self, session_factory: sessionmaker, db_engine: Optional[Engine] = None):
        self._session_factory = session_factory
        self._engine = db_engine

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> "RunStore":
        """
        Open (and create if needed) the run store at `database_url`,
        defaulting to DISTRIBUTION_DB_URL.

        Raises:
            ConnectionError: If the database cannot be reached
        """
        db_engine = build_engine(database_url or get_database_url())
        check_database_connection(db_engine)
        store = cls(build_session_factory(db_engine), db_engine)
        store.create_schema()
        return store

    def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("RunStore was created without an engine")
        metadata.create_all(self._engine)

    # =========================================================================
    # Runs
    # =========================================================================

    def get_run(self, run_date: str) -> Optional[SettlementRun]:
        with self._session_factory() as session:
            row = session.execute(
                select(distribution_runs).where(distribution_runs.c.run_date == run_date)
            ).mappings().first()
        return self._to_run(row) if row else None

    def require_run(self, run_date: str) -> SettlementRun:
        run = self.get_run(run_date)
        if run is None:
            raise RunNotFound(f"STORE-001: No distribution run for {run_date}")
        return run

    def begin_run(
        self,
        run_date: str,
        correlation_id: str,
        payout_snapshot: Optional[str] = None
    ) -> SettlementRun:
        """
        Move the run for `run_date` into IN_PROGRESS.

        A new date starts at attempt 1; an existing run (forced re-execution)
        moves to the next attempt with its completion marker cleared.
        """
        now = _now()
        with self._session_factory() as session:
            with session.begin():
                existing = session.execute(
                    select(distribution_runs).where(distribution_runs.c.run_date == run_date)
                ).mappings().first()

                if existing is None:
                    transition(RunState.NOT_STARTED, RunState.IN_PROGRESS, correlation_id)
                    session.execute(insert(distribution_runs).values(
                        run_date=run_date,
                        state=RunState.IN_PROGRESS.value,
                        attempt=1,
                        correlation_id=correlation_id,
                        payout_snapshot=payout_snapshot,
                        created_at=now,
                        updated_at=now,
                    ))
                else:
                    current = RunState(existing["state"])
                    if current != RunState.IN_PROGRESS:
                        transition(current, RunState.IN_PROGRESS, correlation_id)
                    session.execute(
                        update(distribution_runs)
                        .where(distribution_runs.c.run_date == run_date)
                        .values(
                            state=RunState.IN_PROGRESS.value,
                            attempt=existing["attempt"] + 1,
                            correlation_id=correlation_id,
                            starting_sequence=None,
                            completed_at=None,
                            payout_snapshot=payout_snapshot,
                            summary=None,
                            updated_at=now,
                        )
                    )

        run = self.require_run(run_date)
        logger.info(
            f"[STORE] Run started | run_date={run_date} | attempt={run.attempt} | "
            f"correlation_id={correlation_id}"
        )
        return run

    def reopen_run(self, run_date: str, correlation_id: Optional[str] = None) -> SettlementRun:
        """Move a finished or interrupted run back to IN_PROGRESS for a resend pass."""
        run = self.require_run(run_date)
        if run.state != RunState.IN_PROGRESS:
            transition(run.state, RunState.IN_PROGRESS, correlation_id)
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(distribution_runs)
                    .where(distribution_runs.c.run_date == run_date)
                    .values(state=RunState.IN_PROGRESS.value, completed_at=None, updated_at=_now())
                )
        return self.require_run(run_date)

    def set_starting_sequence(self, run_date: str, sequence: int) -> None:
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(distribution_runs)
                    .where(distribution_runs.c.run_date == run_date)
                    .values(starting_sequence=sequence, updated_at=_now())
                )

    def finish_run(
        self,
        run_date: str,
        state: RunState,
        summary_json: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> SettlementRun:
        """
        Leave IN_PROGRESS and write the completion marker.

        Raises:
            InvalidRunTransition: If the run is not IN_PROGRESS (SETL-006)
        """
        run = self.require_run(run_date)
        transition(run.state, state, correlation_id)
        now = _now()
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(distribution_runs)
                    .where(distribution_runs.c.run_date == run_date)
                    .values(state=state.value, completed_at=now, summary=summary_json, updated_at=now)
                )
        logger.info(
            f"[STORE] Completion marker written | run_date={run_date} | "
            f"state={state.value} | correlation_id={correlation_id}"
        )
        return self.require_run(run_date)

    def set_state(
        self,
        run_date: str,
        state: RunState,
        summary_json: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> SettlementRun:
        """Transition between finished states (verification outcome changes)."""
        run = self.require_run(run_date)
        if run.state == state:
            return run
        transition(run.state, state, correlation_id)
        values = {"state": state.value, "updated_at": _now()}
        if summary_json is not None:
            values["summary"] = summary_json
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(distribution_runs)
                    .where(distribution_runs.c.run_date == run_date)
                    .values(**values)
                )
        return self.require_run(run_date)

    # =========================================================================
    # Records
    # =========================================================================

    def save_records(self, records: Iterable[SettlementRecord]) -> None:
        """Insert the planned records of a run attempt."""
        now = _now()
        rows = [
            {**self._record_values(r), "updated_at": now}
            for r in records
        ]
        if not rows:
            return
        with self._session_factory() as session:
            with session.begin():
                session.execute(insert(settlement_records), rows)

    def update_record(self, record: SettlementRecord) -> None:
        """Persist one record's settlement fields; commits immediately."""
        record.updated_at = _now()
        values = self._record_values(record)
        values["updated_at"] = record.updated_at
        with self._session_factory() as session:
            with session.begin():
                session.execute(
                    update(settlement_records)
                    .where(settlement_records.c.run_date == record.run_date)
                    .where(settlement_records.c.run_attempt == record.run_attempt)
                    .where(settlement_records.c.line_index == record.line_index)
                    .values(**values)
                )

    def load_records(
        self,
        run_date: str,
        run_attempt: Optional[int] = None
    ) -> List[SettlementRecord]:
        """Records of one attempt (latest attempt by default), in plan order."""
        with self._session_factory() as session:
            if run_attempt is None:
                run_attempt = session.execute(
                    select(func.max(settlement_records.c.run_attempt))
                    .where(settlement_records.c.run_date == run_date)
                ).scalar()
                if run_attempt is None:
                    return []
            rows = session.execute(
                select(settlement_records)
                .where(settlement_records.c.run_date == run_date)
                .where(settlement_records.c.run_attempt == run_attempt)
                .order_by(settlement_records.c.line_index)
            ).mappings().all()
        return [self._to_record(row) for row in rows]

    def count_records(self, run_date: str) -> int:
        with self._session_factory() as session:
            return session.execute(
                select(func.count()).select_from(settlement_records)
                .where(settlement_records.c.run_date == run_date)
            ).scalar() or 0

    # =========================================================================
    # Mapping
    # =========================================================================

    @staticmethod
    def _record_values(record: SettlementRecord) -> dict:
        return {
            "run_date": record.run_date,
            "run_attempt": record.run_attempt,
            "line_index": record.line_index,
            "recipient": record.recipient,
            "amount": str(record.amount),
            "pool_kind": record.pool_kind.value,
            "outcome": record.outcome.value,
            "sequence_number": record.sequence_number,
            "reference_id": record.reference_id,
            "error": record.error,
            "attempt": record.attempt,
            "verified_amount": (
                str(record.verified_amount) if record.verified_amount is not None else None
            ),
            "submitted_at": record.submitted_at,
        }

    @staticmethod
    def _to_record(row) -> SettlementRecord:
        return SettlementRecord(
            run_date=row["run_date"],
            line_index=row["line_index"],
            recipient=row["recipient"],
            amount=Decimal(row["amount"]),
            pool_kind=PoolKind(row["pool_kind"]),
            outcome=Outcome(row["outcome"]),
            sequence_number=row["sequence_number"],
            reference_id=row["reference_id"],
            error=row["error"],
            attempt=row["attempt"],
            run_attempt=row["run_attempt"],
            verified_amount=int(row["verified_amount"]) if row["verified_amount"] else None,
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_run(row) -> SettlementRun:
        return SettlementRun(
            run_date=row["run_date"],
            state=RunState(row["state"]),
            attempt=row["attempt"],
            correlation_id=row["correlation_id"],
            starting_sequence=row["starting_sequence"],
            completed_at=row["completed_at"],
            payout_snapshot=row["payout_snapshot"],
            summary=row["summary"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
