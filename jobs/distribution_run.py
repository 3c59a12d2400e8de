"""
============================================================================
Stake Reward Distributor v1.0.0
Distribution Run - Daily Pipeline Orchestrator
============================================================================

Reliability Level: L6 Critical (Mission-Critical)
Input Constraints: Validated DistributionConfig
Side Effects: HTTP calls, ledger submissions, database writes, file writes

PIPELINE CHAIN:
Snapshot -> Allocate -> Plan -> Settle -> Verify

PREVIEW REUSE:
execute settles the table a preview already exported for the run date
(payout_<run_date>.json) unless recalc is requested.

ERROR HANDLING:
Any DistributionError halts the pipeline before the next step. Snapshot
and allocation failures happen before any transfer is built.

TRACEABILITY:
A single correlation_id travels in the RunContext through every step.

EXECUTION MODES:
DRY_RUN (default) settles against the in-memory SimulatedLedger and a
separate SQLite file. LIVE uses the MultiversX gateway with the sender
key from SENDER_KEY_FILE.

============================================================================
"""

import asyncio
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable, Iterable, Tuple

from app.allocation.engine import AllocationEngine
from app.allocation.models import MarketParameters, PayoutTable, PoolKind
from app.config import DistributionConfig
from app.errors import DataUnavailable
from app.ledger.decimal_gateway import DecimalGateway
from app.ledger.gateway_client import GatewayLedger
from app.ledger.ledger_interface import LedgerInterface
from app.ledger.signer import TransactionSigner
from app.ledger.simulated_ledger import SimulatedLedger
from app.observability.metrics import export_metrics, update_curve_max, update_pool_metrics
from app.settlement.batcher import PlannedTransfer, SettlementBatcher
from app.settlement.models import RunSummary, SettlementRecord
from app.settlement.run_store import RunStore
from app.settlement.verifier import SettlementVerifier, VerificationReport
from data_ingestion.provider_factory import ProviderFactory
from data_ingestion.schemas import StakeSnapshot

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STEP_SNAPSHOT = "snapshot"
STEP_ALLOCATE = "allocate"
STEP_PLAN = "plan"
STEP_REUSE = "reuse_preview"
STEP_SETTLE = "settle"
STEP_VERIFY = "verify"

SIMULATED_DB_FILENAME = "simulated_distribution.db"
METRICS_FILENAME = "distribution.prom"


def today_utc() -> str:
    return datetime.now(timezone.utc).date().isoformat()


# =============================================================================
# Run Context
# =============================================================================

@dataclass
class RunContext:
    """
    Everything one pipeline invocation knows, passed explicitly step to step.

    Reliability Level: L6 Critical
    """
    run_date: str
    correlation_id: str
    config: DistributionConfig
    simulate: bool = True
    market: Optional[MarketParameters] = None
    stakes: Optional[StakeSnapshot] = None
    table: Optional[PayoutTable] = None
    records: List[SettlementRecord] = field(default_factory=list)
    transfers: List[PlannedTransfer] = field(default_factory=list)
    summary: Optional[RunSummary] = None
    verification: Optional[VerificationReport] = None
    exports: Dict[str, str] = field(default_factory=dict)
    steps_completed: List[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        config: DistributionConfig,
        run_date: Optional[str] = None,
        correlation_id: Optional[str] = None,
        simulate: Optional[bool] = None
    ) -> "RunContext":
        return cls(
            run_date=run_date or today_utc(),
            correlation_id=correlation_id or str(uuid.uuid4()),
            config=config,
            simulate=(not config.is_live) if simulate is None else (simulate or not config.is_live),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for the CLI's JSON output."""
        table = self.table
        return {
            "run_date": self.run_date,
            "correlation_id": self.correlation_id,
            "mode": "simulated" if self.simulate else "live",
            "steps_completed": list(self.steps_completed),
            "market": self.market.to_dict() if self.market else None,
            "stakes": self.stakes.to_dict() if self.stakes else None,
            "targets": table.targets.to_dict() if table else None,
            "calibration": table.calibration.to_dict() if table and table.calibration else None,
            "bonus_distributed": str(table.bonus_distributed) if table else None,
            "proportional_distributed": str(table.proportional_distributed) if table else None,
            "undistributed_pools": list(table.undistributed_pools) if table else [],
            "planned_records": len(self.records),
            "planned_transfers": len(self.transfers),
            "summary": self.summary.to_dict() if self.summary else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "exports": dict(self.exports),
        }


# =============================================================================
# Ledger wiring
# =============================================================================

def build_ledger(
    config: DistributionConfig,
    simulate: bool,
    correlation_id: Optional[str] = None
) -> Tuple[LedgerInterface, str]:
    """
    Ledger and sender address for this invocation.

    Simulation uses a throwaway identity on a SimulatedLedger; live mode
    loads the sender key and talks to the gateway.
    """
    if simulate:
        signer = TransactionSigner.generate()
        return SimulatedLedger(), signer.address

    signer = TransactionSigner.from_key_file(config.sender_key_file)
    ledger = GatewayLedger(
        config.gateway_primary_url,
        config.gateway_backup_url,
        signer=signer,
        chain_id=config.chain_id,
        gas_limit=config.gas_limit,
        gas_price=config.gas_price,
        correlation_id=correlation_id,
    )
    return ledger, signer.address


def store_url(config: DistributionConfig, simulate: bool) -> str:
    """Simulated runs never share the live run store."""
    if simulate:
        return f"sqlite:///{os.path.join(config.output_dir, SIMULATED_DB_FILENAME)}"
    return config.db_url


# =============================================================================
# Pipeline Orchestrator
# =============================================================================

class DistributionPipeline:
    """
    Daily reward distribution pipeline.

    Reliability Level: L6 Critical
    Side Effects: HTTP calls, ledger submissions, database writes

    USAGE:
        ctx = RunContext.create(config)
        pipeline = DistributionPipeline(config)
        pipeline.preview(ctx)
        pipeline.execute(ctx)
    """

    def __init__(
        self,
        config: DistributionConfig,
        store: Optional[RunStore] = None,
        ledger: Optional[LedgerInterface] = None,
        sender: Optional[str] = None,
        provider_factory: Optional[ProviderFactory] = None,
        engine: Optional[AllocationEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: Optional[threading.Event] = None
    ) -> None:
        self.config = config
        self._store = store
        self._ledger = ledger
        self._sender = sender
        self._provider_factory = provider_factory
        self._engine = engine
        self._sleep = sleep
        self.cancel_event = cancel_event or threading.Event()

    # =========================================================================
    # Wiring
    # =========================================================================

    def store_for(self, ctx: RunContext) -> RunStore:
        if self._store is None:
            self._store = RunStore.from_url(store_url(self.config, ctx.simulate))
        return self._store

    def ledger_for(self, ctx: RunContext) -> Tuple[LedgerInterface, str]:
        if self._ledger is None:
            self._ledger, self._sender = build_ledger(self.config, ctx.simulate, ctx.correlation_id)
        return self._ledger, self._sender

    def batcher_for(self, ctx: RunContext) -> SettlementBatcher:
        ledger, sender = self.ledger_for(ctx)
        return SettlementBatcher.from_config(
            self.config, ledger, self.store_for(ctx), sender,
            sleep=self._sleep, cancel_event=self.cancel_event,
            correlation_id=ctx.correlation_id,
        )

    def verifier_for(self, ctx: RunContext) -> SettlementVerifier:
        ledger, _ = self.ledger_for(ctx)
        return SettlementVerifier.from_config(
            self.config, ledger, self.store_for(ctx), correlation_id=ctx.correlation_id,
        )

    # =========================================================================
    # Steps
    # =========================================================================

    def step_snapshot(self, ctx: RunContext) -> RunContext:
        """Resolve market and stake snapshots (DataUnavailable aborts)."""
        factory = self._provider_factory or ProviderFactory(
            self.config, correlation_id=ctx.correlation_id
        )
        snapshots = asyncio.run(factory.fetch_snapshots())
        ctx.market = snapshots.market
        ctx.stakes = snapshots.stakes
        ctx.steps_completed.append(STEP_SNAPSHOT)
        return ctx

    def step_allocate(self, ctx: RunContext) -> RunContext:
        engine = self._engine or AllocationEngine.from_config(self.config, ctx.correlation_id)
        ctx.table = engine.allocate(ctx.market, ctx.stakes.stakes)

        table = ctx.table
        update_pool_metrics(
            PoolKind.BONUS.value, table.targets.bonus_pool_target,
            table.bonus_distributed, ctx.correlation_id,
        )
        update_pool_metrics(
            PoolKind.PROPORTIONAL.value, table.targets.proportional_pool_target,
            table.proportional_distributed, ctx.correlation_id,
        )
        if table.curve_max is not None:
            update_curve_max(table.curve_max)

        logger.info(
            f"[PIPELINE-ALLOCATE] run_date={ctx.run_date} | "
            f"bonus={table.bonus_distributed}/{table.targets.bonus_pool_target} | "
            f"proportional={table.proportional_distributed}/{table.targets.proportional_pool_target} | "
            f"curve_max={table.curve_max} | correlation_id={ctx.correlation_id}"
        )
        ctx.steps_completed.append(STEP_ALLOCATE)
        return ctx

    def step_plan(self, ctx: RunContext) -> RunContext:
        batcher = SettlementBatcher(
            ledger=None, store=None, sender="", asset_id=self.config.reward_token_id,
            token_decimals=self.config.token_decimals, combine_pools=self.config.combine_pools,
            correlation_id=ctx.correlation_id,
        )
        ctx.records = batcher.plan_records(ctx.run_date, ctx.table)
        ctx.transfers = batcher.group_transfers(ctx.records)
        ctx.steps_completed.append(STEP_PLAN)
        return ctx

    def step_reuse_preview(self, ctx: RunContext) -> bool:
        """
        Load the payout table a preview exported for ctx.run_date.

        Returns:
            False when no preview export exists for the run date

        Raises:
            DataUnavailable: The export is unreadable or belongs to another date
        """
        json_path, text_path = self.export_paths(ctx)
        if not os.path.exists(json_path):
            return False

        try:
            with open(json_path, "r", encoding="utf-8") as f:
                document = json.load(f)
            table = PayoutTable.from_dict(document)
        except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
            raise DataUnavailable(
                f"Previewed payout table {json_path} is unreadable ({e}); rerun with --recalc",
                field_name="payout_table",
            ) from e

        if document.get("run_date") != ctx.run_date:
            raise DataUnavailable(
                f"Previewed payout table {json_path} is for run_date={document.get('run_date')}, "
                f"expected {ctx.run_date}; rerun with --recalc",
                field_name="payout_table",
            )

        ctx.table = table
        ctx.market = table.market
        ctx.exports = {"json": json_path}
        if os.path.exists(text_path):
            ctx.exports["text"] = text_path
        ctx.steps_completed.append(STEP_REUSE)

        logger.info(
            f"[PIPELINE-REUSE] Settling previewed table | run_date={ctx.run_date} | "
            f"path={json_path} | rows={len(table.rows)} | "
            f"previewed_correlation_id={table.correlation_id} | correlation_id={ctx.correlation_id}"
        )
        return True

    # =========================================================================
    # Actions
    # =========================================================================

    def preview(self, ctx: RunContext) -> RunContext:
        """Snapshot, allocate and plan; write exports; change no state."""
        self.step_snapshot(ctx)
        self.step_allocate(ctx)
        self.step_plan(ctx)
        ctx.exports = self.write_exports(ctx)
        return ctx

    def execute(self, ctx: RunContext, force: bool = False, recalc: bool = False) -> RunContext:
        """
        Full pipeline with settlement.

        Settles the previewed table for the run date when one was exported;
        recalc=True (or no export) snapshots and allocates afresh.

        Raises:
            DataUnavailable, RunAlreadyExecuted, RunInterrupted,
            InsufficientBalance: Before any transfer is sent
        """
        store = self.store_for(ctx)
        batcher = self.batcher_for(ctx)
        # refuse before any snapshot call
        batcher.check_idempotency(ctx.run_date, force)

        if not recalc and self.step_reuse_preview(ctx):
            self.step_plan(ctx)
        else:
            self.preview(ctx)

        ledger, sender = self.ledger_for(ctx)
        if ctx.simulate and isinstance(ledger, SimulatedLedger):
            required = sum(t.amount_smallest_unit for t in ctx.transfers)
            if ledger.get_asset_balance(sender, self.config.reward_token_id) < required:
                ledger.fund(sender, self.config.reward_token_id, required)

        ctx.summary = batcher.execute(ctx.run_date, ctx.table, force=force)
        ctx.records = store.load_records(ctx.run_date)
        ctx.steps_completed.append(STEP_SETTLE)
        return ctx

    def resend(
        self,
        ctx: RunContext,
        recipients: Optional[Iterable[str]] = None,
        include_mismatched: bool = False,
        include_unconfirmed: bool = False
    ) -> RunContext:
        ctx.summary = self.batcher_for(ctx).resend(
            ctx.run_date, recipients=recipients, include_mismatched=include_mismatched,
            include_unconfirmed=include_unconfirmed,
        )
        ctx.records = self.store_for(ctx).load_records(ctx.run_date)
        ctx.steps_completed.append(STEP_SETTLE)
        return ctx

    def verify(self, ctx: RunContext, full: bool = False, persist: bool = True) -> RunContext:
        ctx.verification = self.verifier_for(ctx).verify_run(ctx.run_date, full=full, persist=persist)
        ctx.summary = ctx.verification.run_summary
        ctx.steps_completed.append(STEP_VERIFY)
        return ctx

    def summary(self, ctx: RunContext) -> RunContext:
        store = self.store_for(ctx)
        run = store.require_run(ctx.run_date)
        records = store.load_records(ctx.run_date, run.attempt)
        ctx.records = records
        ctx.summary = RunSummary.from_records(
            ctx.run_date, run.state, records, attempt=run.attempt,
            correlation_id=run.correlation_id,
        )
        return ctx

    # =========================================================================
    # Exports
    # =========================================================================

    def export_paths(self, ctx: RunContext) -> Tuple[str, str]:
        output_dir = self.config.output_dir
        return (
            os.path.join(output_dir, f"payout_{ctx.run_date}.json"),
            os.path.join(output_dir, f"distribution_{ctx.run_date}.txt"),
        )

    def write_exports(self, ctx: RunContext) -> Dict[str, str]:
        """
        Write the payout table as JSON and as `address;amount;POOL` lines.

        Returns:
            Mapping of export kind to file path
        """
        output_dir = self.config.output_dir
        os.makedirs(output_dir, exist_ok=True)
        json_path, text_path = self.export_paths(ctx)

        document = ctx.table.to_dict()
        document["run_date"] = ctx.run_date
        with open(json_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)

        gateway = DecimalGateway(self.config.token_decimals)
        with open(text_path, "w", encoding="utf-8") as f:
            for record in ctx.records:
                amount = gateway.quantize_amount(record.amount)
                f.write(f"{record.recipient};{amount:f};{record.pool_kind.name}\n")

        metrics_path = os.path.join(output_dir, METRICS_FILENAME)
        exports = {"json": json_path, "text": text_path}
        if export_metrics(metrics_path):
            exports["metrics"] = metrics_path

        logger.info(
            f"[PIPELINE-EXPORT] run_date={ctx.run_date} | json={json_path} | "
            f"text={text_path} | lines={len(ctx.records)} | correlation_id={ctx.correlation_id}"
        )
        return exports

