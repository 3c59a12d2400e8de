"""
============================================================================
Stake Reward Distributor v1.0.0
Integration Test: Daily Distribution Pipeline - End-to-End Validation
============================================================================

Reliability Level: L6 Critical
Input Constraints: Mocked collaborator HTTP endpoints, simulated ledger
Side Effects: SQLite (in-memory) run store, export files in tmp_path

SCENARIOS:
- Snapshot -> allocate -> plan -> settle -> verify on one correlation_id
- Pool totals on the ledger equal the computed pool targets
- Replay of a completed date is refused with no extra submissions
- Rejected lines are resent on a fresh sequence and the run completes
- A snapshot failure aborts before any transfer or run record exists
- execute settles the previewed export; recalc snapshots afresh
============================================================================
"""

import base64
import json
import os
from decimal import Decimal

import httpx
import pytest

from app.config import DistributionConfig
from app.errors import DataUnavailable, RunAlreadyExecuted
from app.ledger.address import encode_address
from app.ledger.decimal_gateway import DecimalGateway
from app.ledger.simulated_ledger import FailureInjection, SimulatedLedger
from app.settlement.models import Outcome, RunState
from app.settlement.run_store import RunStore
from data_ingestion.provider_factory import ProviderFactory
from jobs.distribution_run import DistributionPipeline, RunContext


ASSET = "COLS-9d91b7"
RUN_DATE = "2026-05-01"
SENDER = encode_address(b"\xee" * 32)

KEYS = {
    "alpha": b"\x01" * 32,
    "bravo": b"\x02" * 32,
    "charlie": b"\x03" * 32,
    "delta": b"\x04" * 32,
}
ALPHA, BRAVO, CHARLIE, DELTA = (encode_address(KEYS[k]) for k in ("alpha", "bravo", "charlie", "delta"))


# ============================================================================
# MOCK COLLABORATOR ENDPOINTS
# ============================================================================

def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _units(tokens: int) -> str:
    amount = tokens * 10**18
    return _b64(amount.to_bytes((amount.bit_length() + 7) // 8, "big"))


def collaborator_transport(fail_stakes: bool = False) -> httpx.MockTransport:
    entity_users = [
        _b64(KEYS["alpha"]), _units(100),
        _b64(KEYS["bravo"]), _units(50),
        _b64(KEYS["charlie"]), _units(10),
        _b64(KEYS["delta"]), _units(40),
    ]
    routes = {
        ("api.test", "/economics"): {"price": 10},
        ("api.test", f"/mex/tokens/prices/hourly/{ASSET}"): [{"value": 1}],
        ("api.test", "/providers/erd1delegation"): {
            "apr": 10, "locked": "100000", "serviceFee": 0.1,
        },
        ("api.test", "/providers/erd1delegation/accounts"): [
            {"address": ALPHA, "stake": "10"},
            {"address": BRAVO, "stake": "10"},
            {"address": CHARLIE, "stake": "10000000000000000000"},
        ],
        ("gw.test", "/vm-values/query"): {"data": {"data": {"returnData": entity_users}}},
    }
    if fail_stakes:
        del routes[("gw.test", "/vm-values/query")]

    def handler(request: httpx.Request) -> httpx.Response:
        payload = routes.get((request.url.host, request.url.path))
        if payload is None:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=payload)

    return httpx.MockTransport(handler)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def config(tmp_path) -> DistributionConfig:
    config = DistributionConfig(
        api_primary_url="https://api.test",
        api_backup_url="https://api-backup.test",
        gateway_primary_url="https://gw.test",
        gateway_backup_url="https://gw-backup.test",
        delegation_contract="erd1delegation",
        fetch_retries=1,
        verify_delay_seconds=0.0,
        output_dir=str(tmp_path),
    )
    config.validate()
    return config


@pytest.fixture
def store() -> RunStore:
    return RunStore.from_url("sqlite://")


def make_pipeline(config, store, ledger, fail_stakes: bool = False) -> DistributionPipeline:
    return DistributionPipeline(
        config,
        store=store,
        ledger=ledger,
        sender=SENDER,
        provider_factory=ProviderFactory(
            config, transport=collaborator_transport(fail_stakes), correlation_id="it-factory",
        ),
        sleep=lambda seconds: None,
    )


def new_context(config) -> RunContext:
    return RunContext.create(config, run_date=RUN_DATE, correlation_id="it-run")


# ============================================================================
# END-TO-END
# ============================================================================

class TestDistributionPipeline:

    def test_preview_exports_without_state(self, config, store) -> None:
        ledger = SimulatedLedger()
        ctx = make_pipeline(config, store, ledger).preview(new_context(config))

        assert ctx.steps_completed == ["snapshot", "allocate", "plan"]
        assert ctx.market.sources["base_asset_price"] == "primary"
        assert ctx.stakes.delegators == 3
        assert len(ctx.records) == 7
        assert store.get_run(RUN_DATE) is None
        assert ledger.submissions == []

        with open(ctx.exports["json"], encoding="utf-8") as f:
            document = json.load(f)
        assert document["run_date"] == RUN_DATE
        with open(ctx.exports["text"], encoding="utf-8") as f:
            lines = f.read().splitlines()
        assert len(lines) == 7
        assert sum(1 for line in lines if line.endswith(";BONUS")) == 3
        assert all(line.count(";") == 2 for line in lines)
        assert ctx.exports["metrics"].endswith("distribution.prom")
        with open(ctx.exports["metrics"], encoding="utf-8") as f:
            assert "distribution_pool_target" in f.read()
        assert os.path.exists(config.snapshot_cache_path)

    def test_execute_and_verify(self, config, store) -> None:
        ledger = SimulatedLedger()
        pipeline = make_pipeline(config, store, ledger)
        ctx = pipeline.execute(new_context(config))

        assert ctx.steps_completed[-1] == "settle"
        assert ctx.summary.state == RunState.COMPLETED
        assert ctx.summary.submitted == 7
        assert len(ledger.submissions) == 7

        table = ctx.table
        bonus = sum((r.amount for r in ctx.records if r.pool_kind.value == "bonus"), Decimal("0"))
        proportional = sum(
            (r.amount for r in ctx.records if r.pool_kind.value == "proportional"), Decimal("0")
        )
        assert bonus == table.targets.bonus_pool_target
        assert proportional == table.targets.proportional_pool_target

        gateway = DecimalGateway(18)
        received = sum(ledger.get_asset_balance(a, ASSET) for a in (ALPHA, BRAVO, CHARLIE, DELTA))
        assert received == gateway.to_smallest_unit(bonus) + gateway.to_smallest_unit(proportional)
        assert ledger.get_asset_balance(SENDER, ASSET) == 0

        ctx = pipeline.verify(new_context(config), full=True)
        assert ctx.verification.confirmed == 7
        assert all(r.outcome == Outcome.CONFIRMED for r in store.load_records(RUN_DATE))
        assert store.get_run(RUN_DATE).state == RunState.COMPLETED

    def test_replay_refused(self, config, store) -> None:
        ledger = SimulatedLedger()
        pipeline = make_pipeline(config, store, ledger)
        pipeline.execute(new_context(config))

        with pytest.raises(RunAlreadyExecuted):
            pipeline.execute(new_context(config))
        assert len(ledger.submissions) == 7
        assert store.count_records(RUN_DATE) == 7

    def test_rejected_lines_are_resent(self, config, store) -> None:
        ledger = SimulatedLedger(failures=FailureInjection(reject={DELTA}))
        pipeline = make_pipeline(config, store, ledger)

        ctx = pipeline.execute(new_context(config))
        assert ctx.summary.state == RunState.PARTIALLY_FAILED
        assert ctx.summary.failed == 1

        ledger.failures.reject.clear()
        ctx = pipeline.resend(new_context(config))

        assert ctx.summary.state == RunState.COMPLETED
        assert ctx.summary.submitted == 7
        delta = [r for r in ctx.records if r.recipient == DELTA]
        assert len(delta) == 1
        assert delta[0].attempt == 2
        assert delta[0].sequence_number == 6

    def test_snapshot_failure_aborts_before_settlement(self, config, store) -> None:
        ledger = SimulatedLedger()
        pipeline = make_pipeline(config, store, ledger, fail_stakes=True)

        with pytest.raises(DataUnavailable) as exc_info:
            pipeline.execute(new_context(config))

        assert exc_info.value.field_name == "reward_token_stakers"
        assert ledger.submissions == []
        assert store.get_run(RUN_DATE) is None

    def test_execute_settles_the_previewed_table(self, config, store) -> None:
        previewed = make_pipeline(config, store, SimulatedLedger()).preview(new_context(config))

        # collaborators are down by execution time; the previewed export still settles
        ledger = SimulatedLedger()
        ctx = make_pipeline(config, store, ledger, fail_stakes=True).execute(new_context(config))

        assert ctx.steps_completed == ["reuse_preview", "plan", "settle"]
        assert ctx.table == previewed.table
        assert ctx.summary.state == RunState.COMPLETED
        assert sorted((r.recipient, r.pool_kind.value, r.amount) for r in ctx.records) == sorted(
            (r.recipient, r.pool_kind.value, r.amount) for r in previewed.records
        )
        assert len(ledger.submissions) == 7

    def test_recalc_ignores_the_previewed_table(self, config, store) -> None:
        make_pipeline(config, store, SimulatedLedger()).preview(new_context(config))

        ledger = SimulatedLedger()
        with pytest.raises(DataUnavailable) as exc_info:
            make_pipeline(config, store, ledger, fail_stakes=True).execute(
                new_context(config), recalc=True
            )

        assert exc_info.value.field_name == "reward_token_stakers"
        assert ledger.submissions == []
        assert store.get_run(RUN_DATE) is None
