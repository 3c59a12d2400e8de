"""
============================================================================
Stake Reward Distributor v1.0.0
Unit Tests - Allocation Engine
============================================================================

Tests for:
- Daily pool target formula
- Reference scenario (three participants, unreachable target, clamp)
- Degenerate ratio range
- Pools without eligible participants
- Exact reconciliation and dust handling

Reliability Level: L6 Critical
============================================================================
"""

from decimal import Decimal, ROUND_DOWN, localcontext

import pytest

from app.allocation.engine import AllocationEngine, distribute_exact, merge_stakes
from app.allocation.models import (
    MarketParameters,
    ParticipantStake,
    PoolKind,
    PoolTargets,
)
from app.errors import DataUnavailable


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def engine() -> AllocationEngine:
    return AllocationEngine(correlation_id="test-alloc")


@pytest.fixture
def scenario_market() -> MarketParameters:
    """Reward token at 1, base asset at 10."""
    return MarketParameters(
        reward_token_price=Decimal("1"),
        base_asset_price=Decimal("10"),
        base_yield_rate_pct=Decimal("10"),
        locked_principal=Decimal("100000"),
        platform_fee_fraction=Decimal("0.1"),
    )


@pytest.fixture
def scenario_stakes():
    return [
        ParticipantStake("erd1alpha", Decimal("100"), Decimal("10")),
        ParticipantStake("erd1bravo", Decimal("50"), Decimal("10")),
        ParticipantStake("erd1charlie", Decimal("10"), Decimal("10")),
    ]


def _row(table, address):
    return next(r for r in table.rows if r.address == address)


# =============================================================================
# Pool Targets
# =============================================================================

class TestPoolTargets:
    """Daily buyback and pool split."""

    def test_formula(self, engine: AllocationEngine) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("0.002"),
            base_asset_price=Decimal("25"),
            base_yield_rate_pct=Decimal("9.5"),
            locked_principal=Decimal("3000000"),
            platform_fee_fraction=Decimal("0.1"),
        )
        targets = engine.compute_pool_targets(market)

        with localcontext() as ctx:
            ctx.prec = 50
            base_corrected = Decimal("9.5") / Decimal("0.9") / Decimal("100")
            total = (
                Decimal("3000000") * base_corrected * Decimal("0.30") * Decimal("0.1")
                * Decimal("25") / Decimal("0.002") / Decimal("365")
            )
            precision = Decimal("1e-18")
            expected_bonus = (total * Decimal("0.66")).quantize(precision, rounding=ROUND_DOWN)
            expected_prop = (total * Decimal("0.333")).quantize(precision, rounding=ROUND_DOWN)

        assert targets.bonus_pool_target == expected_bonus
        assert targets.proportional_pool_target == expected_prop
        assert abs(targets.total_daily_buyback - total) < Decimal("1e-17")

    def test_zero_fee_gives_zero_targets(self, engine: AllocationEngine) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("1"),
            base_asset_price=Decimal("10"),
            base_yield_rate_pct=Decimal("10"),
            locked_principal=Decimal("100000"),
            platform_fee_fraction=Decimal("0"),
        )
        targets = engine.compute_pool_targets(market)
        assert targets.bonus_pool_target == 0
        assert targets.proportional_pool_target == 0

    def test_zero_price_is_data_unavailable(self, engine: AllocationEngine) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("0"),
            base_asset_price=Decimal("10"),
            base_yield_rate_pct=Decimal("10"),
            locked_principal=Decimal("100000"),
            platform_fee_fraction=Decimal("0.1"),
        )
        with pytest.raises(DataUnavailable) as exc_info:
            engine.compute_pool_targets(market)
        assert exc_info.value.field_name == "reward_token_price"

    def test_fee_of_one_is_rejected(self) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("1"),
            base_asset_price=Decimal("10"),
            base_yield_rate_pct=Decimal("10"),
            locked_principal=Decimal("100000"),
            platform_fee_fraction=Decimal("1"),
        )
        with pytest.raises(DataUnavailable):
            market.validate()


# =============================================================================
# Reference Scenario
# =============================================================================

class TestScenario:
    """(100,10), (50,10), (10,10) at prices 1/10 with a bonus target of 5."""

    def test_ratios_and_normalization(self, engine, scenario_market, scenario_stakes) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("5"), Decimal("3")),
        )
        assert _row(table, "erd1alpha").ratio == Decimal("1")
        assert _row(table, "erd1bravo").ratio == Decimal("0.5")
        assert _row(table, "erd1charlie").ratio == Decimal("0.1")

        assert _row(table, "erd1alpha").normalized_ratio == Decimal("1")
        assert _row(table, "erd1charlie").normalized_ratio == Decimal("0")
        assert abs(_row(table, "erd1bravo").normalized_ratio - Decimal(4) / Decimal(9)) < Decimal("1e-20")

        assert table.min_ratio == Decimal("0.1")
        assert table.max_ratio == Decimal("1")

    def test_unreachable_target_clamps_and_reconciles(
        self, engine, scenario_market, scenario_stakes
    ) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("5"), Decimal("3")),
        )
        assert table.calibration.clamped is True
        assert table.curve_max == Decimal("50")
        assert table.calibration.achieved_sum < Decimal("5")

        assert table.bonus_distributed == Decimal("5")
        assert sum(r.bonus_amount for r in table.rows) == Decimal("5")
        assert table.undistributed_pools == ()

    def test_lowest_ratio_gets_minimum_rate(self, engine, scenario_market, scenario_stakes) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("5"), Decimal("3")),
        )
        assert _row(table, "erd1charlie").bonus_rate_pct == Decimal("0.5")
        assert _row(table, "erd1alpha").bonus_rate_pct == Decimal("50")

    def test_rows_sorted_by_bonus_descending(self, engine, scenario_market, scenario_stakes) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("5"), Decimal("3")),
        )
        assert [r.address for r in table.rows] == ["erd1alpha", "erd1bravo", "erd1charlie"]

    def test_proportional_split_by_reward_stake(self, engine, scenario_market, scenario_stakes) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("5"), Decimal("3")),
        )
        assert _row(table, "erd1alpha").proportional_amount == Decimal("1.875")
        assert _row(table, "erd1bravo").proportional_amount == Decimal("0.9375")
        assert _row(table, "erd1charlie").proportional_amount == Decimal("0.1875")
        assert table.proportional_distributed == Decimal("3")

    def test_reachable_target_converges(self, engine, scenario_market, scenario_stakes) -> None:
        table = engine.allocate(
            scenario_market, scenario_stakes,
            targets=PoolTargets(Decimal("0.1"), Decimal("0")),
        )
        calibration = table.calibration
        assert calibration.clamped is False
        assert Decimal("0.5") < calibration.curve_max < Decimal("50")
        assert abs(calibration.achieved_sum - Decimal("0.1")) < Decimal("0.001")
        assert table.bonus_distributed == Decimal("0.1")


# =============================================================================
# Edge Cases
# =============================================================================

class TestEdgeCases:

    def test_degenerate_ratio_uses_minimum_rate(self, engine) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("1"),
            base_asset_price=Decimal("1"),
            base_yield_rate_pct=Decimal("10"),
            locked_principal=Decimal("100000"),
            platform_fee_fraction=Decimal("0.1"),
        )
        stakes = [
            ParticipantStake("erd1one", Decimal("10"), Decimal("10")),
            ParticipantStake("erd1two", Decimal("20"), Decimal("20")),
        ]
        table = engine.allocate(market, stakes, targets=PoolTargets(Decimal("3"), Decimal("0")))

        for row in table.rows:
            assert row.normalized_ratio == 0
            assert row.bonus_rate_pct == Decimal("0.5")
        assert _row(table, "erd1one").bonus_amount == Decimal("1")
        assert _row(table, "erd1two").bonus_amount == Decimal("2")

    def test_no_bonus_eligible_participants(self, engine, scenario_market) -> None:
        stakes = [
            ParticipantStake("erd1holder", Decimal("40"), Decimal("0")),
            ParticipantStake("erd1other", Decimal("60"), Decimal("0")),
        ]
        table = engine.allocate(scenario_market, stakes, targets=PoolTargets(Decimal("5"), Decimal("2")))

        assert PoolKind.BONUS.value in table.undistributed_pools
        assert table.bonus_distributed == 0
        assert table.calibration is None
        assert table.proportional_distributed == Decimal("2")
        assert _row(table, "erd1other").proportional_amount == Decimal("1.2")

    def test_delegator_without_reward_stake_is_excluded(self, engine, scenario_market) -> None:
        stakes = [
            ParticipantStake("erd1staker", Decimal("10"), Decimal("10")),
            ParticipantStake("erd1delegator", Decimal("0"), Decimal("500")),
        ]
        table = engine.allocate(scenario_market, stakes, targets=PoolTargets(Decimal("1"), Decimal("1")))
        assert [r.address for r in table.rows] == ["erd1staker"]

    def test_empty_snapshot_leaves_both_pools_undistributed(self, engine, scenario_market) -> None:
        table = engine.allocate(scenario_market, [], targets=PoolTargets(Decimal("5"), Decimal("2")))
        assert set(table.undistributed_pools) == {"bonus", "proportional"}
        assert table.rows == ()

    def test_zero_fee_produces_no_payouts(self, engine, scenario_stakes) -> None:
        market = MarketParameters(
            reward_token_price=Decimal("1"),
            base_asset_price=Decimal("10"),
            base_yield_rate_pct=Decimal("10"),
            locked_principal=Decimal("100000"),
            platform_fee_fraction=Decimal("0"),
        )
        table = engine.allocate(market, scenario_stakes)
        assert table.bonus_distributed == 0
        assert table.proportional_distributed == 0
        assert table.bonus_rows() == []
        assert table.proportional_rows() == []

    def test_duplicate_addresses_are_merged(self) -> None:
        merged = merge_stakes([
            ParticipantStake("erd1dup", Decimal("5"), Decimal("1")),
            ParticipantStake("erd1solo", Decimal("1"), Decimal("1")),
            ParticipantStake("erd1dup", Decimal("7"), Decimal("2")),
        ])
        assert [m.address for m in merged] == ["erd1dup", "erd1solo"]
        assert merged[0].reward_token_staked == Decimal("12")
        assert merged[0].base_asset_staked == Decimal("3")

    def test_negative_stake_rejected(self) -> None:
        with pytest.raises(ValueError):
            ParticipantStake("erd1bad", Decimal("-1"), Decimal("0"))

    def test_ceiling_must_exceed_minimum(self) -> None:
        with pytest.raises(ValueError):
            AllocationEngine(rate_min_pct=Decimal("5"), curve_max_ceiling_pct=Decimal("5"))


class TestDistributeExact:

    def test_dust_goes_to_largest_weight(self) -> None:
        amounts = distribute_exact(
            [Decimal("1"), Decimal("3"), Decimal("1")], Decimal("1"), Decimal("0.01")
        )
        assert amounts == [Decimal("0.20"), Decimal("0.60"), Decimal("0.20")]

        amounts = distribute_exact(
            [Decimal("1"), Decimal("1"), Decimal("1")], Decimal("1"), Decimal("0.01")
        )
        assert amounts == [Decimal("0.34"), Decimal("0.33"), Decimal("0.33")]
        assert sum(amounts) == Decimal("1")

    def test_zero_weights(self) -> None:
        assert distribute_exact([Decimal("0"), Decimal("0")], Decimal("5"), Decimal("0.01")) == [
            Decimal("0"), Decimal("0"),
        ]
