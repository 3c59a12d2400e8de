"""
============================================================================
Stake Reward Distributor v1.0.0
Allocation Engine - Bonus Curve Calibration & Pool Reconciliation
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: All math runs in a local 50-digit Decimal context
Traceability: All log lines carry correlation_id

ALGORITHM:
    1. Eligibility: bonus iff both stakes > 0; proportional iff
       reward-token stake > 0.
    2. ratio = (reward_staked * reward_price) / (base_staked * base_price),
       normalized to [0, 1] over the bonus-eligible set (all 0 when the
       ratio range is degenerate).
    3. bonus_rate_pct = RATE_MIN + (curve_max - RATE_MIN) * sqrt(normalized)
       bonus_amount   = rate/100 * base_staked * base_price / 365 / reward_price
    4. curve_max is found by bisection so that the bonus sum meets the pool
       target; an unreachable target is clamped to the nearest bound.
    5. Reconciliation scales the bonus amounts onto the exact target, rounds
       down to the token's smallest unit and gives the dust to the largest
       recipient. The proportional pool is split the same way.

ERROR CODES:
    - ALLOC-001: Calibration target outside the curve's achievable range
    - ALLOC-002: Pool has no eligible participants (reported, not fatal)
============================================================================
"""

from decimal import Decimal, ROUND_DOWN, localcontext
from typing import Optional, List, Dict, Iterable, Tuple
import logging

from app.allocation.models import (
    AllocationRow,
    CalibrationResult,
    MarketParameters,
    ParticipantStake,
    PayoutTable,
    PoolKind,
    PoolTargets,
)
from app.config import DistributionConfig
from app.errors import CalibrationUnreachable, DistributionErrorCode

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DAYS_PER_YEAR = Decimal("365")
HUNDRED = Decimal("100")
ZERO = Decimal("0")
ONE = Decimal("1")
WORKING_PRECISION = 50


def merge_stakes(stakes: Iterable[ParticipantStake]) -> List[ParticipantStake]:
    """
    Collapse duplicate addresses by summing their stakes.

    First-seen order is preserved.
    """
    merged: Dict[str, Tuple[Decimal, Decimal]] = {}
    for stake in stakes:
        reward, base = merged.get(stake.address, (ZERO, ZERO))
        merged[stake.address] = (
            reward + stake.reward_token_staked,
            base + stake.base_asset_staked,
        )
    return [
        ParticipantStake(address=address, reward_token_staked=reward, base_asset_staked=base)
        for address, (reward, base) in merged.items()
    ]


def distribute_exact(
    weights: List[Decimal],
    target: Decimal,
    precision: Decimal
) -> List[Decimal]:
    """
    Split `target` proportionally to `weights`, rounded down to `precision`,
    with the rounding dust added to the largest weight.

    The result sums to `target` exactly when `target` is a multiple of
    `precision`.
    """
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        total = sum(weights, ZERO)
        if total <= 0 or not weights:
            return [ZERO for _ in weights]

        amounts = [
            (target * w / total).quantize(precision, rounding=ROUND_DOWN)
            for w in weights
        ]
        dust = target - sum(amounts, ZERO)
        if dust != 0:
            largest = max(range(len(weights)), key=lambda i: (weights[i], -i))
            amounts[largest] += dust
    return amounts


class AllocationEngine:
    """
    Deterministic, single-threaded payout calculator.

    Reliability Level: L6 Critical
    Input Constraints: MarketParameters must validate()
    Side Effects: Logs calibration and reconciliation results

    Example Usage:
        engine = AllocationEngine.from_config(config, correlation_id=cid)
        table = engine.allocate(market, stakes)
    """

    def __init__(
        self,
        rate_min_pct: Decimal = Decimal("0.5"),
        curve_max_ceiling_pct: Decimal = Decimal("50"),
        calibration_iterations: int = 30,
        calibration_tolerance: Decimal = Decimal("0.001"),
        buyback_fraction: Decimal = Decimal("0.30"),
        bonus_pool_fraction: Decimal = Decimal("0.66"),
        proportional_pool_fraction: Decimal = Decimal("0.333"),
        token_decimals: int = 18,
        correlation_id: Optional[str] = None
    ):
        if curve_max_ceiling_pct <= rate_min_pct:
            raise ValueError("curve_max_ceiling_pct must exceed rate_min_pct")
        self.rate_min_pct = rate_min_pct
        self.curve_max_ceiling_pct = curve_max_ceiling_pct
        self.calibration_iterations = calibration_iterations
        self.calibration_tolerance = calibration_tolerance
        self.buyback_fraction = buyback_fraction
        self.bonus_pool_fraction = bonus_pool_fraction
        self.proportional_pool_fraction = proportional_pool_fraction
        self.precision = ONE.scaleb(-token_decimals)
        self.correlation_id = correlation_id

    @classmethod
    def from_config(
        cls,
        config: DistributionConfig,
        correlation_id: Optional[str] = None
    ) -> "AllocationEngine":
        return cls(
            rate_min_pct=config.rate_min_pct,
            curve_max_ceiling_pct=config.curve_max_ceiling_pct,
            calibration_iterations=config.calibration_iterations,
            calibration_tolerance=config.calibration_tolerance,
            buyback_fraction=config.buyback_fraction,
            bonus_pool_fraction=config.bonus_pool_fraction,
            proportional_pool_fraction=config.proportional_pool_fraction,
            token_decimals=config.token_decimals,
            correlation_id=correlation_id,
        )

    # =========================================================================
    # Pool Targets
    # =========================================================================

    def compute_pool_targets(self, market: MarketParameters) -> PoolTargets:
        """
        Daily pool sizes from protocol revenue.

        base_corrected      = yield / (1 - fee) / 100
        total_daily_buyback = locked * base_corrected * buyback * fee
                              * base_price / reward_price / 365
        bonus target        = total * bonus_pool_fraction
        proportional target = total * proportional_pool_fraction
        """
        market.validate()
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            fee = market.platform_fee_fraction
            base_corrected = market.base_yield_rate_pct / (ONE - fee) / HUNDRED
            total = (
                market.locked_principal
                * base_corrected
                * self.buyback_fraction
                * fee
                * market.base_asset_price
                / market.reward_token_price
                / DAYS_PER_YEAR
            )
            targets = PoolTargets(
                bonus_pool_target=self._quantize(total * self.bonus_pool_fraction),
                proportional_pool_target=self._quantize(total * self.proportional_pool_fraction),
                total_daily_buyback=self._quantize(total),
            )

        logger.info(
            f"[ALLOC] Pool targets computed | "
            f"total_daily_buyback={targets.total_daily_buyback} | "
            f"bonus_target={targets.bonus_pool_target} | "
            f"proportional_target={targets.proportional_pool_target} | "
            f"correlation_id={self.correlation_id}"
        )
        if targets.total_daily_buyback == 0:
            logger.warning(
                f"[ALLOC] Zero pool targets (platform fee is {fee}) | "
                f"correlation_id={self.correlation_id}"
            )
        return targets

    # =========================================================================
    # Curve
    # =========================================================================

    def bonus_rate(self, normalized_ratio: Decimal, curve_max: Decimal) -> Decimal:
        if normalized_ratio == 0:
            return self.rate_min_pct
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            return self.rate_min_pct + (curve_max - self.rate_min_pct) * normalized_ratio.sqrt()

    @staticmethod
    def bonus_amount(
        rate_pct: Decimal,
        base_asset_staked: Decimal,
        market: MarketParameters
    ) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            return (
                rate_pct / HUNDRED
                * base_asset_staked
                * market.base_asset_price
                / DAYS_PER_YEAR
                / market.reward_token_price
            )

    def bonus_amounts(
        self,
        rows: List[AllocationRow],
        market: MarketParameters,
        curve_max: Decimal
    ) -> List[Decimal]:
        """Unreconciled bonus amount of each bonus-eligible row at curve_max."""
        return [
            self.bonus_amount(
                self.bonus_rate(row.normalized_ratio, curve_max),
                row.base_asset_staked,
                market,
            )
            for row in rows
        ]

    def _bonus_sum(self, rows: List[AllocationRow], market: MarketParameters, curve_max: Decimal) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            return sum(self.bonus_amounts(rows, market, curve_max), ZERO)

    # =========================================================================
    # Ratio & Normalization
    # =========================================================================

    @staticmethod
    def assign_ratios(
        rows: List[AllocationRow],
        market: MarketParameters
    ) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        """
        Set ratio and normalized_ratio on bonus-eligible rows in place.

        Returns:
            (min_ratio, max_ratio), or (None, None) for an empty set
        """
        if not rows:
            return None, None

        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            for row in rows:
                row.ratio = (
                    (row.reward_token_staked * market.reward_token_price)
                    / (row.base_asset_staked * market.base_asset_price)
                )
            min_ratio = min(r.ratio for r in rows)
            max_ratio = max(r.ratio for r in rows)
            spread = max_ratio - min_ratio
            for row in rows:
                if spread == 0:
                    row.normalized_ratio = ZERO
                else:
                    row.normalized_ratio = (row.ratio - min_ratio) / spread
        return min_ratio, max_ratio

    # =========================================================================
    # Calibration
    # =========================================================================

    def calibrate(
        self,
        rows: List[AllocationRow],
        market: MarketParameters,
        target: Decimal
    ) -> CalibrationResult:
        """
        Bisection of curve_max over [RATE_MIN, CEILING].

        The bonus sum is monotone non-decreasing in curve_max. A target below
        the all-minimum sum or above the all-ceiling sum is clamped and logged
        as ALLOC-001; it is never raised.
        """
        low, high = self.rate_min_pct, self.curve_max_ceiling_pct
        low_sum = self._bonus_sum(rows, market, low)
        high_sum = self._bonus_sum(rows, market, high)

        if target < low_sum - self.calibration_tolerance:
            return self._clamped(low, low_sum, target, "below all-minimum sum")
        if target > high_sum + self.calibration_tolerance:
            return self._clamped(high, high_sum, target, "above all-ceiling sum")

        curve_max = low
        achieved = low_sum
        iterations = 0
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            for iterations in range(1, self.calibration_iterations + 1):
                curve_max = (low + high) / 2
                achieved = self._bonus_sum(rows, market, curve_max)
                diff = achieved - target
                if abs(diff) < self.calibration_tolerance:
                    break
                if diff < 0:
                    low = curve_max
                else:
                    high = curve_max

        logger.info(
            f"[ALLOC] Calibration converged | curve_max={curve_max:.6f} | "
            f"achieved={achieved:.6f} | target={target} | iterations={iterations} | "
            f"correlation_id={self.correlation_id}"
        )
        return CalibrationResult(
            curve_max=curve_max,
            achieved_sum=achieved,
            iterations=iterations,
            clamped=False,
            residual=achieved - target,
        )

    def _clamped(self, bound: Decimal, achieved: Decimal, target: Decimal, reason: str) -> CalibrationResult:
        finding = CalibrationUnreachable(
            f"Bonus target {target} {reason}; curve_max clamped to {bound}"
        )
        logger.warning(
            f"[{DistributionErrorCode.CALIBRATION_UNREACHABLE}] {finding.message} | "
            f"achieved={achieved} | residual={achieved - target} | "
            f"correlation_id={self.correlation_id}"
        )
        return CalibrationResult(
            curve_max=bound,
            achieved_sum=achieved,
            iterations=0,
            clamped=True,
            residual=achieved - target,
        )

    # =========================================================================
    # Allocation
    # =========================================================================

    def allocate(
        self,
        market: MarketParameters,
        stakes: Iterable[ParticipantStake],
        targets: Optional[PoolTargets] = None
    ) -> PayoutTable:
        """
        Build the reconciled payout table for one cycle.

        Args:
            market: Validated market parameters
            stakes: Participant stakes (duplicates are merged)
            targets: Explicit pool targets; computed from market when None

        Returns:
            Frozen PayoutTable whose pool sums equal the targets exactly
        """
        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            return self._build_table(market, stakes, targets)

    def _build_table(
        self,
        market: MarketParameters,
        stakes: Iterable[ParticipantStake],
        targets: Optional[PoolTargets]
    ) -> PayoutTable:
        market.validate()
        if targets is None:
            targets = self.compute_pool_targets(market)
        else:
            targets = PoolTargets(
                bonus_pool_target=self._quantize(targets.bonus_pool_target),
                proportional_pool_target=self._quantize(targets.proportional_pool_target),
                total_daily_buyback=targets.total_daily_buyback,
            )

        participants = merge_stakes(stakes)
        rows = [
            AllocationRow(
                address=p.address,
                reward_token_staked=p.reward_token_staked,
                base_asset_staked=p.base_asset_staked,
            )
            for p in participants
            if p.is_proportional_eligible
        ]
        bonus_rows = [r for r in rows if r.is_bonus_eligible]
        undistributed: List[str] = []

        min_ratio, max_ratio = self.assign_ratios(bonus_rows, market)
        calibration = None
        bonus_distributed = ZERO

        if not bonus_rows:
            undistributed.append(PoolKind.BONUS.value)
            logger.warning(
                f"[ALLOC-002] No bonus-eligible participants; bonus pool "
                f"{targets.bonus_pool_target} not distributed | "
                f"correlation_id={self.correlation_id}"
            )
        else:
            calibration = self.calibrate(bonus_rows, market, targets.bonus_pool_target)
            for row in bonus_rows:
                row.bonus_rate_pct = self.bonus_rate(row.normalized_ratio, calibration.curve_max)
            raw_amounts = self.bonus_amounts(bonus_rows, market, calibration.curve_max)

            if sum(raw_amounts, ZERO) <= 0:
                undistributed.append(PoolKind.BONUS.value)
                logger.warning(
                    f"[ALLOC-002] Bonus curve yields zero at curve_max="
                    f"{calibration.curve_max}; bonus pool not distributed | "
                    f"correlation_id={self.correlation_id}"
                )
            else:
                amounts = distribute_exact(raw_amounts, targets.bonus_pool_target, self.precision)
                for row, amount in zip(bonus_rows, amounts):
                    row.bonus_amount = amount
                bonus_distributed = sum(amounts, ZERO)

        proportional_distributed = ZERO
        if not rows:
            undistributed.append(PoolKind.PROPORTIONAL.value)
            logger.warning(
                f"[ALLOC-002] No proportional-eligible participants; proportional pool "
                f"{targets.proportional_pool_target} not distributed | "
                f"correlation_id={self.correlation_id}"
            )
        else:
            amounts = distribute_exact(
                [r.reward_token_staked for r in rows],
                targets.proportional_pool_target,
                self.precision,
            )
            for row, amount in zip(rows, amounts):
                row.proportional_amount = amount
            proportional_distributed = sum(amounts, ZERO)

        rows.sort(key=lambda r: (-r.bonus_amount, -r.proportional_amount, r.address))

        table = PayoutTable(
            rows=tuple(rows),
            targets=targets,
            calibration=calibration,
            bonus_distributed=bonus_distributed,
            proportional_distributed=proportional_distributed,
            min_ratio=min_ratio,
            max_ratio=max_ratio,
            undistributed_pools=tuple(undistributed),
            market=market,
            correlation_id=self.correlation_id,
        )

        logger.info(
            f"[ALLOC] Payout table built | participants={len(rows)} | "
            f"bonus_recipients={len(table.bonus_rows())} | "
            f"bonus_distributed={bonus_distributed} | "
            f"proportional_recipients={len(table.proportional_rows())} | "
            f"proportional_distributed={proportional_distributed} | "
            f"undistributed={','.join(undistributed) or 'none'} | "
            f"correlation_id={self.correlation_id}"
        )
        return table

    def _quantize(self, value: Decimal) -> Decimal:
        return value.quantize(self.precision, rounding=ROUND_DOWN)
