"""
============================================================================
Stake Reward Distributor v1.0.0
Allocation Models - Market Parameters, Stakes, Payout Table
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Every monetary field is decimal.Decimal
Traceability: PayoutTable carries the run's correlation_id

LIFECYCLE:
    MarketParameters and ParticipantStake are produced once per cycle by the
    snapshot providers and never mutated. PayoutTable is built by the
    AllocationEngine and frozen before it reaches the SettlementBatcher.
============================================================================
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from app.errors import DataUnavailable


class PoolKind(Enum):
    """Reward pool a payout line belongs to."""
    BONUS = "bonus"
    PROPORTIONAL = "proportional"


def _fmt(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass(frozen=True)
class MarketParameters:
    """
    Market and protocol inputs of one distribution cycle.

    Reliability Level: L6 Critical
    Input Constraints: prices > 0, yield in (0, 100], locked > 0, fee in [0, 1)
    """
    reward_token_price: Decimal
    base_asset_price: Decimal
    base_yield_rate_pct: Decimal
    locked_principal: Decimal
    platform_fee_fraction: Decimal
    sources: Dict[str, str] = field(default_factory=dict, compare=False)

    def validate(self) -> "MarketParameters":
        """
        Raise DataUnavailable for any value that would corrupt the cycle.

        Zero is never a usable price, rate or locked amount.
        """
        required = (
            ("reward_token_price", self.reward_token_price),
            ("base_asset_price", self.base_asset_price),
            ("base_yield_rate_pct", self.base_yield_rate_pct),
            ("locked_principal", self.locked_principal),
        )
        for name, value in required:
            if value is None or not isinstance(value, Decimal) or not value.is_finite() or value <= 0:
                raise DataUnavailable(f"{name} is missing or non-positive: {value}", field_name=name)

        if self.base_yield_rate_pct > Decimal("100"):
            raise DataUnavailable(
                f"base_yield_rate_pct out of range: {self.base_yield_rate_pct}",
                field_name="base_yield_rate_pct",
            )

        fee = self.platform_fee_fraction
        if fee is None or not isinstance(fee, Decimal) or not (Decimal("0") <= fee < Decimal("1")):
            raise DataUnavailable(
                f"platform_fee_fraction must lie in [0, 1): {fee}",
                field_name="platform_fee_fraction",
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reward_token_price": str(self.reward_token_price),
            "base_asset_price": str(self.base_asset_price),
            "base_yield_rate_pct": str(self.base_yield_rate_pct),
            "locked_principal": str(self.locked_principal),
            "platform_fee_fraction": str(self.platform_fee_fraction),
            "sources": dict(self.sources),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketParameters":
        return cls(
            reward_token_price=Decimal(data["reward_token_price"]),
            base_asset_price=Decimal(data["base_asset_price"]),
            base_yield_rate_pct=Decimal(data["base_yield_rate_pct"]),
            locked_principal=Decimal(data["locked_principal"]),
            platform_fee_fraction=Decimal(data["platform_fee_fraction"]),
            sources=dict(data.get("sources") or {}),
        )


@dataclass(frozen=True)
class ParticipantStake:
    """One staker: reward-token stake and base-asset delegation."""
    address: str
    reward_token_staked: Decimal
    base_asset_staked: Decimal

    def __post_init__(self) -> None:
        if self.reward_token_staked < 0 or self.base_asset_staked < 0:
            raise ValueError(f"Negative stake for {self.address}")

    @property
    def is_bonus_eligible(self) -> bool:
        return self.reward_token_staked > 0 and self.base_asset_staked > 0

    @property
    def is_proportional_eligible(self) -> bool:
        return self.reward_token_staked > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "reward_token_staked": str(self.reward_token_staked),
            "base_asset_staked": str(self.base_asset_staked),
        }


@dataclass
class AllocationRow:
    """
    Derived payout row for one participant.

    ratio, normalized_ratio and bonus_rate_pct are None unless the participant
    is bonus-eligible.
    """
    address: str
    reward_token_staked: Decimal
    base_asset_staked: Decimal
    ratio: Optional[Decimal] = None
    normalized_ratio: Optional[Decimal] = None
    bonus_rate_pct: Optional[Decimal] = None
    bonus_amount: Decimal = Decimal("0")
    proportional_amount: Decimal = Decimal("0")

    @property
    def is_bonus_eligible(self) -> bool:
        return self.reward_token_staked > 0 and self.base_asset_staked > 0

    def amount_for(self, pool: PoolKind) -> Decimal:
        return self.bonus_amount if pool == PoolKind.BONUS else self.proportional_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "reward_token_staked": str(self.reward_token_staked),
            "base_asset_staked": str(self.base_asset_staked),
            "ratio": _fmt(self.ratio),
            "normalized_ratio": _fmt(self.normalized_ratio),
            "bonus_rate_pct": _fmt(self.bonus_rate_pct),
            "bonus_amount": str(self.bonus_amount),
            "proportional_amount": str(self.proportional_amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllocationRow":
        return cls(
            address=data["address"],
            reward_token_staked=Decimal(data["reward_token_staked"]),
            base_asset_staked=Decimal(data["base_asset_staked"]),
            ratio=_dec(data.get("ratio")),
            normalized_ratio=_dec(data.get("normalized_ratio")),
            bonus_rate_pct=_dec(data.get("bonus_rate_pct")),
            bonus_amount=Decimal(data["bonus_amount"]),
            proportional_amount=Decimal(data["proportional_amount"]),
        )


@dataclass(frozen=True)
class PoolTargets:
    """Daily pool sizes in reward-token units."""
    bonus_pool_target: Decimal
    proportional_pool_target: Decimal
    total_daily_buyback: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bonus_pool_target": str(self.bonus_pool_target),
            "proportional_pool_target": str(self.proportional_pool_target),
            "total_daily_buyback": str(self.total_daily_buyback),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolTargets":
        return cls(
            bonus_pool_target=Decimal(data["bonus_pool_target"]),
            proportional_pool_target=Decimal(data["proportional_pool_target"]),
            total_daily_buyback=Decimal(data.get("total_daily_buyback") or "0"),
        )


@dataclass(frozen=True)
class CalibrationResult:
    """Outcome of the curve_max bisection."""
    curve_max: Decimal
    achieved_sum: Decimal
    iterations: int
    clamped: bool = False
    residual: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "curve_max": str(self.curve_max),
            "achieved_sum": str(self.achieved_sum),
            "iterations": self.iterations,
            "clamped": self.clamped,
            "residual": str(self.residual),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationResult":
        return cls(
            curve_max=Decimal(data["curve_max"]),
            achieved_sum=Decimal(data["achieved_sum"]),
            iterations=int(data["iterations"]),
            clamped=bool(data.get("clamped", False)),
            residual=Decimal(data.get("residual") or "0"),
        )


@dataclass(frozen=True)
class PayoutTable:
    """
    Frozen allocation result handed to the SettlementBatcher.

    Invariant: bonus_distributed == targets.bonus_pool_target and
    proportional_distributed == targets.proportional_pool_target, unless the
    pool is listed in undistributed_pools.
    """
    rows: Tuple[AllocationRow, ...]
    targets: PoolTargets
    calibration: Optional[CalibrationResult]
    bonus_distributed: Decimal
    proportional_distributed: Decimal
    min_ratio: Optional[Decimal] = None
    max_ratio: Optional[Decimal] = None
    undistributed_pools: Tuple[str, ...] = ()
    market: Optional[MarketParameters] = None
    correlation_id: Optional[str] = None

    @property
    def curve_max(self) -> Optional[Decimal]:
        return self.calibration.curve_max if self.calibration else None

    def bonus_rows(self) -> List[AllocationRow]:
        return [r for r in self.rows if r.bonus_amount > 0]

    def proportional_rows(self) -> List[AllocationRow]:
        return [r for r in self.rows if r.proportional_amount > 0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "market": self.market.to_dict() if self.market else None,
            "targets": self.targets.to_dict(),
            "calibration": self.calibration.to_dict() if self.calibration else None,
            "bonus_distributed": str(self.bonus_distributed),
            "proportional_distributed": str(self.proportional_distributed),
            "min_ratio": _fmt(self.min_ratio),
            "max_ratio": _fmt(self.max_ratio),
            "undistributed_pools": list(self.undistributed_pools),
            "bonus_recipients": len(self.bonus_rows()),
            "proportional_recipients": len(self.proportional_rows()),
            "rows": [r.to_dict() for r in self.rows],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayoutTable":
        """Rebuild a table exported with to_dict(); amounts round-trip exactly."""
        market = data.get("market")
        calibration = data.get("calibration")
        return cls(
            rows=tuple(AllocationRow.from_dict(r) for r in data["rows"]),
            targets=PoolTargets.from_dict(data["targets"]),
            calibration=CalibrationResult.from_dict(calibration) if calibration else None,
            bonus_distributed=Decimal(data["bonus_distributed"]),
            proportional_distributed=Decimal(data["proportional_distributed"]),
            min_ratio=_dec(data.get("min_ratio")),
            max_ratio=_dec(data.get("max_ratio")),
            undistributed_pools=tuple(data.get("undistributed_pools") or ()),
            market=MarketParameters.from_dict(market) if market else None,
            correlation_id=data.get("correlation_id"),
        )
