"""
============================================================================
Data Ingestion Schemas - Snapshot Sources and Stake Snapshot
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: All amounts and prices use decimal.Decimal
Traceability: All snapshots include correlation_id for audit

SNAPSHOTS:
    The market snapshot resolves to app.allocation.models.MarketParameters;
    the stake snapshot resolves to a list of ParticipantStake. This module
    holds the metadata that travels with them:
    - SourceMode: which tier produced a value (primary/backup/cache/static)
    - FetchResult: one successful remote read and the tier that served it
    - StakeSnapshot: merged participant stakes plus source counts

Key Constraints:
- Decimal-only math for all amounts
- All timestamps in UTC
- Immutable after creation
============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone

from app.allocation.models import ParticipantStake


# =============================================================================
# Constants
# =============================================================================

# Raw stake values above this are smallest units, not whole tokens
SMALLEST_UNIT_THRESHOLD = Decimal("1e12")

# Locked principal above this is given in smallest units
LOCKED_SMALLEST_UNIT_THRESHOLD = Decimal("1e18")


# =============================================================================
# Enums
# =============================================================================

class SourceMode(Enum):
    """
    Tier that produced a snapshot value.

    Reliability Level: L6 Critical
    """
    PRIMARY = "primary"
    BACKUP = "backup"
    CACHE = "cache"
    STATIC = "static"


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class FetchResult:
    """
    One successful remote read.

    data is the extracted value (or the JSON payload when no extractor was
    given); mode says whether the primary or the backup source served it.
    """
    data: Any
    mode: SourceMode
    url: str
    attempts: int = 1
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ResolvedValue:
    """A market field after the primary/backup/cache/static resolution."""
    field_name: str
    value: Decimal
    source: SourceMode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field_name,
            "value": str(self.value),
            "source": self.source.value,
        }


@dataclass(frozen=True)
class StakeSnapshot:
    """
    Merged stake snapshot of one cycle.

    stakes holds every reward-token staker; base_asset_staked is zero for
    stakers that are not delegators.
    """
    stakes: List[ParticipantStake]
    reward_token_holders: int
    delegators: int
    sources: Dict[str, str] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_reward_token_staked(self) -> Decimal:
        return sum((s.reward_token_staked for s in self.stakes), Decimal("0"))

    @property
    def total_base_asset_staked(self) -> Decimal:
        return sum((s.base_asset_staked for s in self.stakes), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participants": len(self.stakes),
            "reward_token_holders": self.reward_token_holders,
            "delegators": self.delegators,
            "total_reward_token_staked": str(self.total_reward_token_staked),
            "total_base_asset_staked": str(self.total_base_asset_staked),
            "sources": dict(self.sources),
            "correlation_id": self.correlation_id,
            "fetched_at": self.fetched_at.isoformat(),
        }


# =============================================================================
# Helpers
# =============================================================================

def to_decimal(value: Any, name: str = "value") -> Decimal:
    """
    Convert a JSON scalar to Decimal via str, never via float arithmetic.

    Raises:
        ValueError: If the value is missing or not a finite number
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"{name} is missing")
    try:
        result = Decimal(str(value).strip())
    except ArithmeticError:
        raise ValueError(f"{name} is not numeric: {value!r}")
    if not result.is_finite():
        raise ValueError(f"{name} is not finite: {value!r}")
    return result


def positive_decimal(value: Any, name: str = "value") -> Decimal:
    """Like to_decimal but rejects zero and negatives."""
    result = to_decimal(value, name)
    if result <= 0:
        raise ValueError(f"{name} must be positive: {value!r}")
    return result


def normalize_stake_amount(raw: Any, decimals: int = 18) -> Decimal:
    """Raw stake values above 1e12 are smallest units and are scaled down."""
    amount = to_decimal(raw, "stake")
    if amount > SMALLEST_UNIT_THRESHOLD:
        amount = amount.scaleb(-decimals)
    return amount


def normalize_locked_principal(raw: Any, decimals: int = 18) -> Decimal:
    """Locked principal above 1e18 is in smallest units."""
    amount = positive_decimal(raw, "locked")
    if amount > LOCKED_SMALLEST_UNIT_THRESHOLD:
        amount = amount.scaleb(-decimals)
    return amount


def parse_service_fee(raw: Any) -> Decimal:
    """
    Platform fee as a fraction in [0, 1).

    Accepts "10%", "10" (percent) or 0.1 (fraction).
    """
    if isinstance(raw, str):
        text = raw.strip()
        if text.endswith("%"):
            return to_decimal(text[:-1], "serviceFee") / Decimal("100")
        raw = text
    fee = to_decimal(raw, "serviceFee")
    if fee >= 1:
        fee = fee / Decimal("100")
    if fee < 0 or fee >= 1:
        raise ValueError(f"serviceFee out of range: {raw!r}")
    return fee


# =============================================================================
# Sovereign Reliability Audit
# =============================================================================
# Decimal Integrity: [Verified - str-based Decimal conversion]
# Traceability: [correlation_id on snapshots]
# =============================================================================
