"""
============================================================================
Stake Reward Distributor - Configuration
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Every policy constant is parsed into decimal.Decimal
Traceability: Configuration is logged (without secrets) on load

This module provides configuration management for the distribution job:
- Environment variable parsing with type safety
- Default values for every optional setting
- Validation of protocol policy constants (buyback and pool fractions)
- Fail-closed behavior on invalid configuration (CFG-001)

Entry points call python-dotenv's load_dotenv() before
DistributionConfig.from_environment(), so a local .env file works the same
way as exported variables.

ENVIRONMENT VARIABLES (selection):
    - REWARD_TOKEN_ID / REWARD_TOKEN_DECIMALS
    - BUYBACK_FRACTION / BONUS_POOL_FRACTION / PROPORTIONAL_POOL_FRACTION
    - RATE_MIN_PCT / CURVE_MAX_CEILING_PCT / CALIBRATION_ITERATIONS
    - API_PRIMARY_URL / API_BACKUP_URL / GATEWAY_PRIMARY_URL / GATEWAY_BACKUP_URL
    - SETTLEMENT_BATCH_SIZE / SUBMISSION_DELAY_SECONDS / BATCH_PAUSE_SECONDS
    - SETTLEMENT_COMBINE_POOLS (operator policy, default false)
    - DISTRIBUTION_DB_URL / DISTRIBUTION_OUTPUT_DIR / SENDER_KEY_FILE
    - EXECUTION_MODE=DRY_RUN|LIVE (LIVE requires LIVE_DISTRIBUTION_CONFIRMED=TRUE)

ERROR CODES:
    - CFG-001: Configuration missing or invalid
============================================================================
"""

from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any
import logging
import os

from app.errors import ConfigurationError, DistributionErrorCode

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_REWARD_TOKEN_ID = "COLS-9d91b7"
DEFAULT_REWARD_TOKEN_DECIMALS = 18

# Protocol policy: share of fee revenue used for buyback, and its split
DEFAULT_BUYBACK_FRACTION = Decimal("0.30")
DEFAULT_BONUS_POOL_FRACTION = Decimal("0.66")
DEFAULT_PROPORTIONAL_POOL_FRACTION = Decimal("0.333")

# Bonus curve calibration
DEFAULT_RATE_MIN_PCT = Decimal("0.5")
DEFAULT_CURVE_MAX_CEILING_PCT = Decimal("50")
DEFAULT_CALIBRATION_ITERATIONS = 30
DEFAULT_CALIBRATION_TOLERANCE = Decimal("0.001")

# Collaborator endpoints
DEFAULT_API_PRIMARY_URL = "https://staking.colombia-staking.com/mvx-api"
DEFAULT_API_BACKUP_URL = "https://api.multiversx.com"
DEFAULT_GATEWAY_PRIMARY_URL = "https://staking.colombia-staking.com/gateway"
DEFAULT_GATEWAY_BACKUP_URL = "https://gateway.multiversx.com"
DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3"
DEFAULT_COINGECKO_BASE_ASSET_ID = "elrond-erd-2"

DEFAULT_DELEGATION_CONTRACT = (
    "erd1qqqqqqqqqqqqqqqpqqqqqqqqqqqqqqqqqqqqqqqqqqqqqallllls5rqmaf"
)
DEFAULT_STAKING_CONTRACT = (
    "erd1qqqqqqqqqqqqqpgqjhn0rrta3hceyguqlmkqgklxc0eh0r5rl3tsv6a9k0"
)
DEFAULT_STAKING_ENTITY_HEX = (
    "00000000000000000500f5ae3a400dae272bd254689fd5a44f88e3f2949e5787"
)

DEFAULT_FETCH_RETRIES = 3
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_DELEGATOR_PAGE_SIZE = 500

# Settlement
DEFAULT_CHAIN_ID = "1"
DEFAULT_GAS_LIMIT = 510000
DEFAULT_GAS_PRICE = 1000000000
DEFAULT_SETTLEMENT_BATCH_SIZE = 100
DEFAULT_SUBMISSION_DELAY_SECONDS = 0.1
DEFAULT_BATCH_PAUSE_SECONDS = 6.0

# Verification
DEFAULT_VERIFY_SAMPLE_HEAD = 6
DEFAULT_VERIFY_WORKERS = 4
DEFAULT_VERIFY_DELAY_SECONDS = 0.2

# Storage
DEFAULT_DB_URL = "sqlite:///./data/distribution.db"
DEFAULT_OUTPUT_DIR = "./data/distribution"
DEFAULT_SNAPSHOT_CACHE_MAX_AGE_HOURS = 24


class ExecutionMode(Enum):
    """Settlement execution mode."""
    DRY_RUN = "DRY_RUN"
    LIVE = "LIVE"


# =============================================================================
# Parsing Helpers
# =============================================================================

def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name, default)
    return value.strip() if value is not None else default


def _env_decimal(name: str, default: Decimal) -> Decimal:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return Decimal(raw.strip())
    except InvalidOperation as e:
        raise ConfigurationError(f"{name} must be a decimal number, got: {raw}") from e


def _env_optional_decimal(name: str) -> Optional[Decimal]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return _env_decimal(name, Decimal("0"))


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got: {raw}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got: {raw}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


# =============================================================================
# DistributionConfig
# =============================================================================

@dataclass
class DistributionConfig:
    """
    Configuration for one distribution job.

    ============================================================================
    CONFIGURATION GROUPS:
    ============================================================================
    - Token: reward_token_id, token_decimals
    - Policy: buyback_fraction, bonus_pool_fraction, proportional_pool_fraction
    - Curve: rate_min_pct, curve_max_ceiling_pct, calibration_*
    - Sources: api_*/gateway_* URLs, contracts, retries, timeout, static_*
    - Settlement: chain_id, gas_*, batch sizing, pacing, combine_pools
    - Verification: verify_sample_head, verify_workers
    - Storage: db_url, output_dir, snapshot cache age
    ============================================================================

    Reliability Level: L6 Critical
    Input Constraints: Fractions in [0, 1]; pool fractions sum <= 1
    Side Effects: Logs configuration on validate()
    """

    reward_token_id: str = DEFAULT_REWARD_TOKEN_ID
    token_decimals: int = DEFAULT_REWARD_TOKEN_DECIMALS

    buyback_fraction: Decimal = DEFAULT_BUYBACK_FRACTION
    bonus_pool_fraction: Decimal = DEFAULT_BONUS_POOL_FRACTION
    proportional_pool_fraction: Decimal = DEFAULT_PROPORTIONAL_POOL_FRACTION

    rate_min_pct: Decimal = DEFAULT_RATE_MIN_PCT
    curve_max_ceiling_pct: Decimal = DEFAULT_CURVE_MAX_CEILING_PCT
    calibration_iterations: int = DEFAULT_CALIBRATION_ITERATIONS
    calibration_tolerance: Decimal = DEFAULT_CALIBRATION_TOLERANCE

    api_primary_url: str = DEFAULT_API_PRIMARY_URL
    api_backup_url: str = DEFAULT_API_BACKUP_URL
    gateway_primary_url: str = DEFAULT_GATEWAY_PRIMARY_URL
    gateway_backup_url: str = DEFAULT_GATEWAY_BACKUP_URL
    coingecko_url: str = DEFAULT_COINGECKO_URL
    coingecko_base_asset_id: str = DEFAULT_COINGECKO_BASE_ASSET_ID
    delegation_contract: str = DEFAULT_DELEGATION_CONTRACT
    staking_contract: str = DEFAULT_STAKING_CONTRACT
    staking_entity_hex: str = DEFAULT_STAKING_ENTITY_HEX
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    delegator_page_size: int = DEFAULT_DELEGATOR_PAGE_SIZE

    # Operator-configured last-resort values; None means "no fallback"
    static_reward_token_price: Optional[Decimal] = None
    static_base_asset_price: Optional[Decimal] = None
    static_base_yield_rate_pct: Optional[Decimal] = None
    static_locked_principal: Optional[Decimal] = None
    static_platform_fee_fraction: Optional[Decimal] = None

    chain_id: str = DEFAULT_CHAIN_ID
    gas_limit: int = DEFAULT_GAS_LIMIT
    gas_price: int = DEFAULT_GAS_PRICE
    settlement_batch_size: int = DEFAULT_SETTLEMENT_BATCH_SIZE
    submission_delay_seconds: float = DEFAULT_SUBMISSION_DELAY_SECONDS
    batch_pause_seconds: float = DEFAULT_BATCH_PAUSE_SECONDS
    combine_pools: bool = False
    sender_key_file: Optional[str] = None

    verify_sample_head: int = DEFAULT_VERIFY_SAMPLE_HEAD
    verify_workers: int = DEFAULT_VERIFY_WORKERS
    verify_delay_seconds: float = DEFAULT_VERIFY_DELAY_SECONDS

    db_url: str = DEFAULT_DB_URL
    output_dir: str = DEFAULT_OUTPUT_DIR
    snapshot_cache_max_age_hours: int = DEFAULT_SNAPSHOT_CACHE_MAX_AGE_HOURS

    execution_mode: ExecutionMode = ExecutionMode.DRY_RUN

    @property
    def is_live(self) -> bool:
        return self.execution_mode == ExecutionMode.LIVE

    @property
    def snapshot_cache_path(self) -> str:
        return os.path.join(self.output_dir, "market_snapshot_cache.json")

    def static_fallbacks(self) -> Dict[str, Decimal]:
        """Operator-configured fallback values, keyed by MarketParameters field."""
        candidates = {
            "reward_token_price": self.static_reward_token_price,
            "base_asset_price": self.static_base_asset_price,
            "base_yield_rate_pct": self.static_base_yield_rate_pct,
            "locked_principal": self.static_locked_principal,
            "platform_fee_fraction": self.static_platform_fee_fraction,
        }
        return {k: v for k, v in candidates.items() if v is not None}

    def validate(self) -> None:
        """
        Validate configuration completeness and policy constants.

        Raises:
            ConfigurationError: If any value is out of range (CFG-001)
        """
        errors: List[str] = []

        for name in ("buyback_fraction", "bonus_pool_fraction", "proportional_pool_fraction"):
            value = getattr(self, name)
            if value < Decimal("0") or value > Decimal("1"):
                errors.append(f"{name} must lie in [0, 1], got: {value}")

        if self.bonus_pool_fraction + self.proportional_pool_fraction > Decimal("1"):
            errors.append(
                "bonus_pool_fraction + proportional_pool_fraction must not exceed 1, got: "
                f"{self.bonus_pool_fraction + self.proportional_pool_fraction}"
            )

        if self.rate_min_pct < Decimal("0"):
            errors.append(f"rate_min_pct must be non-negative, got: {self.rate_min_pct}")

        if self.curve_max_ceiling_pct <= self.rate_min_pct:
            errors.append(
                f"curve_max_ceiling_pct ({self.curve_max_ceiling_pct}) must exceed "
                f"rate_min_pct ({self.rate_min_pct})"
            )

        if self.calibration_iterations <= 0:
            errors.append(
                f"calibration_iterations must be positive, got: {self.calibration_iterations}"
            )

        if self.calibration_tolerance <= Decimal("0"):
            errors.append(
                f"calibration_tolerance must be positive, got: {self.calibration_tolerance}"
            )

        if not (0 < self.token_decimals <= 36):
            errors.append(f"token_decimals must lie in (0, 36], got: {self.token_decimals}")

        if self.fetch_retries <= 0:
            errors.append(f"fetch_retries must be positive, got: {self.fetch_retries}")

        if self.fetch_timeout_seconds <= 0:
            errors.append(
                f"fetch_timeout_seconds must be positive, got: {self.fetch_timeout_seconds}"
            )

        if self.settlement_batch_size <= 0:
            errors.append(
                f"settlement_batch_size must be positive, got: {self.settlement_batch_size}"
            )

        if self.submission_delay_seconds < 0 or self.batch_pause_seconds < 0:
            errors.append("submission delays must be non-negative")

        if self.verify_workers <= 0:
            errors.append(f"verify_workers must be positive, got: {self.verify_workers}")

        fee = self.static_platform_fee_fraction
        if fee is not None and not (Decimal("0") <= fee < Decimal("1")):
            errors.append(f"static_platform_fee_fraction must lie in [0, 1), got: {fee}")

        if errors:
            error_msg = "Distribution configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{DistributionErrorCode.CONFIG_INVALID}] {error_msg}")
            raise ConfigurationError(error_msg)

        logger.info(
            f"[DIST-CONFIG] Configuration validated | "
            f"token={self.reward_token_id} | "
            f"buyback={self.buyback_fraction} | "
            f"bonus_split={self.bonus_pool_fraction} | "
            f"proportional_split={self.proportional_pool_fraction} | "
            f"combine_pools={self.combine_pools} | "
            f"mode={self.execution_mode.value}"
        )

    @staticmethod
    def _execution_mode_from_environment() -> ExecutionMode:
        mode = _env_str("EXECUTION_MODE", "DRY_RUN").upper()
        if mode != ExecutionMode.LIVE.value:
            return ExecutionMode.DRY_RUN

        confirmed = _env_str("LIVE_DISTRIBUTION_CONFIRMED", "").upper()
        if confirmed != "TRUE":
            logger.error(
                f"[{DistributionErrorCode.CONFIG_INVALID}] LIVE mode not confirmed | "
                f"LIVE_DISTRIBUTION_CONFIRMED={confirmed}"
            )
            raise ConfigurationError(
                "LIVE distribution requires LIVE_DISTRIBUTION_CONFIRMED=TRUE"
            )
        logger.warning("[DIST-CONFIG] LIVE DISTRIBUTION MODE ENABLED")
        return ExecutionMode.LIVE

    @classmethod
    def from_environment(cls, validate: bool = True) -> "DistributionConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading

        Returns:
            DistributionConfig populated from the environment

        Raises:
            ConfigurationError: On unparsable or out-of-range values (CFG-001)
        """
        config = cls(
            reward_token_id=_env_str("REWARD_TOKEN_ID", DEFAULT_REWARD_TOKEN_ID),
            token_decimals=_env_int("REWARD_TOKEN_DECIMALS", DEFAULT_REWARD_TOKEN_DECIMALS),
            buyback_fraction=_env_decimal("BUYBACK_FRACTION", DEFAULT_BUYBACK_FRACTION),
            bonus_pool_fraction=_env_decimal("BONUS_POOL_FRACTION", DEFAULT_BONUS_POOL_FRACTION),
            proportional_pool_fraction=_env_decimal(
                "PROPORTIONAL_POOL_FRACTION", DEFAULT_PROPORTIONAL_POOL_FRACTION
            ),
            rate_min_pct=_env_decimal("RATE_MIN_PCT", DEFAULT_RATE_MIN_PCT),
            curve_max_ceiling_pct=_env_decimal(
                "CURVE_MAX_CEILING_PCT", DEFAULT_CURVE_MAX_CEILING_PCT
            ),
            calibration_iterations=_env_int(
                "CALIBRATION_ITERATIONS", DEFAULT_CALIBRATION_ITERATIONS
            ),
            calibration_tolerance=_env_decimal(
                "CALIBRATION_TOLERANCE", DEFAULT_CALIBRATION_TOLERANCE
            ),
            api_primary_url=_env_str("API_PRIMARY_URL", DEFAULT_API_PRIMARY_URL),
            api_backup_url=_env_str("API_BACKUP_URL", DEFAULT_API_BACKUP_URL),
            gateway_primary_url=_env_str("GATEWAY_PRIMARY_URL", DEFAULT_GATEWAY_PRIMARY_URL),
            gateway_backup_url=_env_str("GATEWAY_BACKUP_URL", DEFAULT_GATEWAY_BACKUP_URL),
            coingecko_url=_env_str("COINGECKO_URL", DEFAULT_COINGECKO_URL),
            coingecko_base_asset_id=_env_str(
                "COINGECKO_BASE_ASSET_ID", DEFAULT_COINGECKO_BASE_ASSET_ID
            ),
            delegation_contract=_env_str("DELEGATION_CONTRACT", DEFAULT_DELEGATION_CONTRACT),
            staking_contract=_env_str("STAKING_CONTRACT", DEFAULT_STAKING_CONTRACT),
            staking_entity_hex=_env_str("STAKING_ENTITY_HEX", DEFAULT_STAKING_ENTITY_HEX),
            fetch_retries=_env_int("FETCH_RETRIES", DEFAULT_FETCH_RETRIES),
            fetch_timeout_seconds=_env_float(
                "FETCH_TIMEOUT_SECONDS", DEFAULT_FETCH_TIMEOUT_SECONDS
            ),
            delegator_page_size=_env_int("DELEGATOR_PAGE_SIZE", DEFAULT_DELEGATOR_PAGE_SIZE),
            static_reward_token_price=_env_optional_decimal("STATIC_REWARD_TOKEN_PRICE"),
            static_base_asset_price=_env_optional_decimal("STATIC_BASE_ASSET_PRICE"),
            static_base_yield_rate_pct=_env_optional_decimal("STATIC_BASE_YIELD_RATE_PCT"),
            static_locked_principal=_env_optional_decimal("STATIC_LOCKED_PRINCIPAL"),
            static_platform_fee_fraction=_env_optional_decimal("STATIC_PLATFORM_FEE_FRACTION"),
            chain_id=_env_str("CHAIN_ID", DEFAULT_CHAIN_ID),
            gas_limit=_env_int("GAS_LIMIT", DEFAULT_GAS_LIMIT),
            gas_price=_env_int("GAS_PRICE", DEFAULT_GAS_PRICE),
            settlement_batch_size=_env_int("SETTLEMENT_BATCH_SIZE", DEFAULT_SETTLEMENT_BATCH_SIZE),
            submission_delay_seconds=_env_float(
                "SUBMISSION_DELAY_SECONDS", DEFAULT_SUBMISSION_DELAY_SECONDS
            ),
            batch_pause_seconds=_env_float("BATCH_PAUSE_SECONDS", DEFAULT_BATCH_PAUSE_SECONDS),
            combine_pools=_env_bool("SETTLEMENT_COMBINE_POOLS", False),
            sender_key_file=os.environ.get("SENDER_KEY_FILE") or None,
            verify_sample_head=_env_int("VERIFY_SAMPLE_HEAD", DEFAULT_VERIFY_SAMPLE_HEAD),
            verify_workers=_env_int("VERIFY_WORKERS", DEFAULT_VERIFY_WORKERS),
            verify_delay_seconds=_env_float("VERIFY_DELAY_SECONDS", DEFAULT_VERIFY_DELAY_SECONDS),
            db_url=_env_str("DISTRIBUTION_DB_URL", DEFAULT_DB_URL),
            output_dir=_env_str("DISTRIBUTION_OUTPUT_DIR", DEFAULT_OUTPUT_DIR),
            snapshot_cache_max_age_hours=_env_int(
                "SNAPSHOT_CACHE_MAX_AGE_HOURS", DEFAULT_SNAPSHOT_CACHE_MAX_AGE_HOURS
            ),
            execution_mode=cls._execution_mode_from_environment(),
        )

        logger.info(
            f"[DIST-CONFIG] Loading configuration from environment | "
            f"api_primary={config.api_primary_url} | "
            f"gateway_primary={config.gateway_primary_url} | "
            f"db_url={config.db_url}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view; the key file path is the only secret-adjacent field."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        data["execution_mode"] = self.execution_mode.value
        data["sender_key_file"] = "***" if self.sender_key_file else None
        return data
