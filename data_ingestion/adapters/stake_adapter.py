"""
============================================================================
Stake Adapter - Reward-Token Stakers and Base-Asset Delegators
============================================================================

Reliability Level: L6 Critical
Decimal Integrity: Amounts scaled from smallest units with Decimal.scaleb
Traceability: All operations include correlation_id

SOURCES:
    Reward-token stakers: POST {gateway}/vm-values/query with
        {"scAddress": staking_contract, "funcName": "getEntityUsers",
         "args": [entity_hex]}
        data.data.returnData alternates base64 public key / base64
        big-endian amount in smallest units.
    Base-asset delegators: GET {api}/providers/{delegation}/accounts
        ?size=N&from=offset, paginated until a short page. Stake is read
        from stake, activeStake or delegationActiveStake; raw values above
        1e12 are smallest units.

MERGE:
    Every reward-token staker appears once in the result; base stake is
    zero for stakers that are not delegators.
============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple
import asyncio
import base64
import logging

from app.allocation.engine import merge_stakes
from app.allocation.models import ParticipantStake
from app.errors import DataUnavailable
from app.ledger.address import address_from_base64
from app.observability.metrics import record_snapshot_source
from data_ingestion.adapters.base_adapter import AdapterErrorCode, AdapterStatus, BaseAdapter
from data_ingestion.schemas import SourceMode, StakeSnapshot, normalize_stake_amount

# Configure module logger
logger = logging.getLogger(__name__)


ENTITY_USERS_FUNCTION = "getEntityUsers"
DELEGATOR_STAKE_FIELDS = ("stake", "activeStake", "delegationActiveStake")


# =============================================================================
# Payload Parsing
# =============================================================================

def parse_entity_users(payload: Dict[str, Any], decimals: int = 18) -> List[Tuple[str, Decimal]]:
    """
    Decode getEntityUsers return data into (address, amount) pairs.

    Raises:
        ValueError: Odd number of items or malformed entries
    """
    return_data = payload["data"]["data"]["returnData"]
    if return_data is None:
        return_data = []
    if len(return_data) % 2 != 0:
        raise ValueError(f"returnData has odd length {len(return_data)}")

    pairs: List[Tuple[str, Decimal]] = []
    for i in range(0, len(return_data), 2):
        address = address_from_base64(return_data[i])
        raw_amount = base64.b64decode(return_data[i + 1] or "")
        units = int.from_bytes(raw_amount, "big") if raw_amount else 0
        pairs.append((address, Decimal(units).scaleb(-decimals)))
    return pairs


def parse_delegator_page(payload: List[Dict[str, Any]], decimals: int = 18) -> List[Tuple[str, Decimal]]:
    """Decode one page of provider accounts into (address, stake) pairs."""
    if not isinstance(payload, list):
        raise ValueError("delegator page is not a list")

    page: List[Tuple[str, Decimal]] = []
    for account in payload:
        address = account["address"]
        raw = next(
            (account[f] for f in DELEGATOR_STAKE_FIELDS if account.get(f) not in (None, "")),
            "0",
        )
        page.append((address, normalize_stake_amount(raw, decimals)))
    return page


# =============================================================================
# Stake Adapter
# =============================================================================

class StakeAdapter(BaseAdapter):
    """
    Resolves the StakeSnapshot of one cycle.

    Reliability Level: L6 Critical
    Side Effects: Network I/O

    Example Usage:
        async with StakeAdapter(config) as adapter:
            snapshot = await adapter.fetch()
    """

    name = "stake"

    async def fetch_reward_token_stakers(self) -> Tuple[List[Tuple[str, Decimal]], SourceMode]:
        body = {
            "scAddress": self.config.staking_contract,
            "funcName": ENTITY_USERS_FUNCTION,
            "args": [self.config.staking_entity_hex],
        }
        decimals = self.config.token_decimals
        result = await self._fetch(
            "reward_token_stakers",
            f"{self.config.gateway_primary_url}/vm-values/query",
            f"{self.config.gateway_backup_url}/vm-values/query",
            method="POST",
            json_body=body,
            extract=lambda payload: parse_entity_users(payload, decimals),
        )
        return result.data, result.mode

    async def fetch_delegators(self) -> Tuple[Dict[str, Decimal], SourceMode]:
        """All delegators of the provider, summed per address."""
        path = f"/providers/{self.config.delegation_contract}/accounts"
        size = self.config.delegator_page_size
        decimals = self.config.token_decimals

        delegators: Dict[str, Decimal] = {}
        mode = SourceMode.PRIMARY
        offset = 0
        while True:
            result = await self._fetch(
                "delegators",
                f"{self.config.api_primary_url}{path}",
                f"{self.config.api_backup_url}{path}",
                params={"size": size, "from": offset},
                extract=lambda payload: parse_delegator_page(payload, decimals),
            )
            if result.mode == SourceMode.BACKUP:
                mode = SourceMode.BACKUP
            for address, stake in result.data:
                delegators[address] = delegators.get(address, Decimal("0")) + stake
            if len(result.data) < size:
                break
            offset += size

        logger.info(
            f"[STAKE] Delegators fetched | count={len(delegators)} | pages={offset // size + 1} | "
            f"source={mode.value} | correlation_id={self.correlation_id}"
        )
        return delegators, mode

    async def fetch(self) -> StakeSnapshot:
        """
        Fetch both stake sources concurrently and merge them.

        Raises:
            DataUnavailable: A source failed or no reward-token stakers exist
        """
        self._set_status(AdapterStatus.FETCHING)
        try:
            (stakers, stakers_mode), (delegators, delegators_mode) = await asyncio.gather(
                self.fetch_reward_token_stakers(),
                self.fetch_delegators(),
            )
        except DataUnavailable:
            self._set_status(AdapterStatus.ERROR)
            raise

        if not stakers:
            self._set_status(AdapterStatus.ERROR)
            self._record_error(AdapterErrorCode.EMPTY_SNAPSHOT, "Reward-token staker snapshot is empty")
            raise DataUnavailable("reward-token staker snapshot is empty", field_name="reward_token_stakers")

        stakes = merge_stakes(
            ParticipantStake(
                address=address,
                reward_token_staked=amount,
                base_asset_staked=Decimal("0"),
            )
            for address, amount in stakers
        )
        stakes = [
            ParticipantStake(
                address=s.address,
                reward_token_staked=s.reward_token_staked,
                base_asset_staked=delegators.get(s.address, Decimal("0")),
            )
            for s in stakes
        ]

        record_snapshot_source("reward_token_stakers", stakers_mode.value)
        record_snapshot_source("delegators", delegators_mode.value)

        snapshot = StakeSnapshot(
            stakes=stakes,
            reward_token_holders=len(stakes),
            delegators=len(delegators),
            sources={
                "reward_token_stakers": stakers_mode.value,
                "delegators": delegators_mode.value,
            },
            correlation_id=self.correlation_id,
        )
        logger.info(
            f"[STAKE] Snapshot merged | participants={len(stakes)} | "
            f"bonus_eligible={sum(1 for s in stakes if s.is_bonus_eligible)} | "
            f"delegators={len(delegators)} | correlation_id={self.correlation_id}"
        )
        self._set_status(AdapterStatus.READY)
        return snapshot
