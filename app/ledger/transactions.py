# ============================================================================
# Stake Reward Distributor v1.0.0
# Transfer Instructions - Encoding & Canonical Serialization
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Builds token-transfer instructions and the canonical byte form
#          that is signed and submitted to the ledger gateway
#
# SOVEREIGN MANDATE:
#   - Transfer data is ESDTTransfer@<hex token id>@<even-length hex amount>
#   - Every hex argument is asserted even-length before it leaves this module
#   - Field order of the signing payload is fixed
#
# Error Codes:
#   - SETL-001: Malformed smallest-unit hex encoding
#
# ============================================================================

from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import base64
import json
import logging

from app.ledger.decimal_gateway import (
    assert_even_hex,
    encode_text_hex,
    encode_units_hex,
)

logger = logging.getLogger(__name__)

TRANSFER_FUNCTION = "ESDTTransfer"
TRANSACTION_VERSION = 1


def build_transfer_data(asset_id: str, amount_smallest_unit: int) -> str:
    """
    Build the data field of a token transfer.

    Raises:
        EncodingInvalid: If any argument is not even-length hex (SETL-001)
    """
    token_hex = assert_even_hex(encode_text_hex(asset_id), context="asset_id")
    amount_hex = assert_even_hex(encode_units_hex(amount_smallest_unit), context="amount")
    return f"{TRANSFER_FUNCTION}@{token_hex}@{amount_hex}"


def parse_transfer_data(data: str) -> Dict[str, Any]:
    """Inverse of build_transfer_data, used by the simulated ledger and audits."""
    parts = data.split("@")
    if len(parts) < 3 or parts[0] != TRANSFER_FUNCTION:
        raise ValueError(f"Not a token transfer: {data!r}")
    return {
        "asset_id": bytes.fromhex(parts[1]).decode("utf-8"),
        "amount": int(parts[2], 16) if parts[2] else 0,
        "amount_hex": parts[2],
    }


@dataclass
class TransferInstruction:
    """
    One unsigned token transfer from the distribution sender.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: nonce >= 0, amount_smallest_unit > 0
    """
    sender: str
    receiver: str
    asset_id: str
    amount_smallest_unit: int
    nonce: int
    gas_limit: int
    gas_price: int
    chain_id: str
    version: int = TRANSACTION_VERSION
    signature: Optional[str] = None
    data: str = field(init=False)

    def __post_init__(self) -> None:
        if self.nonce < 0:
            raise ValueError(f"nonce must be non-negative, got {self.nonce}")
        if self.amount_smallest_unit <= 0:
            raise ValueError(
                f"amount_smallest_unit must be positive, got {self.amount_smallest_unit}"
            )
        self.data = build_transfer_data(self.asset_id, self.amount_smallest_unit)

    def signing_payload(self) -> Dict[str, Any]:
        """Fields in the exact order the ledger serializes them for signing."""
        payload: Dict[str, Any] = {
            "nonce": self.nonce,
            "value": "0",
            "receiver": self.receiver,
            "sender": self.sender,
            "gasPrice": self.gas_price,
            "gasLimit": self.gas_limit,
        }
        if self.data:
            payload["data"] = base64.b64encode(self.data.encode("utf-8")).decode("ascii")
        payload["chainID"] = self.chain_id
        payload["version"] = self.version
        return payload

    def serialize_for_signing(self) -> bytes:
        """Compact JSON, no whitespace, insertion order preserved."""
        return json.dumps(self.signing_payload(), separators=(",", ":")).encode("utf-8")

    def to_send_payload(self) -> Dict[str, Any]:
        if self.signature is None:
            raise ValueError("Transfer must be signed before submission")
        payload = self.signing_payload()
        payload["signature"] = self.signature
        return payload
