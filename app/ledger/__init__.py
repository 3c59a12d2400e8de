# ============================================================================
# Stake Reward Distributor v1.0.0
# Ledger Module - Settlement Ledger Connectivity
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Encoding, signing and submission of reward token transfers
#
# Components:
#   - DecimalGateway: Whole-unit <-> smallest-unit conversion, hex encoding
#   - ExponentialBackoff / SubmissionPacer: Shared retry and pacing helpers
#   - TransferInstruction: Canonical transfer payload
#   - TransactionSigner: Ed25519 signing of transfer payloads
#   - LedgerInterface: Abstract submit/inspect ledger
#   - GatewayLedger: MultiversX gateway implementation
#   - SimulatedLedger: In-memory implementation for DRY_RUN
#
# SOVEREIGN MANDATE:
#   - EXECUTION_MODE=DRY_RUN by default (SimulatedLedger)
#   - Every hex amount is even-length
#
# ============================================================================

from app.ledger.decimal_gateway import (
    DecimalGateway,
    amount_to_hex,
    assert_even_hex,
    decode_units_hex,
    encode_units_hex,
    to_smallest_unit,
)
from app.ledger.rate_limiter import ExponentialBackoff, SubmissionPacer
from app.ledger.transactions import TransferInstruction, build_transfer_data
from app.ledger.signer import TransactionSigner, SignerError
from app.ledger.ledger_interface import (
    InspectionStatus,
    LedgerEvent,
    LedgerInspection,
    LedgerInterface,
)
from app.ledger.gateway_client import GatewayLedger, GatewayError
from app.ledger.simulated_ledger import SimulatedLedger, FailureInjection

__all__ = [
    "DecimalGateway",
    "amount_to_hex",
    "assert_even_hex",
    "decode_units_hex",
    "encode_units_hex",
    "to_smallest_unit",
    "ExponentialBackoff",
    "SubmissionPacer",
    "TransferInstruction",
    "build_transfer_data",
    "TransactionSigner",
    "SignerError",
    "InspectionStatus",
    "LedgerEvent",
    "LedgerInspection",
    "LedgerInterface",
    "GatewayLedger",
    "GatewayError",
    "SimulatedLedger",
    "FailureInjection",
]
