# ============================================================================
# Stake Reward Distributor v1.0.0
# Ed25519 Transaction Signer
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Signs canonical transfer payloads with the distribution wallet key
#
# SOVEREIGN MANDATE:
#   - Key material loaded ONLY from the file named by SENDER_KEY_FILE
#   - Key material NEVER appears in logs
#   - SIGN-001 raised if the key is missing or malformed
#
# Accepted key formats:
#   - Hex text: 32-byte seed, or 64-byte seed||public key
#   - Wallet PEM: base64 body wrapping the same hex text
#
# ============================================================================

import base64
import logging
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from app.ledger.address import encode_address
from app.ledger.transactions import TransferInstruction

logger = logging.getLogger(__name__)


class SignerError(Exception):
    """Raised when the sender key is missing or malformed (SIGN-001)."""
    pass


def _seed_from_text(text: str) -> bytes:
    body = text.strip()
    if body.startswith("-----BEGIN"):
        lines = [
            line.strip() for line in body.splitlines()
            if line.strip() and not line.startswith("-----")
        ]
        body = base64.b64decode("".join(lines)).decode("ascii").strip()

    try:
        raw = bytes.fromhex(body)
    except ValueError as e:
        raise SignerError("SIGN-001: Key file is not hex or wallet PEM") from e

    if len(raw) not in (32, 64):
        raise SignerError(f"SIGN-001: Expected 32 or 64 key bytes, got {len(raw)}")
    return raw[:32]


class TransactionSigner:
    """
    Ed25519 signer for the distribution sender identity.

    Reliability Level: SOVEREIGN TIER
    Input Constraints: 32-byte Ed25519 seed
    Side Effects: None

    Example Usage:
        signer = TransactionSigner.from_key_file("/secure/sender.pem")
        instruction.signature = signer.sign(instruction)
    """

    def __init__(self, seed: bytes):
        if len(seed) != 32:
            raise SignerError(f"SIGN-001: Ed25519 seed must be 32 bytes, got {len(seed)}")
        self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        self._public_bytes = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.address = encode_address(self._public_bytes)

    @classmethod
    def from_key_file(cls, path: Optional[str]) -> "TransactionSigner":
        if not path:
            raise SignerError("SIGN-001: SENDER_KEY_FILE is not configured")
        try:
            with open(path, "r", encoding="utf-8") as handle:
                text = handle.read()
        except OSError as e:
            logger.error(f"[SIGN-001] Cannot read sender key file | error={e.strerror}")
            raise SignerError(f"SIGN-001: Cannot read sender key file: {e.strerror}") from e

        signer = cls(_seed_from_text(text))
        logger.info(f"[SIGN] Sender key loaded | address={signer.address}")
        return signer

    @classmethod
    def generate(cls) -> "TransactionSigner":
        """Fresh random identity (simulation and tests)."""
        key = ed25519.Ed25519PrivateKey.generate()
        seed = key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(seed)

    def sign_bytes(self, payload: bytes) -> str:
        return self._private_key.sign(payload).hex()

    def sign(self, instruction: TransferInstruction) -> str:
        """Sign an instruction's canonical serialization; returns hex signature."""
        if instruction.sender != self.address:
            raise SignerError(
                f"SIGN-001: Instruction sender {instruction.sender} "
                f"does not match key address {self.address}"
            )
        return self.sign_bytes(instruction.serialize_for_signing())

    def verify(self, instruction: TransferInstruction) -> bool:
        if instruction.signature is None:
            return False
        from cryptography.exceptions import InvalidSignature
        try:
            self._private_key.public_key().verify(
                bytes.fromhex(instruction.signature),
                instruction.serialize_for_signing(),
            )
        except InvalidSignature:
            return False
        return True
