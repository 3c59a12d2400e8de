"""
Address codec for 32-byte ledger identities.

Identities are displayed as bech32 strings with the ``erd`` prefix; the
stake snapshot contract returns them as raw 32-byte public keys.
"""

from typing import Union
import base64

import bech32

DEFAULT_HRP = "erd"
PUBKEY_LENGTH = 32


class AddressError(ValueError):
    """Raised when a value is not a valid 32-byte bech32 identity."""


def encode_address(pubkey: bytes, hrp: str = DEFAULT_HRP) -> str:
    """Encode a raw 32-byte public key as a bech32 address."""
    if len(pubkey) != PUBKEY_LENGTH:
        raise AddressError(f"Public key must be {PUBKEY_LENGTH} bytes, got {len(pubkey)}")
    data = bech32.convertbits(pubkey, 8, 5)
    return bech32.bech32_encode(hrp, data)


def decode_address(address: str, hrp: str = DEFAULT_HRP) -> bytes:
    """Decode a bech32 address to its raw 32-byte public key."""
    found_hrp, data = bech32.bech32_decode(address)
    if found_hrp != hrp or data is None:
        raise AddressError(f"Invalid {hrp} address: {address!r}")
    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != PUBKEY_LENGTH:
        raise AddressError(f"Invalid {hrp} address payload: {address!r}")
    return bytes(decoded)


def address_from_base64(value: str, hrp: str = DEFAULT_HRP) -> str:
    """Convert a base64 encoded public key (as returned by VM queries)."""
    return encode_address(base64.b64decode(value), hrp)


def is_valid_address(address: Union[str, None], hrp: str = DEFAULT_HRP) -> bool:
    if not address:
        return False
    try:
        decode_address(address, hrp)
    except AddressError:
        return False
    return True
