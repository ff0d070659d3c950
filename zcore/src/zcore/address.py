"""
Zcash address encoding and validation.

- Transparent P2PKH: base58check(2-byte version || HASH160(pubkey))
- Sapling: bech32(hrp, diversifier || pk_d)
"""

from __future__ import annotations

import hashlib

import base58
import bech32

from zcore.constants import (
    B58_PUBKEY_ADDRESS_PREFIX,
    DIVERSIFIER_SIZE,
    HRP_SAPLING_PAYMENT_ADDRESS,
    SAPLING_ADDRESS_PAYLOAD_SIZE,
)
from zcore.models import AddressType, NetworkType


def network_name(network: str | NetworkType) -> str:
    """Normalise a network given as enum or string to its plain name."""
    return NetworkType(network).value


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def pubkey_to_transparent_address(pubkey_bytes: bytes, network: str = "mainnet") -> str:
    """Convert a compressed public key to a transparent P2PKH address."""
    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")

    payload = B58_PUBKEY_ADDRESS_PREFIX[network_name(network)] + hash160(pubkey_bytes)
    return base58.b58encode_check(payload).decode("ascii")


def decode_transparent_address(address: str, network: str = "mainnet") -> bytes:
    """Return the 20-byte pubkey hash of a transparent address."""
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid base58check address: {e}") from e

    prefix = B58_PUBKEY_ADDRESS_PREFIX[network_name(network)]
    if len(decoded) != len(prefix) + 20 or not decoded.startswith(prefix):
        raise ValueError("Address is not a transparent P2PKH address for this network")
    return decoded[len(prefix) :]


def encode_sapling_address(diversifier: bytes, pk_d: bytes, network: str = "mainnet") -> str:
    """Encode a Sapling payment address from its diversifier and pk_d."""
    payload = diversifier + pk_d
    if len(payload) != SAPLING_ADDRESS_PAYLOAD_SIZE:
        raise ValueError(f"Invalid Sapling address payload length: {len(payload)}")

    data = bech32.convertbits(payload, 8, 5)
    return bech32.bech32_encode(HRP_SAPLING_PAYMENT_ADDRESS[network_name(network)], data)


def _bech32_decode(address: str) -> tuple[str | None, list[int] | None]:
    # bech32.bech32_decode caps length at 90, regtest Sapling addresses are 91
    if address.lower() != address and address.upper() != address:
        return None, None
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address):
        return None, None
    if not all(c in bech32.CHARSET for c in address[pos + 1 :]):
        return None, None

    hrp = address[:pos]
    data = [bech32.CHARSET.find(c) for c in address[pos + 1 :]]
    if not bech32.bech32_verify_checksum(hrp, data):
        return None, None
    return hrp, data[:-6]


def decode_sapling_address(address: str, network: str = "mainnet") -> tuple[bytes, bytes]:
    """Return (diversifier, pk_d) of a Sapling address."""
    hrp, data = _bech32_decode(address)
    if hrp is None or data is None:
        raise ValueError("Invalid bech32 encoding")
    if hrp != HRP_SAPLING_PAYMENT_ADDRESS[network_name(network)]:
        raise ValueError(f"Unexpected address prefix: {hrp}")

    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != SAPLING_ADDRESS_PAYLOAD_SIZE:
        raise ValueError("Invalid Sapling address payload")

    payload = bytes(decoded)
    return payload[:DIVERSIFIER_SIZE], payload[DIVERSIFIER_SIZE:]


def get_address_type(address: str, network: str = "mainnet") -> AddressType | None:
    """Classify an address, or return None if it is not valid on this network."""
    if address.lower().startswith(HRP_SAPLING_PAYMENT_ADDRESS[network_name(network)] + "1"):
        try:
            decode_sapling_address(address, network)
        except ValueError:
            return None
        return AddressType.SAPLING

    try:
        decode_transparent_address(address, network)
    except ValueError:
        return None
    return AddressType.TRANSPARENT


def is_valid_address(address: str, network: str = "mainnet") -> bool:
    return get_address_type(address, network) is not None
