"""
Transaction serialization and spend authorization signatures.

Signatures commit to the canonical binary encoding of the UnsignedTx and to
the index of the input being signed. ECDSA nonces come from RFC 6979, so
signing the same transaction with the same key is reproducible.
"""

from __future__ import annotations

import hashlib
import struct

from coincurve import PrivateKey, PublicKey

from zcore.models import InputSignature, NetworkType, SignedTx, UnsignedTx

SIGHASH_PERSONALIZATION = b"ZcashTxSigHash__"

NETWORK_IDS = {
    NetworkType.MAINNET: 0,
    NetworkType.TESTNET: 1,
    NetworkType.REGTEST: 2,
}


class TransactionSigningError(Exception):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def encode_varstr(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def serialize_unsigned_tx(tx: UnsignedTx) -> bytes:
    parts = [
        struct.pack("<IB", tx.version, NETWORK_IDS[tx.network]),
        encode_varstr(tx.payment_id.encode("utf-8")),
        struct.pack("<Q", tx.account_id),
        encode_varint(len(tx.inputs)),
    ]

    for inp in tx.inputs:
        parts.append(bytes.fromhex(inp.tx_hash))
        parts.append(struct.pack("<IQ", inp.output_index, inp.amount))
        parts.append(encode_varstr(inp.address.encode("utf-8")))

    parts.append(encode_varint(len(tx.outputs)))
    for out in tx.outputs:
        parts.append(encode_varstr(out.address.encode("utf-8")))
        parts.append(struct.pack("<Q", out.amount))
        if out.memo is None:
            parts.append(b"\x00")
        else:
            parts.append(b"\x01" + encode_varstr(out.memo.encode("utf-8")))

    parts.append(struct.pack("<QI", tx.fee, tx.expiry_height))
    return b"".join(parts)


def serialize_signed_tx(signed: SignedTx) -> bytes:
    parts = [serialize_unsigned_tx(signed.tx), encode_varint(len(signed.signatures))]
    for sig in signed.signatures:
        parts.append(encode_varstr(bytes.fromhex(sig.signature)))
        parts.append(bytes.fromhex(sig.public_key))
    return b"".join(parts)


def signed_tx_hash(signed: SignedTx) -> str:
    """Transaction id, displayed byte-reversed like zcashd."""
    return hash256(serialize_signed_tx(signed))[::-1].hex()


def compute_sighash(tx: UnsignedTx, input_index: int) -> bytes:
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")

    return hashlib.blake2b(
        serialize_unsigned_tx(tx) + input_index.to_bytes(4, "little"),
        digest_size=32,
        person=SIGHASH_PERSONALIZATION,
    ).digest()


def sign_input(tx: UnsignedTx, input_index: int, private_key: PrivateKey) -> InputSignature:
    """Sign one input with a coincurve PrivateKey (DER, deterministic nonce)."""
    sighash = compute_sighash(tx, input_index)
    # sighash is already a digest, skip coincurve's own hashing
    signature = private_key.sign(sighash, hasher=None)
    return InputSignature(
        index=input_index,
        signature=signature.hex(),
        public_key=private_key.public_key.format(compressed=True).hex(),
    )


def verify_input(tx: UnsignedTx, sig: InputSignature) -> bool:
    try:
        sighash = compute_sighash(tx, sig.index)
        public_key = PublicKey(bytes.fromhex(sig.public_key))
        return public_key.verify(bytes.fromhex(sig.signature), sighash, hasher=None)
    except (TransactionSigningError, ValueError, TypeError):
        return False


def verify_signed_tx(signed: SignedTx, pubkey: bytes | None = None) -> bool:
    """
    Check a SignedTx carries exactly one valid signature per input, in order.

    Args:
        signed: The signed transaction
        pubkey: If given, every signature must be made by this public key

    Returns:
        True if all signatures verify
    """
    if len(signed.signatures) != len(signed.tx.inputs):
        return False

    for position, sig in enumerate(signed.signatures):
        if sig.index != position:
            return False
        if pubkey is not None and bytes.fromhex(sig.public_key) != pubkey:
            return False
        if not verify_input(signed.tx, sig):
            return False
    return True
