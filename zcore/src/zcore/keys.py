"""
Hierarchical key derivation for transparent and Sapling accounts.

Transparent keys follow BIP32/BIP44 on secp256k1. Sapling keys use a
ZIP32-style derivation (BLAKE2b with Zcash personalisations); the spend
authorization key lives on secp256k1 so both pools share one signature
scheme. Viewing keys are enough to derive receiving addresses and to verify
signatures, but never to sign.
"""

from __future__ import annotations

import hashlib
import hmac
import re

import base58
from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from zcore.address import (
    decode_sapling_address,
    decode_transparent_address,
    encode_sapling_address,
    hash160,
    pubkey_to_transparent_address,
)
from zcore.constants import (
    DIVERSIFIER_SIZE,
    HARDENED_OFFSET,
    SAPLING_SPENDING_KEY_PREFIX,
    SAPLING_VIEWING_KEY_PREFIX,
    TRANSPARENT_SPENDING_KEY_PREFIX,
    TRANSPARENT_VIEWING_KEY_PREFIX,
)
from zcore.errors import InvalidEntropy
from zcore.models import AddressType, Entropy, KeyPackage, NetworkType

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

VALID_WORD_COUNTS = (12, 15, 18, 21, 24)
PATH_PATTERN = re.compile(r"^m(/\d+['h]?)*$")


def parse_path(path: str) -> list[int]:
    """Parse "m/44'/133'/0'" into child indexes (hardened ones offset)."""
    if not PATH_PATTERN.match(path):
        raise ValueError(f"Invalid derivation path syntax: {path!r}")

    indexes = []
    for part in path.split("/")[1:]:
        hardened = part.endswith("'") or part.endswith("h")
        index = int(part.rstrip("'h"))
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Child index out of range: {index}")
        indexes.append(index + HARDENED_OFFSET if hardened else index)
    return indexes


class HDKey:
    """
    BIP32 extended private key for transparent addresses.
    """

    def __init__(self, private_key: PrivateKey, chain_code: bytes, depth: int = 0):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master key from a BIP39 seed"""
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        return cls(PrivateKey(digest[:32]), digest[32:], depth=0)

    def derive(self, path: str) -> HDKey:
        key = self
        for index in parse_path(path):
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        if index >= HARDENED_OFFSET:
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self._public_key.format(compressed=True) + index.to_bytes(4, "big")

        digest = hmac.new(self.chain_code, data, hashlib.sha512).digest()

        child_int = (
            int.from_bytes(self._private_key.secret, "big") + int.from_bytes(digest[:32], "big")
        ) % SECP256K1_N
        if child_int == 0:
            raise ValueError("Invalid child key")

        return HDKey(PrivateKey(child_int.to_bytes(32, "big")), digest[32:], depth=self.depth + 1)

    def get_public_key_bytes(self) -> bytes:
        return self._public_key.format(compressed=True)


def prf_expand(sk: bytes, domain: int) -> bytes:
    """PRF^expand from the Sapling key components derivation."""
    return hashlib.blake2b(
        sk + bytes([domain]), digest_size=64, person=b"Zcash_ExpandSeed"
    ).digest()


class SaplingKey:
    """
    ZIP32-style extended spending key.

    Only hardened derivation is supported, as for Sapling spending keys.
    """

    def __init__(self, sk: bytes, chain_code: bytes, depth: int = 0):
        if len(sk) != 32 or len(chain_code) != 32:
            raise ValueError("Sapling key and chain code must be 32 bytes")
        self.sk = sk
        self.chain_code = chain_code
        self.depth = depth

        ask = int.from_bytes(prf_expand(sk, 0x00), "little") % SECP256K1_N
        if ask == 0:
            raise ValueError("Invalid spend authorizing key")
        self._spend_auth_key = PrivateKey(ask.to_bytes(32, "big"))
        self.ivk = prf_expand(sk, 0x02)[:32]

    @classmethod
    def from_seed(cls, seed: bytes) -> SaplingKey:
        digest = hashlib.blake2b(seed, digest_size=64, person=b"ZcashIP32Sapling").digest()
        return cls(digest[:32], digest[32:], depth=0)

    def derive(self, path: str) -> SaplingKey:
        key = self
        for index in parse_path(path):
            if index < HARDENED_OFFSET:
                raise ValueError("Sapling spending keys only support hardened derivation")
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> SaplingKey:
        digest = hashlib.blake2b(
            b"\x11" + self.sk + self.chain_code + index.to_bytes(4, "little"),
            digest_size=64,
            key=self.chain_code,
            person=b"Zcash_ExpandSeed",
        ).digest()
        return SaplingKey(digest[:32], digest[32:], depth=self.depth + 1)

    @property
    def private_key(self) -> PrivateKey:
        return self._spend_auth_key

    def viewing_key(self) -> SaplingViewingKey:
        return SaplingViewingKey(self._spend_auth_key.public_key.format(compressed=True), self.ivk)


class TransparentViewingKey:
    """Public key of a transparent account: one address, verifies its signatures."""

    address_type = AddressType.TRANSPARENT

    def __init__(self, pubkey: bytes):
        if len(pubkey) != 33:
            raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
        self.pubkey = pubkey

    def address(self, network: str = "mainnet") -> str:
        return pubkey_to_transparent_address(self.pubkey, network)

    def owns(self, address: str, network: str = "mainnet") -> bool:
        try:
            return decode_transparent_address(address, network) == hash160(self.pubkey)
        except ValueError:
            return False

    def encode(self) -> str:
        return base58.b58encode_check(TRANSPARENT_VIEWING_KEY_PREFIX + self.pubkey).decode("ascii")


class SaplingViewingKey:
    """
    Full viewing key of a Sapling account.

    ``ak`` verifies spend authorizations, ``ivk`` derives and recognises the
    account's diversified addresses.
    """

    address_type = AddressType.SAPLING

    def __init__(self, ak: bytes, ivk: bytes):
        if len(ak) != 33 or len(ivk) != 32:
            raise ValueError("Invalid Sapling viewing key components")
        self.ak = ak
        self.ivk = ivk

    @property
    def pubkey(self) -> bytes:
        return self.ak

    def diversifier(self, index: int) -> bytes:
        return hashlib.blake2b(
            self.ivk + index.to_bytes(DIVERSIFIER_SIZE, "little"),
            digest_size=DIVERSIFIER_SIZE,
            person=b"Zcash_Diversify_",
        ).digest()

    def pk_d(self, diversifier: bytes) -> bytes:
        return hashlib.blake2b(
            self.ivk + diversifier, digest_size=32, person=b"Zcash_pkd_derive"
        ).digest()

    def address(self, network: str = "mainnet", index: int = 0) -> str:
        """Diversified payment address at ``index`` (0 is the default address)."""
        d = self.diversifier(index)
        return encode_sapling_address(d, self.pk_d(d), network)

    def owns(self, address: str, network: str = "mainnet") -> bool:
        try:
            d, pk_d = decode_sapling_address(address, network)
        except ValueError:
            return False
        return hmac.compare_digest(self.pk_d(d), pk_d)

    def encode(self) -> str:
        return base58.b58encode_check(SAPLING_VIEWING_KEY_PREFIX + self.ak + self.ivk).decode(
            "ascii"
        )


ViewingKey = TransparentViewingKey | SaplingViewingKey


class SpendingKey:
    """Decoded spending key: a signing key plus its matching viewing key."""

    def __init__(self, address_type: AddressType, signing_key: PrivateKey, viewing_key: ViewingKey):
        self.address_type = address_type
        self.signing_key = signing_key
        self.viewing_key = viewing_key

    def __repr__(self) -> str:
        return f"SpendingKey(address_type={self.address_type.value})"


def encode_transparent_spending_key(key: HDKey) -> str:
    payload = TRANSPARENT_SPENDING_KEY_PREFIX + key.private_key.secret + b"\x01"
    return base58.b58encode_check(payload).decode("ascii")


def encode_sapling_spending_key(key: SaplingKey) -> str:
    payload = SAPLING_SPENDING_KEY_PREFIX + key.sk + key.chain_code
    return base58.b58encode_check(payload).decode("ascii")


def _b58decode(encoded: str) -> bytes:
    try:
        return base58.b58decode_check(encoded)
    except ValueError as e:
        raise ValueError("Invalid key encoding") from e


def decode_viewing_key(encoded: str) -> ViewingKey:
    raw = _b58decode(encoded)
    if raw.startswith(SAPLING_VIEWING_KEY_PREFIX) and len(raw) == 3 + 33 + 32:
        return SaplingViewingKey(raw[3:36], raw[36:])
    if raw.startswith(TRANSPARENT_VIEWING_KEY_PREFIX) and len(raw) == 2 + 33:
        return TransparentViewingKey(raw[2:])
    raise ValueError("Unknown viewing key type")


def decode_spending_key(encoded: str) -> SpendingKey:
    raw = _b58decode(encoded)
    if raw.startswith(SAPLING_SPENDING_KEY_PREFIX) and len(raw) == 3 + 64:
        key = SaplingKey(raw[3:35], raw[35:])
        return SpendingKey(AddressType.SAPLING, key.private_key, key.viewing_key())
    if raw.startswith(TRANSPARENT_SPENDING_KEY_PREFIX) and len(raw) == 1 + 32 + 1:
        private_key = PrivateKey(raw[1:33])
        viewing_key = TransparentViewingKey(private_key.public_key.format(compressed=True))
        return SpendingKey(AddressType.TRANSPARENT, private_key, viewing_key)
    raise ValueError("Unknown spending key type")


def entropy_from_hex(hex_entropy: str, path: str) -> Entropy:
    """Build Entropy from raw hex entropy (16-32 bytes) instead of words."""
    try:
        phrase = Mnemonic("english").to_mnemonic(bytes.fromhex(hex_entropy))
    except ValueError as e:
        raise InvalidEntropy(f"Invalid hex entropy: {e}") from e
    return Entropy(seed_phrase=phrase, path=path)


def entropy_to_seed(entropy: Entropy, passphrase: str = "") -> bytes:
    """
    Validate an entropy input and stretch it into a 64-byte BIP39 seed.

    Raises:
        InvalidEntropy: bad word count, unknown words, bad checksum or path
    """
    phrase = " ".join(entropy.seed_phrase.get_secret_value().split())
    word_count = len(phrase.split())
    if word_count not in VALID_WORD_COUNTS:
        raise InvalidEntropy(f"Seed phrase must have 12-24 words, got {word_count}")

    mnemo = Mnemonic("english")
    if not mnemo.check(phrase):
        raise InvalidEntropy("Seed phrase has unknown words or a bad checksum")

    try:
        parse_path(entropy.path)
    except ValueError as e:
        raise InvalidEntropy(str(e)) from e

    return Mnemonic.to_seed(phrase, passphrase)


def key_package_from_seed(
    seed: bytes, address_type: AddressType, path: str, network: str = "mainnet"
) -> KeyPackage:
    """Derive the key package at ``path`` from an already validated seed."""
    if address_type == AddressType.TRANSPARENT:
        hd_key = HDKey.from_seed(seed).derive(path)
        viewing_key: ViewingKey = TransparentViewingKey(hd_key.get_public_key_bytes())
        private_key = encode_transparent_spending_key(hd_key)
    elif address_type == AddressType.SAPLING:
        try:
            sapling_key = SaplingKey.from_seed(seed).derive(path)
        except ValueError as e:
            raise InvalidEntropy(str(e)) from e
        viewing_key = sapling_key.viewing_key()
        private_key = encode_sapling_spending_key(sapling_key)
    else:
        raise ValueError(f"Unsupported address type: {address_type}")

    return KeyPackage(
        address_type=address_type,
        public_key=viewing_key.encode(),
        private_key=private_key,
        address=viewing_key.address(NetworkType(network).value),
        path=path,
    )


def derive_key_package(
    entropy: Entropy, address_type: AddressType, network: str = "mainnet"
) -> KeyPackage:
    """Deterministically derive the key package at ``entropy.path``."""
    return key_package_from_seed(entropy_to_seed(entropy), address_type, entropy.path, network)
