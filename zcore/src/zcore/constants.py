"""
Zcash network and custody constants.

Address prefixes follow the consensus parameters of zcashd:
- transparent P2PKH: two-byte base58check version (t1... / tm...)
- Sapling payment address: bech32 human readable part (zs / ztestsapling)
"""

from __future__ import annotations

# Amounts are integer zatoshi everywhere
COIN = 100_000_000  # zatoshi per ZEC
MAX_MONEY = 21_000_000 * COIN

# SLIP-44 coin types used in the BIP44 purpose path
COIN_TYPE_MAINNET = 133
COIN_TYPE_TESTNET = 1

# Transparent P2PKH address version bytes (t1 / tm)
B58_PUBKEY_ADDRESS_PREFIX = {
    "mainnet": bytes([0x1C, 0xB8]),
    "testnet": bytes([0x1D, 0x25]),
    "regtest": bytes([0x1D, 0x25]),
}

# Sapling payment address human readable parts
HRP_SAPLING_PAYMENT_ADDRESS = {
    "mainnet": "zs",
    "testnet": "ztestsapling",
    "regtest": "zregtestsapling",
}

# Base58check version bytes for the key packages exchanged across the air gap.
# Viewing keys are safe to share, spending keys never leave the signer.
TRANSPARENT_VIEWING_KEY_PREFIX = bytes([0x1C, 0xB9])
TRANSPARENT_SPENDING_KEY_PREFIX = bytes([0x80])
SAPLING_VIEWING_KEY_PREFIX = bytes([0xA8, 0xAB, 0xD3])
SAPLING_SPENDING_KEY_PREFIX = bytes([0xAB, 0x36, 0x6C])

# Sapling diversifiers are 11 bytes, pk_d is 32 bytes
DIVERSIFIER_SIZE = 11
SAPLING_ADDRESS_PAYLOAD_SIZE = 43

# Maximum length of an output memo (ZIP 302)
MEMO_MAX_BYTES = 512

# Blocks after which an unmined transaction expires (zcashd default)
DEFAULT_TX_EXPIRY_DELTA = 40

# ZIP 317 marginal fee, used as the base for shielded fixed fees
MARGINAL_FEE = 1000  # zatoshi

# Transparent outputs below this value are not created as change
DEFAULT_DUST_THRESHOLD = 546  # zatoshi

# Handoff format version for UnsignedTx / SignedTx
TX_FORMAT_VERSION = 1

# Hardened child offset in BIP32 / ZIP32 paths
HARDENED_OFFSET = 0x80000000
