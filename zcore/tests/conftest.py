"""
Test configuration for zcore tests.
"""

from __future__ import annotations

import pytest
from pydantic import SecretStr

from zcore.keys import derive_key_package
from zcore.models import AddressType, Entropy, KeyPackage, TxInput, TxOutput, UnsignedTx


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def transparent_package(sample_mnemonic: str) -> KeyPackage:
    entropy = Entropy(seed_phrase=SecretStr(sample_mnemonic), path="m/44'/133'/0'/0/0")
    return derive_key_package(entropy, AddressType.TRANSPARENT)


@pytest.fixture
def sapling_package(sample_mnemonic: str) -> KeyPackage:
    entropy = Entropy(seed_phrase=SecretStr(sample_mnemonic), path="m/32'/133'/0'")
    return derive_key_package(entropy, AddressType.SAPLING)


@pytest.fixture
def unsigned_tx(transparent_package: KeyPackage, sapling_package: KeyPackage) -> UnsignedTx:
    return UnsignedTx(
        payment_id="a" * 32,
        account_id=0,
        inputs=[
            TxInput(
                tx_hash="11" * 32,
                output_index=0,
                amount=100_000,
                address=transparent_package.address,
            )
        ],
        outputs=[
            TxOutput(address=sapling_package.address, amount=40_000),
            TxOutput(address=transparent_package.address, amount=59_000),
        ],
        fee=1_000,
        expiry_height=140,
    )
