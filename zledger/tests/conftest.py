"""
Test configuration for zledger tests.
"""

from __future__ import annotations

import pytest
from chain_fakes import FakeChain
from zcore.errors import NetworkUnavailable
from zcore.models import AddressType, KeyPackage
from zsigner.signer import OfflineSigner

from zledger.config import LedgerSettings
from zledger.ledger import OnlineLedger
from zledger.payments import PaymentOrchestrator


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def signer(sample_mnemonic: str) -> OfflineSigner:
    return OfflineSigner(sample_mnemonic, network="mainnet")


@pytest.fixture
def transparent_account(signer: OfflineSigner) -> KeyPackage:
    return signer.generate_address(AddressType.TRANSPARENT)


@pytest.fixture
def sapling_account(signer: OfflineSigner) -> KeyPackage:
    return signer.generate_address(AddressType.SAPLING)


@pytest.fixture
def destination(signer: OfflineSigner) -> str:
    """An external address (an account the ledger does not track)."""
    return signer.generate_address(AddressType.TRANSPARENT).address


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(
        network="mainnet",
        min_confirmations=1,
        confirmations_required=1,
        expiry_delta=40,
        dust_threshold=546,
        broadcast_retries=3,
        retry_base_delay=0,
        scan_batch_size=5,
    )


@pytest.fixture
def ledger(chain: FakeChain, settings: LedgerSettings) -> OnlineLedger:
    return OnlineLedger(chain, settings)


@pytest.fixture
def orchestrator(ledger: OnlineLedger) -> PaymentOrchestrator:
    return PaymentOrchestrator(ledger)


@pytest.fixture
def unavailable() -> NetworkUnavailable:
    return NetworkUnavailable("connection refused")
