"""
Test configuration for zsigner tests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from zsigner.signer import OfflineSigner


@pytest.fixture
def sample_mnemonic() -> str:
    """Test mnemonic (not for production use!)."""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "signer_state.json"


@pytest.fixture
def signer(sample_mnemonic: str, state_file: Path) -> OfflineSigner:
    return OfflineSigner(sample_mnemonic, network="mainnet", state_file=state_file)
