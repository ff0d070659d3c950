"""
Configuration for the offline signer, using pydantic-settings.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class SignerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZSIGNER_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "regtest"] = "mainnet"

    # BIP39 mnemonic the signer derives every account from
    seed_phrase: SecretStr

    # Upper bound on accounts per address type
    max_accounts: int = Field(default=100_000, ge=1)

    # Tracks the next unused derivation index so paths are never reused
    state_file: Path | None = None

    log_level: str = "INFO"


def get_settings() -> SignerSettings:
    return SignerSettings()
