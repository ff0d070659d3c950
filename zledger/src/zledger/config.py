"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from zcore.constants import DEFAULT_DUST_THRESHOLD, DEFAULT_TX_EXPIRY_DELTA, MARGINAL_FEE


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZLEDGER_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["mainnet", "testnet", "regtest"] = "mainnet"

    # Chain indexer RPC
    rpc_url: str = "http://127.0.0.1:8232"
    rpc_user: str = "rpcuser"
    rpc_password: str = "rpcpassword"
    rpc_timeout: float = Field(default=30.0, gt=0)

    # Payments
    min_confirmations: int = Field(default=1, ge=0, description="Confirmations to spend a note")
    confirmations_required: int = Field(
        default=1, ge=1, description="Confirmations before a payment is CONFIRMED"
    )
    expiry_delta: int = Field(default=DEFAULT_TX_EXPIRY_DELTA, ge=0)
    dust_threshold: int = Field(default=DEFAULT_DUST_THRESHOLD, ge=0)
    shielded_base_fee: int = Field(default=MARGINAL_FEE, ge=0)
    fallback_fee_rate: int = Field(default=1000, ge=0, description="zat/kB without an estimate")

    # Broadcast retries on NetworkUnavailable
    broadcast_retries: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)

    # Blocks fetched per snapshot swap while catching up
    scan_batch_size: int = Field(default=100, ge=1)

    # Notification history kept for polling consumers
    update_history_size: int = Field(default=10_000, ge=0)

    log_level: str = "INFO"


def get_settings() -> LedgerSettings:
    return LedgerSettings()
