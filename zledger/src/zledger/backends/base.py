"""
Base chain indexer backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from zcore.models import OutPoint


class BackendRpcError(Exception):
    """The indexer answered with an error status."""

    def __init__(self, code: int, message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


@dataclass
class ChainOutput:
    """A decoded transaction output (transparent, or a Sapling output the indexer decrypted)."""

    output_index: int
    address: str
    value: int
    memo: str | None = None


@dataclass
class ChainTx:
    tx_hash: str
    spends: list[OutPoint] = field(default_factory=list)
    outputs: list[ChainOutput] = field(default_factory=list)
    expiry_height: int = 0


@dataclass
class Block:
    height: int
    hash: str
    prev_hash: str
    transactions: list[ChainTx] = field(default_factory=list)


class ChainBackend(ABC):
    """
    Abstract chain indexer interface.

    Transport failures surface as NetworkUnavailable, error responses as
    BackendRpcError. Nothing is retried here.
    """

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current chain tip height"""

    @abstractmethod
    async def get_block_hash(self, height: int) -> str:
        """Get block hash for given height"""

    @abstractmethod
    async def get_block(self, height: int) -> Block:
        """Get a block with its decoded transactions"""

    @abstractmethod
    async def get_mempool(self) -> list[ChainTx]:
        """Get decoded transactions currently in the mempool"""

    @abstractmethod
    async def broadcast_transaction(self, raw_tx_hex: str) -> str:
        """Broadcast transaction, returns tx hash"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> int:
        """Estimate fee rate in zatoshi per 1000 bytes, or 0 if unknown"""

    async def close(self) -> None:
        """Close backend connection"""
        pass
