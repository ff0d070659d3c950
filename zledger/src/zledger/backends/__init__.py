"""
Chain indexer backend implementations.

Available backends:
- ZcashdBackend: zcashd JSON-RPC (or an indexer exposing the same calls)
"""

from zledger.backends.base import BackendRpcError, Block, ChainBackend, ChainOutput, ChainTx
from zledger.backends.zcashd import ZcashdBackend

__all__ = [
    "BackendRpcError",
    "Block",
    "ChainBackend",
    "ChainOutput",
    "ChainTx",
    "ZcashdBackend",
]
