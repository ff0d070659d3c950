"""
zcashd-compatible JSON-RPC chain indexer backend.

Uses only node RPCs (getblock, getrawmempool, sendrawtransaction, estimatefee).
Sapling outputs cannot be read from raw blocks, so the indexer in front of
zcashd is expected to annotate the entries of ``vShieldedOutput`` it could
decrypt with ``address``/``valueZat``/``memo``, and the entries of
``vShieldedSpend`` with the ``spentTxid``/``spentIndex`` of the note they
consume. Unannotated shielded entries are ignored.
"""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import httpx
from loguru import logger
from zcore.constants import COIN
from zcore.errors import NetworkUnavailable
from zcore.models import OutPoint

from zledger.backends.base import BackendRpcError, Block, ChainBackend, ChainOutput, ChainTx

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Environment variable to enable sensitive logging (raw transactions, addresses)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


class ZcashdBackend(ChainBackend):
    """
    Chain backend talking JSON-RPC to zcashd (or an indexer exposing the same API).
    """

    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18232",
        rpc_user: str = "rpcuser",
        rpc_password: str = "rpcpassword",
        timeout: float = DEFAULT_RPC_TIMEOUT,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.rpc_user = rpc_user
        self.client = httpx.AsyncClient(timeout=timeout, auth=(rpc_user, rpc_password))
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list | None = None) -> Any:
        """
        Make an RPC call to the node.

        Raises:
            BackendRpcError: the node returned an error object
            NetworkUnavailable: connection failure or timeout
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise NetworkUnavailable(f"RPC call {method} timed out") from e
        except httpx.TransportError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise NetworkUnavailable(f"RPC call {method} failed: {e}") from e

        # zcashd answers RPC errors with HTTP 500 and a JSON error body
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("error"):
            error_info = data["error"]
            raise BackendRpcError(
                error_info.get("code", -1), error_info.get("message", str(error_info))
            )

        if response.is_error:
            raise BackendRpcError(response.status_code, response.text[:200])

        if data is None:
            raise BackendRpcError(-1, f"Malformed response to {method}")
        return data.get("result")

    @staticmethod
    def _parse_tx(tx_data: dict[str, Any]) -> ChainTx:
        spends = [
            OutPoint(tx_hash=vin["txid"], output_index=vin["vout"])
            for vin in tx_data.get("vin", [])
            if "txid" in vin
        ]

        outputs: list[ChainOutput] = []
        transparent_outputs = tx_data.get("vout", [])
        for vout in transparent_outputs:
            addresses = vout.get("scriptPubKey", {}).get("addresses") or []
            if not addresses:
                continue
            if "valueZat" in vout:
                value = int(vout["valueZat"])
            else:
                value = int(Decimal(str(vout["value"])) * COIN)
            outputs.append(ChainOutput(output_index=vout["n"], address=addresses[0], value=value))

        for k, shielded in enumerate(tx_data.get("vShieldedOutput", [])):
            if "address" not in shielded:
                continue
            outputs.append(
                ChainOutput(
                    output_index=len(transparent_outputs) + k,
                    address=shielded["address"],
                    value=int(shielded["valueZat"]),
                    memo=shielded.get("memo"),
                )
            )

        for spend in tx_data.get("vShieldedSpend", []):
            if "spentTxid" in spend:
                spends.append(
                    OutPoint(tx_hash=spend["spentTxid"], output_index=spend["spentIndex"])
                )

        return ChainTx(
            tx_hash=tx_data["txid"],
            spends=spends,
            outputs=outputs,
            expiry_height=tx_data.get("expiryheight", 0),
        )

    async def get_block_height(self) -> int:
        height = await self._rpc_call("getblockcount")
        logger.debug(f"Current block height: {height}")
        return height

    async def get_block_hash(self, height: int) -> str:
        return await self._rpc_call("getblockhash", [height])

    async def get_block(self, height: int) -> Block:
        block_hash = await self.get_block_hash(height)
        block_data = await self._rpc_call("getblock", [block_hash, 2])

        transactions = [self._parse_tx(tx) for tx in block_data.get("tx", [])]
        return Block(
            height=height,
            hash=block_hash,
            prev_hash=block_data.get("previousblockhash", ""),
            transactions=transactions,
        )

    async def get_mempool(self) -> list[ChainTx]:
        txids = await self._rpc_call("getrawmempool")
        transactions = []
        for txid in txids:
            try:
                tx_data = await self._rpc_call("getrawtransaction", [txid, 1])
            except BackendRpcError as e:
                # Evicted or mined between the two calls
                logger.debug(f"Mempool transaction {txid} vanished: {e}")
                continue
            transactions.append(self._parse_tx(tx_data))
        return transactions

    async def broadcast_transaction(self, raw_tx_hex: str) -> str:
        if SENSITIVE_LOGGING:
            logger.debug(f"Broadcasting raw transaction: {raw_tx_hex}")
        tx_hash = await self._rpc_call("sendrawtransaction", [raw_tx_hex])
        logger.info(f"Broadcast transaction: {tx_hash}")
        return tx_hash

    async def estimate_fee(self, target_blocks: int) -> int:
        # zcashd returns ZEC per 1000 bytes, or -1 without enough data
        result = await self._rpc_call("estimatefee", [target_blocks])
        if result is None or result <= 0:
            logger.debug(f"No fee estimate for {target_blocks} blocks")
            return 0
        rate = int(Decimal(str(result)) * COIN)
        logger.debug(f"Estimated fee for {target_blocks} blocks: {rate} zat/kB")
        return rate

    async def close(self) -> None:
        await self.client.aclose()
