"""
Offline signing service.

Holds the seed, derives new accounts and signs pre-built UnsignedTx
payloads. It never talks to the network and never sees chain state:
everything it needs arrives inside the UnsignedTx.

Derivation paths:
- transparent: m/44'/{coin_type}'/{index}'/0/0
- sapling:     m/32'/{coin_type}'/{index}'
"""

from __future__ import annotations

import threading
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, SecretStr

from zcore.address import is_valid_address, network_name
from zcore.constants import COIN_TYPE_MAINNET, COIN_TYPE_TESTNET, HARDENED_OFFSET
from zcore.errors import EntropyExhausted, InvalidAddressType, KeyMismatch, MalformedTx
from zcore.keys import decode_spending_key, entropy_to_seed, key_package_from_seed
from zcore.log import setup_logging
from zcore.models import AddressType, Entropy, KeyPackage, SignedTx, UnsignedTx
from zcore.signing import sign_input

from zsigner.config import SignerSettings, get_settings


class SignerState(BaseModel):
    """Next unused account index per address type."""

    next_index: dict[AddressType, int] = Field(default_factory=dict)


class OfflineSigner:
    """
    Air-gapped signer.

    All operations are serialized: the signer handles one request at a time.
    """

    def __init__(
        self,
        seed_phrase: str | SecretStr,
        network: str = "mainnet",
        max_accounts: int = 100_000,
        state_file: Path | None = None,
    ):
        if isinstance(seed_phrase, str):
            seed_phrase = SecretStr(seed_phrase)

        self.network = network_name(network)
        self.max_accounts = min(max_accounts, HARDENED_OFFSET)
        self.state_file = state_file
        self.coin_type = COIN_TYPE_MAINNET if self.network == "mainnet" else COIN_TYPE_TESTNET

        # Raises InvalidEntropy on a bad phrase before anything else happens
        self._seed = entropy_to_seed(Entropy(seed_phrase=seed_phrase, path="m"))
        self._lock = threading.Lock()
        self._state = self._load_state()

        logger.info(f"Offline signer ready on {self.network}")

    @classmethod
    def from_settings(cls, settings: SignerSettings | None = None) -> OfflineSigner:
        """Build the signer service from settings (environment / .env by default)."""
        settings = settings or get_settings()
        setup_logging(settings.log_level)
        return cls(
            seed_phrase=settings.seed_phrase,
            network=settings.network,
            max_accounts=settings.max_accounts,
            state_file=settings.state_file,
        )

    def _load_state(self) -> SignerState:
        if self.state_file is None or not self.state_file.exists():
            return SignerState()
        return SignerState.model_validate_json(self.state_file.read_text(encoding="utf-8"))

    def _save_state(self) -> None:
        if self.state_file is None:
            return
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        tmp.write_text(self._state.model_dump_json(), encoding="utf-8")
        tmp.replace(self.state_file)

    def derivation_path(self, address_type: AddressType, index: int) -> str:
        if address_type == AddressType.TRANSPARENT:
            return f"m/44'/{self.coin_type}'/{index}'/0/0"
        return f"m/32'/{self.coin_type}'/{index}'"

    @staticmethod
    def _parse_address_type(address_type: AddressType | str) -> AddressType:
        try:
            return AddressType(address_type)
        except ValueError:
            raise InvalidAddressType(f"Unsupported address type: {address_type!r}") from None

    def generate_address(self, address_type: AddressType | str) -> KeyPackage:
        """
        Derive a fresh key package at the next unused index.

        The index is advanced (and persisted) before the package is returned,
        so a path is never handed out twice.

        Raises:
            InvalidAddressType: unsupported address type
            EntropyExhausted: no further index is available
        """
        kind = self._parse_address_type(address_type)
        with self._lock:
            index = self._state.next_index.get(kind, 0)
            if index >= self.max_accounts:
                raise EntropyExhausted(
                    f"No derivation index left for {kind.value} accounts ({self.max_accounts} used)"
                )

            path = self.derivation_path(kind, index)
            package = key_package_from_seed(self._seed, kind, path, self.network)

            self._state.next_index[kind] = index + 1
            self._save_state()

        logger.info(f"Generated {kind.value} account #{index}")
        return package

    def batch_generate(self, address_type: AddressType | str, count: int) -> list[KeyPackage]:
        """Generate ``count`` consecutive accounts of one type."""
        if count < 1:
            raise ValueError("count must be positive")
        return [self.generate_address(address_type) for _ in range(count)]

    def _check_well_formed(self, tx: UnsignedTx) -> None:
        if tx.network.value != self.network:
            raise MalformedTx(f"Transaction is for {tx.network.value}, signer is on {self.network}")
        if not tx.inputs:
            raise MalformedTx("Transaction has no inputs")
        if not tx.outputs:
            raise MalformedTx("Transaction has no outputs")
        if not tx.is_balanced():
            raise MalformedTx(
                f"Inputs ({tx.total_in}) do not equal outputs ({tx.total_out}) plus fee ({tx.fee})"
            )

        outpoints = {inp.outpoint for inp in tx.inputs}
        if len(outpoints) != len(tx.inputs):
            raise MalformedTx("Transaction spends the same output twice")

        for i, out in enumerate(tx.outputs):
            if not is_valid_address(out.address, self.network):
                raise MalformedTx(f"Output {i} has an invalid address")

    def sign_tx(self, unsigned_tx: UnsignedTx | str, private_key: str | SecretStr) -> SignedTx:
        """
        Sign every input of ``unsigned_tx`` with ``private_key``.

        Signatures are deterministic, so signing the same payload again after
        a crash yields the same SignedTx.

        Raises:
            MalformedTx: unparseable payload or broken balance invariant
            KeyMismatch: an input is not spendable by the key
        """
        if isinstance(unsigned_tx, str):
            unsigned_tx = UnsignedTx.from_json(unsigned_tx)
        if isinstance(private_key, SecretStr):
            private_key = private_key.get_secret_value()

        with self._lock:
            self._check_well_formed(unsigned_tx)

            try:
                spending_key = decode_spending_key(private_key)
            except ValueError:
                raise KeyMismatch("Supplied spending key could not be decoded") from None

            for i, inp in enumerate(unsigned_tx.inputs):
                if not spending_key.viewing_key.owns(inp.address, self.network):
                    raise KeyMismatch(f"Input {i} ({inp.outpoint}) is not spendable by this key")

            signatures = [
                sign_input(unsigned_tx, i, spending_key.signing_key)
                for i in range(len(unsigned_tx.inputs))
            ]

        logger.info(
            f"Signed payment {unsigned_tx.payment_id}: "
            f"{len(signatures)} input(s), fee {unsigned_tx.fee}"
        )
        return SignedTx(tx=unsigned_tx, signatures=signatures)
