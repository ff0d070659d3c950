"""
Value objects exchanged between the online ledger and the offline signer.

Everything here is plain data: it can be written to a file or a QR code,
carried across the air gap and parsed back without any live handle.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from zcore.constants import MAX_MONEY, MEMO_MAX_BYTES, TX_FORMAT_VERSION
from zcore.errors import MalformedTx

HEX64_PATTERN = r"^[0-9a-f]{64}$"


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"


class AddressType(str, Enum):
    TRANSPARENT = "transparent"
    SAPLING = "sapling"


class ConfirmationSpeed(str, Enum):
    """Requested confirmation speed tier for fee estimation."""

    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


class FixedFee(BaseModel):
    """Flat fee regardless of transaction size."""

    kind: Literal["fixed"] = "fixed"
    amount: int = Field(..., ge=0, le=MAX_MONEY)

    def resolve(self, size_bytes: int) -> int:
        return self.amount

    model_config = {"frozen": True}


class PerKbFee(BaseModel):
    """Fee rate in zatoshi per 1000 bytes, rounded up."""

    kind: Literal["per_kb"] = "per_kb"
    amount: int = Field(..., ge=0, le=MAX_MONEY)

    def resolve(self, size_bytes: int) -> int:
        return -(-self.amount * size_bytes // 1000)

    model_config = {"frozen": True}


Fee = Annotated[FixedFee | PerKbFee, Field(discriminator="kind")]


class OutPoint(BaseModel):
    tx_hash: str = Field(..., pattern=HEX64_PATTERN)
    output_index: int = Field(..., ge=0)

    def __str__(self) -> str:
        return f"{self.tx_hash}:{self.output_index}"

    model_config = {"frozen": True}


class TxInput(BaseModel):
    """An output of a previous transaction being spent."""

    tx_hash: str = Field(..., pattern=HEX64_PATTERN)
    output_index: int = Field(..., ge=0)
    amount: int = Field(..., gt=0, le=MAX_MONEY)
    address: str = Field(..., min_length=1)

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(tx_hash=self.tx_hash, output_index=self.output_index)

    model_config = {"frozen": True}


class TxOutput(BaseModel):
    address: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, le=MAX_MONEY)
    memo: str | None = None

    @field_validator("memo")
    @classmethod
    def validate_memo(cls, v: str | None) -> str | None:
        if v is not None and len(v.encode("utf-8")) > MEMO_MAX_BYTES:
            raise ValueError(f"Memo exceeds {MEMO_MAX_BYTES} bytes")
        return v

    model_config = {"frozen": True}


class UnsignedTx(BaseModel):
    """
    A proposed transaction waiting for a signature.

    Built by the online ledger, read by the offline signer. The balance
    invariant ``sum(inputs) == sum(outputs) + fee`` is checked by the signer
    rather than at construction so that a bad payload is reported as
    MalformedTx instead of failing to parse.
    """

    version: int = Field(default=TX_FORMAT_VERSION, ge=1)
    payment_id: str = Field(..., min_length=1, max_length=64)
    account_id: int = Field(..., ge=0)
    network: NetworkType = NetworkType.MAINNET
    inputs: list[TxInput]
    outputs: list[TxOutput]
    fee: int = Field(..., ge=0, le=MAX_MONEY)
    expiry_height: int = Field(default=0, ge=0)

    @property
    def total_in(self) -> int:
        return sum(inp.amount for inp in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(out.amount for out in self.outputs)

    def is_balanced(self) -> bool:
        return self.total_in == self.total_out + self.fee

    def preimage(self) -> bytes:
        """Canonical binary encoding that signatures commit to."""
        from zcore.signing import serialize_unsigned_tx

        return serialize_unsigned_tx(self)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> UnsignedTx:
        """Parse a handoff payload. Unknown fields are ignored."""
        try:
            tx = cls.model_validate_json(data)
        except ValidationError as e:
            raise MalformedTx(f"Invalid unsigned transaction: {e.error_count()} error(s)") from e
        if tx.version > TX_FORMAT_VERSION:
            raise MalformedTx(f"Unsupported transaction format version {tx.version}")
        return tx

    model_config = {"frozen": True}


class InputSignature(BaseModel):
    """Spend authorization for one input."""

    index: int = Field(..., ge=0)
    signature: str = Field(..., pattern=r"^[0-9a-f]+$")
    public_key: str = Field(..., pattern=r"^[0-9a-f]{66}$")

    model_config = {"frozen": True}


class SignedTx(BaseModel):
    """An UnsignedTx together with one signature per input."""

    tx: UnsignedTx
    signatures: list[InputSignature]

    @property
    def payment_id(self) -> str:
        return self.tx.payment_id

    @property
    def raw(self) -> bytes:
        from zcore.signing import serialize_signed_tx

        return serialize_signed_tx(self)

    @property
    def tx_hash(self) -> str:
        from zcore.signing import signed_tx_hash

        return signed_tx_hash(self)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> SignedTx:
        try:
            signed = cls.model_validate_json(data)
        except ValidationError as e:
            raise MalformedTx(f"Invalid signed transaction: {e.error_count()} error(s)") from e
        if signed.tx.version > TX_FORMAT_VERSION:
            raise MalformedTx(f"Unsupported transaction format version {signed.tx.version}")
        return signed

    model_config = {"frozen": True}


class PublicKeyPackage(BaseModel):
    """The shareable half of a KeyPackage, imported by the online ledger."""

    address_type: AddressType
    viewing_key: str = Field(..., min_length=1)

    model_config = {"frozen": True}


class KeyPackage(BaseModel):
    """
    A derived key pair.

    ``private_key`` is a SecretStr so it never shows up in reprs or logs.
    Only ``public_package()`` may be handed to the online side.
    """

    address_type: AddressType
    public_key: str
    private_key: SecretStr
    address: str
    path: str

    def public_package(self) -> PublicKeyPackage:
        return PublicKeyPackage(address_type=self.address_type, viewing_key=self.public_key)

    model_config = {"frozen": True}


class Entropy(BaseModel):
    """Seed phrase plus the derivation path it is consumed at."""

    seed_phrase: SecretStr
    path: str

    model_config = {"frozen": True}
