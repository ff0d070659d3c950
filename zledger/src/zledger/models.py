"""
Ledger data models.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field
from zcore.models import AddressType, NetworkType, OutPoint


class Account(BaseModel):
    """A watch-only account created from an imported viewing key."""

    account_id: int = Field(..., ge=0)
    address_type: AddressType
    public_key_package: str
    birth_height: int = Field(default=0, ge=0)
    addresses: list[str] = Field(default_factory=list)
    # Next diversifier index for Sapling accounts (0 is the default address)
    next_diversifier: int = Field(default=1, ge=1)
    balance: int = 0  # confirmed + unconfirmed, filled in on read

    @property
    def default_address(self) -> str:
        return self.addresses[0]


class Note(BaseModel):
    """An output received by one of our accounts."""

    tx_hash: str
    output_index: int
    account_id: int
    address: str
    value: int
    height: int | None = None  # None while in the mempool
    memo: str | None = None
    spent_by: str | None = None
    spent_height: int | None = None  # None if unspent or spent by a mempool tx

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(tx_hash=self.tx_hash, output_index=self.output_index)

    def confirmations(self, tip_height: int) -> int:
        if self.height is None:
            return 0
        return max(tip_height - self.height + 1, 0)


class Reservation(BaseModel):
    """Inputs held back from coin selection for an in-flight payment."""

    payment_id: str
    account_id: int
    outpoints: list[OutPoint]
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PendingBroadcast(BaseModel):
    """A transaction we broadcast that has not reached the confirmation depth."""

    tx_hash: str
    payment_id: str
    account_id: int
    outpoints: list[OutPoint]
    expiry_height: int = 0
    mined_height: int | None = None


class UpdateType(str, Enum):
    INCOMING_TX = "incoming_tx"
    OUTGOING_TX = "outgoing_tx"


class AccountUpdate(BaseModel):
    """Notification that an account's balance changed in a mined block."""

    account_id: int
    event_type: UpdateType
    tx_hash: str
    output_index: int
    amount: int
    height: int
    address: str | None = None

    model_config = {"frozen": True}


class LedgerState(BaseModel):
    """Everything the ledger needs to resume after a restart."""

    network: NetworkType
    height: int
    block_hashes: dict[int, str] = Field(default_factory=dict)
    accounts: list[Account] = Field(default_factory=list)
    notes: list[Note] = Field(default_factory=list)
    reservations: list[Reservation] = Field(default_factory=list)
    pending_broadcasts: list[PendingBroadcast] = Field(default_factory=list)
    # account_id -> height -> hash of the block its updates were published for
    notified_blocks: dict[int, dict[int, str]] = Field(default_factory=dict)
    rescan_from: int | None = None
