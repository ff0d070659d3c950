"""
Online watch-only ledger.

Tracks imported viewing keys, scans blocks for their notes, keeps balances
and chain height, selects and reserves inputs for outgoing payments and
broadcasts signed transactions. It never holds a spending key.

Chain-derived state lives in an immutable ChainView that scanning rebuilds
on the side and swaps in with a single assignment, so queries always read
one consistent snapshot. Reservations and our own unconfirmed spends are
kept beside it, mutated under a per-account lock that is never held across
an await.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field, replace
from typing import Protocol

from loguru import logger
from zcore.address import get_address_type, is_valid_address, network_name
from zcore.errors import (
    DoubleSpend,
    InsufficientFunds,
    InvalidDestination,
    InvalidKeyPackage,
    RejectedByNetwork,
    UnknownAccount,
)
from zcore.keys import SaplingViewingKey, ViewingKey, decode_viewing_key
from zcore.log import redact, setup_logging
from zcore.models import (
    AddressType,
    ConfirmationSpeed,
    Fee,
    NetworkType,
    OutPoint,
    PublicKeyPackage,
    SignedTx,
    TxInput,
    TxOutput,
    UnsignedTx,
)

from zledger.backends.base import BackendRpcError, Block, ChainBackend
from zledger.backends.zcashd import ZcashdBackend
from zledger.config import LedgerSettings, get_settings
from zledger.fees import estimate_fee, estimate_tx_size
from zledger.models import (
    Account,
    AccountUpdate,
    LedgerState,
    Note,
    PendingBroadcast,
    Reservation,
    UpdateType,
)
from zledger.notifications import AccountSubscription, UpdateHub

# Number of recent block hashes kept for reorg detection
REORG_HASH_DEPTH = 1000

# Node reject reasons meaning an input is already spent
DOUBLE_SPEND_MARKERS = ("missing-inputs", "bad-txns-inputs-spent", "txn-mempool-conflict")

# Node reject reasons meaning this exact transaction is already known
ALREADY_KNOWN_MARKERS = ("already in block chain", "txn-already-in-mempool", "txn-already-known")


class TxStatusListener(Protocol):
    def on_tx_mined(self, tx_hash: str, height: int, confirmations: int) -> None: ...

    def on_tx_expired(self, tx_hash: str) -> None: ...


@dataclass(frozen=True)
class ChainView:
    """Snapshot of everything derived from the chain. Never mutated once published."""

    height: int = 0
    block_hashes: dict[int, str] = field(default_factory=dict)
    notes: dict[OutPoint, Note] = field(default_factory=dict)
    mempool_notes: dict[OutPoint, Note] = field(default_factory=dict)
    mempool_spends: dict[OutPoint, str] = field(default_factory=dict)


class _ScanWork:
    """Mutable working copy of a ChainView while blocks are applied."""

    def __init__(self, view: ChainView):
        self.height = view.height
        self.block_hashes = dict(view.block_hashes)
        self.notes = dict(view.notes)
        self.mined: dict[str, int] = {}
        self.updates: list[tuple[int, str, list[AccountUpdate]]] = []

    def rewind(self, height: int) -> None:
        for outpoint, note in list(self.notes.items()):
            if note.height is not None and note.height > height:
                del self.notes[outpoint]
            elif note.spent_height is not None and note.spent_height > height:
                self.notes[outpoint] = note.model_copy(
                    update={"spent_by": None, "spent_height": None}
                )
        self.block_hashes = {h: v for h, v in self.block_hashes.items() if h <= height}
        self.mined = {tx: h for tx, h in self.mined.items() if h <= height}
        self.updates = [u for u in self.updates if u[0] <= height]
        self.height = height

    def to_view(self, previous: ChainView) -> ChainView:
        cutoff = self.height - REORG_HASH_DEPTH
        hashes = {h: v for h, v in self.block_hashes.items() if h > cutoff}
        return replace(previous, height=self.height, block_hashes=hashes, notes=self.notes)


class OnlineLedger:
    """
    Watch-only account ledger backed by a chain indexer.
    """

    def __init__(self, backend: ChainBackend, settings: LedgerSettings | None = None):
        self.backend = backend
        self.settings = settings or LedgerSettings()
        self.network = network_name(self.settings.network)

        self._view = ChainView()
        self._accounts: dict[int, Account] = {}
        self._viewing_keys: dict[int, ViewingKey] = {}
        self._account_by_key: dict[str, int] = {}
        self._address_owner: dict[str, int] = {}

        self._reservations: dict[str, Reservation] = {}
        self._reserved: dict[OutPoint, str] = {}
        self._local_spends: dict[OutPoint, str] = {}
        self._pending: dict[str, PendingBroadcast] = {}

        self._registry_lock = threading.Lock()
        self._account_locks: dict[int, threading.Lock] = {}
        self._scan_lock: asyncio.Lock | None = None
        self._rescan_from: int | None = None

        self._hub = UpdateHub(self.settings.update_history_size)
        self._listeners: list[TxStatusListener] = []

    @classmethod
    def from_settings(cls, settings: LedgerSettings | None = None) -> OnlineLedger:
        """Build the ledger service talking to the configured zcashd node."""
        settings = settings or get_settings()
        setup_logging(settings.log_level)
        backend = ZcashdBackend(
            rpc_url=settings.rpc_url,
            rpc_user=settings.rpc_user,
            rpc_password=settings.rpc_password,
            timeout=settings.rpc_timeout,
        )
        return cls(backend, settings)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _lock_for(self, account_id: int) -> threading.Lock:
        with self._registry_lock:
            return self._account_locks.setdefault(account_id, threading.Lock())

    def _get_account(self, account_id: int) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise UnknownAccount(f"Unknown account {account_id}")
        return account

    def import_public_key_package(
        self, package: PublicKeyPackage, birth_height: int | None = None
    ) -> int:
        """
        Register a watch-only account for a viewing key.

        Importing the same viewing key again returns the existing account_id.
        If the birth height is at or below the scanned height, the next
        sync() rescans from it.

        Raises:
            InvalidKeyPackage: undecodable viewing key or wrong address type
        """
        try:
            viewing_key = decode_viewing_key(package.viewing_key)
        except ValueError as e:
            raise InvalidKeyPackage(f"Viewing key could not be decoded: {e}") from None
        if viewing_key.address_type != package.address_type:
            raise InvalidKeyPackage(
                f"Viewing key is {viewing_key.address_type.value}, "
                f"package says {package.address_type.value}"
            )

        with self._registry_lock:
            existing = self._account_by_key.get(package.viewing_key)
            if existing is not None:
                logger.debug(f"Viewing key already imported as account {existing}")
                return existing

            account_id = len(self._accounts)
            birth = birth_height if birth_height is not None else 0
            address = viewing_key.address(self.network)
            self._accounts[account_id] = Account(
                account_id=account_id,
                address_type=package.address_type,
                public_key_package=package.viewing_key,
                birth_height=birth,
                addresses=[address],
            )
            self._viewing_keys[account_id] = viewing_key
            self._account_by_key[package.viewing_key] = account_id
            self._address_owner[address] = account_id

            scanned = self._view.height
            if birth <= scanned:
                start = max(birth, 1)
                self._rescan_from = (
                    start if self._rescan_from is None else min(self._rescan_from, start)
                )

        logger.info(
            f"Imported {package.address_type.value} account {account_id} "
            f"(birth height {birth})"
        )
        return account_id

    def get_account(self, account_id: int) -> Account:
        """Copy of the account with its current balance (confirmed + unconfirmed)."""
        account = self._get_account(account_id)
        return account.model_copy(
            update={
                "balance": self._balance(self._view, account_id, 0),
                "addresses": list(account.addresses),
            }
        )

    def list_accounts(self) -> list[Account]:
        return [self.get_account(account_id) for account_id in sorted(self._accounts)]

    def get_viewing_key(self, account_id: int) -> ViewingKey:
        self._get_account(account_id)
        return self._viewing_keys[account_id]

    def new_address(self, account_id: int) -> str:
        """
        Next diversified receiving address of a Sapling account.

        Transparent accounts have a single address, which is returned as is.
        """
        account = self._get_account(account_id)
        viewing_key = self._viewing_keys[account_id]
        if not isinstance(viewing_key, SaplingViewingKey):
            return account.default_address

        with self._lock_for(account_id):
            index = account.next_diversifier
            address = viewing_key.address(self.network, index)
            account.addresses.append(address)
            account.next_diversifier = index + 1
            with self._registry_lock:
                self._address_owner[address] = account_id

        logger.debug(f"Account {account_id} diversified address #{index}: {redact(address)}")
        return address

    def _owner_of(self, address: str) -> int | None:
        owner = self._address_owner.get(address)
        if owner is not None:
            return owner
        if get_address_type(address, self.network) != AddressType.SAPLING:
            return None
        # Diversified addresses we never handed out are still ours
        for account_id, viewing_key in list(self._viewing_keys.items()):
            if isinstance(viewing_key, SaplingViewingKey) and viewing_key.owns(
                address, self.network
            ):
                with self._registry_lock:
                    self._address_owner[address] = account_id
                return account_id
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_height(self) -> int:
        return self._view.height

    def _spender(self, view: ChainView, outpoint: OutPoint) -> str | None:
        """Hash of the mined, mempool or locally broadcast tx spending ``outpoint``."""
        note = view.notes.get(outpoint)
        if note is not None and note.spent_by is not None:
            return note.spent_by
        return view.mempool_spends.get(outpoint) or self._local_spends.get(outpoint)

    def _is_spent(self, view: ChainView, outpoint: OutPoint) -> bool:
        return self._spender(view, outpoint) is not None

    def _unspent_notes(self, view: ChainView, account_id: int, min_confirmations: int) -> list[Note]:
        notes = [n for n in view.notes.values() if n.account_id == account_id]
        if min_confirmations <= 0:
            notes.extend(
                n
                for n in view.mempool_notes.values()
                if n.account_id == account_id and n.outpoint not in view.notes
            )
        return [
            n
            for n in notes
            if n.confirmations(view.height) >= min_confirmations
            and not self._is_spent(view, n.outpoint)
        ]

    def _balance(self, view: ChainView, account_id: int, min_confirmations: int) -> int:
        return sum(n.value for n in self._unspent_notes(view, account_id, min_confirmations))

    def get_address_balance(self, address: str, min_confirmations: int = 1) -> int:
        """
        Sum of the unspent notes of the account owning ``address``.

        Mempool notes have zero confirmations, so they only count when
        ``min_confirmations`` is 0.

        Raises:
            UnknownAccount: the address belongs to no imported account
        """
        account_id = self._owner_of(address)
        if account_id is None:
            raise UnknownAccount(f"Address {redact(address)} is not tracked")
        return self._balance(self._view, account_id, min_confirmations)

    def get_spendable_balance(self, account_id: int, min_confirmations: int | None = None) -> int:
        """
        Confirmed balance not reserved by an in-flight payment.

        Mempool notes never count here, whatever ``min_confirmations`` says.
        """
        self._get_account(account_id)
        if min_confirmations is None:
            min_confirmations = self.settings.min_confirmations
        min_confirmations = max(min_confirmations, 1)
        return sum(
            n.value
            for n in self._unspent_notes(self._view, account_id, min_confirmations)
            if n.outpoint not in self._reserved
        )

    def validate_address(self, address: str, amount: int, tracked: bool = False) -> bool:
        """
        Syntactic and checksum check of a destination for this network.

        ``tracked`` is accepted for interface compatibility and has no effect.
        """
        if amount < 0:
            return False
        return is_valid_address(address, self.network)

    async def estimate_fee(self, speed: ConfirmationSpeed | str, shielded: bool) -> Fee:
        return await estimate_fee(
            self.backend,
            speed,
            shielded,
            shielded_base_fee=self.settings.shielded_base_fee,
            fallback_rate=self.settings.fallback_fee_rate,
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, account_ids: list[int] | None = None) -> AccountSubscription:
        """Subscribe to mined-block updates for some (or all) accounts."""
        return self._hub.subscribe(account_ids)

    def updates_since(
        self, cursor: int = 0, account_id: int | None = None
    ) -> tuple[list[AccountUpdate], int]:
        return self._hub.since(cursor, account_id)

    def add_tx_listener(self, listener: TxStatusListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _get_scan_lock(self) -> asyncio.Lock:
        # Created lazily so the ledger can be built outside a running loop
        if self._scan_lock is None:
            self._scan_lock = asyncio.Lock()
        return self._scan_lock

    def _apply_block(self, work: _ScanWork, block: Block) -> None:
        updates: list[AccountUpdate] = []
        for tx in block.transactions:
            if tx.tx_hash in self._pending:
                work.mined[tx.tx_hash] = block.height

            for outpoint in tx.spends:
                note = work.notes.get(outpoint)
                if note is None:
                    continue
                work.notes[outpoint] = note.model_copy(
                    update={"spent_by": tx.tx_hash, "spent_height": block.height}
                )
                updates.append(
                    AccountUpdate(
                        account_id=note.account_id,
                        event_type=UpdateType.OUTGOING_TX,
                        tx_hash=tx.tx_hash,
                        output_index=outpoint.output_index,
                        amount=note.value,
                        height=block.height,
                        address=note.address,
                    )
                )

            for output in tx.outputs:
                account_id = self._owner_of(output.address)
                if account_id is None:
                    continue
                note = Note(
                    tx_hash=tx.tx_hash,
                    output_index=output.output_index,
                    account_id=account_id,
                    address=output.address,
                    value=output.value,
                    height=block.height,
                    memo=output.memo,
                )
                work.notes[note.outpoint] = note
                updates.append(
                    AccountUpdate(
                        account_id=account_id,
                        event_type=UpdateType.INCOMING_TX,
                        tx_hash=tx.tx_hash,
                        output_index=output.output_index,
                        amount=output.value,
                        height=block.height,
                        address=output.address,
                    )
                )

        work.block_hashes[block.height] = block.hash
        work.height = block.height
        if updates:
            work.updates.append((block.height, block.hash, updates))
            logger.debug(f"Block {block.height}: {len(updates)} account update(s)")

    async def _find_fork(self, work: _ScanWork, tip: int) -> int:
        """Highest height whose stored hash still matches the chain."""
        height = min(work.height, tip)
        while height > 0 and height in work.block_hashes:
            if await self.backend.get_block_hash(height) == work.block_hashes[height]:
                return height
            height -= 1
        return height

    async def _scan_to(self, work: _ScanWork, stop: int, tip: int) -> None:
        height = work.height + 1
        while height <= stop:
            block = await self.backend.get_block(height)
            expected_prev = work.block_hashes.get(height - 1)
            if expected_prev is not None and block.prev_hash and block.prev_hash != expected_prev:
                fork = await self._find_fork(work, tip)
                logger.warning(f"Chain reorg detected at height {height}, rewinding to {fork}")
                work.rewind(fork)
                height = fork + 1
                continue
            self._apply_block(work, block)
            height += 1

    async def _detect_reorg(self, work: _ScanWork, tip: int) -> None:
        if work.height == 0 or not work.block_hashes:
            return
        fork = await self._find_fork(work, tip)
        if fork < work.height:
            logger.warning(f"Chain reorg detected, rewinding from {work.height} to {fork}")
            work.rewind(fork)

    def _commit(self, work: _ScanWork) -> None:
        """Swap in the scanned view, then publish its effects."""
        self._view = work.to_view(self._view)
        for height, block_hash, updates in work.updates:
            self._hub.publish_block(height, block_hash, updates)

        for pending in self._pending.values():
            if pending.mined_height is not None and pending.mined_height > work.height:
                pending.mined_height = None
        for tx_hash, height in work.mined.items():
            pending = self._pending.get(tx_hash)
            if pending is not None:
                pending.mined_height = height

        self._check_pending()

    def _check_pending(self) -> None:
        view = self._view
        for tx_hash, pending in list(self._pending.items()):
            if pending.mined_height is not None:
                confirmations = view.height - pending.mined_height + 1
                if confirmations < self.settings.confirmations_required:
                    continue
                self._finish_pending(pending)
                logger.info(
                    f"Transaction {tx_hash} mined at {pending.mined_height} "
                    f"({confirmations} confirmation(s))"
                )
                for listener in self._listeners:
                    listener.on_tx_mined(tx_hash, pending.mined_height, confirmations)
            elif pending.expiry_height and view.height >= pending.expiry_height:
                # Cannot be mined above its expiry height
                self._finish_pending(pending)
                logger.warning(f"Transaction {tx_hash} expired at height {pending.expiry_height}")
                for listener in self._listeners:
                    listener.on_tx_expired(tx_hash)

    def _finish_pending(self, pending: PendingBroadcast) -> None:
        with self._lock_for(pending.account_id):
            self._pending.pop(pending.tx_hash, None)
            for outpoint in pending.outpoints:
                if self._local_spends.get(outpoint) == pending.tx_hash:
                    del self._local_spends[outpoint]

    async def _refresh_mempool(self) -> None:
        mempool = await self.backend.get_mempool()
        notes: dict[OutPoint, Note] = {}
        spends: dict[OutPoint, str] = {}
        for tx in mempool:
            for outpoint in tx.spends:
                spends[outpoint] = tx.tx_hash
            for output in tx.outputs:
                account_id = self._owner_of(output.address)
                if account_id is None:
                    continue
                note = Note(
                    tx_hash=tx.tx_hash,
                    output_index=output.output_index,
                    account_id=account_id,
                    address=output.address,
                    value=output.value,
                    memo=output.memo,
                )
                notes[note.outpoint] = note
        self._view = replace(
            self._view,
            mempool_notes=notes,
            mempool_spends=spends,
        )

    async def sync(self) -> int:
        """
        Catch up with the chain tip, then refresh the mempool.

        Blocks are applied in batches of ``scan_batch_size``; each batch is
        swapped in as a whole. A pending rescan (from a backdated import)
        runs first.

        Returns:
            The new scanned height

        Raises:
            NetworkUnavailable: the backend could not be reached
        """
        async with self._get_scan_lock():
            if self._rescan_from is not None:
                start, self._rescan_from = self._rescan_from, None
                await self._rescan_locked(start)

            tip = await self.backend.get_block_height()
            work = _ScanWork(self._view)
            await self._detect_reorg(work, tip)
            if work.height != self._view.height:
                self._commit(work)
                work = _ScanWork(self._view)

            while work.height < tip:
                stop = min(tip, work.height + self.settings.scan_batch_size)
                await self._scan_to(work, stop, tip)
                self._commit(work)
                logger.debug(f"Scanned to height {work.height}/{tip}")
                work = _ScanWork(self._view)

            await self._refresh_mempool()
            return self._view.height

    async def _rescan_locked(self, from_height: int) -> int:
        tip = await self.backend.get_block_height()
        work = _ScanWork(self._view)
        work.rewind(min(max(from_height, 1) - 1, work.height))
        await self._scan_to(work, tip, tip)
        self._commit(work)
        logger.info(f"Rescanned from {from_height} to {work.height}")
        return work.height

    async def rescan(self, from_height: int) -> int:
        """
        Re-derive notes and balances from ``from_height``.

        The new state is built on the side and swapped in once complete, so
        concurrent queries see either the old or the new snapshot.
        """
        async with self._get_scan_lock():
            height = await self._rescan_locked(from_height)
            await self._refresh_mempool()
            return height

    def rewind(self, height: int) -> None:
        """Forget everything above ``height``; the next sync() rescans it."""
        if height >= self._view.height:
            return
        work = _ScanWork(self._view)
        work.rewind(max(height, 0))
        self._commit(work)
        logger.info(f"Rewound ledger to height {self._view.height}")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def prepare_unsigned_tx(
        self,
        account_id: int,
        destination: str,
        amount: int,
        fee: Fee,
        payment_id: str,
        memo: str | None = None,
        min_confirmations: int | None = None,
    ) -> UnsignedTx:
        """
        Select inputs oldest first, build the UnsignedTx and reserve its inputs.

        Change goes back to the account's default address; change at or
        below the dust threshold is added to the fee.

        Raises:
            UnknownAccount: no such account
            InvalidDestination: bad destination address or amount
            InsufficientFunds: unreserved confirmed notes do not cover amount + fee
        """
        account = self._get_account(account_id)
        if amount <= 0 or not self.validate_address(destination, amount):
            raise InvalidDestination(f"Invalid destination {redact(destination)} for {amount}")
        if min_confirmations is None:
            min_confirmations = self.settings.min_confirmations
        # Only mined notes can be spent
        min_confirmations = max(min_confirmations, 1)
        shielded = account.address_type == AddressType.SAPLING

        with self._lock_for(account_id):
            view = self._view
            candidates = sorted(
                (
                    n
                    for n in self._unspent_notes(view, account_id, min_confirmations)
                    if n.outpoint not in self._reserved
                ),
                key=lambda n: (n.height or 0, n.tx_hash, n.output_index),
            )

            selected: list[Note] = []
            total = 0
            fee_amount = fee.resolve(estimate_tx_size(1, 2, shielded))
            for note in candidates:
                selected.append(note)
                total += note.value
                fee_amount = fee.resolve(estimate_tx_size(len(selected), 2, shielded))
                if total >= amount + fee_amount:
                    break
            else:
                raise InsufficientFunds(needed=amount + fee_amount, available=total)

            outputs = [TxOutput(address=destination, amount=amount, memo=memo)]
            change = total - amount - fee_amount
            if change > self.settings.dust_threshold:
                outputs.append(TxOutput(address=account.default_address, amount=change))
            else:
                fee_amount += change

            expiry = view.height + self.settings.expiry_delta if self.settings.expiry_delta else 0
            tx = UnsignedTx(
                payment_id=payment_id,
                account_id=account_id,
                network=NetworkType(self.network),
                inputs=[
                    TxInput(
                        tx_hash=n.tx_hash,
                        output_index=n.output_index,
                        amount=n.value,
                        address=n.address,
                    )
                    for n in selected
                ],
                outputs=outputs,
                fee=fee_amount,
                expiry_height=expiry,
            )

            reservation = Reservation(
                payment_id=payment_id,
                account_id=account_id,
                outpoints=[n.outpoint for n in selected],
            )
            self._reservations[payment_id] = reservation
            for outpoint in reservation.outpoints:
                self._reserved[outpoint] = payment_id

        logger.info(
            f"Built payment {payment_id}: {len(selected)} input(s), "
            f"{amount} to {redact(destination)}, fee {fee_amount}"
        )
        return tx

    def release_reservation(self, payment_id: str) -> bool:
        """Return a payment's reserved inputs to the selectable pool."""
        reservation = self._reservations.get(payment_id)
        if reservation is None:
            return False
        with self._lock_for(reservation.account_id):
            if self._reservations.pop(payment_id, None) is None:
                return False
            for outpoint in reservation.outpoints:
                if self._reserved.get(outpoint) == payment_id:
                    del self._reserved[outpoint]
        logger.debug(f"Released reservation for payment {payment_id}")
        return True

    def list_reservations(self) -> list[Reservation]:
        return sorted(self._reservations.values(), key=lambda r: r.created_at)

    def list_pending_broadcasts(self) -> list[PendingBroadcast]:
        return list(self._pending.values())

    async def broadcast_signed_tx(self, signed_tx: SignedTx) -> str:
        """
        Submit a signed transaction.

        Its inputs are marked spent before the network call so a concurrent
        broadcast of the same inputs fails fast; the marks are undone if the
        network refuses. Resubmitting a transaction the ledger already sees
        spending its inputs (after a timed out broadcast, say) returns its hash
        and tracks it without another network call.

        Raises:
            DoubleSpend: an input is already spent by a broadcast, mempool or mined tx
            RejectedByNetwork: any other rejection
            NetworkUnavailable: transport failure, safe to retry
        """
        tx = signed_tx.tx
        account = self._get_account(tx.account_id)
        outpoints = [inp.outpoint for inp in tx.inputs]
        local_hash = signed_tx.tx_hash

        with self._lock_for(account.account_id):
            view = self._view
            spenders = {op: self._spender(view, op) for op in outpoints}
            conflicts = [
                str(op) for op, spender in spenders.items() if spender not in (None, local_hash)
            ]
            if conflicts:
                raise DoubleSpend(conflicts)
            if all(spender == local_hash for spender in spenders.values()):
                mined_heights = [
                    view.notes[op].spent_height for op in outpoints if op in view.notes
                ]
                mined_height = next((h for h in mined_heights if h is not None), None)
                self._track_broadcast(tx, local_hash, outpoints, mined_height)
                logger.info(f"Payment {tx.payment_id} already seen as {local_hash}")
                return local_hash
            for outpoint in outpoints:
                self._local_spends[outpoint] = local_hash

        try:
            tx_hash = await self.backend.broadcast_transaction(signed_tx.raw.hex()) or local_hash
        except BackendRpcError as e:
            if any(marker in e.message for marker in ALREADY_KNOWN_MARKERS):
                logger.info(f"Transaction {local_hash} already known to the network")
                tx_hash = local_hash
            else:
                self._unmark_spends(account.account_id, outpoints, local_hash)
                if any(marker in e.message for marker in DOUBLE_SPEND_MARKERS):
                    raise DoubleSpend([str(op) for op in outpoints]) from e
                raise RejectedByNetwork(e.code, e.message) from e
        except BaseException:
            self._unmark_spends(account.account_id, outpoints, local_hash)
            raise

        with self._lock_for(account.account_id):
            self._track_broadcast(tx, tx_hash, outpoints)

        logger.info(f"Broadcast payment {tx.payment_id} as {tx_hash}")
        return tx_hash

    def _track_broadcast(
        self,
        tx: UnsignedTx,
        tx_hash: str,
        outpoints: list[OutPoint],
        mined_height: int | None = None,
    ) -> None:
        # Caller holds the account lock
        for outpoint in outpoints:
            self._local_spends[outpoint] = tx_hash
        if tx_hash not in self._pending:
            self._pending[tx_hash] = PendingBroadcast(
                tx_hash=tx_hash,
                payment_id=tx.payment_id,
                account_id=tx.account_id,
                outpoints=outpoints,
                expiry_height=tx.expiry_height,
                mined_height=mined_height,
            )
        reservation = self._reservations.pop(tx.payment_id, None)
        if reservation is not None:
            for outpoint in reservation.outpoints:
                if self._reserved.get(outpoint) == tx.payment_id:
                    del self._reserved[outpoint]

    def _unmark_spends(self, account_id: int, outpoints: list[OutPoint], tx_hash: str) -> None:
        with self._lock_for(account_id):
            for outpoint in outpoints:
                if self._local_spends.get(outpoint) == tx_hash:
                    del self._local_spends[outpoint]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> LedgerState:
        view = self._view
        return LedgerState(
            network=NetworkType(self.network),
            height=view.height,
            block_hashes=dict(view.block_hashes),
            accounts=[a.model_copy(deep=True) for a in self._accounts.values()],
            notes=list(view.notes.values()),
            reservations=list(self._reservations.values()),
            pending_broadcasts=[p.model_copy() for p in self._pending.values()],
            notified_blocks=self._hub.notified_blocks,
            rescan_from=self._rescan_from,
        )

    def restore_state(self, state: LedgerState) -> None:
        """
        Load a state produced by export_state().

        Raises:
            ValueError: the state belongs to another network
        """
        if state.network.value != self.network:
            raise ValueError(f"State is for {state.network.value}, ledger is on {self.network}")

        accounts: dict[int, Account] = {}
        viewing_keys: dict[int, ViewingKey] = {}
        owners: dict[str, int] = {}
        for account in state.accounts:
            accounts[account.account_id] = account.model_copy(deep=True)
            viewing_keys[account.account_id] = decode_viewing_key(account.public_key_package)
            for address in account.addresses:
                owners[address] = account.account_id

        with self._registry_lock:
            self._accounts = accounts
            self._viewing_keys = viewing_keys
            self._account_by_key = {a.public_key_package: i for i, a in accounts.items()}
            self._address_owner = owners
            self._reservations = {r.payment_id: r for r in state.reservations}
            self._reserved = {op: r.payment_id for r in state.reservations for op in r.outpoints}
            self._pending = {p.tx_hash: p.model_copy() for p in state.pending_broadcasts}
            self._local_spends = {
                op: p.tx_hash for p in state.pending_broadcasts for op in p.outpoints
            }
            self._rescan_from = state.rescan_from
            self._hub.restore_notified_blocks(state.notified_blocks)
            self._view = ChainView(
                height=state.height,
                block_hashes=dict(state.block_hashes),
                notes={n.outpoint: n for n in state.notes if n.height is not None},
            )

        logger.info(f"Restored ledger at height {state.height} with {len(accounts)} account(s)")

    async def close(self) -> None:
        await self.backend.close()
