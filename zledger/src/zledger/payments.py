"""
Payment lifecycle.

REQUESTED -> VALIDATED -> BUILT -> AWAITING_SIGNATURE -> SIGNED -> BROADCAST -> CONFIRMED,
with CANCELED as the terminal failure state.

A payment record only exists once its UnsignedTx has been built; a request
that fails validation leaves nothing behind. The SIGNED -> CONFIRMED leg is
driven by the ledger's scanner through the TxStatusListener callbacks.
"""

from __future__ import annotations

import asyncio
import random
import threading
import uuid
from datetime import UTC, datetime
from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field
from zcore.errors import (
    DoubleSpend,
    FailureReason,
    InsufficientFunds,
    InvalidDestination,
    InvalidPaymentState,
    NetworkUnavailable,
    PaymentFailed,
    RejectedByNetwork,
    SignatureMismatch,
    UnknownPayment,
)
from zcore.log import redact
from zcore.models import AddressType, ConfirmationSpeed, Fee, FixedFee, SignedTx, UnsignedTx
from zcore.signing import verify_signed_tx

from zledger.fees import estimate_tx_size
from zledger.ledger import OnlineLedger


class PaymentState(str, Enum):
    REQUESTED = "requested"
    VALIDATED = "validated"
    BUILT = "built"
    AWAITING_SIGNATURE = "awaiting_signature"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"


# States from which nothing further happens
TERMINAL_STATES = frozenset({PaymentState.CONFIRMED, PaymentState.CANCELED})


class Payment(BaseModel):
    """One payment attempt and its progress."""

    payment_id: str
    account_id: int
    destination: str
    amount: int
    unsigned_tx: UnsignedTx
    state: PaymentState = PaymentState.REQUESTED
    history: list[PaymentState] = Field(default_factory=list)
    tx_hash: str | None = None
    confirmed_height: int | None = None
    failure_reason: FailureReason | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def fee(self) -> int:
        return self.unsigned_tx.fee


class PaymentOrchestrator:
    """
    Drives payments from request to confirmation on top of an OnlineLedger.

    The orchestrator never signs: it hands the UnsignedTx to the caller and
    later accepts the SignedTx that came back across the air gap.
    """

    def __init__(
        self,
        ledger: OnlineLedger,
        broadcast_retries: int | None = None,
        retry_base_delay: float | None = None,
    ):
        self.ledger = ledger
        self.broadcast_retries = (
            broadcast_retries
            if broadcast_retries is not None
            else ledger.settings.broadcast_retries
        )
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else ledger.settings.retry_base_delay
        )
        self._payments: dict[str, Payment] = {}
        self._by_tx_hash: dict[str, str] = {}
        self._lock = threading.Lock()
        ledger.add_tx_listener(self)

    def _transition(self, payment: Payment, state: PaymentState) -> None:
        previous = payment.state
        payment.state = state
        payment.history.append(state)
        payment.updated_at = datetime.now(UTC)
        logger.info(f"Payment {payment.payment_id}: {previous.value} -> {state.value}")

    def _get(self, payment_id: str) -> Payment:
        payment = self._payments.get(payment_id)
        if payment is None:
            raise UnknownPayment(f"Unknown payment {payment_id}")
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        """Snapshot of a payment record."""
        return self._get(payment_id).model_copy(deep=True)

    def list_pending_payments(self) -> list[Payment]:
        """Payments that are neither confirmed nor canceled, oldest first."""
        pending = [p for p in self._payments.values() if p.state not in TERMINAL_STATES]
        return [p.model_copy(deep=True) for p in sorted(pending, key=lambda p: p.created_at)]

    async def request_payment(
        self,
        account_id: int,
        destination: str,
        amount: int,
        fee: Fee | int | None = None,
        speed: ConfirmationSpeed | str = ConfirmationSpeed.NORMAL,
        memo: str | None = None,
        min_confirmations: int | None = None,
    ) -> UnsignedTx:
        """
        Validate, reserve funds and build the UnsignedTx for a payment.

        Args:
            account_id: Source account
            destination: Destination address
            amount: Amount in zatoshi
            fee: Explicit fee (int means a fixed fee); estimated from ``speed`` if None
            speed: Confirmation speed tier used for estimation
            memo: Optional memo for the destination output
            min_confirmations: Minimum confirmations of selected inputs

        Returns:
            The UnsignedTx to relay to the offline signer

        Raises:
            InvalidDestination: destination or amount invalid
            InsufficientFunds: not enough unreserved confirmed balance
            UnknownAccount: no such account
        """
        payment_id = uuid.uuid4().hex
        logger.info(f"Payment {payment_id} requested: {amount} to {redact(destination)}")

        account = self.ledger.get_account(account_id)
        if amount <= 0 or not self.ledger.validate_address(destination, amount):
            raise InvalidDestination(f"Invalid destination {redact(destination)} for {amount}")
        shielded = account.address_type == AddressType.SAPLING

        if fee is None:
            fee = await self.ledger.estimate_fee(speed, shielded)
        elif isinstance(fee, int):
            fee = FixedFee(amount=fee)

        # Validated: quick balance check before touching reservations
        needed = amount + fee.resolve(estimate_tx_size(1, 2, shielded))
        available = self.ledger.get_spendable_balance(account_id, min_confirmations)
        if available < needed:
            raise InsufficientFunds(needed=needed, available=available)

        unsigned_tx = self.ledger.prepare_unsigned_tx(
            account_id,
            destination,
            amount,
            fee,
            payment_id=payment_id,
            memo=memo,
            min_confirmations=min_confirmations,
        )

        payment = Payment(
            payment_id=payment_id,
            account_id=account_id,
            destination=destination,
            amount=amount,
            unsigned_tx=unsigned_tx,
            history=[PaymentState.REQUESTED],
        )
        self._transition(payment, PaymentState.VALIDATED)
        self._transition(payment, PaymentState.BUILT)
        self._transition(payment, PaymentState.AWAITING_SIGNATURE)
        with self._lock:
            self._payments[payment_id] = payment
        return unsigned_tx

    def cancel_unsigned_tx(self, payment_id: str) -> None:
        """
        Cancel a payment awaiting its signature and release its inputs.

        Cancelling a payment that is already canceled, signed, broadcast,
        confirmed or unknown is a no-op.
        """
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                logger.warning(f"Cancel for unknown payment {payment_id} ignored")
                return
            if payment.state != PaymentState.AWAITING_SIGNATURE:
                logger.debug(f"Payment {payment_id} is {payment.state.value}, cancel ignored")
                return
            self._transition(payment, PaymentState.CANCELED)

        self.ledger.release_reservation(payment_id)

    def _check_signed_tx(self, payment: Payment, signed_tx: SignedTx) -> None:
        if signed_tx.tx.preimage() != payment.unsigned_tx.preimage():
            raise SignatureMismatch(
                f"Signed transaction for {payment.payment_id} differs from the one built"
            )
        viewing_key = self.ledger.get_viewing_key(payment.account_id)
        if not verify_signed_tx(signed_tx, viewing_key.pubkey):
            raise SignatureMismatch(f"Signatures for {payment.payment_id} do not verify")

    async def _broadcast_with_retry(self, signed_tx: SignedTx) -> str:
        for attempt in range(self.broadcast_retries):
            try:
                return await self.ledger.broadcast_signed_tx(signed_tx)
            except NetworkUnavailable:
                if attempt == self.broadcast_retries - 1:
                    raise
                delay = self.retry_base_delay * (2**attempt) + random.uniform(
                    0, self.retry_base_delay
                )
                logger.warning(
                    f"Broadcast of {signed_tx.payment_id} failed, retrying in {delay:.2f}s "
                    f"(attempt {attempt + 1}/{self.broadcast_retries})"
                )
                await asyncio.sleep(delay)
        raise NetworkUnavailable("No broadcast attempts configured")

    async def submit_signed_tx(self, signed_tx: SignedTx | str) -> str:
        """
        Accept a SignedTx from the signer and broadcast it.

        Resubmitting the SignedTx of a payment that was already broadcast
        returns the existing transaction hash.

        Returns:
            Transaction hash

        Raises:
            UnknownPayment: no payment with this payment_id
            InvalidPaymentState: payment is canceled or already being broadcast
            PaymentFailed: signature check or broadcast failed; the detailed
                error is chained as __cause__
        """
        if isinstance(signed_tx, str):
            signed_tx = SignedTx.from_json(signed_tx)
        payment_id = signed_tx.payment_id

        with self._lock:
            payment = self._get(payment_id)
            if payment.state in (PaymentState.BROADCAST, PaymentState.CONFIRMED):
                if payment.tx_hash == signed_tx.tx_hash:
                    logger.info(f"Payment {payment_id} already broadcast as {payment.tx_hash}")
                    return payment.tx_hash
                raise InvalidPaymentState(f"Payment {payment_id} was broadcast with another tx")
            if payment.state != PaymentState.AWAITING_SIGNATURE:
                raise InvalidPaymentState(
                    f"Payment {payment_id} is {payment.state.value}, not awaiting a signature"
                )

            try:
                self._check_signed_tx(payment, signed_tx)
            except SignatureMismatch as e:
                logger.warning(f"Rejected signed transaction for {payment_id}: {e}")
                raise PaymentFailed(payment_id, e.reason) from e

            self._transition(payment, PaymentState.SIGNED)

        try:
            tx_hash = await self._broadcast_with_retry(signed_tx)
        except NetworkUnavailable as e:
            with self._lock:
                self._transition(payment, PaymentState.AWAITING_SIGNATURE)
            logger.error(f"Broadcast of {payment_id} gave up, payment awaits resubmission")
            raise PaymentFailed(payment_id, e.reason) from e
        except (DoubleSpend, RejectedByNetwork) as e:
            with self._lock:
                payment.failure_reason = e.reason
                self._transition(payment, PaymentState.CANCELED)
            self.ledger.release_reservation(payment_id)
            logger.error(f"Broadcast of {payment_id} refused: {e}")
            raise PaymentFailed(payment_id, e.reason) from e

        with self._lock:
            payment.tx_hash = tx_hash
            self._by_tx_hash[tx_hash] = payment_id
            self._transition(payment, PaymentState.BROADCAST)
        return tx_hash

    def on_tx_mined(self, tx_hash: str, height: int, confirmations: int) -> None:
        with self._lock:
            payment_id = self._by_tx_hash.get(tx_hash)
            if payment_id is None:
                return
            payment = self._payments[payment_id]
            if payment.state != PaymentState.BROADCAST:
                return
            payment.confirmed_height = height
            self._transition(payment, PaymentState.CONFIRMED)

    def on_tx_expired(self, tx_hash: str) -> None:
        with self._lock:
            payment_id = self._by_tx_hash.get(tx_hash)
            if payment_id is None:
                return
            payment = self._payments[payment_id]
            if payment.state != PaymentState.BROADCAST:
                return
            payment.failure_reason = FailureReason.EXPIRED
            self._transition(payment, PaymentState.CANCELED)
