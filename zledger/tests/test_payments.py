"""
Tests for the payment lifecycle.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from chain_fakes import FakeChain
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
    UnknownAccount,
    UnknownPayment,
)
from zcore.keys import decode_viewing_key
from zcore.models import FixedFee, InputSignature, KeyPackage, SignedTx
from zsigner.signer import OfflineSigner

from zledger.backends.base import BackendRpcError
from zledger.config import LedgerSettings
from zledger.ledger import OnlineLedger
from zledger.payments import PaymentOrchestrator, PaymentState

HAPPY_PATH = [
    PaymentState.REQUESTED,
    PaymentState.VALIDATED,
    PaymentState.BUILT,
    PaymentState.AWAITING_SIGNATURE,
    PaymentState.SIGNED,
    PaymentState.BROADCAST,
    PaymentState.CONFIRMED,
]


@pytest_asyncio.fixture
async def funded(
    chain: FakeChain, ledger: OnlineLedger, transparent_account: KeyPackage
) -> int:
    """Account id of the transparent account holding one 100000 zat note."""
    account_id = ledger.import_public_key_package(transparent_account.public_package())
    chain.mine(chain.payment_tx(transparent_account.address, 100_000))
    await ledger.sync()
    return account_id


class TestRequestPayment:
    """Tests for request_payment."""

    @pytest.mark.asyncio
    async def test_builds_and_awaits_signature(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)

        assert unsigned.fee == 1_000
        assert [o.amount for o in unsigned.outputs] == [40_000, 59_000]
        assert unsigned.outputs[1].address == transparent_account.address

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.AWAITING_SIGNATURE
        assert payment.history == HAPPY_PATH[:4]
        assert payment.fee == 1_000
        assert [r.payment_id for r in ledger.list_reservations()] == [unsigned.payment_id]

    @pytest.mark.asyncio
    async def test_transparent_fee_estimate(
        self, orchestrator: PaymentOrchestrator, destination: str, funded: int
    ) -> None:
        # No node estimate: fallback of 1000 zat/kB over 226 bytes
        unsigned = await orchestrator.request_payment(funded, destination, 40_000)
        assert unsigned.fee == 226

    @pytest.mark.asyncio
    async def test_sapling_fee_estimate(
        self,
        chain: FakeChain,
        ledger: OnlineLedger,
        orchestrator: PaymentOrchestrator,
        sapling_account: KeyPackage,
        destination: str,
    ) -> None:
        account_id = ledger.import_public_key_package(sapling_account.public_package())
        chain.mine(
            chain.payment_tx(sapling_account.address, 100_000),
            chain.payment_tx(sapling_account.address, 100_000),
        )
        await ledger.sync()

        unsigned = await orchestrator.request_payment(account_id, destination, 40_000)
        assert unsigned.fee == 2_000

        fast = await orchestrator.request_payment(account_id, destination, 10_000, speed="fast")
        assert fast.fee == 4_000

    @pytest.mark.asyncio
    async def test_memo(
        self, orchestrator: PaymentOrchestrator, sapling_account: KeyPackage, funded: int
    ) -> None:
        unsigned = await orchestrator.request_payment(
            funded, sapling_account.address, 40_000, fee=1_000, memo="invoice 42"
        )
        assert unsigned.outputs[0].memo == "invoice 42"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address,amount", [("t1nope", 10_000), (None, 0), (None, -5)])
    async def test_invalid_destination_leaves_no_record(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        destination: str,
        funded: int,
        address: str | None,
        amount: int,
    ) -> None:
        with pytest.raises(InvalidDestination):
            await orchestrator.request_payment(funded, address or destination, amount, fee=1_000)
        assert orchestrator.list_pending_payments() == []
        assert ledger.list_reservations() == []

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_record(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        destination: str,
        funded: int,
    ) -> None:
        with pytest.raises(InsufficientFunds) as exc_info:
            await orchestrator.request_payment(funded, destination, 99_500, fee=1_000)
        assert exc_info.value.needed == 100_500
        assert orchestrator.list_pending_payments() == []
        assert ledger.list_reservations() == []

    @pytest.mark.asyncio
    async def test_zero_conf_does_not_spend_mempool_notes(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        transparent_account: KeyPackage,
        destination: str,
    ) -> None:
        account_id = ledger.import_public_key_package(transparent_account.public_package())
        chain.mempool.append(chain.payment_tx(transparent_account.address, 100_000))
        await ledger.sync()

        with pytest.raises(InsufficientFunds) as exc_info:
            await orchestrator.request_payment(
                account_id, destination, 40_000, fee=1_000, min_confirmations=0
            )
        assert exc_info.value.available == 0
        assert orchestrator.list_pending_payments() == []
        assert ledger.list_reservations() == []

    @pytest.mark.asyncio
    async def test_reserved_funds_not_double_booked(
        self, orchestrator: PaymentOrchestrator, destination: str, funded: int
    ) -> None:
        await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        with pytest.raises(InsufficientFunds):
            await orchestrator.request_payment(funded, destination, 1_000, fee=1_000)

    @pytest.mark.asyncio
    async def test_unknown_account(
        self, orchestrator: PaymentOrchestrator, destination: str
    ) -> None:
        with pytest.raises(UnknownAccount):
            await orchestrator.request_payment(3, destination, 1_000, fee=1_000)


class TestCancel:
    """Tests for cancel_unsigned_tx."""

    @pytest.mark.asyncio
    async def test_cancel_releases_inputs(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        assert ledger.get_spendable_balance(funded) == 0

        orchestrator.cancel_unsigned_tx(unsigned.payment_id)

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.CANCELED
        assert payment.failure_reason is None
        assert ledger.get_spendable_balance(funded) == 100_000
        assert orchestrator.list_pending_payments() == []

    @pytest.mark.asyncio
    async def test_cancel_twice_is_no_op(
        self, orchestrator: PaymentOrchestrator, destination: str, funded: int
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        orchestrator.cancel_unsigned_tx(unsigned.payment_id)
        orchestrator.cancel_unsigned_tx(unsigned.payment_id)
        history = orchestrator.get_payment(unsigned.payment_id).history
        assert history.count(PaymentState.CANCELED) == 1

    def test_cancel_unknown_is_no_op(self, orchestrator: PaymentOrchestrator) -> None:
        orchestrator.cancel_unsigned_tx("0" * 32)

    @pytest.mark.asyncio
    async def test_cancel_after_broadcast_is_no_op(
        self,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        await orchestrator.submit_signed_tx(signer.sign_tx(unsigned, transparent_account.private_key))

        orchestrator.cancel_unsigned_tx(unsigned.payment_id)
        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.BROADCAST

    @pytest.mark.asyncio
    async def test_submit_after_cancel(
        self,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        orchestrator.cancel_unsigned_tx(unsigned.payment_id)

        with pytest.raises(InvalidPaymentState):
            await orchestrator.submit_signed_tx(signed)


class TestSubmitSignedTx:
    """Tests for submit_signed_tx and confirmation tracking."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)

        # Across the air gap and back as JSON
        signed_json = signer.sign_tx(unsigned.to_json(), transparent_account.private_key).to_json()
        tx_hash = await orchestrator.submit_signed_tx(signed_json)

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.BROADCAST
        assert payment.tx_hash == tx_hash
        assert ledger.get_address_balance(transparent_account.address) == 0

        chain.mine(chain.mined_tx(SignedTx.from_json(signed_json)))
        await ledger.sync()

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.CONFIRMED
        assert payment.confirmed_height == 2
        assert payment.history == HAPPY_PATH
        assert ledger.get_address_balance(transparent_account.address) == 59_000

    @pytest.mark.asyncio
    async def test_waits_for_required_confirmations(
        self,
        chain: FakeChain,
        settings: LedgerSettings,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
    ) -> None:
        ledger = OnlineLedger(chain, settings.model_copy(update={"confirmations_required": 3}))
        orchestrator = PaymentOrchestrator(ledger)
        account_id = ledger.import_public_key_package(transparent_account.public_package())
        chain.mine(chain.payment_tx(transparent_account.address, 100_000))
        await ledger.sync()

        unsigned = await orchestrator.request_payment(account_id, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        await orchestrator.submit_signed_tx(signed)

        chain.mine(chain.mined_tx(signed))
        chain.mine()
        await ledger.sync()
        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.BROADCAST

        chain.mine()
        await ledger.sync()
        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.CONFIRMED

    @pytest.mark.asyncio
    async def test_resubmit_returns_same_hash(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)

        first = await orchestrator.submit_signed_tx(signed)
        second = await orchestrator.submit_signed_tx(signed)
        assert first == second
        assert len(chain.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_unknown_payment(
        self,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        # Built directly on the ledger, so the orchestrator never saw it
        other = PaymentOrchestrator(ledger)
        unsigned = ledger.prepare_unsigned_tx(
            funded, destination, 40_000, FixedFee(amount=1_000), payment_id="b" * 32
        )
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        with pytest.raises(UnknownPayment):
            await other.submit_signed_tx(signed)

    @pytest.mark.asyncio
    async def test_tampered_tx(
        self,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        redirected = unsigned.model_copy(
            update={
                "outputs": [
                    unsigned.outputs[0].model_copy(update={"address": transparent_account.address}),
                    unsigned.outputs[1],
                ]
            }
        )
        signed = signer.sign_tx(redirected, transparent_account.private_key)

        with pytest.raises(PaymentFailed) as exc_info:
            await orchestrator.submit_signed_tx(signed)
        assert exc_info.value.reason == FailureReason.SIGNING_FAILED
        assert isinstance(exc_info.value.__cause__, SignatureMismatch)
        assert orchestrator.get_payment(unsigned.payment_id).state == (
            PaymentState.AWAITING_SIGNATURE
        )

    @pytest.mark.asyncio
    async def test_foreign_signature(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        other = signer.generate_address("transparent")
        sig = signed.signatures[0]
        other_pubkey = decode_viewing_key(other.public_key).pubkey.hex()
        forged = SignedTx(
            tx=unsigned,
            signatures=[InputSignature(index=0, signature=sig.signature, public_key=other_pubkey)],
        )

        with pytest.raises(PaymentFailed):
            await orchestrator.submit_signed_tx(forged)
        assert chain.broadcasts == []

        # The genuine signature is still accepted afterwards
        assert await orchestrator.submit_signed_tx(signed) == signed.tx_hash

    @pytest.mark.asyncio
    async def test_retries_transient_failures(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
        unavailable: NetworkUnavailable,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        chain.broadcast_errors.extend([unavailable, unavailable])

        assert await orchestrator.submit_signed_tx(signed) == signed.tx_hash
        assert len(chain.broadcasts) == 1

    @pytest.mark.asyncio
    async def test_gives_up_then_resubmits(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
        unavailable: NetworkUnavailable,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        chain.broadcast_errors.extend([unavailable] * 3)

        with pytest.raises(PaymentFailed) as exc_info:
            await orchestrator.submit_signed_tx(signed)
        assert exc_info.value.reason == FailureReason.NETWORK_UNAVAILABLE

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.AWAITING_SIGNATURE
        assert ledger.get_spendable_balance(funded) == 0

        assert await orchestrator.submit_signed_tx(signed) == signed.tx_hash
        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.BROADCAST

    @pytest.mark.asyncio
    async def test_resubmit_after_timeout_tx_in_mempool(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
        unavailable: NetworkUnavailable,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        # The node took the tx every time, but no reply got back
        chain.mempool.append(chain.mined_tx(signed))
        chain.broadcast_errors.extend([unavailable] * 3)

        with pytest.raises(PaymentFailed):
            await orchestrator.submit_signed_tx(signed)
        assert orchestrator.get_payment(unsigned.payment_id).state == (
            PaymentState.AWAITING_SIGNATURE
        )
        await ledger.sync()

        assert await orchestrator.submit_signed_tx(signed) == signed.tx_hash
        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.BROADCAST
        assert ledger.list_reservations() == []

        chain.mine(*chain.mempool)
        await ledger.sync()
        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.CONFIRMED
        assert payment.tx_hash == signed.tx_hash

    @pytest.mark.asyncio
    async def test_double_spend_cancels(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        # Someone spent the same note behind the orchestrator's back
        conflicting = signer.sign_tx(
            unsigned.model_copy(update={"payment_id": "other-payment"}),
            transparent_account.private_key,
        )
        await ledger.broadcast_signed_tx(conflicting)

        with pytest.raises(PaymentFailed) as exc_info:
            await orchestrator.submit_signed_tx(signed)
        assert exc_info.value.reason == FailureReason.REJECTED
        assert isinstance(exc_info.value.__cause__, DoubleSpend)

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.CANCELED
        assert payment.failure_reason == FailureReason.REJECTED

    @pytest.mark.asyncio
    async def test_rejection_cancels(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        signed = signer.sign_tx(unsigned, transparent_account.private_key)
        chain.broadcast_errors.append(BackendRpcError(-26, "dust"))

        with pytest.raises(PaymentFailed) as exc_info:
            await orchestrator.submit_signed_tx(signed)
        cause = exc_info.value.__cause__
        assert isinstance(cause, RejectedByNetwork)
        assert cause.code == -26

        assert orchestrator.get_payment(unsigned.payment_id).state == PaymentState.CANCELED
        assert ledger.get_spendable_balance(funded) == 100_000

    @pytest.mark.asyncio
    async def test_expiry_cancels(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        signer: OfflineSigner,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        unsigned = await orchestrator.request_payment(funded, destination, 40_000, fee=1_000)
        await orchestrator.submit_signed_tx(signer.sign_tx(unsigned, transparent_account.private_key))
        assert ledger.get_address_balance(transparent_account.address) == 0

        chain.mine_empty(unsigned.expiry_height - chain.tip)
        await ledger.sync()

        payment = orchestrator.get_payment(unsigned.payment_id)
        assert payment.state == PaymentState.CANCELED
        assert payment.failure_reason == FailureReason.EXPIRED
        assert ledger.get_address_balance(transparent_account.address) == 100_000


class TestPendingPayments:
    """Tests for list_pending_payments."""

    @pytest.mark.asyncio
    async def test_oldest_first_without_finished(
        self,
        chain: FakeChain,
        orchestrator: PaymentOrchestrator,
        ledger: OnlineLedger,
        transparent_account: KeyPackage,
        destination: str,
        funded: int,
    ) -> None:
        chain.mine(
            chain.payment_tx(transparent_account.address, 50_000),
            chain.payment_tx(transparent_account.address, 50_000),
        )
        await ledger.sync()

        first = await orchestrator.request_payment(funded, destination, 10_000, fee=1_000)
        second = await orchestrator.request_payment(funded, destination, 20_000, fee=1_000)
        third = await orchestrator.request_payment(funded, destination, 30_000, fee=1_000)
        orchestrator.cancel_unsigned_tx(second.payment_id)

        pending = orchestrator.list_pending_payments()
        assert [p.payment_id for p in pending] == [first.payment_id, third.payment_id]
        assert all(p.state == PaymentState.AWAITING_SIGNATURE for p in pending)
