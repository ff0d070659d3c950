"""
Error kinds shared by the online ledger and the offline signer.

Every error carries a coarse ``reason`` that can be surfaced to end users.
The concrete exception class is the detailed kind kept for diagnostics.
"""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Coarse-grained, user-visible failure reasons."""

    INVALID_REQUEST = "invalid_request"
    INVALID_DESTINATION = "invalid_destination"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SIGNING_FAILED = "signing_failed"
    REJECTED = "rejected"
    NETWORK_UNAVAILABLE = "network_unavailable"
    EXPIRED = "expired"


class CustodyError(Exception):
    """Base class for all custody errors."""

    reason: FailureReason = FailureReason.INVALID_REQUEST


class InvalidAddressType(CustodyError):
    pass


class EntropyExhausted(CustodyError):
    pass


class InvalidEntropy(CustodyError):
    pass


class KeyMismatch(CustodyError):
    """An input is not spendable by the supplied key.

    The message names the offending input, never the key.
    """

    reason = FailureReason.SIGNING_FAILED


class MalformedTx(CustodyError):
    pass


class InvalidKeyPackage(CustodyError):
    """A public key package could not be decoded or does not match its type."""


class SignatureMismatch(CustodyError):
    """A signed transaction does not match what was handed out for signing."""

    reason = FailureReason.SIGNING_FAILED


class InvalidDestination(CustodyError):
    reason = FailureReason.INVALID_DESTINATION


class InsufficientFunds(CustodyError):
    reason = FailureReason.INSUFFICIENT_FUNDS

    def __init__(self, needed: int, available: int):
        super().__init__(f"Insufficient funds: need {needed}, have {available}")
        self.needed = needed
        self.available = available


class DoubleSpend(CustodyError):
    reason = FailureReason.REJECTED

    def __init__(self, outpoints: list[str]):
        super().__init__(f"Inputs already spent: {', '.join(outpoints)}")
        self.outpoints = outpoints


class RejectedByNetwork(CustodyError):
    reason = FailureReason.REJECTED

    def __init__(self, code: int | str, message: str):
        super().__init__(f"Rejected by network ({code}): {message}")
        self.code = code
        self.message = message


class NetworkUnavailable(CustodyError):
    """Transient transport failure. Callers retry with backoff."""

    reason = FailureReason.NETWORK_UNAVAILABLE


class UnknownAccount(CustodyError):
    pass


class UnknownPayment(CustodyError):
    pass


class InvalidPaymentState(CustodyError):
    pass


class PaymentFailed(CustodyError):
    """Single coarse failure surfaced per payment attempt.

    The detailed error is chained as ``__cause__``.
    """

    def __init__(self, payment_id: str, reason: FailureReason):
        super().__init__(f"Payment {payment_id} failed: {reason.value}")
        self.payment_id = payment_id
        self.reason = reason
