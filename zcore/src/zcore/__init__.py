"""
zcore - Core library for the split-trust custody services

Provides the value objects that cross the air gap, address and key codecs,
and the spend authorization signature scheme.
"""

__version__ = "0.3.0"

from zcore.errors import (
    CustodyError,
    DoubleSpend,
    EntropyExhausted,
    FailureReason,
    InsufficientFunds,
    InvalidAddressType,
    InvalidDestination,
    InvalidEntropy,
    InvalidKeyPackage,
    InvalidPaymentState,
    KeyMismatch,
    MalformedTx,
    NetworkUnavailable,
    PaymentFailed,
    RejectedByNetwork,
    SignatureMismatch,
    UnknownAccount,
    UnknownPayment,
)
from zcore.models import (
    AddressType,
    ConfirmationSpeed,
    Entropy,
    Fee,
    FixedFee,
    InputSignature,
    KeyPackage,
    NetworkType,
    OutPoint,
    PerKbFee,
    PublicKeyPackage,
    SignedTx,
    TxInput,
    TxOutput,
    UnsignedTx,
)

__all__ = [
    "AddressType",
    "ConfirmationSpeed",
    "CustodyError",
    "DoubleSpend",
    "Entropy",
    "EntropyExhausted",
    "FailureReason",
    "Fee",
    "FixedFee",
    "InputSignature",
    "InsufficientFunds",
    "InvalidAddressType",
    "InvalidDestination",
    "InvalidEntropy",
    "InvalidKeyPackage",
    "InvalidPaymentState",
    "KeyMismatch",
    "KeyPackage",
    "MalformedTx",
    "NetworkType",
    "NetworkUnavailable",
    "OutPoint",
    "PaymentFailed",
    "PerKbFee",
    "PublicKeyPackage",
    "RejectedByNetwork",
    "SignatureMismatch",
    "SignedTx",
    "TxInput",
    "TxOutput",
    "UnknownAccount",
    "UnknownPayment",
    "UnsignedTx",
    "__version__",
]
