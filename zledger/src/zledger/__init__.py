"""
zledger - Online watch-only ledger and payment orchestration

Tracks imported viewing keys against a chain indexer, builds unsigned
transactions for the offline signer and broadcasts what comes back.
"""

from zledger.config import LedgerSettings
from zledger.ledger import OnlineLedger
from zledger.models import Account, AccountUpdate, LedgerState, Note, Reservation, UpdateType
from zledger.notifications import AccountSubscription
from zledger.payments import Payment, PaymentOrchestrator, PaymentState

__all__ = [
    "Account",
    "AccountSubscription",
    "AccountUpdate",
    "LedgerSettings",
    "LedgerState",
    "Note",
    "OnlineLedger",
    "Payment",
    "PaymentOrchestrator",
    "PaymentState",
    "Reservation",
    "UpdateType",
]
