"""
zsigner - Offline signing service

Derives accounts from a seed and signs UnsignedTx payloads carried across
the air gap. Never performs network I/O.
"""

from zsigner.config import SignerSettings
from zsigner.signer import OfflineSigner

__all__ = ["OfflineSigner", "SignerSettings"]
