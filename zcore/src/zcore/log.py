"""
Logging setup shared by the ledger and signer services.
"""

from __future__ import annotations

import os
import sys

from loguru import logger

# Environment variable to enable sensitive logging (addresses, tx hashes per input)
# WARNING: never enable on the signer host
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")


def setup_logging(level: str = "INFO") -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def redact(value: str, keep: int = 8) -> str:
    """Shorten an address or hash for logs unless sensitive logging is enabled."""
    if SENSITIVE_LOGGING or len(value) <= keep:
        return value
    return f"{value[:keep]}..."
