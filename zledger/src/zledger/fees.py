"""
Fee quoting.

Transparent transactions pay a per-kB rate taken from the node's estimator.
Shielded transactions pay a flat fee: their size is dominated by the spend
and output descriptions, so a per-kB rate gives no useful signal.
"""

from __future__ import annotations

from loguru import logger
from zcore.models import ConfirmationSpeed, Fee, FixedFee, PerKbFee

from zledger.backends.base import BackendRpcError, ChainBackend

# Confirmation target (blocks) handed to estimatefee per speed tier
SPEED_TARGET_BLOCKS = {
    ConfirmationSpeed.SLOW: 25,
    ConfirmationSpeed.NORMAL: 6,
    ConfirmationSpeed.FAST: 2,
}

# Multiplier applied to the shielded base fee per speed tier
SHIELDED_FEE_MULTIPLIER = {
    ConfirmationSpeed.SLOW: 1,
    ConfirmationSpeed.NORMAL: 2,
    ConfirmationSpeed.FAST: 4,
}

# Serialized size estimates (bytes)
TX_OVERHEAD_SIZE = 10
TRANSPARENT_INPUT_SIZE = 148
TRANSPARENT_OUTPUT_SIZE = 34
SAPLING_SPEND_SIZE = 384
SAPLING_OUTPUT_SIZE = 948


def estimate_tx_size(num_inputs: int, num_outputs: int, shielded: bool = False) -> int:
    """Estimate the serialized size of a transaction in bytes."""
    if shielded:
        return TX_OVERHEAD_SIZE + num_inputs * SAPLING_SPEND_SIZE + num_outputs * SAPLING_OUTPUT_SIZE
    return (
        TX_OVERHEAD_SIZE + num_inputs * TRANSPARENT_INPUT_SIZE + num_outputs * TRANSPARENT_OUTPUT_SIZE
    )


async def estimate_fee(
    backend: ChainBackend,
    speed: ConfirmationSpeed | str,
    shielded: bool,
    shielded_base_fee: int,
    fallback_rate: int,
) -> Fee:
    """
    Quote a fee for the given speed tier and pool.

    Args:
        backend: Chain backend used for the transparent fee rate
        speed: Confirmation speed tier
        shielded: True for Sapling transactions
        shielded_base_fee: Flat fee for the slowest shielded tier
        fallback_rate: zat/kB used when the node has no estimate

    Returns:
        FixedFee for shielded transactions, PerKbFee otherwise

    Raises:
        NetworkUnavailable: the backend could not be reached
    """
    speed = ConfirmationSpeed(speed)

    if shielded:
        return FixedFee(amount=shielded_base_fee * SHIELDED_FEE_MULTIPLIER[speed])

    target = SPEED_TARGET_BLOCKS[speed]
    try:
        rate = await backend.estimate_fee(target)
    except BackendRpcError as e:
        logger.warning(f"Fee estimation failed ({e}), using fallback rate {fallback_rate} zat/kB")
        rate = 0

    if rate <= 0:
        rate = fallback_rate
    return PerKbFee(amount=rate)
