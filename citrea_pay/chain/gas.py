"""
EIP-1559 fee estimation for Citrea transactions.

This module provides:
- Base fee lookup from the latest block, fee history or gas price
- Priority fee (tip) estimation with sane bounds
- FeeQuote: gas limit + fee-per-gas pair, and its escalation for retries
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

from web3 import Web3
from web3.types import Wei

logger = logging.getLogger(__name__)

# Plain value transfer
NATIVE_TRANSFER_GAS = 21000

# Default gas limit for contract calls if estimation fails
DEFAULT_GAS_LIMIT = 300000

# Keeps the tx valid if the base fee rises before inclusion
BASE_FEE_MULTIPLIER = 2

DEFAULT_PRIORITY_FEE_GWEI = 0.01
MIN_PRIORITY_FEE_GWEI = 0.001
MAX_PRIORITY_FEE_GWEI = 10.0


@dataclass(frozen=True)
class FeeQuote:
    """Gas limit and EIP-1559 fee-per-gas values for one transaction."""

    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @property
    def total(self) -> int:
        """Upper bound of the fee paid by the sender, in wei."""
        return self.gas_limit * self.max_fee_per_gas

    def bumped(self, percent: int) -> "FeeQuote":
        """Return a quote with both fee-per-gas values raised by `percent`.

        Integer math rounding up, so a non-zero bump never leaves the fee unchanged.
        """
        def bump(value: int) -> int:
            return value + (value * percent + 99) // 100

        return replace(
            self,
            max_fee_per_gas=bump(self.max_fee_per_gas),
            max_priority_fee_per_gas=bump(self.max_priority_fee_per_gas),
        )

    def as_tx_params(self) -> dict:
        return {
            "gas": self.gas_limit,
            "maxFeePerGas": Wei(self.max_fee_per_gas),
            "maxPriorityFeePerGas": Wei(self.max_priority_fee_per_gas),
        }


class FeeEstimator:
    """
    Fee-per-gas estimation:

        maxFeePerGas = baseFee * multiplier + priorityFee
        maxPriorityFeePerGas = priorityFee
    """

    def __init__(
        self,
        web3: Web3,
        base_fee_multiplier: int = BASE_FEE_MULTIPLIER,
        default_priority_fee_gwei: float = DEFAULT_PRIORITY_FEE_GWEI,
    ) -> None:
        self.web3 = web3
        self.base_fee_multiplier = base_fee_multiplier
        self.default_priority_fee_gwei = default_priority_fee_gwei

    def get_base_fee(self) -> int:
        block = self.web3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is not None:
            return int(base_fee)

        # Pre-London style chains: half the legacy gas price is a fair guess
        gas_price = int(self.web3.eth.gas_price)
        logger.warning(f"Block has no baseFeePerGas, estimating {gas_price // 2} wei from gas_price")
        return gas_price // 2

    def get_priority_fee(self) -> int:
        default_fee = int(self.web3.to_wei(self.default_priority_fee_gwei, "gwei"))
        try:
            fee = int(self.web3.eth.max_priority_fee)
        except Exception as e:
            logger.debug(f"eth_maxPriorityFeePerGas unavailable, using default: {e}")
            return default_fee

        fee_gwei = float(self.web3.from_wei(fee, "gwei"))
        if MIN_PRIORITY_FEE_GWEI <= fee_gwei <= MAX_PRIORITY_FEE_GWEI:
            return fee
        return default_fee

    def quote(self, gas_limit: Optional[int] = None) -> FeeQuote:
        """Estimate fees per gas and combine them with `gas_limit`."""
        base_fee = self.get_base_fee()
        priority_fee = self.get_priority_fee()
        max_fee = base_fee * self.base_fee_multiplier + priority_fee

        quote = FeeQuote(
            gas_limit=gas_limit or DEFAULT_GAS_LIMIT,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
        )
        logger.debug(
            f"Fee quote: baseFee={base_fee} wei, priorityFee={priority_fee} wei, "
            f"maxFeePerGas={max_fee} wei, gasLimit={quote.gas_limit}"
        )
        return quote
