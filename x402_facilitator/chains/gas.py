"""
EIP-1559 gas strategy for facilitator-submitted EVM transactions.

This module provides:
- Base fee lookup from fee history, with a gas-price fallback
- Priority fee (tip) estimation clamped to sane bounds
- maxFeePerGas computation with a safety multiplier
- Legacy gasPrice parameters for chains without EIP-1559
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from web3 import AsyncWeb3
from web3.types import Wei

logger = logging.getLogger(__name__)

# transferWithAuthorization costs ~60-80k gas on USDC
DEFAULT_GAS_LIMIT = 100000

# Safety multiplier for base fee (keeps tx valid if base fee rises)
BASE_FEE_MULTIPLIER = 2.0

DEFAULT_PRIORITY_FEE_GWEI = 0.01
MIN_PRIORITY_FEE_GWEI = 0.0
MAX_PRIORITY_FEE_GWEI = 10.0


@dataclass
class GasParams:
    """Gas parameters for a transaction."""

    gas_limit: int
    max_fee_per_gas: Optional[Wei] = None  # EIP-1559
    max_priority_fee_per_gas: Optional[Wei] = None  # EIP-1559
    gas_price: Optional[Wei] = None  # legacy

    @property
    def max_cost(self) -> int:
        """Upper bound on the fee paid, in wei."""
        price = self.max_fee_per_gas if self.max_fee_per_gas is not None else self.gas_price
        return self.gas_limit * int(price or 0)

    def as_tx_fields(self) -> Dict[str, Any]:
        if self.max_fee_per_gas is not None:
            return {
                "gas": self.gas_limit,
                "maxFeePerGas": self.max_fee_per_gas,
                "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            }
        return {"gas": self.gas_limit, "gasPrice": self.gas_price}


class GasStrategy:
    """
    Computes fee parameters:
    - maxFeePerGas = baseFee * multiplier + priorityFee
    - falls back to legacy gasPrice when no base fee is reported
    """

    def __init__(
        self,
        base_fee_multiplier: float = BASE_FEE_MULTIPLIER,
        default_priority_fee_gwei: float = DEFAULT_PRIORITY_FEE_GWEI,
    ) -> None:
        self.base_fee_multiplier = base_fee_multiplier
        self.default_priority_fee_gwei = default_priority_fee_gwei

    async def get_base_fee(self, w3: AsyncWeb3) -> Optional[Wei]:
        """Latest base fee, or None if the chain does not report one."""
        try:
            fee_history = await w3.eth.fee_history(1, "latest", [])
            base_fees = fee_history.get("baseFeePerGas") if fee_history else None
            if base_fees:
                return Wei(int(base_fees[-1]))
        except Exception as e:
            logger.debug(f"Fee history not available: {e}")
        return None

    async def get_priority_fee(self, w3: AsyncWeb3) -> Wei:
        default_wei = Wei(int(self.default_priority_fee_gwei * 10**9))
        try:
            tip = await w3.eth.max_priority_fee
            tip_gwei = tip / 10**9
            if MIN_PRIORITY_FEE_GWEI <= tip_gwei <= MAX_PRIORITY_FEE_GWEI:
                return Wei(int(tip))
            logger.debug(f"Network priority fee {tip_gwei} gwei out of bounds, using default")
        except Exception as e:
            logger.debug(f"Could not get maxPriorityFeePerGas, using default: {e}")
        return default_wei

    async def calculate(self, w3: AsyncWeb3, gas_limit: int = DEFAULT_GAS_LIMIT) -> GasParams:
        base_fee = await self.get_base_fee(w3)
        if base_fee is None:
            gas_price = Wei(int(await w3.eth.gas_price))
            logger.debug(f"Gas params (legacy): gasPrice={gas_price} wei, gasLimit={gas_limit}")
            return GasParams(gas_limit=gas_limit, gas_price=gas_price)

        priority_fee = await self.get_priority_fee(w3)
        max_fee = Wei(int(base_fee * self.base_fee_multiplier) + priority_fee)
        logger.debug(
            f"Gas params: baseFee={base_fee} wei, priorityFee={priority_fee} wei, "
            f"maxFeePerGas={max_fee} wei, gasLimit={gas_limit}"
        )
        return GasParams(
            gas_limit=gas_limit,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority_fee,
        )
