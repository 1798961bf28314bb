"""
Settlement adapter interface.

One adapter object per ChainFamily; the engine and the claims state
machine dispatch to it after NetworkRegistry resolves the family.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from x402_facilitator.networks.registry import ChainConfig, ChainFamily
from x402_facilitator.payment.types import (
    CanonicalPayment,
    CanonicalRequirements,
    SettlementResult,
    VerificationResult,
)


@dataclass(frozen=True)
class PayoutRequest:
    """A facilitator-initiated transfer out of a refund wallet."""

    recipient: str
    amount: int
    asset: str
    reference: str = ""  # claim id, used in logs and memos


class SettlementAdapter(ABC):
    """Verify and settle payments for one chain family."""

    family: ChainFamily

    @abstractmethod
    async def verify(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
    ) -> VerificationResult:
        """Check a payment against requirements without side effects."""

    @abstractmethod
    async def settle(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
        signing_key: str,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Execute a verified payment on-chain and wait for confirmation."""

    @abstractmethod
    async def transfer(
        self,
        request: PayoutRequest,
        chain: ChainConfig,
        source_key: str,
        fee_payer_key: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Send ``request.amount`` of ``request.asset`` from the wallet of ``source_key``."""

    @abstractmethod
    def signer_address(self, signing_key: str, chain: ChainConfig) -> str:
        """Public address of a signing key on ``chain``."""

    async def aclose(self) -> None:
        """Release network resources."""
