"""
Payment module - x402 verify/settle.

Handles payload normalization, verification and settlement across the
EVM, Solana and Stacks chain families. The engine and HTTP routes live in
``payment.engine`` and ``payment.routes``.
"""

from x402_facilitator.payment.normalize import normalize_payment, normalize_requirements
from x402_facilitator.payment.types import (
    InvalidReason,
    PaymentRequirements,
    SettlementErrorReason,
    SettlementResult,
    VerificationResult,
)

__all__ = [
    "InvalidReason",
    "PaymentRequirements",
    "SettlementErrorReason",
    "SettlementResult",
    "VerificationResult",
    "normalize_payment",
    "normalize_requirements",
]
