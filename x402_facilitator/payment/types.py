"""
x402 payment types.

Defines:
- Wire models for payment requirements and v1/v2 payment payloads
- Canonical (version-independent) shapes adapters operate on
- Verification / settlement result types and their reason codes
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_UINT_RE = re.compile(r"^\d+$")

SCHEME_EXACT = "exact"
SUPPORTED_SCHEMES = frozenset({SCHEME_EXACT})


# --- Reason codes ----------------------------------------------------------

class InvalidReason(str, Enum):
    """Why a payment failed verification."""
    INVALID_PAYLOAD = "invalid_payload"
    UNSUPPORTED_NETWORK = "unsupported_network"
    NETWORK_MISMATCH = "network_mismatch"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    SCHEME_MISMATCH = "scheme_mismatch"
    INVALID_SIGNATURE = "invalid_signature"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    ASSET_MISMATCH = "asset_mismatch"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    AMOUNT_MISMATCH = "amount_mismatch"
    AUTHORIZATION_NOT_YET_VALID = "authorization_not_yet_valid"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    NONCE_ALREADY_USED = "nonce_already_used"
    INVALID_TRANSACTION = "invalid_transaction"


class SettlementErrorReason(str, Enum):
    """Why a settlement did not succeed (in addition to any InvalidReason)."""
    NOT_CONFIGURED = "not_configured"
    INSUFFICIENT_GAS_FUNDS = "insufficient_gas_funds"
    BROADCAST_FAILED = "broadcast_failed"
    TRANSACTION_REVERTED = "transaction_reverted"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_ABORTED = "transaction_aborted"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    POST_SETTLEMENT_VERIFICATION_FAILED = "post_settlement_verification_failed"


# --- Wire models -----------------------------------------------------------

class PaymentRequirements(BaseModel):
    """Payment requirements as sent by a resource server (v1 or v2 field names)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    scheme: str = Field(..., description="Payment scheme, e.g. 'exact'")
    network: str = Field(..., description="Network name or CAIP-2 id")
    asset: str = Field(..., description="Token contract, mint, or 'STX'")
    pay_to: str = Field(..., alias="payTo", description="Recipient address")
    max_amount_required: Optional[str] = Field(
        None, alias="maxAmountRequired", description="v1 amount in base units"
    )
    amount: Optional[str] = Field(None, description="v2 exact amount in base units")
    resource: str = ""
    description: Optional[str] = None
    mime_type: Optional[str] = Field(None, alias="mimeType")
    max_timeout_seconds: Optional[int] = Field(None, alias="maxTimeoutSeconds")
    output_schema: Optional[Dict[str, Any]] = Field(None, alias="outputSchema")
    extra: Optional[Dict[str, Any]] = None

    @field_validator("max_amount_required", "amount", mode="before")
    @classmethod
    def _check_uint_string(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError("amount must be a base-10 integer string")
        value = str(value)
        if not _UINT_RE.match(value):
            raise ValueError("amount must be a non-negative base-10 integer string")
        return value

    @model_validator(mode="after")
    def _require_amount(self) -> "PaymentRequirements":
        if self.max_amount_required is None and self.amount is None:
            raise ValueError("one of maxAmountRequired or amount is required")
        return self


class PaymentPayloadV1(BaseModel):
    """Flat v1 payment payload."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    x402_version: Literal[1] = Field(1, alias="x402Version")
    scheme: str
    network: str
    payload: Dict[str, Any]


class PaymentPayloadV2(BaseModel):
    """v2 payment payload: the accepted requirements are nested under ``accepted``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    x402_version: Literal[2] = Field(2, alias="x402Version")
    accepted: PaymentRequirements
    payload: Dict[str, Any]
    resource: Optional[Any] = None
    extensions: Optional[Dict[str, Any]] = None


# --- Canonical shapes ------------------------------------------------------

@dataclass(frozen=True)
class CanonicalRequirements:
    """Version-independent payment requirements."""

    scheme: str
    network: str
    asset: str
    pay_to: str
    amount: int
    exact: bool  # v2 'amount' is exact; v1 'maxAmountRequired' is the price to cover
    resource: str = ""
    max_timeout_seconds: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def amount_satisfied(self, value: int) -> bool:
        return value == self.amount if self.exact else value >= self.amount


@dataclass(frozen=True)
class CanonicalPayment:
    """Version-independent payment payload."""

    x402_version: int
    scheme: str
    network: str
    payload: Dict[str, Any]
    extensions: Dict[str, Any] = field(default_factory=dict)


# --- Results ---------------------------------------------------------------

@dataclass
class VerificationResult:
    """Result of payment verification."""

    is_valid: bool
    invalid_reason: Optional[InvalidReason] = None
    payer: Optional[str] = None
    amount: Optional[str] = None
    recipient: Optional[str] = None
    scheme: Optional[str] = None
    network: Optional[str] = None
    details: Optional[str] = None

    @classmethod
    def invalid(cls, reason: InvalidReason, details: Optional[str] = None, **kwargs: Any) -> "VerificationResult":
        return cls(is_valid=False, invalid_reason=reason, details=details, **kwargs)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"isValid": self.is_valid}
        if self.invalid_reason is not None:
            body["invalidReason"] = self.invalid_reason.value
        if self.payer:
            body["payer"] = self.payer
        if self.details:
            body["details"] = self.details
        return body


@dataclass
class SettlementResult:
    """Result of payment settlement (or a refund payout transfer)."""

    success: bool
    network: str
    transaction_hash: str = ""
    payer: Optional[str] = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def failure(
        cls,
        network: str,
        reason: Enum,
        message: Optional[str] = None,
        transaction_hash: str = "",
        payer: Optional[str] = None,
    ) -> "SettlementResult":
        return cls(
            success=False,
            network=network,
            transaction_hash=transaction_hash,
            payer=payer,
            error_reason=reason.value,
            error_message=message,
        )

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "transaction": self.transaction_hash,
            "network": self.network,
            "payer": self.payer or "",
        }
        if self.error_reason:
            body["errorReason"] = self.error_reason
        if self.error_message:
            body["errorMessage"] = self.error_message
        return body
