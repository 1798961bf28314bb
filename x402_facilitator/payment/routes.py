"""
Payment API Routes for the x402 facilitator.

Endpoints for payment verification, settlement, and supported kinds.
"""

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from x402_facilitator.payment.engine import FacilitatorEngine

router = APIRouter(tags=["payment"])


class PaymentRequest(BaseModel):
    """Request body for /verify and /settle."""

    model_config = ConfigDict(populate_by_name=True)

    x402_version: Optional[int] = Field(None, alias="x402Version")
    payment_payload: Union[str, Dict[str, Any]] = Field(..., alias="paymentPayload")
    payment_requirements: Dict[str, Any] = Field(..., alias="paymentRequirements")


class VerifyPaymentResponse(BaseModel):
    """Response from payment verification."""

    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(..., alias="isValid")
    invalid_reason: Optional[str] = Field(None, alias="invalidReason")
    payer: Optional[str] = None
    details: Optional[str] = None


class SettlePaymentResponse(BaseModel):
    """Response from payment settlement."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    transaction: str
    network: str
    payer: str
    error_reason: Optional[str] = Field(None, alias="errorReason")
    error_message: Optional[str] = Field(None, alias="errorMessage")


class SupportedKind(BaseModel):
    x402_version: int = Field(..., alias="x402Version")
    scheme: str
    network: str
    extra: Optional[Dict[str, Any]] = None


class SupportedResponse(BaseModel):
    kinds: List[SupportedKind]
    signers: Dict[str, List[str]]
    extensions: List[Any]


def get_engine(request: Request) -> FacilitatorEngine:
    """Return the app's engine.

    Raises:
        HTTPException: If the facilitator service is not configured
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Payment facilitator service not configured")
    return engine


@router.post("/verify", response_model=VerifyPaymentResponse, response_model_exclude_none=True, response_model_by_alias=True)
async def verify_payment(body: PaymentRequest, request: Request) -> Dict[str, Any]:
    """Verify a payment payload against payment requirements.

    Args:
        body: Payment payload, requirements and optional x402Version

    Returns:
        ``{isValid, invalidReason?, payer?, details?}``

    Raises:
        HTTPException: If facilitator service is not configured
    """
    engine = get_engine(request)
    result = await engine.verify(body.payment_payload, body.payment_requirements, body.x402_version)
    return result.to_response()


@router.post("/settle", response_model=SettlePaymentResponse, response_model_exclude_none=True, response_model_by_alias=True)
async def settle_payment(body: PaymentRequest, request: Request) -> Dict[str, Any]:
    """Settle a payment on-chain and wait for confirmation.

    Args:
        body: Payment payload, requirements and optional x402Version

    Returns:
        ``{success, transaction, network, payer, errorReason?, errorMessage?}``

    Raises:
        HTTPException: If facilitator service is not configured
    """
    engine = get_engine(request)
    result = await engine.settle(body.payment_payload, body.payment_requirements, x402_version=body.x402_version)
    return result.to_response()


@router.get("/supported", response_model=SupportedResponse, response_model_exclude_none=True, response_model_by_alias=True)
async def get_supported(request: Request) -> Dict[str, Any]:
    """List supported payment kinds and facilitator signer addresses.

    Raises:
        HTTPException: If facilitator service is not configured
    """
    return get_engine(request).supported()
