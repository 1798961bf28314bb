"""
Refund claim API routes.

- POST /claims/report-failure: resource servers report a failed paid request
- GET /claims, POST /claims/{id}/approve|reject|payout: operator review
- PUT /claims/refund-wallets: operator registers an encrypted refund wallet key

Claim errors (ClaimError subclasses) are rendered by the app's exception
handler using their ``status_code`` and ``code``.
"""

import hmac
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from x402_facilitator.claims.models import ClaimStatus
from x402_facilitator.claims.service import ClaimsStateMachine

router = APIRouter(prefix="/claims", tags=["claims"])


class ReportFailureRequest(BaseModel):
    """Request body for a failure report."""

    model_config = ConfigDict(populate_by_name=True)

    original_tx_hash: str = Field(..., alias="originalTxHash", min_length=1)
    user_wallet: str = Field(..., alias="userWallet", min_length=1)
    amount: str
    asset: str
    network: str
    reason: Optional[str] = None


class ReportFailureResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    claim_id: str = Field(..., alias="claimId")
    status: str


class ClaimListResponse(BaseModel):
    claims: List[Dict[str, Any]]


def get_claims(request: Request) -> ClaimsStateMachine:
    claims = getattr(request.app.state, "claims", None)
    if claims is None:
        raise HTTPException(status_code=503, detail="Claims service not configured")
    return claims


def require_admin(request: Request, token: Optional[str]) -> None:
    """Check the operator token.

    Raises:
        HTTPException: 503 if no admin token is configured, 401 if it does not match
    """
    expected = getattr(request.app.state, "admin_token", None)
    if not expected:
        raise HTTPException(status_code=503, detail="Claim administration is not configured")
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/report-failure", status_code=201, response_model=ReportFailureResponse, response_model_by_alias=True)
async def report_failure(
    body: ReportFailureRequest,
    request: Request,
    x_server_api_key: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """Report a failed request that was paid for, opening a refund claim.

    Raises:
        ClaimUnauthorizedError: Missing or unknown API key (401)
        RefundsDisabledError: Refunds switched off for the owner (403)
        ClaimValidationError: Invalid amount / network / no refund wallet (400)
        DuplicateClaimError: A claim already exists for the transaction (409)
    """
    claims = get_claims(request)
    claim = await claims.report_failure(
        api_key=x_server_api_key or "",
        original_tx_hash=body.original_tx_hash,
        user_wallet=body.user_wallet,
        amount=body.amount,
        asset=body.asset,
        network=body.network,
        reason=body.reason,
    )
    return {"success": True, "claimId": claim.id, "status": claim.status.value}


@router.get("", response_model=ClaimListResponse)
async def list_claims(
    request: Request,
    resource_owner_id: Optional[str] = None,
    status: Optional[ClaimStatus] = None,
    x_admin_token: Optional[str] = Header(None),
) -> Dict[str, Any]:
    require_admin(request, x_admin_token)
    claims = await get_claims(request).list_claims(resource_owner_id, status)
    return {"claims": [c.to_dict() for c in claims]}


@router.post("/{claim_id}/approve")
async def approve_claim(claim_id: str, request: Request, x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
    require_admin(request, x_admin_token)
    claim = await get_claims(request).approve(claim_id)
    return {"success": True, "claim": claim.to_dict()}


@router.post("/{claim_id}/reject")
async def reject_claim(claim_id: str, request: Request, x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
    require_admin(request, x_admin_token)
    claim = await get_claims(request).reject(claim_id)
    return {"success": True, "claim": claim.to_dict()}


@router.post("/{claim_id}/payout")
async def payout_claim(claim_id: str, request: Request, x_admin_token: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Pay out an approved claim; responds only after the transfer confirms.

    Raises:
        InvalidClaimTransitionError: Claim is not approved (409)
        PayoutFailedError: Transfer did not confirm (502); claim stays approved
    """
    require_admin(request, x_admin_token)
    claim = await get_claims(request).execute_payout(claim_id)
    return {"success": True, "claim": claim.to_dict(), "payoutTxHash": claim.payout_tx_hash}


class RefundWalletRequest(BaseModel):
    """Operator request registering a refund wallet key."""

    model_config = ConfigDict(populate_by_name=True)

    resource_owner_id: str = Field(..., alias="resourceOwnerId", min_length=1)
    network: str
    private_key: str = Field(..., alias="privateKey", min_length=1)


@router.put("/refund-wallets")
async def register_refund_wallet(
    body: RefundWalletRequest, request: Request, x_admin_token: Optional[str] = Header(None)
) -> Dict[str, Any]:
    """Store (or replace) an owner's refund wallet; the key is kept encrypted."""
    require_admin(request, x_admin_token)
    wallet = await get_claims(request).register_refund_wallet(body.resource_owner_id, body.network, body.private_key)
    return {"success": True, "resourceOwnerId": wallet.resource_owner_id, "network": wallet.network, "address": wallet.address}
