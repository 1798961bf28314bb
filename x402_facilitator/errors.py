"""
Exception taxonomy for the x402 facilitator.

Verification and settlement failures are returned as result objects
(see ``payment.types``); the exceptions here cover malformed input,
missing configuration, and the refund-claims lifecycle.
"""

from typing import Any, Optional


class FacilitatorError(Exception):
    """Base exception for the facilitator."""


class PaymentValidationError(FacilitatorError):
    """Raised when a payment payload or requirements document is malformed."""


class ConfigurationError(FacilitatorError):
    """Raised when a required key, secret or network is not configured."""


class KeyDecryptionError(FacilitatorError):
    """Raised when an encrypted refund-wallet key cannot be decrypted."""


class ClaimError(FacilitatorError):
    """Base exception for refund-claim operations."""

    status_code = 400
    code = "claim_error"


class ClaimNotFoundError(ClaimError):
    """Raised when a claim does not exist (or is not visible to the caller)."""

    status_code = 404
    code = "claim_not_found"

    def __init__(self, claim_id: str):
        super().__init__(f"Claim not found: {claim_id}")
        self.claim_id = claim_id


class ClaimUnauthorizedError(ClaimError):
    """Raised when a failure report carries an unknown or inactive API key."""

    status_code = 401
    code = "unauthorized"


class RefundsDisabledError(ClaimError):
    """Raised when the resource owner has refunds switched off."""

    status_code = 403
    code = "refunds_disabled"


class DuplicateClaimError(ClaimError):
    """Raised when a claim already exists for the original transaction."""

    status_code = 409
    code = "duplicate_claim"

    def __init__(self, original_tx_hash: str, existing_claim_id: Optional[str] = None):
        super().__init__(f"A claim already exists for transaction {original_tx_hash}")
        self.original_tx_hash = original_tx_hash
        self.existing_claim_id = existing_claim_id


class ClaimValidationError(ClaimError):
    """Raised when a failure report is missing fields or names an unusable network."""

    code = "invalid_claim"


class InvalidClaimTransitionError(ClaimError):
    """Raised when a claim is not in a state that allows the requested action."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, claim_id: str, current: str, action: str):
        super().__init__(f"Cannot {action} claim {claim_id} in status '{current}'")
        self.claim_id = claim_id
        self.current = current
        self.action = action


class PayoutFailedError(ClaimError):
    """Raised when a refund transfer did not confirm; the claim stays approved."""

    status_code = 502
    code = "payout_failed"

    def __init__(self, claim_id: str, result: Any):
        reason = getattr(result, "error_message", None) or getattr(result, "error_reason", None)
        super().__init__(f"Payout for claim {claim_id} failed: {reason}")
        self.claim_id = claim_id
        self.result = result
