"""Refund claims: failure reports, review, payouts and expiry."""

from x402_facilitator.claims.models import Claim, ClaimStatus, RefundWallet, RegisteredServer, ResourceOwner

__all__ = ["Claim", "ClaimStatus", "RefundWallet", "RegisteredServer", "ResourceOwner"]
