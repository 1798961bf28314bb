"""
Refund claim domain models.

Defines:
- ClaimStatus: pending -> approved -> paid, pending -> rejected,
  pending/approved -> expired
- Claim, RefundWallet, RegisteredServer, ResourceOwner records
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ClaimStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class ResourceOwner:
    """Tenant that owns registered servers and funds refunds."""

    id: str
    name: str = ""
    refunds_enabled: bool = True
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


@dataclass
class RegisteredServer:
    """Resource server allowed to report failed payments."""

    id: str
    resource_owner_id: str
    api_key_hash: str
    name: str = ""
    active: bool = True


@dataclass
class RefundWallet:
    """Per-network wallet refunds are paid from. The key is stored encrypted."""

    resource_owner_id: str
    network: str
    address: str
    encrypted_private_key: str

    def __repr__(self) -> str:
        return f"RefundWallet(owner={self.resource_owner_id!r}, network={self.network!r}, address={self.address!r})"


@dataclass
class Claim:
    id: str
    resource_owner_id: str
    server_id: Optional[str]
    original_tx_hash: str
    user_wallet: str
    amount: str
    asset: str
    network: str
    status: ClaimStatus
    created_at: datetime
    expires_at: datetime
    reason: Optional[str] = None
    payout_tx_hash: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    # set while a payout transfer is outstanding; expiry skips such claims
    payout_started_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def copy(self, **changes: Any) -> "Claim":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resourceOwnerId": self.resource_owner_id,
            "serverId": self.server_id,
            "originalTxHash": self.original_tx_hash,
            "userWallet": self.user_wallet,
            "amount": self.amount,
            "asset": self.asset,
            "network": self.network,
            "status": self.status.value,
            "reason": self.reason,
            "payoutTxHash": self.payout_tx_hash,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "reviewedAt": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
        }
