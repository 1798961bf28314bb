"""
Persistence interface consumed by the facilitator.

This module provides:
- FacilitatorStore: the async storage protocol (transactions, servers,
  claims, refund wallets)
- InMemoryStore: dict-backed implementation guarded by one asyncio.Lock,
  used by tests and single-process deployments
- TransactionRecord: one verify/settle outcome
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from x402_facilitator.claims.models import (
    Claim,
    ClaimStatus,
    RefundWallet,
    RegisteredServer,
    ResourceOwner,
)
from x402_facilitator.errors import DuplicateClaimError

logger = logging.getLogger(__name__)


@dataclass
class TransactionRecord:
    facilitator_id: str
    network: str
    transaction_hash: str
    success: bool
    payer: Optional[str] = None
    recipient: Optional[str] = None
    amount: Optional[str] = None
    asset: Optional[str] = None
    scheme: Optional[str] = None
    error_reason: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FacilitatorStore(Protocol):
    """Async storage used by the engine and the claims state machine."""

    async def record_transaction(self, record: TransactionRecord) -> None: ...

    async def list_transactions(self, facilitator_id: Optional[str] = None) -> List[TransactionRecord]: ...

    async def get_server_by_api_key_hash(self, api_key_hash: str) -> Optional[RegisteredServer]: ...

    async def get_resource_owner(self, resource_owner_id: str) -> Optional[ResourceOwner]: ...

    async def revoke_server(self, server_id: str) -> None: ...

    async def get_claim(self, claim_id: str) -> Optional[Claim]: ...

    async def get_claim_by_tx_hash(self, original_tx_hash: str) -> Optional[Claim]: ...

    async def create_claim(self, claim: Claim) -> Claim: ...

    async def update_claim_status(
        self,
        claim_id: str,
        expected: Iterable[ClaimStatus],
        new_status: ClaimStatus,
        **changes: Any,
    ) -> Optional[Claim]: ...

    async def start_payout(self, claim_id: str, started_at: datetime) -> Optional[Claim]: ...

    async def expire_claims(self, now: datetime) -> List[Claim]: ...

    async def list_claims(
        self, resource_owner_id: Optional[str] = None, status: Optional[ClaimStatus] = None
    ) -> List[Claim]: ...

    async def get_refund_wallet(self, resource_owner_id: str, network: str) -> Optional[RefundWallet]: ...

    async def get_refund_wallet_key(self, resource_owner_id: str, network: str) -> Optional[str]: ...

    async def save_refund_wallet(self, wallet: RefundWallet) -> None: ...


def _tx_key(original_tx_hash: str) -> str:
    return original_tx_hash.strip().lower()


class InMemoryStore:
    """Dict-backed FacilitatorStore.

    All mutations run under a single lock, so uniqueness of
    ``original_tx_hash`` and claim status compare-and-set are atomic.
    Returned claims are copies; callers never mutate stored state directly.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._transactions: List[TransactionRecord] = []
        self._owners: Dict[str, ResourceOwner] = {}
        self._servers: Dict[str, RegisteredServer] = {}
        self._claims: Dict[str, Claim] = {}
        self._claims_by_tx: Dict[str, str] = {}
        self._wallets: Dict[tuple, RefundWallet] = {}

    # --- Seeding (outside the protocol; tenant CRUD lives elsewhere) ---

    def add_resource_owner(self, owner: ResourceOwner) -> None:
        self._owners[owner.id] = owner

    def add_server(self, server: RegisteredServer) -> None:
        self._servers[server.id] = server

    def add_refund_wallet(self, wallet: RefundWallet) -> None:
        self._wallets[(wallet.resource_owner_id, wallet.network)] = wallet

    # --- Transactions ---

    async def record_transaction(self, record: TransactionRecord) -> None:
        async with self._lock:
            self._transactions.append(record)

    async def list_transactions(self, facilitator_id: Optional[str] = None) -> List[TransactionRecord]:
        return [t for t in self._transactions if facilitator_id is None or t.facilitator_id == facilitator_id]

    # --- Servers / owners ---

    async def get_server_by_api_key_hash(self, api_key_hash: str) -> Optional[RegisteredServer]:
        for server in self._servers.values():
            if server.api_key_hash == api_key_hash and server.active:
                return server
        return None

    async def get_resource_owner(self, resource_owner_id: str) -> Optional[ResourceOwner]:
        return self._owners.get(resource_owner_id)

    async def revoke_server(self, server_id: str) -> None:
        """Deactivate a server; its claims are kept with ``server_id`` cleared."""
        async with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                return
            server.active = False
            for claim_id, claim in self._claims.items():
                if claim.server_id == server_id:
                    self._claims[claim_id] = claim.copy(server_id=None)
            logger.info(f"Revoked server {server_id}")

    # --- Claims ---

    async def get_claim(self, claim_id: str) -> Optional[Claim]:
        claim = self._claims.get(claim_id)
        return claim.copy() if claim else None

    async def get_claim_by_tx_hash(self, original_tx_hash: str) -> Optional[Claim]:
        claim_id = self._claims_by_tx.get(_tx_key(original_tx_hash))
        return await self.get_claim(claim_id) if claim_id else None

    async def create_claim(self, claim: Claim) -> Claim:
        """Insert a claim.

        Raises:
            DuplicateClaimError: If a claim for the same original tx already exists
        """
        key = _tx_key(claim.original_tx_hash)
        async with self._lock:
            existing = self._claims_by_tx.get(key)
            if existing is not None:
                raise DuplicateClaimError(claim.original_tx_hash, existing)
            self._claims[claim.id] = claim.copy()
            self._claims_by_tx[key] = claim.id
        return claim.copy()

    async def update_claim_status(
        self,
        claim_id: str,
        expected: Iterable[ClaimStatus],
        new_status: ClaimStatus,
        **changes: Any,
    ) -> Optional[Claim]:
        """Compare-and-set the status.

        Returns:
            The updated claim, or None if the claim is missing or its status
            is not one of ``expected``
        """
        expected = set(expected)
        async with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None or claim.status not in expected:
                return None
            updated = claim.copy(status=new_status, **changes)
            self._claims[claim_id] = updated
            return updated.copy()

    async def start_payout(self, claim_id: str, started_at: datetime) -> Optional[Claim]:
        """Flag an approved claim as having a payout in flight.

        Returns:
            The flagged claim, or None if it is not approved or a payout is
            already in flight
        """
        async with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None or claim.status != ClaimStatus.APPROVED or claim.payout_started_at is not None:
                return None
            updated = claim.copy(payout_started_at=started_at)
            self._claims[claim_id] = updated
            return updated.copy()

    async def expire_claims(self, now: datetime) -> List[Claim]:
        """Expire overdue pending/approved claims that have no payout in flight."""
        expired: List[Claim] = []
        async with self._lock:
            for claim_id, claim in self._claims.items():
                if (
                    claim.status in (ClaimStatus.PENDING, ClaimStatus.APPROVED)
                    and claim.expires_at <= now
                    and claim.payout_started_at is None
                ):
                    updated = claim.copy(status=ClaimStatus.EXPIRED)
                    self._claims[claim_id] = updated
                    expired.append(updated.copy())
        return expired

    async def list_claims(
        self, resource_owner_id: Optional[str] = None, status: Optional[ClaimStatus] = None
    ) -> List[Claim]:
        claims = [
            c.copy()
            for c in self._claims.values()
            if (resource_owner_id is None or c.resource_owner_id == resource_owner_id)
            and (status is None or c.status == status)
        ]
        return sorted(claims, key=lambda c: c.created_at)

    # --- Refund wallets ---

    async def get_refund_wallet(self, resource_owner_id: str, network: str) -> Optional[RefundWallet]:
        return self._wallets.get((resource_owner_id, network))

    async def get_refund_wallet_key(self, resource_owner_id: str, network: str) -> Optional[str]:
        """Encrypted private key of the refund wallet (decrypted by the caller)."""
        wallet = self._wallets.get((resource_owner_id, network))
        return wallet.encrypted_private_key if wallet else None

    async def save_refund_wallet(self, wallet: RefundWallet) -> None:
        async with self._lock:
            self._wallets[(wallet.resource_owner_id, wallet.network)] = wallet
