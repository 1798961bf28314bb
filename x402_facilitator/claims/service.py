"""
Refund claims state machine.

This module provides the ClaimsStateMachine, which handles:
- Failure reports from registered resource servers (API-key authenticated)
- Operator review: approve / reject from pending only
- Payouts from approved claims via the chain family's SettlementAdapter
- Time-driven expiry of pending/approved claims
- Refund wallet registration (keys encrypted at rest)
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Mapping, Optional

from x402_facilitator.chains.base import PayoutRequest, SettlementAdapter
from x402_facilitator.chains.poller import deadline_after
from x402_facilitator.claims.keys import KeyCipher, hash_api_key
from x402_facilitator.claims.models import Claim, ClaimStatus, RefundWallet
from x402_facilitator.config import SigningMaterial
from x402_facilitator.errors import (
    ClaimNotFoundError,
    ClaimUnauthorizedError,
    ClaimValidationError,
    ConfigurationError,
    DuplicateClaimError,
    InvalidClaimTransitionError,
    PayoutFailedError,
    RefundsDisabledError,
)
from x402_facilitator.networks.registry import ChainFamily, NetworkRegistry
from x402_facilitator.persistence import FacilitatorStore
from x402_facilitator.webhooks.dispatcher import WebhookDispatcher, WebhookEvent, build_claim_event

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_DAYS = 30
_UINT_RE = re.compile(r"^\d+$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClaimsStateMachine:
    """Owns every claim status transition."""

    def __init__(
        self,
        store: FacilitatorStore,
        registry: NetworkRegistry,
        adapters: Mapping[ChainFamily, SettlementAdapter],
        signing: SigningMaterial,
        cipher: Optional[KeyCipher] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        facilitator_id: str = "default",
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        expiry_days: int = DEFAULT_EXPIRY_DAYS,
        payout_timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.registry = registry
        self.adapters = dict(adapters)
        self.signing = signing
        self.cipher = cipher
        self.webhooks = webhooks
        self.facilitator_id = facilitator_id
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.expiry_days = expiry_days
        self.payout_timeout_seconds = payout_timeout_seconds
        self._clock = clock

    # --- Failure reports ---

    async def report_failure(
        self,
        api_key: str,
        original_tx_hash: str,
        user_wallet: str,
        amount: str,
        asset: str,
        network: str,
        reason: Optional[str] = None,
    ) -> Claim:
        """Create a pending refund claim for a paid request that failed.

        Args:
            api_key: Plain API key of the reporting server
            original_tx_hash: Settlement transaction of the failed request
            user_wallet: Address the refund goes to
            amount: Refund amount in base units
            asset: Token address / mint / STX asset id
            network: Network name or CAIP-2 id
            reason: Free-text failure description

        Returns:
            The created claim (status pending)

        Raises:
            ClaimUnauthorizedError: Unknown or inactive API key
            RefundsDisabledError: Resource owner has refunds switched off
            ClaimValidationError: Bad amount, unknown network, or no refund wallet
            DuplicateClaimError: A claim for original_tx_hash already exists
        """
        server = await self.store.get_server_by_api_key_hash(hash_api_key(api_key or ""))
        if server is None:
            raise ClaimUnauthorizedError("Invalid or inactive server API key")

        owner = await self.store.get_resource_owner(server.resource_owner_id)
        if owner is None:
            raise ClaimUnauthorizedError("Server has no resource owner")
        if not owner.refunds_enabled:
            raise RefundsDisabledError(f"Refunds are disabled for resource owner {owner.id}")

        if not original_tx_hash or not original_tx_hash.strip():
            raise ClaimValidationError("originalTxHash is required")
        existing = await self.store.get_claim_by_tx_hash(original_tx_hash)
        if existing is not None:
            raise DuplicateClaimError(original_tx_hash.strip(), existing.id)
        if not user_wallet:
            raise ClaimValidationError("userWallet is required")
        if not asset:
            raise ClaimValidationError("asset is required")
        if not isinstance(amount, str) or not _UINT_RE.match(amount) or int(amount) <= 0:
            raise ClaimValidationError(f"amount must be a positive integer string, got {amount!r}")

        chain = self.registry.resolve(network)
        if chain is None:
            raise ClaimValidationError(f"Unsupported network: {network}")

        wallet = await self.store.get_refund_wallet(owner.id, chain.network)
        if wallet is None:
            raise ClaimValidationError(f"No refund wallet configured for {chain.network}")

        now = self._clock()
        claim = await self.store.create_claim(
            Claim(
                id=str(uuid.uuid4()),
                resource_owner_id=owner.id,
                server_id=server.id,
                original_tx_hash=original_tx_hash.strip(),
                user_wallet=user_wallet,
                amount=amount,
                asset=asset,
                network=chain.network,
                status=ClaimStatus.PENDING,
                created_at=now,
                expires_at=now + timedelta(days=self.expiry_days),
                reason=reason,
            )
        )
        logger.info(f"Claim {claim.id} created for tx {claim.original_tx_hash} on {claim.network}")
        await self._notify(WebhookEvent.CLAIM_CREATED, claim, owner.id)
        return claim

    # --- Refund wallets ---

    async def register_refund_wallet(self, resource_owner_id: str, network: str, private_key: str) -> RefundWallet:
        """Encrypt and store the key refunds on ``network`` are paid from.

        An existing wallet for the same owner and network is replaced.

        Raises:
            ClaimValidationError: Unsupported network, or a key the family cannot load
            ConfigurationError: Key encryption secret not configured
        """
        chain = self.registry.resolve(network)
        if chain is None:
            raise ClaimValidationError(f"Unsupported network: {network}")
        adapter = self.adapters.get(chain.family)
        if adapter is None:
            raise ClaimValidationError(f"No adapter for {chain.family.value}")
        if self.cipher is None:
            raise ConfigurationError("KEY_ENCRYPTION_SECRET is not configured")

        try:
            address = adapter.signer_address(private_key, chain)
        except Exception as e:
            raise ClaimValidationError(f"Invalid {chain.family.value} private key: {e}") from e

        wallet = RefundWallet(
            resource_owner_id=resource_owner_id,
            network=chain.network,
            address=address,
            encrypted_private_key=self.cipher.encrypt(private_key),
        )
        await self.store.save_refund_wallet(wallet)
        logger.info(f"Refund wallet {address} registered for {resource_owner_id} on {chain.network}")
        return wallet

    # --- Review ---

    async def approve(self, claim_id: str, resource_owner_id: Optional[str] = None) -> Claim:
        return await self._review(claim_id, ClaimStatus.APPROVED, "approve", resource_owner_id)

    async def reject(self, claim_id: str, resource_owner_id: Optional[str] = None) -> Claim:
        return await self._review(claim_id, ClaimStatus.REJECTED, "reject", resource_owner_id)

    async def _review(
        self, claim_id: str, new_status: ClaimStatus, action: str, resource_owner_id: Optional[str]
    ) -> Claim:
        claim = await self._get_owned(claim_id, resource_owner_id)
        updated = await self.store.update_claim_status(
            claim_id, [ClaimStatus.PENDING], new_status, reviewed_at=self._clock()
        )
        if updated is None:
            # lost a race or was never pending; report the state we can see now
            current = await self.store.get_claim(claim_id)
            raise InvalidClaimTransitionError(claim_id, (current or claim).status.value, action)
        logger.info(f"Claim {claim_id} {new_status.value}")
        return updated

    # --- Payout ---

    async def execute_payout(self, claim_id: str, resource_owner_id: Optional[str] = None) -> Claim:
        """Transfer the refund and mark the claim paid once the transfer confirms.

        The store flags the claim while the transfer is outstanding, which
        admits one payout at a time and keeps the expiry sweep off the claim.

        Raises:
            ClaimNotFoundError: Unknown claim (or owned by someone else)
            InvalidClaimTransitionError: Claim is not approved, or a payout is in flight
            ClaimValidationError: No refund wallet / unsupported network
            ConfigurationError: Key encryption secret not configured
            KeyDecryptionError: Stored refund key cannot be decrypted
            PayoutFailedError: Transfer did not confirm; claim stays approved
        """
        claim = await self._get_owned(claim_id, resource_owner_id)
        if claim.status != ClaimStatus.APPROVED:
            raise InvalidClaimTransitionError(claim_id, claim.status.value, "pay out")

        chain = self.registry.resolve(claim.network)
        if chain is None:
            raise ClaimValidationError(f"Unsupported network: {claim.network}")
        adapter = self.adapters.get(chain.family)
        if adapter is None:
            raise ClaimValidationError(f"No adapter for {chain.family.value}")

        encrypted = await self.store.get_refund_wallet_key(claim.resource_owner_id, chain.network)
        if encrypted is None:
            raise ClaimValidationError(f"No refund wallet configured for {chain.network}")
        if self.cipher is None:
            raise ConfigurationError("KEY_ENCRYPTION_SECRET is not configured")
        source_key = self.cipher.decrypt(encrypted)

        if await self.store.start_payout(claim_id, self._clock()) is None:
            current = await self.store.get_claim(claim_id)
            if current is not None and current.status == ClaimStatus.APPROVED:
                raise InvalidClaimTransitionError(claim_id, current.status.value, "start a second payout for")
            raise InvalidClaimTransitionError(claim_id, current.status.value if current else "missing", "pay out")

        try:
            result = await adapter.transfer(
                PayoutRequest(
                    recipient=claim.user_wallet,
                    amount=int(claim.amount),
                    asset=claim.asset,
                    reference=claim.id,
                ),
                chain,
                source_key,
                fee_payer_key=self.signing.for_family(chain.family),
                deadline=deadline_after(self.payout_timeout_seconds),
            )
        except Exception:
            # Outcome unknown: the claim keeps its in-flight flag for manual reconciliation
            logger.exception(f"Payout for claim {claim_id} raised")
            raise

        if not result.success or not result.transaction_hash:
            await self.store.update_claim_status(
                claim_id, [ClaimStatus.APPROVED], ClaimStatus.APPROVED, payout_started_at=None
            )
            logger.error(f"Payout for claim {claim_id} failed: {result.error_reason} {result.error_message}")
            raise PayoutFailedError(claim_id, result)

        updated = await self.store.update_claim_status(
            claim_id,
            [ClaimStatus.APPROVED],
            ClaimStatus.PAID,
            payout_tx_hash=result.transaction_hash,
            paid_at=self._clock(),
            payout_started_at=None,
        )
        if updated is None:
            current = await self.store.get_claim(claim_id)
            logger.error(
                f"Claim {claim_id} changed to {current.status.value if current else 'missing'} "
                f"during payout {result.transaction_hash}"
            )
            raise InvalidClaimTransitionError(
                claim_id, current.status.value if current else "missing", "mark paid"
            )

        logger.info(f"Claim {claim_id} paid: {updated.payout_tx_hash}")
        await self._notify(WebhookEvent.CLAIM_PAID, updated, updated.resource_owner_id)
        return updated

    # --- Expiry ---

    async def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """Expire overdue pending/approved claims. Returns how many changed."""
        expired = await self.store.expire_claims(now or self._clock())
        if expired:
            logger.info(f"Expired {len(expired)} claims")
        return len(expired)

    async def run_expiry_loop(self, interval_seconds: float) -> None:
        """Run expire_sweep forever; cancelled on shutdown."""
        while True:
            try:
                await self.expire_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Claim expiry sweep failed: {e}")
            await asyncio.sleep(interval_seconds)

    # --- Queries ---

    async def get_claim(self, claim_id: str, resource_owner_id: Optional[str] = None) -> Claim:
        return await self._get_owned(claim_id, resource_owner_id)

    async def list_claims(
        self, resource_owner_id: Optional[str] = None, status: Optional[ClaimStatus] = None
    ) -> List[Claim]:
        return await self.store.list_claims(resource_owner_id, status)

    # --- Helpers ---

    async def _get_owned(self, claim_id: str, resource_owner_id: Optional[str]) -> Claim:
        claim = await self.store.get_claim(claim_id)
        if claim is None or (resource_owner_id is not None and claim.resource_owner_id != resource_owner_id):
            raise ClaimNotFoundError(claim_id)
        return claim

    async def _notify(self, event: str, claim: Claim, resource_owner_id: str) -> None:
        if self.webhooks is None:
            return
        url, secret = self.webhook_url, self.webhook_secret
        owner = await self.store.get_resource_owner(resource_owner_id)
        if owner is not None and owner.webhook_url and owner.webhook_secret:
            url, secret = owner.webhook_url, owner.webhook_secret
        self.webhooks.dispatch(url, secret, build_claim_event(event, self.facilitator_id, claim.to_dict()))
