"""
x402 Facilitator engine.

This module provides the FacilitatorEngine, which handles:
- Payload / requirements normalization (v1 and v2)
- Network resolution to a ChainFamily and adapter dispatch
- ERC-3009 replay protection around EVM settlement
- Transaction recording and payment webhooks after settlement
- The /supported document (kinds, signers, extensions)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from x402_facilitator.chains.base import SettlementAdapter
from x402_facilitator.chains.erc3009 import Authorization
from x402_facilitator.chains.poller import deadline_after
from x402_facilitator.config import SigningMaterial
from x402_facilitator.errors import PaymentValidationError
from x402_facilitator.networks.registry import ChainConfig, ChainFamily, NetworkRegistry
from x402_facilitator.payment.nonces import AuthorizationNonceTracker
from x402_facilitator.payment.normalize import RawPayload, normalize_payment, normalize_requirements
from x402_facilitator.payment.types import (
    SUPPORTED_SCHEMES,
    CanonicalPayment,
    CanonicalRequirements,
    InvalidReason,
    PaymentRequirements,
    SettlementErrorReason,
    SettlementResult,
    VerificationResult,
)
from x402_facilitator.persistence import FacilitatorStore, TransactionRecord
from x402_facilitator.webhooks.dispatcher import WebhookDispatcher, WebhookEvent, build_payment_event

logger = logging.getLogger(__name__)

# Settlement outcomes after which the authorization may still be consumed on-chain
_KEEP_NONCE_REASONS = frozenset({
    SettlementErrorReason.CONFIRMATION_TIMEOUT.value,
})

RequirementsInput = Union[PaymentRequirements, Dict[str, Any]]


class FacilitatorEngine:
    """Verifies and settles x402 payments across chain families."""

    def __init__(
        self,
        registry: NetworkRegistry,
        adapters: Mapping[ChainFamily, SettlementAdapter],
        signing: SigningMaterial,
        facilitator_id: str = "default",
        enabled_networks: Optional[Iterable[str]] = None,
        nonce_tracker: Optional[AuthorizationNonceTracker] = None,
        store: Optional[FacilitatorStore] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        webhook_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        settle_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.adapters = dict(adapters)
        self.signing = signing
        self.facilitator_id = facilitator_id
        self.nonce_tracker = nonce_tracker or AuthorizationNonceTracker()
        self.store = store
        self.webhooks = webhooks
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.settle_timeout_seconds = settle_timeout_seconds
        self.enabled_chains = self._resolve_enabled(enabled_networks)

    def _resolve_enabled(self, networks: Optional[Iterable[str]]) -> List[ChainConfig]:
        if networks is None:
            return [c for c in self.registry.all() if c.family in self.adapters]
        chains: List[ChainConfig] = []
        for name in networks:
            chain = self.registry.resolve(name)
            if chain is None:
                logger.warning(f"Ignoring unknown enabled network: {name}")
                continue
            if chain.family not in self.adapters:
                logger.warning(f"No adapter for {chain.network} ({chain.family.value}), not enabling it")
                continue
            if chain not in chains:
                chains.append(chain)
        return chains

    def is_enabled(self, chain: ChainConfig) -> bool:
        return any(c.network == chain.network for c in self.enabled_chains)

    # --- verify -----------------------------------------------------------

    async def verify(
        self,
        payment_payload: RawPayload,
        requirements: RequirementsInput,
        x402_version: Optional[int] = None,
    ) -> VerificationResult:
        """Verify a payment against requirements. Never mutates state.

        Args:
            payment_payload: Base64 JSON string or parsed v1/v2 payload
            requirements: Payment requirements (wire dict or model)
            x402_version: ``x402Version`` from the enclosing request

        Returns:
            VerificationResult (expected failures are results, not exceptions)
        """
        prepared = self._prepare(payment_payload, requirements, x402_version)
        if isinstance(prepared, VerificationResult):
            return prepared
        payment, reqs, chain = prepared
        return await self.adapters[chain.family].verify(payment, reqs, chain)

    def _prepare(
        self,
        payment_payload: RawPayload,
        requirements: RequirementsInput,
        x402_version: Optional[int],
    ) -> Union[VerificationResult, Tuple[CanonicalPayment, CanonicalRequirements, ChainConfig]]:
        try:
            payment = normalize_payment(payment_payload, x402_version)
            reqs = normalize_requirements(requirements, payment.x402_version)
        except PaymentValidationError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD, str(e))

        chain = self.registry.resolve(reqs.network)
        if chain is None or not self.is_enabled(chain):
            return VerificationResult.invalid(
                InvalidReason.UNSUPPORTED_NETWORK, f"Network not supported: {reqs.network}"
            )

        payment_chain = self.registry.resolve(payment.network)
        if payment_chain is None or payment_chain.network != chain.network:
            return VerificationResult.invalid(
                InvalidReason.NETWORK_MISMATCH,
                f"Payment network {payment.network} does not match required network {reqs.network}",
                network=chain.network,
            )

        if reqs.scheme not in SUPPORTED_SCHEMES:
            return VerificationResult.invalid(
                InvalidReason.UNSUPPORTED_SCHEME, f"Scheme not supported: {reqs.scheme}", network=chain.network
            )
        if payment.scheme != reqs.scheme:
            return VerificationResult.invalid(
                InvalidReason.SCHEME_MISMATCH,
                f"Payment scheme {payment.scheme} does not match required scheme {reqs.scheme}",
                network=chain.network,
            )

        authorization = self._authorization(payment, chain)
        if authorization is not None and self.nonce_tracker.is_used(
            int(chain.chain_id), authorization.from_address, authorization.nonce
        ):
            return VerificationResult.invalid(
                InvalidReason.NONCE_ALREADY_USED,
                "Authorization nonce has already been used",
                payer=authorization.from_address,
                network=chain.network,
            )

        return payment, reqs, chain

    @staticmethod
    def _authorization(payment: CanonicalPayment, chain: ChainConfig) -> Optional[Authorization]:
        if chain.family != ChainFamily.EVM:
            return None
        try:
            return Authorization.from_payload(payment.payload["authorization"])
        except (KeyError, TypeError, ValueError):
            return None  # the adapter reports the malformed payload

    # --- settle -----------------------------------------------------------

    async def settle(
        self,
        payment_payload: RawPayload,
        requirements: RequirementsInput,
        signing: Optional[SigningMaterial] = None,
        x402_version: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
    ) -> SettlementResult:
        """Re-verify, then settle on-chain and wait for confirmation.

        Args:
            payment_payload: Base64 JSON string or parsed v1/v2 payload
            requirements: Payment requirements
            signing: Per-call signing keys (defaults to the engine's)
            x402_version: ``x402Version`` from the enclosing request
            deadline_seconds: Overall budget (defaults to settle_timeout_seconds)

        Returns:
            SettlementResult; success only once the transaction is confirmed
        """
        prepared = self._prepare(payment_payload, requirements, x402_version)
        if isinstance(prepared, VerificationResult):
            return self._rejected(prepared, _network_of(requirements))
        payment, reqs, chain = prepared
        adapter = self.adapters[chain.family]

        verification = await adapter.verify(payment, reqs, chain)
        if not verification.is_valid:
            return self._rejected(verification, chain.network)

        signing_key = (signing or self.signing).for_family(chain.family)
        if not signing_key:
            logger.warning(f"Settlement requested on {chain.network} but no {chain.family.value} key is configured")
            return SettlementResult.failure(
                chain.network,
                SettlementErrorReason.NOT_CONFIGURED,
                f"Facilitator has no {chain.family.value} signing key",
                payer=verification.payer,
            )

        authorization = self._authorization(payment, chain)
        if authorization is not None:
            acquired, reason = self.nonce_tracker.try_acquire(
                int(chain.chain_id), authorization.from_address, authorization.nonce, authorization.valid_before
            )
            if not acquired:
                return SettlementResult.failure(
                    chain.network, InvalidReason.NONCE_ALREADY_USED, reason, payer=verification.payer
                )

        timeout = deadline_seconds if deadline_seconds is not None else self.settle_timeout_seconds
        logger.info(f"Settling {reqs.amount} of {reqs.asset} on {chain.network} for payer {verification.payer}")
        try:
            result = await adapter.settle(payment, reqs, chain, signing_key, deadline=deadline_after(timeout))
        except Exception:
            # Outcome unknown: the nonce stays in flight until pruned
            logger.exception(f"Settlement on {chain.network} raised")
            raise

        if authorization is not None:
            chain_id = int(chain.chain_id)
            if result.success:
                self.nonce_tracker.mark_settled(
                    chain_id, authorization.from_address, authorization.nonce, result.transaction_hash
                )
            elif result.error_reason not in _KEEP_NONCE_REASONS:
                self.nonce_tracker.release(chain_id, authorization.from_address, authorization.nonce)

        if result.payer is None:
            result.payer = verification.payer

        if result.success:
            logger.info(f"Settlement confirmed on {chain.network}: {result.transaction_hash}")
        else:
            logger.warning(
                f"Settlement failed on {chain.network}: {result.error_reason} {result.error_message or ''}".rstrip()
            )

        await self._record(result, reqs, verification)
        self._notify(result, reqs)
        return result

    @staticmethod
    def _rejected(verification: VerificationResult, network: Optional[str]) -> SettlementResult:
        return SettlementResult.failure(
            verification.network or network or "",
            verification.invalid_reason or InvalidReason.INVALID_PAYLOAD,
            verification.details,
            payer=verification.payer,
        )

    async def _record(
        self, result: SettlementResult, reqs: CanonicalRequirements, verification: VerificationResult
    ) -> None:
        if self.store is None:
            return
        try:
            await self.store.record_transaction(
                TransactionRecord(
                    facilitator_id=self.facilitator_id,
                    network=result.network,
                    transaction_hash=result.transaction_hash,
                    success=result.success,
                    payer=result.payer,
                    recipient=reqs.pay_to,
                    amount=verification.amount or str(reqs.amount),
                    asset=reqs.asset,
                    scheme=reqs.scheme,
                    error_reason=result.error_reason,
                )
            )
        except Exception as e:
            # The settlement already happened; recording must not change its result
            logger.error(f"Failed to record transaction {result.transaction_hash}: {e}")

    def _notify(self, result: SettlementResult, reqs: CanonicalRequirements) -> None:
        if self.webhooks is None:
            return
        event = WebhookEvent.PAYMENT_SETTLED if result.success else WebhookEvent.PAYMENT_FAILED
        payment = {
            **result.to_response(),
            "amount": str(reqs.amount),
            "asset": reqs.asset,
            "payTo": reqs.pay_to,
            "scheme": reqs.scheme,
            "resource": reqs.resource,
        }
        self.webhooks.dispatch(
            self.webhook_url, self.webhook_secret, build_payment_event(event, self.facilitator_id, payment)
        )

    # --- housekeeping -----------------------------------------------------

    async def run_nonce_prune_loop(self, interval_seconds: float) -> None:
        """Prune expired authorization nonces forever; cancelled on shutdown."""
        while True:
            pruned = self.nonce_tracker.prune()
            if pruned:
                logger.info(f"Pruned {pruned} authorization nonces")
            await asyncio.sleep(interval_seconds)

    # --- supported --------------------------------------------------------

    def supported(self) -> Dict[str, Any]:
        """Kinds, signer addresses and extensions this facilitator supports."""
        kinds: List[Dict[str, Any]] = []
        signers: Dict[str, List[str]] = {}

        for chain in self.enabled_chains:
            extra: Optional[Dict[str, Any]] = None
            address = self._signer_address(chain)
            if address is not None:
                wildcard = self.registry.namespace_wildcard(chain.family)
                addresses = signers.setdefault(wildcard, [])
                if address not in addresses:
                    addresses.append(address)
                if chain.family == ChainFamily.SOLANA:
                    extra = {"feePayer": address}

            for version, network in ((1, chain.network), (2, chain.caip2)):
                kind: Dict[str, Any] = {"x402Version": version, "scheme": "exact", "network": network}
                if extra:
                    kind["extra"] = dict(extra)
                kinds.append(kind)

        return {"kinds": kinds, "signers": signers, "extensions": []}

    def _signer_address(self, chain: ChainConfig) -> Optional[str]:
        key = self.signing.for_family(chain.family)
        if not key:
            return None
        try:
            return self.adapters[chain.family].signer_address(key, chain)
        except (TypeError, ValueError) as e:
            logger.error(f"Configured {chain.family.value} key is invalid: {e}")
            return None


def _network_of(requirements: RequirementsInput) -> Optional[str]:
    if isinstance(requirements, PaymentRequirements):
        return requirements.network
    if isinstance(requirements, dict):
        network = requirements.get("network")
        return network if isinstance(network, str) else None
    return None
