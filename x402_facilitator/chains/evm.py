"""
EVM settlement adapter (ERC-3009 "exact" scheme).

- verify(): recovers the EIP-712 TransferWithAuthorization signer and checks
  recipient, amount bound and validity window
- settle(): the facilitator key submits transferWithAuthorization, paying gas,
  and waits for one confirmation
- transfer(): refund payouts; the source key signs a fresh authorization and
  the facilitator key submits it
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from x402_facilitator.chains.base import PayoutRequest, SettlementAdapter
from x402_facilitator.chains.erc3009 import (
    Authorization,
    build_typed_data,
    encode_transfer_with_authorization,
    recover_signer,
    sign_authorization,
)
from x402_facilitator.chains.gas import DEFAULT_GAS_LIMIT, GasStrategy
from x402_facilitator.chains.poller import remaining
from x402_facilitator.networks.registry import ChainConfig, ChainFamily
from x402_facilitator.networks.tokens import eip712_domain_defaults
from x402_facilitator.payment.types import (
    CanonicalPayment,
    CanonicalRequirements,
    InvalidReason,
    SettlementErrorReason,
    SettlementResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_RECEIPT_TIMEOUT = 120  # seconds
RECEIPT_POLL_LATENCY = 1.0  # seconds
PAYOUT_AUTHORIZATION_TTL = 3600  # seconds


def default_web3_factory(chain: ChainConfig) -> AsyncWeb3:
    return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(chain.rpc_url))


class NonceManager:
    """
    Serializes transaction-nonce assignment per (chain, sender).

    Hold ``lock_for(...)`` across nonce lookup, signing and broadcast so
    concurrent settlements from the same key never reuse a nonce.
    """

    def __init__(self) -> None:
        self._locks: Dict[Tuple[int, str], asyncio.Lock] = {}
        self._next: Dict[Tuple[int, str], int] = {}

    def lock_for(self, chain_id: int, address: str) -> asyncio.Lock:
        key = (chain_id, address.lower())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def next_nonce(self, w3: AsyncWeb3, chain_id: int, address: str) -> int:
        """Next nonce for ``address``; call while holding its lock."""
        key = (chain_id, address.lower())
        pending = await w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending")
        return max(int(pending), self._next.get(key, 0))

    def mark_used(self, chain_id: int, address: str, nonce: int) -> None:
        self._next[(chain_id, address.lower())] = nonce + 1

    def reset(self, chain_id: int, address: str) -> None:
        self._next.pop((chain_id, address.lower()), None)


class EVMAdapter(SettlementAdapter):
    """Settles ERC-3009 authorizations on EVM chains."""

    family = ChainFamily.EVM

    def __init__(
        self,
        web3_factory: Callable[[ChainConfig], AsyncWeb3] = default_web3_factory,
        gas_strategy: Optional[GasStrategy] = None,
        nonce_manager: Optional[NonceManager] = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._web3_factory = web3_factory
        self._web3: Dict[str, AsyncWeb3] = {}
        self.gas_strategy = gas_strategy or GasStrategy()
        self.nonce_manager = nonce_manager or NonceManager()
        self.receipt_timeout = receipt_timeout
        self.gas_limit = gas_limit
        self._clock = clock

    def _w3(self, chain: ChainConfig) -> AsyncWeb3:
        if chain.network not in self._web3:
            self._web3[chain.network] = self._web3_factory(chain)
            logger.info(f"Created web3 client for {chain.network}: {chain.rpc_url}")
        return self._web3[chain.network]

    def signer_address(self, signing_key: str, chain: ChainConfig) -> str:
        return Account.from_key(signing_key).address

    # --- verify -----------------------------------------------------------

    async def verify(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
    ) -> VerificationResult:
        """Verify an exact-scheme ERC-3009 payment.

        Args:
            payment: Canonical payload with ``signature`` and ``authorization``
            requirements: Canonical requirements
            chain: Resolved chain config

        Returns:
            VerificationResult; never raises for a bad payment
        """
        signature = payment.payload.get("signature")
        raw_auth = payment.payload.get("authorization")
        if not isinstance(signature, str) or not isinstance(raw_auth, dict):
            return VerificationResult.invalid(
                InvalidReason.INVALID_PAYLOAD, "payload must contain 'signature' and 'authorization'"
            )

        try:
            authorization = Authorization.from_payload(raw_auth)
        except ValueError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD, str(e))

        payer = authorization.from_address
        context = {"payer": payer, "scheme": requirements.scheme, "network": chain.network}

        now = int(self._clock())
        if now < authorization.valid_after:
            return VerificationResult.invalid(
                InvalidReason.AUTHORIZATION_NOT_YET_VALID,
                f"authorization valid after {authorization.valid_after}, now {now}",
                **context,
            )
        if now > authorization.valid_before:
            return VerificationResult.invalid(
                InvalidReason.AUTHORIZATION_EXPIRED,
                f"authorization expired at {authorization.valid_before}, now {now}",
                **context,
            )

        try:
            typed_data = self.typed_data_for(authorization, requirements, chain)
        except ValueError as e:
            return VerificationResult.invalid(InvalidReason.ASSET_MISMATCH, f"invalid token contract: {e}", **context)

        try:
            recovered = recover_signer(typed_data, signature)
        except Exception as e:
            logger.info(f"Signature recovery failed for {payer}: {e}")
            return VerificationResult.invalid(InvalidReason.INVALID_SIGNATURE, "signature could not be recovered", **context)

        if recovered.lower() != payer.lower():
            return VerificationResult.invalid(
                InvalidReason.INVALID_SIGNATURE,
                f"signature recovers to {recovered}, not {payer}",
                **context,
            )

        if requirements.pay_to and authorization.to.lower() != requirements.pay_to.lower():
            return VerificationResult.invalid(
                InvalidReason.RECIPIENT_MISMATCH,
                f"authorization pays {authorization.to}, requirements pay {requirements.pay_to}",
                **context,
            )

        if not requirements.amount_satisfied(authorization.value):
            reason = InvalidReason.AMOUNT_MISMATCH if requirements.exact else InvalidReason.INSUFFICIENT_AMOUNT
            return VerificationResult.invalid(
                reason,
                f"authorization value {authorization.value}, required {requirements.amount}",
                **context,
            )

        return VerificationResult(
            is_valid=True,
            payer=payer,
            amount=str(authorization.value),
            recipient=authorization.to,
            scheme=requirements.scheme,
            network=chain.network,
        )

    def typed_data_for(
        self, authorization: Authorization, requirements: CanonicalRequirements, chain: ChainConfig
    ) -> Dict[str, Any]:
        default_name, default_version = eip712_domain_defaults(chain.network, requirements.asset)
        return build_typed_data(
            authorization,
            chain_id=int(chain.chain_id),
            verifying_contract=requirements.asset,
            name=str(requirements.extra.get("name") or default_name),
            version=str(requirements.extra.get("version") or default_version),
        )

    # --- settle -----------------------------------------------------------

    async def settle(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
        signing_key: str,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Submit a verified authorization and wait for one confirmation."""
        try:
            authorization = Authorization.from_payload(payment.payload["authorization"])
        except (KeyError, TypeError, ValueError) as e:
            return SettlementResult.failure(chain.network, InvalidReason.INVALID_PAYLOAD, str(e))

        return await self._submit_authorization(
            chain=chain,
            token=requirements.asset,
            authorization=authorization,
            signature=str(payment.payload.get("signature", "")),
            signing_key=signing_key,
            deadline=deadline,
        )

    async def transfer(
        self,
        request: PayoutRequest,
        chain: ChainConfig,
        source_key: str,
        fee_payer_key: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Refund payout: sign with the refund wallet, submit with the facilitator key."""
        if not fee_payer_key:
            return SettlementResult.failure(
                chain.network, SettlementErrorReason.NOT_CONFIGURED, "No facilitator EVM key to pay gas"
            )

        source = Account.from_key(source_key)
        authorization = Authorization.new(
            from_address=source.address,
            to=request.recipient,
            value=request.amount,
            valid_for_seconds=PAYOUT_AUTHORIZATION_TTL,
            now=int(self._clock()),
        )
        default_name, default_version = eip712_domain_defaults(chain.network, request.asset)
        typed_data = build_typed_data(
            authorization,
            chain_id=int(chain.chain_id),
            verifying_contract=request.asset,
            name=default_name,
            version=default_version,
        )
        signature = sign_authorization(typed_data, source_key)
        logger.info(f"Submitting payout {request.reference} of {request.amount} to {request.recipient} on {chain.network}")

        return await self._submit_authorization(
            chain=chain,
            token=request.asset,
            authorization=authorization,
            signature=signature,
            signing_key=fee_payer_key,
            deadline=deadline,
        )

    async def _submit_authorization(
        self,
        chain: ChainConfig,
        token: str,
        authorization: Authorization,
        signature: str,
        signing_key: str,
        deadline: Optional[float],
    ) -> SettlementResult:
        w3 = self._w3(chain)
        chain_id = int(chain.chain_id)
        account = Account.from_key(signing_key)
        payer = authorization.from_address

        try:
            data = encode_transfer_with_authorization(authorization, signature)
        except ValueError as e:
            return SettlementResult.failure(chain.network, InvalidReason.INVALID_SIGNATURE, str(e), payer=payer)

        try:
            gas = await self.gas_strategy.calculate(w3, gas_limit=self.gas_limit)
            balance = await w3.eth.get_balance(account.address)
        except Exception as e:
            logger.error(f"RPC error preparing settlement on {chain.network}: {e}")
            return SettlementResult.failure(
                chain.network, SettlementErrorReason.BROADCAST_FAILED, f"RPC error: {e}", payer=payer
            )

        if int(balance) < gas.max_cost:
            logger.error(
                f"Facilitator {account.address} has {balance} wei on {chain.network}, needs {gas.max_cost}"
            )
            return SettlementResult.failure(
                chain.network,
                SettlementErrorReason.INSUFFICIENT_GAS_FUNDS,
                f"Facilitator wallet {account.address} cannot cover gas",
                payer=payer,
            )

        tx: Dict[str, Any] = {
            "to": Web3.to_checksum_address(token),
            "data": data,
            "value": 0,
            "chainId": chain_id,
            **gas.as_tx_fields(),
        }

        async with self.nonce_manager.lock_for(chain_id, account.address):
            try:
                tx["nonce"] = await self.nonce_manager.next_nonce(w3, chain_id, account.address)
                signed = account.sign_transaction(tx)
                tx_hash = Web3.to_hex(await w3.eth.send_raw_transaction(signed.raw_transaction))
            except Exception as e:
                self.nonce_manager.reset(chain_id, account.address)
                logger.error(f"Broadcast failed on {chain.network}: {e}")
                return SettlementResult.failure(
                    chain.network, SettlementErrorReason.BROADCAST_FAILED, str(e), payer=payer
                )
            self.nonce_manager.mark_used(chain_id, account.address, tx["nonce"])

        logger.info(f"Transaction submitted on {chain.network}: {tx_hash}")

        timeout = self.receipt_timeout
        left = remaining(deadline)
        if left is not None:
            timeout = min(timeout, left)

        try:
            receipt = await w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=RECEIPT_POLL_LATENCY
            )
        except TimeExhausted:
            logger.warning(f"No receipt for {tx_hash} on {chain.network} within {timeout:.0f}s")
            return SettlementResult.failure(
                chain.network,
                SettlementErrorReason.CONFIRMATION_TIMEOUT,
                f"No receipt within {timeout:.0f}s",
                transaction_hash=tx_hash,
                payer=payer,
            )

        if receipt["status"] != 1:
            reason = await self._revert_reason(w3, tx, account.address, receipt)
            logger.warning(f"Transaction {tx_hash} reverted on {chain.network}: {reason}")
            return SettlementResult.failure(
                chain.network,
                SettlementErrorReason.TRANSACTION_REVERTED,
                reason or "execution reverted",
                transaction_hash=tx_hash,
                payer=payer,
            )

        logger.info(f"Transaction {tx_hash} confirmed in block {receipt['blockNumber']}")
        return SettlementResult(success=True, network=chain.network, transaction_hash=tx_hash, payer=payer)

    async def _revert_reason(self, w3: AsyncWeb3, tx: Dict[str, Any], sender: str, receipt: Any) -> Optional[str]:
        """Replay a reverted call at its block to recover the revert message."""
        call = {"from": sender, "to": tx["to"], "data": tx["data"], "value": 0, "gas": tx["gas"]}
        try:
            await w3.eth.call(call, receipt["blockNumber"])
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        except Exception as e:
            logger.debug(f"Could not replay reverted call: {e}")
        return None

    async def aclose(self) -> None:
        for network, w3 in self._web3.items():
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
                logger.debug(f"Closed web3 client for {network}")
        self._web3.clear()
