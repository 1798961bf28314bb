"""
Stacks settlement adapter (pre-signed relay + post-settlement verification).

- HiroClient: Stacks indexer API over httpx with 429 / Retry-After handling
- StacksAdapter.verify(): structural checks on the decoded transaction
- StacksAdapter.settle(): broadcast, poll for confirmation, then re-fetch
  the confirmed transaction and check its actual recipient/amount/asset.
  A confirmed broadcast alone is never reported as a successful payment.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from x402_facilitator.chains.base import PayoutRequest, SettlementAdapter
from x402_facilitator.chains.poller import (
    BackoffPolicy,
    ConfirmationPoller,
    PollObservation,
    PollOutcome,
)
from x402_facilitator.chains.stacks_codec import (
    ContractCallPayload,
    StacksCodecError,
    StacksTransaction,
    TokenTransferPayload,
    address_from_private_key,
    build_unsigned_transfer,
    decode_transaction_hex,
    parse_sip010_transfer,
    sign_transaction,
)
from x402_facilitator.networks.registry import ChainConfig, ChainFamily
from x402_facilitator.payment.types import (
    CanonicalPayment,
    CanonicalRequirements,
    InvalidReason,
    SettlementErrorReason,
    SettlementResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

STX_ASSET = "STX"
ABORT_STATUSES = ("abort_by_response", "abort_by_post_condition")
DEFAULT_HTTP_TIMEOUT = 15  # seconds
RATE_LIMIT_POLICY = BackoffPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=1.0)


class HiroApiError(Exception):
    """Raised when the Stacks indexer returns an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class HiroClient:
    """Async client for the Stacks blockchain API (Hiro)."""

    def __init__(
        self,
        api_url: str,
        http: httpx.AsyncClient,
        api_key: Optional[str] = None,
        rate_limit_policy: BackoffPolicy = RATE_LIMIT_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._http = http
        self._api_key = api_key
        self._policy = rate_limit_policy
        self._sleep = sleep

    def _headers(self, content_type: str = "application/json") -> Dict[str, str]:
        headers = {"Content-Type": content_type}
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def request(self, method: str, path: str, content_type: str = "application/json", **kwargs: Any) -> httpx.Response:
        """Send a request, retrying HTTP 429 with backoff that honors Retry-After."""
        url = f"{self.api_url}{path}"
        kwargs.setdefault("timeout", DEFAULT_HTTP_TIMEOUT)
        for attempt in range(self._policy.max_attempts + 1):
            response = await self._http.request(method, url, headers=self._headers(content_type), **kwargs)
            if response.status_code != 429 or attempt == self._policy.max_attempts:
                return response
            delay = parse_retry_after(response.headers.get("Retry-After"))
            if delay is None:
                delay = self._policy.delay_for(attempt)
            logger.info(f"Stacks API rate limited on {path}, retrying in {delay:.1f}s")
            await self._sleep(delay)
        return response

    async def broadcast(self, raw: bytes) -> str:
        """POST a serialized transaction; returns the txid.

        Raises:
            HiroApiError: If the node rejects the transaction
        """
        response = await self.request(
            "POST", "/v2/transactions", content_type="application/octet-stream", content=raw
        )
        if response.status_code != 200:
            raise HiroApiError(f"broadcast rejected ({response.status_code}): {response.text}", response.status_code)
        try:
            body = response.json()
        except ValueError:
            body = response.text
        if isinstance(body, dict):
            raise HiroApiError(f"broadcast rejected: {body.get('reason') or body.get('error') or body}")
        return str(body).strip().strip('"').removeprefix("0x")

    async def get_transaction(self, txid: str) -> Optional[Dict[str, Any]]:
        """Indexed transaction, or None if not indexed yet (404).

        Raises:
            HiroApiError: On any other non-2xx response
        """
        response = await self.request("GET", f"/extended/v1/tx/0x{txid.removeprefix('0x')}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise HiroApiError(f"tx lookup failed ({response.status_code})", response.status_code)
        return response.json()

    async def get_next_nonce(self, address: str) -> int:
        response = await self.request("GET", f"/extended/v1/address/{address}/nonces")
        if response.status_code != 200:
            raise HiroApiError(f"nonce lookup failed ({response.status_code})", response.status_code)
        return int(response.json()["possible_next_nonce"])


@dataclass(frozen=True)
class ExpectedTransfer:
    recipient: Optional[str] = None
    amount: Optional[int] = None
    asset: Optional[str] = None


@dataclass
class ParsedTransfer:
    sender: str
    recipient: str
    amount: int
    asset: str  # "STX" or contract id


def parse_transfer(tx: StacksTransaction) -> ParsedTransfer:
    """Extract sender/recipient/amount/asset from a decoded transaction.

    Raises:
        StacksCodecError: If the payload is not an STX transfer or SIP-010 transfer
    """
    if isinstance(tx.payload, TokenTransferPayload):
        return ParsedTransfer(tx.sender, tx.payload.recipient, tx.payload.amount, STX_ASSET)
    if isinstance(tx.payload, ContractCallPayload):
        call = parse_sip010_transfer(tx.payload)
        return ParsedTransfer(tx.sender, call.recipient, call.amount, tx.payload.contract_id)
    raise StacksCodecError("unsupported payload")


def _asset_contract(asset: str) -> str:
    return asset.split("::", 1)[0]


def check_confirmed_effect(tx_data: Dict[str, Any], expected: ExpectedTransfer) -> Optional[str]:
    """Compare an indexed, confirmed transaction with what was expected.

    Returns:
        None if it matches, otherwise a mismatch description
    """
    if tx_data.get("tx_status") != "success":
        return f"transaction status {tx_data.get('tx_status')}"

    tx_type = tx_data.get("tx_type")
    if tx_type == "token_transfer" and tx_data.get("token_transfer"):
        transfer = tx_data["token_transfer"]
        recipient = transfer.get("recipient_address", "")
        try:
            amount = int(transfer.get("amount", "0"))
        except (TypeError, ValueError):
            return f"unreadable transfer amount {transfer.get('amount')!r}"
        asset = STX_ASSET
    elif tx_type == "contract_call" and tx_data.get("contract_call"):
        call = tx_data["contract_call"]
        if call.get("function_name") != "transfer":
            return f"unexpected function {call.get('function_name')}"
        args = call.get("function_args") or []
        if len(args) < 3 or not all(isinstance(arg, dict) for arg in args[:3]):
            return "transfer call has unexpected arguments"
        amount_repr = str(args[0].get("repr", "u0"))
        try:
            amount = int(amount_repr.removeprefix("u"))
        except ValueError:
            return f"unreadable transfer amount {amount_repr!r}"
        recipient = str(args[2].get("repr", "")).removeprefix("'")
        asset = call.get("contract_id", "")
    else:
        return f"unexpected transaction type {tx_type}"

    if expected.asset is not None:
        if expected.asset.upper() == STX_ASSET:
            if asset != STX_ASSET:
                return f"asset mismatch: expected STX, got {asset}"
        elif asset != _asset_contract(expected.asset):
            return f"asset mismatch: expected {_asset_contract(expected.asset)}, got {asset}"
    if expected.recipient is not None and recipient != expected.recipient:
        return f"recipient mismatch: expected {expected.recipient}, got {recipient}"
    if expected.amount is not None and amount < expected.amount:
        return f"amount too low: expected {expected.amount}, got {amount}"
    return None


class StacksAdapter(SettlementAdapter):
    """Relays pre-signed Stacks transfers and verifies their confirmed effect."""

    family = ChainFamily.STACKS

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: Optional[str] = None,
        poll_policy: Optional[BackoffPolicy] = None,
        poller: Optional[ConfirmationPoller] = None,
        payout_fee: int = 10000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http = http
        self._api_key = api_key
        self._sleep = sleep
        self.poller = poller or ConfirmationPoller(poll_policy or BackoffPolicy.fixed(30, 10.0), sleep=sleep)
        self.payout_fee = payout_fee
        self._clients: Dict[str, HiroClient] = {}

    def api(self, chain: ChainConfig) -> HiroClient:
        if chain.network not in self._clients:
            self._clients[chain.network] = HiroClient(chain.rpc_url, self._http, self._api_key, sleep=self._sleep)
        return self._clients[chain.network]

    def signer_address(self, signing_key: str, chain: ChainConfig) -> str:
        return address_from_private_key(signing_key, mainnet=not chain.testnet)

    async def verify(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
    ) -> VerificationResult:
        """Decode the signed transaction and check it pays what is required."""
        tx_hex = payment.payload.get("transaction")
        if not isinstance(tx_hex, str) or not tx_hex:
            return VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD, "payload must contain 'transaction'")

        try:
            tx = decode_transaction_hex(tx_hex)
            transfer = parse_transfer(tx)
        except StacksCodecError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_TRANSACTION, str(e))

        context = {"payer": transfer.sender, "scheme": requirements.scheme, "network": chain.network}

        if tx.is_mainnet == chain.testnet:
            return VerificationResult.invalid(
                InvalidReason.NETWORK_MISMATCH,
                f"transaction is for {'mainnet' if tx.is_mainnet else 'testnet'}, requirements name {chain.network}",
                **context,
            )

        if requirements.asset.upper() == STX_ASSET:
            asset_ok = transfer.asset == STX_ASSET
        else:
            asset_ok = transfer.asset == _asset_contract(requirements.asset)
        if not asset_ok:
            return VerificationResult.invalid(
                InvalidReason.ASSET_MISMATCH, f"transfer asset {transfer.asset}, required {requirements.asset}", **context
            )

        if transfer.recipient != requirements.pay_to:
            return VerificationResult.invalid(
                InvalidReason.RECIPIENT_MISMATCH,
                f"transfer pays {transfer.recipient}, requirements pay {requirements.pay_to}",
                **context,
            )

        if not requirements.amount_satisfied(transfer.amount):
            reason = InvalidReason.AMOUNT_MISMATCH if requirements.exact else InvalidReason.INSUFFICIENT_AMOUNT
            return VerificationResult.invalid(
                reason, f"transfer amount {transfer.amount}, required {requirements.amount}", **context
            )

        return VerificationResult(
            is_valid=True,
            payer=transfer.sender,
            amount=str(transfer.amount),
            recipient=transfer.recipient,
            scheme=requirements.scheme,
            network=chain.network,
        )

    async def settle(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
        signing_key: str,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        try:
            tx = decode_transaction_hex(str(payment.payload.get("transaction", "")))
            payer = parse_transfer(tx).sender
        except StacksCodecError as e:
            return SettlementResult.failure(chain.network, InvalidReason.INVALID_TRANSACTION, str(e))

        expected = ExpectedTransfer(
            recipient=requirements.pay_to,
            amount=requirements.amount,
            asset=requirements.asset,
        )
        return await self.broadcast_and_confirm(tx.raw, chain, payer, expected, deadline)

    async def transfer(
        self,
        request: PayoutRequest,
        chain: ChainConfig,
        source_key: str,
        fee_payer_key: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Refund payout; the refund wallet pays its own fee."""
        mainnet = not chain.testnet
        try:
            sender = address_from_private_key(source_key, mainnet)
        except StacksCodecError as e:
            return SettlementResult.failure(chain.network, SettlementErrorReason.NOT_CONFIGURED, str(e))
        api = self.api(chain)
        try:
            nonce = await api.get_next_nonce(sender)
            tx = build_unsigned_transfer(
                source_key,
                mainnet=mainnet,
                nonce=nonce,
                fee=self.payout_fee,
                recipient=request.recipient,
                amount=request.amount,
                asset=request.asset,
                memo=request.reference[:34],
            )
            raw = sign_transaction(tx, source_key)
        except (HiroApiError, httpx.HTTPError, StacksCodecError, ValueError) as e:
            logger.error(f"Could not build Stacks payout {request.reference}: {e}")
            return SettlementResult.failure(chain.network, SettlementErrorReason.BROADCAST_FAILED, str(e), payer=sender)

        logger.info(f"Submitting payout {request.reference} of {request.amount} to {request.recipient} on {chain.network}")
        expected = ExpectedTransfer(recipient=request.recipient, amount=request.amount, asset=request.asset)
        return await self.broadcast_and_confirm(raw, chain, sender, expected, deadline)

    async def broadcast_and_confirm(
        self,
        raw: bytes,
        chain: ChainConfig,
        payer: str,
        expected: Optional[ExpectedTransfer],
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """Broadcast, poll until confirmed/aborted, then verify the confirmed effect."""
        api = self.api(chain)
        try:
            txid = await api.broadcast(raw)
        except (HiroApiError, httpx.HTTPError) as e:
            logger.error(f"Stacks broadcast failed on {chain.network}: {e}")
            return SettlementResult.failure(chain.network, SettlementErrorReason.BROADCAST_FAILED, str(e), payer=payer)

        tx_hash = f"0x{txid}"
        logger.info(f"Transaction submitted on {chain.network}: {tx_hash}")

        async def fetch_status(attempt: int) -> PollObservation:
            tx_data = await api.get_transaction(txid)
            if tx_data is None:
                return PollObservation.pending("not indexed yet")
            status = tx_data.get("tx_status")
            if status in ABORT_STATUSES:
                return PollObservation.failure(f"transaction aborted: {status}", value=tx_data)
            if status == "success" and (tx_data.get("block_height") or 0) > 0:
                return PollObservation.success(tx_data)
            return PollObservation.pending(f"status {status}")

        result = await self.poller.poll(fetch_status, deadline=deadline, label=f"stacks tx {tx_hash}")

        if result.outcome == PollOutcome.FAILURE:
            return SettlementResult.failure(
                chain.network, SettlementErrorReason.TRANSACTION_ABORTED, result.detail,
                transaction_hash=tx_hash, payer=payer,
            )
        if result.outcome == PollOutcome.TIMEOUT:
            return SettlementResult.failure(
                chain.network, SettlementErrorReason.CONFIRMATION_TIMEOUT,
                f"not confirmed after {result.attempts} attempts: {result.detail}",
                transaction_hash=tx_hash, payer=payer,
            )

        if expected is not None:
            try:
                confirmed = await api.get_transaction(txid)
            except (HiroApiError, httpx.HTTPError) as e:
                confirmed = None
                logger.error(f"Could not re-fetch confirmed transaction {tx_hash}: {e}")
            mismatch = (
                check_confirmed_effect(confirmed, expected)
                if confirmed is not None
                else "confirmed transaction could not be re-fetched"
            )
            if mismatch:
                logger.error(f"Post-settlement verification failed for {tx_hash}: {mismatch}")
                return SettlementResult.failure(
                    chain.network,
                    SettlementErrorReason.POST_SETTLEMENT_VERIFICATION_FAILED,
                    mismatch,
                    transaction_hash=tx_hash,
                    payer=payer,
                )

        logger.info(f"Transaction {tx_hash} confirmed and verified on {chain.network}")
        return SettlementResult(success=True, network=chain.network, transaction_hash=tx_hash, payer=payer)
