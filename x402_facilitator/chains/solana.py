"""
Solana settlement adapter (pre-signed transaction relay).

This module provides:
- SolanaRpcClient: raw JSON-RPC 2.0 over httpx (send, status, block height)
- Transaction decoding (base64 or base58, legacy or v0) via solders
- SolanaAdapter: structural verify, co-sign-as-fee-payer, submit, and
  confirmation bounded by the blockhash's last valid block height
"""

from __future__ import annotations

import base64
import json
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import base58
import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from x402_facilitator.chains.base import PayoutRequest, SettlementAdapter
from x402_facilitator.chains.poller import (
    BackoffPolicy,
    ConfirmationPoller,
    PollObservation,
    PollOutcome,
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

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)

# SPL token instruction discriminators
IX_TRANSFER = 3
IX_TRANSFER_CHECKED = 12
# Associated token account program
IX_CREATE_IDEMPOTENT = 1
# Compute budget program
IX_SET_COMPUTE_UNIT_LIMIT = 2
IX_SET_COMPUTE_UNIT_PRICE = 3
MAX_COMPUTE_UNIT_PRICE = 5_000_000  # microlamports per compute unit

COMMITMENT = "confirmed"
CONFIRMED_STATUSES = ("confirmed", "finalized")
DEFAULT_RPC_TIMEOUT = 15  # seconds


class SolanaRpcError(Exception):
    """Raised when a Solana RPC call fails or returns a JSON-RPC error."""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code


class SolanaRpcClient:
    """Minimal async JSON-RPC client for the calls settlement needs."""

    def __init__(self, rpc_url: str, http: httpx.AsyncClient, timeout: float = DEFAULT_RPC_TIMEOUT) -> None:
        self.rpc_url = rpc_url
        self._http = http
        self._timeout = timeout
        self._request_id = 0

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        try:
            response = await self._http.post(self.rpc_url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SolanaRpcError(method, str(e)) from e

        if "error" in data and data["error"]:
            error = data["error"]
            raise SolanaRpcError(method, error.get("message", str(error)), error.get("code"))
        return data.get("result")

    async def send_transaction(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        return await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": COMMITMENT}],
        )

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": False}])
        values = (result or {}).get("value") or [None]
        return values[0]

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight", [{"commitment": COMMITMENT}]))

    async def get_latest_blockhash(self) -> Dict[str, Any]:
        result = await self.call("getLatestBlockhash", [{"commitment": COMMITMENT}])
        return result["value"]


# --- Decoding ---------------------------------------------------------------

@dataclass
class TokenTransfer:
    """The SPL token transfer found in a payment transaction."""

    program_id: Pubkey
    source: Pubkey
    destination: Pubkey
    authority: Pubkey
    amount: int
    mint: Optional[Pubkey] = None  # only TransferChecked names the mint


def load_keypair(secret: str) -> Keypair:
    """Load a keypair from a base58 secret or a JSON byte array."""
    secret = secret.strip()
    if secret.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(secret)))
    return Keypair.from_base58_string(secret)


def decode_transaction(encoded: str) -> VersionedTransaction:
    """Decode a base64 (preferred) or base58 wire transaction.

    Raises:
        ValueError: If neither encoding yields a transaction
    """
    errors = []
    try:
        return VersionedTransaction.from_bytes(base64.b64decode(encoded, validate=True))
    except Exception as e:
        errors.append(f"base64: {e}")
    try:
        return VersionedTransaction.from_bytes(base58.b58decode(encoded))
    except Exception as e:
        errors.append(f"base58: {e}")
    raise ValueError("could not decode transaction (" + "; ".join(errors) + ")")


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    address, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def find_token_transfer(tx: VersionedTransaction) -> TokenTransfer:
    """Locate the single SPL token transfer instruction.

    Raises:
        ValueError: If there is none, more than one, or its accounts
            cannot be resolved from the static account keys
    """
    message = tx.message
    keys = list(message.account_keys)

    def key_at(index: int) -> Pubkey:
        if index >= len(keys):
            raise ValueError("transfer references an address-lookup-table account")
        return keys[index]

    transfers: List[TokenTransfer] = []
    for ix in message.instructions:
        program_id = key_at(ix.program_id_index)
        if program_id not in TOKEN_PROGRAMS:
            continue
        data = bytes(ix.data)
        accounts = list(ix.accounts)
        if not data:
            continue
        if data[0] == IX_TRANSFER_CHECKED and len(data) >= 10 and len(accounts) >= 4:
            transfers.append(
                TokenTransfer(
                    program_id=program_id,
                    source=key_at(accounts[0]),
                    mint=key_at(accounts[1]),
                    destination=key_at(accounts[2]),
                    authority=key_at(accounts[3]),
                    amount=struct.unpack_from("<Q", data, 1)[0],
                )
            )
        elif data[0] == IX_TRANSFER and len(data) >= 9 and len(accounts) >= 3:
            transfers.append(
                TokenTransfer(
                    program_id=program_id,
                    source=key_at(accounts[0]),
                    destination=key_at(accounts[1]),
                    authority=key_at(accounts[2]),
                    amount=struct.unpack_from("<Q", data, 1)[0],
                )
            )

    if not transfers:
        raise ValueError("no SPL token transfer instruction found")
    if len(transfers) > 1:
        raise ValueError("transaction contains more than one token transfer")
    return transfers[0]


def check_instruction_shape(
    tx: VersionedTransaction, transfer: TokenTransfer, fee_payer: Optional[Pubkey] = None
) -> None:
    """Reject anything beyond compute budget, recipient ATA creation and the transfer.

    When ``fee_payer`` is given it is a sponsor co-signing the message: it may
    fund the recipient's ATA and nothing else.

    Raises:
        ValueError: Describing the first offending instruction
    """
    message = tx.message
    keys = list(message.account_keys)

    if fee_payer is not None:
        if fee_payer == transfer.authority:
            raise ValueError(f"fee payer {fee_payer} cannot be the transfer authority")
        if transfer.mint is not None and transfer.source == associated_token_address(
            fee_payer, transfer.mint, transfer.program_id
        ):
            raise ValueError(f"transfer source is a token account of fee payer {fee_payer}")

    for position, ix in enumerate(message.instructions):
        if ix.program_id_index >= len(keys):
            raise ValueError(f"instruction {position} program is not a static account")
        program_id = keys[ix.program_id_index]
        data = bytes(ix.data)
        # accounts loaded from lookup tables can never be signers
        accounts = [keys[i] if i < len(keys) else None for i in ix.accounts]
        sponsor_slots = accounts

        if program_id == COMPUTE_BUDGET_PROGRAM_ID:
            if not data or data[0] not in (IX_SET_COMPUTE_UNIT_LIMIT, IX_SET_COMPUTE_UNIT_PRICE):
                raise ValueError(f"instruction {position} is an unsupported compute budget instruction")
            if data[0] == IX_SET_COMPUTE_UNIT_PRICE:
                if len(data) < 9 or struct.unpack_from("<Q", data, 1)[0] > MAX_COMPUTE_UNIT_PRICE:
                    raise ValueError(f"instruction {position} sets a compute unit price above {MAX_COMPUTE_UNIT_PRICE}")
        elif program_id in TOKEN_PROGRAMS:
            if not data or data[0] not in (IX_TRANSFER, IX_TRANSFER_CHECKED):
                raise ValueError(f"instruction {position} is an unsupported token instruction")
        elif program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
            if data != bytes([IX_CREATE_IDEMPOTENT]) or len(accounts) < 6:
                raise ValueError(f"instruction {position} is an unsupported associated token instruction")
            if accounts[1] != transfer.destination:
                raise ValueError(f"instruction {position} creates an account other than the payment destination")
            # account 0 is the rent funder
            sponsor_slots = accounts[1:]
        else:
            raise ValueError(f"instruction {position} calls unsupported program {program_id}")

        if fee_payer is not None and fee_payer in sponsor_slots:
            raise ValueError(f"fee payer {fee_payer} is used by instruction {position}")


def signature_valid(tx: VersionedTransaction, signer: Pubkey) -> bool:
    """Whether ``signer`` is a required signer whose signature verifies."""
    message = tx.message
    keys = list(message.account_keys)
    if signer not in keys:
        return False
    index = keys.index(signer)
    if index >= message.header.num_required_signatures or index >= len(tx.signatures):
        return False
    signature = tx.signatures[index]
    if signature == Signature.default():
        return False
    return signature.verify(signer, to_bytes_versioned(message))


# --- Adapter ------------------------------------------------------------------

class SolanaAdapter(SettlementAdapter):
    """Relays payer-signed SPL token transfers, co-signing as fee payer when asked."""

    family = ChainFamily.SOLANA

    def __init__(
        self,
        http: httpx.AsyncClient,
        poll_policy: Optional[BackoffPolicy] = None,
        poller: Optional[ConfirmationPoller] = None,
    ) -> None:
        self._http = http
        self.poller = poller or ConfirmationPoller(poll_policy or BackoffPolicy.fixed(60, 2.0))
        self._clients: Dict[str, SolanaRpcClient] = {}

    def rpc(self, chain: ChainConfig) -> SolanaRpcClient:
        if chain.network not in self._clients:
            self._clients[chain.network] = SolanaRpcClient(chain.rpc_url, self._http)
        return self._clients[chain.network]

    def signer_address(self, signing_key: str, chain: ChainConfig) -> str:
        return str(load_keypair(signing_key).pubkey())

    async def verify(
        self,
        payment: CanonicalPayment,
        requirements: CanonicalRequirements,
        chain: ChainConfig,
    ) -> VerificationResult:
        """Structural checks only; the payer's own signature is the authorization."""
        encoded = payment.payload.get("transaction")
        if not isinstance(encoded, str) or not encoded:
            return VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD, "payload must contain 'transaction'")

        try:
            tx = decode_transaction(encoded)
            transfer = find_token_transfer(tx)
        except ValueError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_TRANSACTION, str(e))

        payer = str(transfer.authority)
        context = {"payer": payer, "scheme": requirements.scheme, "network": chain.network}

        fee_payer = tx.message.account_keys[0]
        sponsor = fee_payer if fee_payer != transfer.authority else None
        try:
            check_instruction_shape(tx, transfer, sponsor)
        except ValueError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_TRANSACTION, str(e), **context)

        try:
            mint = Pubkey.from_string(requirements.asset)
            pay_to = Pubkey.from_string(requirements.pay_to)
        except ValueError as e:
            return VerificationResult.invalid(InvalidReason.INVALID_PAYLOAD, f"invalid requirements address: {e}", **context)

        if transfer.mint is not None and transfer.mint != mint:
            return VerificationResult.invalid(
                InvalidReason.ASSET_MISMATCH, f"transfer mint {transfer.mint}, required {mint}", **context
            )

        expected_destination = associated_token_address(pay_to, mint, transfer.program_id)
        if transfer.destination != expected_destination and transfer.destination != pay_to:
            return VerificationResult.invalid(
                InvalidReason.RECIPIENT_MISMATCH,
                f"transfer destination {transfer.destination}, expected {expected_destination}",
                **context,
            )

        if not requirements.amount_satisfied(transfer.amount):
            reason = InvalidReason.AMOUNT_MISMATCH if requirements.exact else InvalidReason.INSUFFICIENT_AMOUNT
            return VerificationResult.invalid(
                reason, f"transfer amount {transfer.amount}, required {requirements.amount}", **context
            )

        expected_fee_payer = requirements.extra.get("feePayer")
        if expected_fee_payer and str(fee_payer) != expected_fee_payer:
            return VerificationResult.invalid(
                InvalidReason.INVALID_TRANSACTION,
                f"fee payer {fee_payer}, expected {expected_fee_payer}",
                **context,
            )

        if not signature_valid(tx, transfer.authority):
            return VerificationResult.invalid(
                InvalidReason.INVALID_SIGNATURE, f"transfer authority {payer} has not signed", **context
            )

        return VerificationResult(
            is_valid=True,
            payer=payer,
            amount=str(transfer.amount),
            recipient=requirements.pay_to,
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
        """Co-sign if we are the fee payer, submit, and wait for confirmation."""
        try:
            tx = decode_transaction(str(payment.payload.get("transaction", "")))
            transfer = find_token_transfer(tx)
        except ValueError as e:
            return SettlementResult.failure(chain.network, InvalidReason.INVALID_TRANSACTION, str(e))
        payer = str(transfer.authority)

        keypair = load_keypair(signing_key)
        if tx.message.account_keys[0] == keypair.pubkey():
            try:
                check_instruction_shape(tx, transfer, keypair.pubkey())
            except ValueError as e:
                logger.warning(f"Refusing to co-sign transaction for {payer}: {e}")
                return SettlementResult.failure(chain.network, InvalidReason.INVALID_TRANSACTION, str(e), payer=payer)
            tx = self._co_sign(tx, keypair)
            logger.info(f"Co-signed transaction as fee payer {keypair.pubkey()}")

        return await self._submit_and_confirm(tx, chain, payer, deadline)

    async def transfer(
        self,
        request: PayoutRequest,
        chain: ChainConfig,
        source_key: str,
        fee_payer_key: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> SettlementResult:
        """SPL transfer from the refund wallet; the facilitator pays the fee."""
        owner = load_keypair(source_key)
        fee_payer = load_keypair(fee_payer_key) if fee_payer_key else owner

        try:
            mint = Pubkey.from_string(request.asset)
            recipient = Pubkey.from_string(request.recipient)
        except ValueError as e:
            return SettlementResult.failure(chain.network, InvalidReason.INVALID_PAYLOAD, str(e))

        rpc = self.rpc(chain)
        try:
            latest = await rpc.get_latest_blockhash()
        except SolanaRpcError as e:
            return SettlementResult.failure(chain.network, SettlementErrorReason.BROADCAST_FAILED, str(e))

        source_ata = associated_token_address(owner.pubkey(), mint)
        destination_ata = associated_token_address(recipient, mint)
        instructions = [
            Instruction(
                ASSOCIATED_TOKEN_PROGRAM_ID,
                bytes([IX_CREATE_IDEMPOTENT]),
                [
                    AccountMeta(fee_payer.pubkey(), is_signer=True, is_writable=True),
                    AccountMeta(destination_ata, is_signer=False, is_writable=True),
                    AccountMeta(recipient, is_signer=False, is_writable=False),
                    AccountMeta(mint, is_signer=False, is_writable=False),
                    AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                    AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
                ],
            ),
            Instruction(
                TOKEN_PROGRAM_ID,
                bytes([IX_TRANSFER]) + struct.pack("<Q", request.amount),
                [
                    AccountMeta(source_ata, is_signer=False, is_writable=True),
                    AccountMeta(destination_ata, is_signer=False, is_writable=True),
                    AccountMeta(owner.pubkey(), is_signer=True, is_writable=False),
                ],
            ),
        ]
        message = MessageV0.try_compile(
            fee_payer.pubkey(), instructions, [], Hash.from_string(latest["blockhash"])
        )
        signers = [fee_payer] if fee_payer.pubkey() == owner.pubkey() else [fee_payer, owner]
        tx = VersionedTransaction(message, signers)
        logger.info(f"Submitting payout {request.reference} of {request.amount} to {recipient} on {chain.network}")
        return await self._submit_and_confirm(tx, chain, str(owner.pubkey()), deadline, latest)

    @staticmethod
    def _co_sign(tx: VersionedTransaction, keypair: Keypair) -> VersionedTransaction:
        signature = keypair.sign_message(to_bytes_versioned(tx.message))
        signatures = list(tx.signatures)
        signatures[0] = signature
        return VersionedTransaction.populate(tx.message, signatures)

    async def _submit_and_confirm(
        self,
        tx: VersionedTransaction,
        chain: ChainConfig,
        payer: str,
        deadline: Optional[float],
        latest: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        rpc = self.rpc(chain)
        signature = str(tx.signatures[0])

        try:
            if latest is None:
                latest = await rpc.get_latest_blockhash()
            # The payment's blockhash is no newer than the latest one, so its
            # expiry height is bounded by the latest lastValidBlockHeight.
            last_valid_height = int(latest["lastValidBlockHeight"])
            sent = await rpc.send_transaction(bytes(tx))
        except (SolanaRpcError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Solana broadcast failed on {chain.network}: {e}")
            return SettlementResult.failure(
                chain.network, SettlementErrorReason.BROADCAST_FAILED, str(e), payer=payer
            )

        signature = sent or signature
        logger.info(f"Transaction submitted on {chain.network}: {signature}")

        async def fetch_status(attempt: int) -> PollObservation:
            status = await rpc.get_signature_status(signature)
            if status:
                if status.get("err"):
                    return PollObservation.failure(f"transaction failed: {status['err']}", value=status)
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return PollObservation.success(status)
            height = await rpc.get_block_height()
            if height > last_valid_height:
                return PollObservation.expired(
                    f"block height {height} exceeded last valid height {last_valid_height}"
                )
            return PollObservation.pending()

        result = await self.poller.poll(fetch_status, deadline=deadline, label=f"solana tx {signature}")

        if result.outcome == PollOutcome.SUCCESS:
            logger.info(f"Transaction {signature} confirmed on {chain.network}")
            return SettlementResult(success=True, network=chain.network, transaction_hash=signature, payer=payer)
        if result.outcome == PollOutcome.FAILURE:
            return SettlementResult.failure(
                chain.network,
                SettlementErrorReason.TRANSACTION_FAILED,
                result.detail,
                transaction_hash=signature,
                payer=payer,
            )
        return SettlementResult.failure(
            chain.network,
            SettlementErrorReason.CONFIRMATION_TIMEOUT,
            result.detail,
            transaction_hash=signature,
            payer=payer,
        )
