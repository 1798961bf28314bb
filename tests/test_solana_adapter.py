import base64
import json
import struct

import httpx
import pytest
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from x402_facilitator.chains.poller import BackoffPolicy, ConfirmationPoller
from x402_facilitator.chains.solana import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    IX_CREATE_IDEMPOTENT,
    IX_TRANSFER_CHECKED,
    TOKEN_PROGRAM_ID,
    SolanaAdapter,
    associated_token_address,
    check_instruction_shape,
    decode_transaction,
    find_token_transfer,
    signature_valid,
)
from x402_facilitator.payment.normalize import normalize_payment, normalize_requirements
from x402_facilitator.payment.types import InvalidReason, SettlementErrorReason

from conftest import no_sleep

PAYER = Keypair.from_seed(bytes([1] * 32))
FACILITATOR = Keypair.from_seed(bytes([2] * 32))
RECIPIENT = Keypair.from_seed(bytes([3] * 32)).pubkey()
MINT = Keypair.from_seed(bytes([4] * 32)).pubkey()
FACILITATOR_SECRET = json.dumps(list(bytes(FACILITATOR)))
LAST_VALID_HEIGHT = 1000


def build_payment_tx(amount=5000, recipient=RECIPIENT, payer_signs=True, extra=(), authority=PAYER) -> VersionedTransaction:
    """TransferChecked from the authority's ATA, with the facilitator as fee payer."""
    source = associated_token_address(authority.pubkey(), MINT)
    destination = associated_token_address(recipient, MINT)
    ix = Instruction(
        TOKEN_PROGRAM_ID,
        bytes([IX_TRANSFER_CHECKED]) + struct.pack("<Q", amount) + bytes([6]),
        [
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(MINT, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(authority.pubkey(), is_signer=True, is_writable=False),
        ],
    )
    message = MessageV0.try_compile(FACILITATOR.pubkey(), [*extra, ix], [], Hash.default())
    if authority is FACILITATOR:
        return VersionedTransaction.populate(message, [Signature.default()])
    payer_signature = authority.sign_message(to_bytes_versioned(message)) if payer_signs else Signature.default()
    return VersionedTransaction.populate(message, [Signature.default(), payer_signature])


def _encode(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode()


def _inputs(tx=None, **requirement_overrides):
    payment = normalize_payment(
        {
            "x402Version": 1,
            "scheme": "exact",
            "network": "solana-devnet",
            "payload": {"transaction": _encode(tx or build_payment_tx())},
        }
    )
    requirements = {
        "scheme": "exact",
        "network": "solana-devnet",
        "maxAmountRequired": "5000",
        "payTo": str(RECIPIENT),
        "asset": str(MINT),
        "extra": {"feePayer": str(FACILITATOR.pubkey())},
    }
    requirements.update(requirement_overrides)
    return payment, normalize_requirements(requirements, 1)


class FakeSolanaRpc:
    """JSON-RPC responder behind httpx.MockTransport."""

    def __init__(self, statuses=None, block_height=10, send_error=None):
        self.statuses = list(statuses or [{"confirmationStatus": "confirmed", "err": None}])
        self.block_height = block_height
        self.send_error = send_error
        self.sent = []
        self.methods = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.methods.append(method)

        if method == "getLatestBlockhash":
            result = {"context": {"slot": 1}, "value": {"blockhash": str(Hash.default()), "lastValidBlockHeight": LAST_VALID_HEIGHT}}
        elif method == "sendTransaction":
            if self.send_error:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32002, "message": self.send_error}})
            tx = VersionedTransaction.from_bytes(base64.b64decode(body["params"][0]))
            self.sent.append(tx)
            result = str(tx.signatures[0])
        elif method == "getSignatureStatuses":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            result = {"context": {"slot": 1}, "value": [status]}
        elif method == "getBlockHeight":
            result = self.block_height
        else:
            return httpx.Response(400)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.fixture
def devnet(registry):
    return registry.resolve("solana-devnet")


def _adapter(rpc: FakeSolanaRpc, attempts: int = 5) -> SolanaAdapter:
    http = httpx.AsyncClient(transport=httpx.MockTransport(rpc.handler))
    poller = ConfirmationPoller(BackoffPolicy.fixed(attempts, 0.0), sleep=no_sleep)
    return SolanaAdapter(http, poller=poller)


# --- decoding -----------------------------------------------------------------

def test_decode_accepts_base64_and_base58():
    import base58

    tx = build_payment_tx()
    assert decode_transaction(_encode(tx)) == tx
    assert decode_transaction(base58.b58encode(bytes(tx)).decode()) == tx
    with pytest.raises(ValueError):
        decode_transaction("definitely not a transaction")


def test_find_transfer_checked():
    transfer = find_token_transfer(build_payment_tx(amount=42))
    assert transfer.amount == 42
    assert transfer.mint == MINT
    assert transfer.authority == PAYER.pubkey()
    assert transfer.destination == associated_token_address(RECIPIENT, MINT)


# --- verify -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_valid_payment(devnet):
    payment, reqs = _inputs()
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)

    assert result.is_valid, result.details
    # the payer is the transfer authority, not the fee payer
    assert result.payer == str(PAYER.pubkey())


@pytest.mark.asyncio
async def test_verify_recipient_mismatch(devnet):
    other = Keypair.from_seed(bytes([9] * 32)).pubkey()
    payment, reqs = _inputs(build_payment_tx(recipient=other))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)

    assert result.invalid_reason == InvalidReason.RECIPIENT_MISMATCH
    assert result.payer == str(PAYER.pubkey())


@pytest.mark.asyncio
async def test_verify_insufficient_amount(devnet):
    payment, reqs = _inputs(build_payment_tx(amount=4999))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.invalid_reason == InvalidReason.INSUFFICIENT_AMOUNT


@pytest.mark.asyncio
async def test_verify_wrong_mint(devnet):
    payment, reqs = _inputs(asset=str(RECIPIENT))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.invalid_reason == InvalidReason.ASSET_MISMATCH


@pytest.mark.asyncio
async def test_verify_requires_payer_signature(devnet):
    payment, reqs = _inputs(build_payment_tx(payer_signs=False))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.invalid_reason == InvalidReason.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_verify_undecodable_transaction(devnet):
    payment, reqs = _inputs()
    payment.payload["transaction"] = "AAAA"
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.invalid_reason == InvalidReason.INVALID_TRANSACTION


def _create_ata(owner=RECIPIENT, funder=FACILITATOR.pubkey()) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        bytes([IX_CREATE_IDEMPOTENT]),
        [
            AccountMeta(funder, is_signer=True, is_writable=True),
            AccountMeta(associated_token_address(owner, MINT), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(MINT, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def _drain_fee_payer() -> Instruction:
    return transfer(TransferParams(from_pubkey=FACILITATOR.pubkey(), to_pubkey=PAYER.pubkey(), lamports=1_000_000_000))


@pytest.mark.asyncio
async def test_verify_accepts_compute_budget_and_recipient_ata(devnet):
    extra = (set_compute_unit_limit(200_000), set_compute_unit_price(1_000), _create_ata())
    payment, reqs = _inputs(build_payment_tx(extra=extra))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.is_valid, result.details


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "extra,message",
    [
        ((_drain_fee_payer(),), "unsupported program"),
        ((set_compute_unit_price(10**9),), "compute unit price"),
        ((_create_ata(owner=PAYER.pubkey()),), "other than the payment destination"),
        (
            (Instruction(TOKEN_PROGRAM_ID, bytes([9]), [AccountMeta(MINT, is_signer=False, is_writable=True)]),),
            "unsupported token instruction",
        ),
    ],
)
async def test_verify_rejects_unexpected_instructions(devnet, extra, message):
    payment, reqs = _inputs(build_payment_tx(extra=extra))
    result = await _adapter(FakeSolanaRpc()).verify(payment, reqs, devnet)
    assert result.invalid_reason == InvalidReason.INVALID_TRANSACTION
    assert message in result.details


def test_fee_payer_may_only_fund_the_recipient_ata():
    tx = build_payment_tx()
    transfer_ix = find_token_transfer(tx)
    check_instruction_shape(tx, transfer_ix, FACILITATOR.pubkey())

    with pytest.raises(ValueError, match="transfer authority"):
        check_instruction_shape(tx, transfer_ix, PAYER.pubkey())

    tx = build_payment_tx(extra=(_create_ata(funder=PAYER.pubkey()),))
    check_instruction_shape(tx, find_token_transfer(tx), None)
    with pytest.raises(ValueError, match="is used by instruction"):
        check_instruction_shape(tx, find_token_transfer(tx), RECIPIENT)


# --- settle -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_settle_co_signs_and_confirms(devnet):
    rpc = FakeSolanaRpc(statuses=[None, {"confirmationStatus": "processed", "err": None}, {"confirmationStatus": "confirmed", "err": None}])
    payment, reqs = _inputs()

    result = await _adapter(rpc).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert result.success, result.error_message
    assert result.payer == str(PAYER.pubkey())
    sent = rpc.sent[0]
    assert result.transaction_hash == str(sent.signatures[0])
    assert signature_valid(sent, FACILITATOR.pubkey())
    assert signature_valid(sent, PAYER.pubkey())
    assert rpc.methods.count("getSignatureStatuses") == 3


@pytest.mark.asyncio
async def test_settle_pending_until_budget_is_a_timeout(devnet):
    rpc = FakeSolanaRpc(statuses=[None])
    payment, reqs = _inputs()

    result = await _adapter(rpc, attempts=3).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert not result.success
    assert result.error_reason == SettlementErrorReason.CONFIRMATION_TIMEOUT.value
    assert result.transaction_hash == str(rpc.sent[0].signatures[0])


@pytest.mark.asyncio
async def test_settle_stops_once_blockhash_expires(devnet):
    rpc = FakeSolanaRpc(statuses=[None], block_height=LAST_VALID_HEIGHT + 1)
    payment, reqs = _inputs()

    result = await _adapter(rpc, attempts=30).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert result.error_reason == SettlementErrorReason.CONFIRMATION_TIMEOUT.value
    assert "exceeded last valid height" in result.error_message
    assert rpc.methods.count("getSignatureStatuses") == 1


@pytest.mark.asyncio
async def test_settle_reports_on_chain_error(devnet):
    rpc = FakeSolanaRpc(statuses=[{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "Custom"]}}])
    payment, reqs = _inputs()

    result = await _adapter(rpc).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert result.error_reason == SettlementErrorReason.TRANSACTION_FAILED.value
    assert result.transaction_hash


@pytest.mark.asyncio
async def test_settle_broadcast_rejected(devnet):
    rpc = FakeSolanaRpc(send_error="Transaction simulation failed")
    payment, reqs = _inputs()

    result = await _adapter(rpc).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert result.error_reason == SettlementErrorReason.BROADCAST_FAILED.value
    assert "simulation failed" in result.error_message
    assert "getSignatureStatuses" not in rpc.methods


@pytest.mark.asyncio
async def test_settle_refuses_to_co_sign_fee_payer_drain(devnet):
    rpc = FakeSolanaRpc()
    payment, reqs = _inputs(build_payment_tx(extra=(_drain_fee_payer(),)))

    result = await _adapter(rpc).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert result.error_reason == InvalidReason.INVALID_TRANSACTION.value
    assert rpc.sent == []


@pytest.mark.asyncio
async def test_settle_refuses_facilitator_as_transfer_authority(devnet):
    rpc = FakeSolanaRpc()
    payment, reqs = _inputs(build_payment_tx(authority=FACILITATOR))

    result = await _adapter(rpc).settle(payment, reqs, devnet, FACILITATOR_SECRET)

    assert not result.success
    assert "transfer authority" in result.error_message
    assert rpc.sent == []


def test_signer_address(devnet):
    adapter = SolanaAdapter(httpx.AsyncClient())
    assert adapter.signer_address(FACILITATOR_SECRET, devnet) == str(FACILITATOR.pubkey())


# Run with: pytest -q tests/test_solana_adapter.py
