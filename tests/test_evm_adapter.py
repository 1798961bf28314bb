import asyncio

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from x402_facilitator.chains.base import PayoutRequest
from x402_facilitator.chains.erc3009 import (
    TRANSFER_WITH_AUTHORIZATION_SELECTOR,
    Authorization,
    build_typed_data,
    recover_signer,
    split_signature,
)
from x402_facilitator.chains.evm import EVMAdapter, NonceManager
from x402_facilitator.chains.gas import GasStrategy
from x402_facilitator.networks.tokens import USDC_BASE
from x402_facilitator.payment.normalize import normalize_payment, normalize_requirements
from x402_facilitator.payment.types import InvalidReason, SettlementErrorReason

from conftest import (
    FACILITATOR,
    FACILITATOR_KEY,
    NOW,
    PAYER,
    RECIPIENT,
    REFUND_KEY,
    make_evm_payment,
    make_requirements,
)


async def _value(v):
    return v


class FakeEth:
    def __init__(self, balance=10**18, receipt_status=1, base_fee=1_000_000_000, receipt_error=None, revert_message=None):
        self.balance = balance
        self.receipt_status = receipt_status
        self.base_fee = base_fee
        self.receipt_error = receipt_error
        self.revert_message = revert_message
        self.sent = []
        self.calls = []
        self.pending_count = 7

    async def fee_history(self, block_count, newest, percentiles):
        if self.base_fee is None:
            raise ValueError("method not supported")
        return {"baseFeePerGas": [self.base_fee]}

    @property
    def max_priority_fee(self):
        return _value(1_000_000)

    @property
    def gas_price(self):
        return _value(2_000_000_000)

    async def get_balance(self, address):
        return self.balance

    async def get_transaction_count(self, address, block_identifier):
        return self.pending_count

    async def send_raw_transaction(self, raw):
        self.sent.append(bytes(raw))
        return bytes([len(self.sent)]) * 32

    async def wait_for_transaction_receipt(self, tx_hash, timeout, poll_latency):
        self.receipt_timeout = timeout
        if self.receipt_error is not None:
            raise self.receipt_error
        return {"status": self.receipt_status, "blockNumber": 1234, "transactionHash": tx_hash}

    async def call(self, tx, block):
        self.calls.append((tx, block))
        if self.revert_message:
            raise ContractLogicError(self.revert_message)
        return b""


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth


def _adapter(eth: FakeEth = None, **kwargs) -> EVMAdapter:
    w3 = FakeWeb3(eth or FakeEth())
    return EVMAdapter(web3_factory=lambda chain: w3, clock=lambda: NOW, **kwargs)


def _inputs(payment=None, requirements=None, version=1):
    payment = normalize_payment(payment or make_evm_payment())
    reqs = normalize_requirements(requirements or make_requirements(), version)
    return payment, reqs


# --- verify -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_valid_base_usdc_authorization(base_chain):
    payment, reqs = _inputs()
    result = await _adapter().verify(payment, reqs, base_chain)

    assert result.is_valid, result.details
    assert result.payer == PAYER
    assert result.amount == "1000000"
    assert result.recipient == RECIPIENT


@pytest.mark.asyncio
async def test_verify_rejects_signature_from_someone_else(base_chain):
    # signed by an unrelated key but claims to be from the payer
    payment, reqs = _inputs(make_evm_payment(signer_key="0x" + "55" * 32, from_address=PAYER))
    result = await _adapter().verify(payment, reqs, base_chain)

    assert not result.is_valid
    assert result.invalid_reason == InvalidReason.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_verify_rejects_wrong_domain(base_chain):
    payment, reqs = _inputs(make_evm_payment(chain_id=84532))
    result = await _adapter().verify(payment, reqs, base_chain)
    assert result.invalid_reason == InvalidReason.INVALID_SIGNATURE


@pytest.mark.asyncio
async def test_verify_uses_extra_domain_name(base_chain):
    payment, reqs = _inputs(
        make_evm_payment(name="Custom Token", version="1"),
        make_requirements(extra={"name": "Custom Token", "version": "1"}),
    )
    result = await _adapter().verify(payment, reqs, base_chain)
    assert result.is_valid, result.details


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payment_kwargs,reason",
    [
        ({"valid_after": NOW + 10}, InvalidReason.AUTHORIZATION_NOT_YET_VALID),
        ({"valid_before": NOW - 1}, InvalidReason.AUTHORIZATION_EXPIRED),
        ({"to": FACILITATOR}, InvalidReason.RECIPIENT_MISMATCH),
        ({"value": 999_999}, InvalidReason.INSUFFICIENT_AMOUNT),
    ],
)
async def test_verify_rejections(base_chain, payment_kwargs, reason):
    payment, reqs = _inputs(make_evm_payment(**payment_kwargs))
    result = await _adapter().verify(payment, reqs, base_chain)

    assert not result.is_valid
    assert result.invalid_reason == reason
    assert result.payer == PAYER


@pytest.mark.asyncio
async def test_verify_v1_accepts_overpayment(base_chain):
    payment, reqs = _inputs(make_evm_payment(value=2_000_000))
    assert (await _adapter().verify(payment, reqs, base_chain)).is_valid


@pytest.mark.asyncio
async def test_verify_v2_amount_must_match_exactly(base_chain):
    payment, reqs = _inputs(
        make_evm_payment(value=2_000_000),
        make_requirements(amount="1000000", maxAmountRequired=None),
        version=2,
    )
    result = await _adapter().verify(payment, reqs, base_chain)
    assert result.invalid_reason == InvalidReason.AMOUNT_MISMATCH


@pytest.mark.asyncio
async def test_verify_malformed_payload(base_chain):
    payment, reqs = _inputs({"x402Version": 1, "scheme": "exact", "network": "base", "payload": {"signature": "0x"}})
    result = await _adapter().verify(payment, reqs, base_chain)
    assert result.invalid_reason == InvalidReason.INVALID_PAYLOAD


@pytest.mark.asyncio
async def test_verify_is_idempotent(base_chain):
    adapter = _adapter()
    payment, reqs = _inputs()
    first = await adapter.verify(payment, reqs, base_chain)
    second = await adapter.verify(payment, reqs, base_chain)
    assert first == second


def test_typed_data_recovers_signer():
    payment = make_evm_payment()
    authorization = Authorization.from_payload(payment["payload"]["authorization"])
    typed = build_typed_data(authorization, 8453, USDC_BASE, "USD Coin", "2")
    assert recover_signer(typed, payment["payload"]["signature"]) == PAYER


def test_split_signature_normalizes_v():
    v, r, s = split_signature("0x" + "11" * 32 + "22" * 32 + "01")
    assert v == 28
    assert r == bytes.fromhex("11" * 32)
    with pytest.raises(ValueError):
        split_signature("0x1234")


# --- settle -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_settle_submits_and_confirms(base_chain):
    eth = FakeEth()
    payment, reqs = _inputs()

    result = await _adapter(eth).settle(payment, reqs, base_chain, FACILITATOR_KEY)

    assert result.success, result.error_message
    assert result.transaction_hash == "0x" + "01" * 32
    assert result.payer == PAYER
    assert len(eth.sent) == 1


@pytest.mark.asyncio
async def test_settle_reverted_carries_reason(base_chain):
    eth = FakeEth(receipt_status=0, revert_message="execution reverted: FiatTokenV2: authorization is used or canceled")
    payment, reqs = _inputs()

    result = await _adapter(eth).settle(payment, reqs, base_chain, FACILITATOR_KEY)

    assert not result.success
    assert result.error_reason == SettlementErrorReason.TRANSACTION_REVERTED.value
    assert "authorization is used" in result.error_message
    assert result.transaction_hash
    tx, block = eth.calls[0]
    assert block == 1234
    assert tx["data"].startswith(Web3.to_hex(TRANSFER_WITH_AUTHORIZATION_SELECTOR))


@pytest.mark.asyncio
async def test_settle_timeout_returns_hash(base_chain):
    eth = FakeEth(receipt_error=TimeExhausted("no receipt"))
    payment, reqs = _inputs()

    result = await _adapter(eth, receipt_timeout=30).settle(payment, reqs, base_chain, FACILITATOR_KEY)

    assert not result.success
    assert result.error_reason == SettlementErrorReason.CONFIRMATION_TIMEOUT.value
    assert result.transaction_hash.startswith("0x")
    assert eth.receipt_timeout == 30


@pytest.mark.asyncio
async def test_settle_insufficient_gas_funds(base_chain):
    eth = FakeEth(balance=1)
    payment, reqs = _inputs()

    result = await _adapter(eth).settle(payment, reqs, base_chain, FACILITATOR_KEY)

    assert result.error_reason == SettlementErrorReason.INSUFFICIENT_GAS_FUNDS.value
    assert eth.sent == []


@pytest.mark.asyncio
async def test_settle_falls_back_to_legacy_gas(base_chain):
    eth = FakeEth(base_fee=None)
    gas = await GasStrategy().calculate(FakeWeb3(eth))
    assert gas.gas_price == 2_000_000_000
    assert gas.as_tx_fields() == {"gas": 100000, "gasPrice": 2_000_000_000}

    payment, reqs = _inputs()
    assert (await _adapter(eth).settle(payment, reqs, base_chain, FACILITATOR_KEY)).success


@pytest.mark.asyncio
async def test_eip1559_fee_params():
    gas = await GasStrategy().calculate(FakeWeb3(FakeEth(base_fee=100)))
    assert gas.max_priority_fee_per_gas == 1_000_000
    assert gas.max_fee_per_gas == 200 + 1_000_000
    assert gas.max_cost == 100000 * (200 + 1_000_000)


@pytest.mark.asyncio
async def test_concurrent_settlements_get_distinct_nonces(base_chain):
    class RecordingNonces(NonceManager):
        def __init__(self):
            super().__init__()
            self.used = []

        def mark_used(self, chain_id, address, nonce):
            self.used.append(nonce)
            super().mark_used(chain_id, address, nonce)

    eth = FakeEth()
    nonces = RecordingNonces()
    adapter = _adapter(eth, nonce_manager=nonces)
    payments = [
        _inputs(make_evm_payment(nonce="0x" + f"{i:02x}" * 32)) for i in range(1, 4)
    ]

    results = await asyncio.gather(
        *(adapter.settle(p, r, base_chain, FACILITATOR_KEY) for p, r in payments)
    )

    assert all(r.success for r in results)
    assert sorted(nonces.used) == [7, 8, 9]
    assert len(eth.sent) == 3


@pytest.mark.asyncio
async def test_nonce_manager_takes_max_of_chain_and_local():
    manager = NonceManager()
    w3 = FakeWeb3(FakeEth())
    assert await manager.next_nonce(w3, 1, FACILITATOR) == 7
    manager.mark_used(1, FACILITATOR, 10)
    assert await manager.next_nonce(w3, 1, FACILITATOR) == 11
    manager.reset(1, FACILITATOR)
    assert await manager.next_nonce(w3, 1, FACILITATOR) == 7


@pytest.mark.asyncio
async def test_transfer_signs_payout_with_refund_key(base_chain):
    eth = FakeEth()
    request = PayoutRequest(recipient=RECIPIENT, amount=500_000, asset=USDC_BASE, reference="claim-1")

    result = await _adapter(eth).transfer(request, base_chain, REFUND_KEY, fee_payer_key=FACILITATOR_KEY)

    assert result.success
    assert len(eth.sent) == 1


@pytest.mark.asyncio
async def test_transfer_requires_facilitator_key(base_chain):
    request = PayoutRequest(recipient=RECIPIENT, amount=1, asset=USDC_BASE)
    result = await _adapter().transfer(request, base_chain, REFUND_KEY)
    assert result.error_reason == SettlementErrorReason.NOT_CONFIGURED.value


# Run with: pytest -q tests/test_evm_adapter.py
