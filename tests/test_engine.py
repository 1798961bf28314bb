import pytest

from x402_facilitator.config import SigningMaterial
from x402_facilitator.networks.registry import ChainFamily
from x402_facilitator.payment.engine import FacilitatorEngine
from x402_facilitator.payment.types import (
    InvalidReason,
    SettlementErrorReason,
    SettlementResult,
    VerificationResult,
)
from x402_facilitator.persistence import InMemoryStore
from x402_facilitator.webhooks.dispatcher import WebhookEvent

from conftest import (
    FACILITATOR,
    FACILITATOR_KEY,
    PAYER,
    FakeAdapter,
    RecordingWebhooks,
    make_evm_payment,
    make_requirements,
)

SOLANA_FEE_PAYER = "FaciLitator1111111111111111111111111111111111"


def _engine(registry, evm=None, solana=None, signing=None, **kwargs) -> FacilitatorEngine:
    adapters = {ChainFamily.EVM: evm or FakeAdapter()}
    if solana is not None:
        adapters[ChainFamily.SOLANA] = solana
    return FacilitatorEngine(
        registry=registry,
        adapters=adapters,
        signing=signing if signing is not None else SigningMaterial(evm_private_key=FACILITATOR_KEY),
        **kwargs,
    )


# --- verify -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_delegates_to_family_adapter(registry):
    evm = FakeAdapter()
    result = await _engine(registry, evm=evm).verify(make_evm_payment(), make_requirements())

    assert result.is_valid
    assert result.payer == PAYER
    _, reqs, chain = evm.verify_calls[0]
    assert chain.network == "base"
    assert reqs.amount == 1_000_000


@pytest.mark.asyncio
async def test_solana_payment_against_base_requirements(registry):
    evm, solana = FakeAdapter(), FakeAdapter(ChainFamily.SOLANA)
    payment = {"x402Version": 1, "scheme": "exact", "network": "solana", "payload": {"transaction": "AQ=="}}

    result = await _engine(registry, evm=evm, solana=solana).verify(payment, make_requirements())

    assert not result.is_valid
    assert result.invalid_reason == InvalidReason.NETWORK_MISMATCH
    assert evm.verify_calls == [] and solana.verify_calls == []


@pytest.mark.asyncio
async def test_caip2_and_name_refer_to_the_same_network(registry):
    # payment says "base", requirements say "eip155:8453"
    result = await _engine(registry).verify(make_evm_payment(network="base"), make_requirements(network="eip155:8453"))
    assert result.is_valid


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payment,requirements,reason",
    [
        ("%%% not a payload", make_requirements(), InvalidReason.INVALID_PAYLOAD),
        (make_evm_payment(), make_requirements(network="cronos"), InvalidReason.UNSUPPORTED_NETWORK),
        (make_evm_payment(), make_requirements(scheme="upto"), InvalidReason.UNSUPPORTED_SCHEME),
        (
            {**make_evm_payment(), "scheme": "upto"},
            make_requirements(),
            InvalidReason.SCHEME_MISMATCH,
        ),
    ],
)
async def test_verify_rejections_before_adapter(registry, payment, requirements, reason):
    evm = FakeAdapter()
    result = await _engine(registry, evm=evm).verify(payment, requirements)

    assert result.invalid_reason == reason
    assert evm.verify_calls == []


@pytest.mark.asyncio
async def test_network_not_enabled(registry):
    engine = _engine(registry, enabled_networks=["base-sepolia"])
    result = await engine.verify(make_evm_payment(), make_requirements())
    assert result.invalid_reason == InvalidReason.UNSUPPORTED_NETWORK


def test_enabled_networks_skip_unknown_and_adapterless(registry):
    engine = _engine(registry, enabled_networks=["base", "eip155:8453", "stacks", "nowhere"])
    assert [c.network for c in engine.enabled_chains] == ["base"]


# --- settle -------------------------------------------------------------------

@pytest.mark.asyncio
async def test_settle_success_records_notifies_and_consumes_nonce(registry):
    store, webhooks = InMemoryStore(), RecordingWebhooks()
    evm = FakeAdapter()
    engine = _engine(
        registry, evm=evm, store=store, webhooks=webhooks,
        facilitator_id="fac-1", webhook_url="https://hooks.example.com", webhook_secret="s3cret",
    )

    result = await engine.settle(make_evm_payment(), make_requirements())

    assert result.success
    assert result.payer == PAYER
    assert evm.settle_calls[0][3] == FACILITATOR_KEY

    records = await store.list_transactions("fac-1")
    assert len(records) == 1
    assert records[0].transaction_hash == result.transaction_hash
    assert records[0].amount == "1000000"

    event = webhooks.events[0]
    assert event["url"] == "https://hooks.example.com"
    assert event["payload"]["event"] == WebhookEvent.PAYMENT_SETTLED
    assert event["payload"]["payment"]["transaction"] == result.transaction_hash
    assert event["payload"]["payment"]["payTo"] == make_requirements()["payTo"]

    # the same authorization cannot be verified or settled again
    again = await engine.verify(make_evm_payment(), make_requirements())
    assert again.invalid_reason == InvalidReason.NONCE_ALREADY_USED
    replay = await engine.settle(make_evm_payment(), make_requirements())
    assert replay.error_reason == InvalidReason.NONCE_ALREADY_USED.value
    assert len(evm.settle_calls) == 1


@pytest.mark.asyncio
async def test_settle_without_key_is_not_configured(registry):
    evm = FakeAdapter()
    result = await _engine(registry, evm=evm, signing=SigningMaterial()).settle(make_evm_payment(), make_requirements())

    assert result.error_reason == SettlementErrorReason.NOT_CONFIGURED.value
    assert result.payer == PAYER
    assert evm.settle_calls == []


@pytest.mark.asyncio
async def test_settle_reverifies_first(registry):
    evm = FakeAdapter(verify_result=VerificationResult.invalid(InvalidReason.AUTHORIZATION_EXPIRED, "expired", payer=PAYER, network="base"))
    result = await _engine(registry, evm=evm).settle(make_evm_payment(), make_requirements())

    assert not result.success
    assert result.error_reason == InvalidReason.AUTHORIZATION_EXPIRED.value
    assert result.network == "base"
    assert evm.settle_calls == []


@pytest.mark.asyncio
async def test_failed_broadcast_releases_nonce(registry):
    evm = FakeAdapter(settle_result=SettlementResult.failure("base", SettlementErrorReason.BROADCAST_FAILED, "rpc down"))
    engine = _engine(registry, evm=evm)

    first = await engine.settle(make_evm_payment(), make_requirements())
    assert first.error_reason == SettlementErrorReason.BROADCAST_FAILED.value
    assert first.payer == PAYER

    evm.settle_result = None
    retry = await engine.settle(make_evm_payment(), make_requirements())
    assert retry.success


@pytest.mark.asyncio
async def test_confirmation_timeout_keeps_nonce(registry):
    timeout = SettlementResult.failure(
        "base", SettlementErrorReason.CONFIRMATION_TIMEOUT, "no receipt", transaction_hash="0x" + "aa" * 32
    )
    evm = FakeAdapter(settle_result=timeout)
    engine = _engine(registry, evm=evm)

    first = await engine.settle(make_evm_payment(), make_requirements())
    assert first.error_reason == SettlementErrorReason.CONFIRMATION_TIMEOUT.value
    assert first.transaction_hash == "0x" + "aa" * 32

    evm.settle_result = None
    retry = await engine.settle(make_evm_payment(), make_requirements())
    assert retry.error_reason == InvalidReason.NONCE_ALREADY_USED.value
    assert len(evm.settle_calls) == 1


@pytest.mark.asyncio
async def test_adapter_crash_propagates_and_keeps_nonce(registry):
    class ExplodingAdapter(FakeAdapter):
        async def settle(self, *args, **kwargs):
            raise RuntimeError("boom")

    engine = _engine(registry, evm=ExplodingAdapter())
    with pytest.raises(RuntimeError):
        await engine.settle(make_evm_payment(), make_requirements())

    result = await engine.verify(make_evm_payment(), make_requirements())
    assert result.invalid_reason == InvalidReason.NONCE_ALREADY_USED


@pytest.mark.asyncio
async def test_failed_settlement_sends_failure_webhook(registry):
    webhooks = RecordingWebhooks()
    evm = FakeAdapter(settle_result=SettlementResult.failure("base", SettlementErrorReason.TRANSACTION_REVERTED, "reverted"))
    engine = _engine(registry, evm=evm, webhooks=webhooks, webhook_url="https://hooks.example.com", webhook_secret="s")

    await engine.settle(make_evm_payment(), make_requirements())

    assert webhooks.events[0]["payload"]["event"] == WebhookEvent.PAYMENT_FAILED
    assert webhooks.events[0]["payload"]["payment"]["errorReason"] == "transaction_reverted"


@pytest.mark.asyncio
async def test_distinct_nonces_settle_independently(registry):
    engine = _engine(registry)
    first = await engine.settle(make_evm_payment(nonce="0x" + "01" * 32), make_requirements())
    second = await engine.settle(make_evm_payment(nonce="0x" + "02" * 32), make_requirements())
    assert first.success and second.success


@pytest.mark.asyncio
async def test_settle_passes_deadline(registry):
    evm = FakeAdapter()
    await _engine(registry, evm=evm, settle_timeout_seconds=30).settle(make_evm_payment(), make_requirements())
    assert evm.settle_calls[0][4] is not None


# --- supported ----------------------------------------------------------------

def test_supported_lists_kinds_signers_and_fee_payer(registry):
    solana = FakeAdapter(ChainFamily.SOLANA, address=SOLANA_FEE_PAYER)
    engine = _engine(
        registry,
        solana=solana,
        signing=SigningMaterial(evm_private_key=FACILITATOR_KEY, solana_private_key="solana-secret"),
        enabled_networks=["base", "solana-devnet"],
    )

    doc = engine.supported()

    assert {(k["x402Version"], k["network"]) for k in doc["kinds"]} == {
        (1, "base"),
        (2, "eip155:8453"),
        (1, "solana-devnet"),
        (2, "solana:EtWTRABZaYq6iMfeYKouRu166VU2xqa1"),
    }
    assert all(k["scheme"] == "exact" for k in doc["kinds"])
    solana_kinds = [k for k in doc["kinds"] if "solana" in k["network"]]
    assert all(k["extra"] == {"feePayer": SOLANA_FEE_PAYER} for k in solana_kinds)
    assert doc["signers"] == {"eip155:*": [FACILITATOR], "solana:*": [SOLANA_FEE_PAYER]}
    assert doc["extensions"] == []


def test_supported_without_keys_has_no_signers(registry):
    doc = _engine(registry, signing=SigningMaterial(), enabled_networks=["base"]).supported()
    assert len(doc["kinds"]) == 2
    assert doc["signers"] == {}


# Run with: pytest -q tests/test_engine.py
