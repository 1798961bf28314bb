"""Shared fixtures and fakes for facilitator tests."""

from typing import Any, Dict, List, Optional

import pytest
from eth_account import Account

from x402_facilitator.chains.base import PayoutRequest, SettlementAdapter
from x402_facilitator.chains.erc3009 import Authorization, build_typed_data, sign_authorization
from x402_facilitator.networks.registry import ChainConfig, ChainFamily, NetworkRegistry
from x402_facilitator.networks.tokens import USDC_BASE
from x402_facilitator.payment.types import (
    CanonicalPayment,
    CanonicalRequirements,
    SettlementResult,
    VerificationResult,
)

# Deterministic test keys (never funded anywhere)
PAYER_KEY = "0x" + "11" * 32
RECIPIENT_KEY = "0x" + "22" * 32
FACILITATOR_KEY = "0x" + "33" * 32
REFUND_KEY = "0x" + "44" * 32

PAYER = Account.from_key(PAYER_KEY).address
RECIPIENT = Account.from_key(RECIPIENT_KEY).address
FACILITATOR = Account.from_key(FACILITATOR_KEY).address

NOW = 1_700_000_000


def make_evm_payment(
    value: int = 1_000_000,
    to: str = RECIPIENT,
    signer_key: str = PAYER_KEY,
    from_address: Optional[str] = None,
    valid_after: int = NOW - 60,
    valid_before: int = NOW + 3600,
    network: str = "base",
    chain_id: int = 8453,
    asset: str = USDC_BASE,
    nonce: str = "0x" + "ab" * 32,
    name: str = "USD Coin",
    version: str = "2",
) -> Dict[str, Any]:
    """A v1 exact-scheme EVM payment payload signed with ``signer_key``."""
    authorization = Authorization(
        from_address=from_address or Account.from_key(signer_key).address,
        to=to,
        value=value,
        valid_after=valid_after,
        valid_before=valid_before,
        nonce=nonce,
    )
    typed_data = build_typed_data(authorization, chain_id, asset, name, version)
    return {
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {
            "signature": sign_authorization(typed_data, signer_key),
            "authorization": authorization.to_payload(),
        },
    }


def make_requirements(**overrides: Any) -> Dict[str, Any]:
    requirements = {
        "scheme": "exact",
        "network": "eip155:8453",
        "maxAmountRequired": "1000000",
        "resource": "https://api.example.com/premium",
        "description": "Premium data",
        "mimeType": "application/json",
        "payTo": RECIPIENT,
        "maxTimeoutSeconds": 60,
        "asset": USDC_BASE,
    }
    requirements.update(overrides)
    return requirements


class FakeAdapter(SettlementAdapter):
    """Adapter that returns canned results and records its calls."""

    def __init__(
        self,
        family: ChainFamily = ChainFamily.EVM,
        verify_result: Optional[VerificationResult] = None,
        settle_result: Optional[SettlementResult] = None,
        transfer_result: Optional[SettlementResult] = None,
        address: str = FACILITATOR,
    ) -> None:
        self.family = family
        self.verify_result = verify_result
        self.settle_result = settle_result
        self.transfer_result = transfer_result
        self.address = address
        self.verify_calls: List[tuple] = []
        self.settle_calls: List[tuple] = []
        self.transfer_calls: List[tuple] = []
        self.closed = False

    async def verify(
        self, payment: CanonicalPayment, requirements: CanonicalRequirements, chain: ChainConfig
    ) -> VerificationResult:
        self.verify_calls.append((payment, requirements, chain))
        if self.verify_result is not None:
            return self.verify_result
        return VerificationResult(
            is_valid=True,
            payer=PAYER,
            amount=str(requirements.amount),
            recipient=requirements.pay_to,
            scheme=requirements.scheme,
            network=chain.network,
        )

    async def settle(self, payment, requirements, chain, signing_key, deadline=None) -> SettlementResult:
        self.settle_calls.append((payment, requirements, chain, signing_key, deadline))
        if self.settle_result is not None:
            return self.settle_result
        return SettlementResult(success=True, network=chain.network, transaction_hash="0x" + "f0" * 32, payer=PAYER)

    async def transfer(
        self, request: PayoutRequest, chain: ChainConfig, source_key: str, fee_payer_key=None, deadline=None
    ) -> SettlementResult:
        self.transfer_calls.append((request, chain, source_key, fee_payer_key))
        if self.transfer_result is not None:
            return self.transfer_result
        return SettlementResult(success=True, network=chain.network, transaction_hash="0xpayout", payer=FACILITATOR)

    def signer_address(self, signing_key: str, chain: ChainConfig) -> str:
        return self.address

    async def aclose(self) -> None:
        self.closed = True


class RecordingWebhooks:
    """Stands in for WebhookDispatcher.dispatch."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def dispatch(self, url, secret, payload, max_retries=None):
        self.events.append({"url": url, "secret": secret, "payload": payload})
        return None


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def registry() -> NetworkRegistry:
    return NetworkRegistry()


@pytest.fixture
def base_chain(registry: NetworkRegistry) -> ChainConfig:
    return registry.resolve("base")
