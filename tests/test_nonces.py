import asyncio

import pytest

from x402_facilitator.config import SigningMaterial
from x402_facilitator.networks.registry import ChainFamily
from x402_facilitator.payment.engine import FacilitatorEngine
from x402_facilitator.payment.nonces import IN_FLIGHT_TTL_SECONDS, AuthorizationNonceTracker

from conftest import PAYER, FakeAdapter

CHAIN_ID = 8453
NONCE = "0x" + "ab" * 32


class Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def tracker(clock):
    return AuthorizationNonceTracker(clock=clock)


def test_acquire_blocks_duplicates(tracker):
    acquired, reason = tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=2_000)
    assert acquired and reason is None

    # keys are case-insensitive
    acquired, reason = tracker.try_acquire(CHAIN_ID, PAYER.lower(), "0x" + "AB" * 32, expires_at=2_000)
    assert not acquired
    assert "being processed" in reason
    assert tracker.is_used(CHAIN_ID, PAYER, NONCE)


def test_release_only_forgets_unsettled(tracker):
    tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=2_000)
    tracker.release(CHAIN_ID, PAYER, NONCE)
    assert not tracker.is_used(CHAIN_ID, PAYER, NONCE)

    tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=2_000)
    tracker.mark_settled(CHAIN_ID, PAYER, NONCE, "0x01")
    tracker.release(CHAIN_ID, PAYER, NONCE)
    acquired, reason = tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=2_000)
    assert not acquired
    assert "0x01" in reason


def test_prune_drops_stale_in_flight_entries(tracker, clock):
    tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=10_000)

    clock.now += IN_FLIGHT_TTL_SECONDS - 1
    assert tracker.prune() == 0
    assert tracker.is_used(CHAIN_ID, PAYER, NONCE)

    clock.now += 2
    assert tracker.prune() == 1
    assert not tracker.is_used(CHAIN_ID, PAYER, NONCE)


def test_prune_keeps_settled_entries_until_authorization_expires(tracker, clock):
    tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=5_000)
    tracker.mark_settled(CHAIN_ID, PAYER, NONCE, "0x01")

    # settled entries outlive the in-flight TTL
    assert tracker.prune(now=4_999) == 0
    assert tracker.is_used(CHAIN_ID, PAYER, NONCE)

    assert tracker.prune(now=5_001) == 1
    assert not tracker.is_used(CHAIN_ID, PAYER, NONCE)


@pytest.mark.asyncio
async def test_engine_prune_loop(registry, tracker, clock):
    engine = FacilitatorEngine(
        registry=registry,
        adapters={ChainFamily.EVM: FakeAdapter()},
        signing=SigningMaterial(),
        nonce_tracker=tracker,
    )
    tracker.try_acquire(CHAIN_ID, PAYER, NONCE, expires_at=10_000)
    clock.now += IN_FLIGHT_TTL_SECONDS + 1

    task = asyncio.create_task(engine.run_nonce_prune_loop(3600))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not tracker.is_used(CHAIN_ID, PAYER, NONCE)


# Run with: pytest -q tests/test_nonces.py
