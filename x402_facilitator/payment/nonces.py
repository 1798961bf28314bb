"""
Replay protection for ERC-3009 authorizations.

Each ``(chainId, from, nonce)`` triple can be settled at most once by this
facilitator. A triple is *in flight* between ``try_acquire`` and either
``release`` (settlement failed before the authorization could have been
consumed on-chain) or ``mark_settled``.

All methods are synchronous and never await, so they are atomic with
respect to other coroutines on the event loop.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# In-flight entries older than this are dropped by prune()
IN_FLIGHT_TTL_SECONDS = 10 * 60


@dataclass
class NonceRecord:
    acquired_at: float
    expires_at: float  # authorization validBefore (unix seconds)
    transaction_hash: Optional[str] = None


class AuthorizationNonceTracker:
    """In-process record of acquired and settled authorization nonces."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._records: Dict[str, NonceRecord] = {}

    @staticmethod
    def _key(chain_id: int, from_address: str, nonce: str) -> str:
        return f"{chain_id}:{from_address.lower()}:{nonce.lower()}"

    def is_used(self, chain_id: int, from_address: str, nonce: str) -> bool:
        return self._key(chain_id, from_address, nonce) in self._records

    def try_acquire(
        self, chain_id: int, from_address: str, nonce: str, expires_at: float
    ) -> Tuple[bool, Optional[str]]:
        """Reserve a nonce for settlement.

        Returns:
            (acquired, reason) where reason explains a refusal
        """
        key = self._key(chain_id, from_address, nonce)
        existing = self._records.get(key)
        if existing is not None:
            if existing.transaction_hash:
                reason = f"Authorization already settled in transaction {existing.transaction_hash}"
            else:
                reason = "Authorization is already being processed"
            logger.warning(f"Duplicate authorization blocked: {key}")
            return False, reason

        self._records[key] = NonceRecord(acquired_at=self._clock(), expires_at=float(expires_at))
        return True, None

    def release(self, chain_id: int, from_address: str, nonce: str) -> None:
        """Forget an in-flight nonce whose settlement never reached the chain."""
        key = self._key(chain_id, from_address, nonce)
        record = self._records.get(key)
        if record is not None and record.transaction_hash is None:
            del self._records[key]
            logger.info(f"Released authorization nonce {key}")

    def mark_settled(self, chain_id: int, from_address: str, nonce: str, transaction_hash: str) -> None:
        key = self._key(chain_id, from_address, nonce)
        record = self._records.get(key)
        if record is None:
            record = NonceRecord(acquired_at=self._clock(), expires_at=0)
            self._records[key] = record
        record.transaction_hash = transaction_hash

    def prune(self, now: Optional[float] = None) -> int:
        """Drop records that can no longer be replayed.

        Settled records are kept until their authorization expires; stale
        in-flight records are dropped after ``IN_FLIGHT_TTL_SECONDS``.
        """
        now = self._clock() if now is None else now
        stale = [
            key
            for key, record in self._records.items()
            if (record.transaction_hash and record.expires_at and record.expires_at < now)
            or (not record.transaction_hash and now - record.acquired_at > IN_FLIGHT_TTL_SECONDS)
        ]
        for key in stale:
            del self._records[key]
        return len(stale)
