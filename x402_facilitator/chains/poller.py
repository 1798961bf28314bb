"""
Bounded confirmation polling and backoff.

This module provides:
- BackoffPolicy: attempt budget, base delay, growth, cap and jitter
- ConfirmationPoller: drives an async status fetch until it reports
  success, failure or expiry, or until the attempt/time budget runs out
- Deadline helpers shared by adapters that must respect a caller deadline
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry/poll schedule.

    ``delay_for(n)`` is ``base_delay * multiplier**n`` capped at ``max_delay``,
    plus up to ``jitter`` seconds of random spread. A multiplier of 1 gives a
    fixed interval.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    @classmethod
    def fixed(cls, max_attempts: int, interval: float) -> "BackoffPolicy":
        return cls(max_attempts=max_attempts, base_delay=interval, multiplier=1.0, max_delay=interval)


class PollStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"  # the observed state proves confirmation can no longer happen


class PollOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass
class PollObservation:
    """What a single status fetch saw."""

    status: PollStatus
    value: Any = None
    detail: Optional[str] = None

    @classmethod
    def pending(cls, detail: Optional[str] = None) -> "PollObservation":
        return cls(PollStatus.PENDING, detail=detail)

    @classmethod
    def success(cls, value: Any = None) -> "PollObservation":
        return cls(PollStatus.SUCCESS, value=value)

    @classmethod
    def failure(cls, detail: str, value: Any = None) -> "PollObservation":
        return cls(PollStatus.FAILURE, value=value, detail=detail)

    @classmethod
    def expired(cls, detail: str) -> "PollObservation":
        return cls(PollStatus.EXPIRED, detail=detail)


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    value: Any = None
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == PollOutcome.SUCCESS


def deadline_after(seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> Optional[float]:
    """Absolute monotonic deadline ``seconds`` from now (None stays None)."""
    return None if seconds is None else clock() + seconds


def remaining(deadline: Optional[float], clock: Callable[[], float] = time.monotonic) -> Optional[float]:
    """Seconds left before ``deadline`` (never negative), or None for no deadline."""
    return None if deadline is None else max(0.0, deadline - clock())


class ConfirmationPoller:
    """Polls an async status source under a BackoffPolicy and optional deadline."""

    def __init__(
        self,
        policy: BackoffPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    async def poll(
        self,
        fetch_status: Callable[[int], Awaitable[PollObservation]],
        deadline: Optional[float] = None,
        label: str = "transaction",
    ) -> PollResult:
        """Poll until a terminal observation or the budget is exhausted.

        Args:
            fetch_status: Coroutine taking the 0-based attempt number
            deadline: Absolute ``clock()`` time after which polling stops
            label: Used in log messages

        Returns:
            PollResult with outcome success, failure or timeout
        """
        last_detail: Optional[str] = None

        for attempt in range(self.policy.max_attempts):
            if deadline is not None and self._clock() >= deadline:
                logger.warning(f"Polling {label}: deadline reached after {attempt} attempts")
                return PollResult(PollOutcome.TIMEOUT, attempt, detail="deadline exceeded")

            try:
                observation = await fetch_status(attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Polling {label}: attempt {attempt + 1} errored: {e}")
                observation = PollObservation.pending(detail=str(e))

            if observation.status == PollStatus.SUCCESS:
                return PollResult(PollOutcome.SUCCESS, attempt + 1, value=observation.value)
            if observation.status == PollStatus.FAILURE:
                return PollResult(
                    PollOutcome.FAILURE, attempt + 1, value=observation.value, detail=observation.detail
                )
            if observation.status == PollStatus.EXPIRED:
                return PollResult(PollOutcome.TIMEOUT, attempt + 1, detail=observation.detail)

            last_detail = observation.detail
            if attempt + 1 < self.policy.max_attempts:
                delay = self.policy.delay_for(attempt)
                if deadline is not None:
                    delay = min(delay, max(0.0, deadline - self._clock()))
                logger.debug(f"Polling {label}: pending (attempt {attempt + 1}), next check in {delay:.1f}s")
                await self._sleep(delay)

        logger.warning(f"Polling {label}: gave up after {self.policy.max_attempts} attempts")
        return PollResult(
            PollOutcome.TIMEOUT,
            self.policy.max_attempts,
            detail=last_detail or "attempt budget exhausted",
        )
