"""
Signed webhook delivery.

This module provides:
- sign_payload(): hex HMAC-SHA256 of the exact request body
- WebhookDispatcher.deliver(): POST with retries and exponential backoff
- WebhookDispatcher.dispatch(): fire-and-forget delivery that never raises
- Event builders for payment.* and claim.* events
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx

from x402_facilitator.chains.poller import BackoffPolicy

logger = logging.getLogger(__name__)

USER_AGENT = "x402-facilitator-webhook/1.0"
DELIVERY_TIMEOUT = 10.0  # seconds
DEFAULT_RETRY_POLICY = BackoffPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=30.0)

# 4xx responses that are still worth retrying
RETRYABLE_CLIENT_ERRORS = frozenset({408, 429})


class WebhookEvent:
    PAYMENT_SETTLED = "payment.settled"
    PAYMENT_FAILED = "payment.failed"
    CLAIM_CREATED = "claim.created"
    CLAIM_PAID = "claim.paid"


@dataclass
class DeliveryResult:
    delivered: bool
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_body(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_payment_event(event: str, facilitator_id: str, payment: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "facilitatorId": facilitator_id, "timestamp": _now_iso(), "payment": payment}


def build_claim_event(event: str, facilitator_id: str, claim: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "facilitatorId": facilitator_id, "timestamp": _now_iso(), "claim": claim}


class WebhookDispatcher:
    """Delivers signed webhook events off the request path."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        retry_policy: BackoffPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        timeout: float = DELIVERY_TIMEOUT,
    ) -> None:
        self._http = http
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def deliver(
        self,
        url: str,
        secret: str,
        payload: Dict[str, Any],
        max_retries: Optional[int] = None,
    ) -> DeliveryResult:
        """POST a signed event, retrying failures.

        Args:
            url: Receiver endpoint
            secret: HMAC secret shared with the receiver
            payload: Event body (serialized once; the signature covers these bytes)
            max_retries: Retries after the first attempt (default: policy max_attempts)

        Returns:
            DeliveryResult; never raises for HTTP or network failures
        """
        retries = self.retry_policy.max_attempts if max_retries is None else max_retries
        body = encode_body(payload)
        event = str(payload.get("event", ""))
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Signature": sign_payload(secret, body),
            "X-Webhook-Timestamp": str(payload.get("timestamp") or _now_iso()),
            "X-Webhook-Event": event,
        }

        status_code: Optional[int] = None
        error: Optional[str] = None
        attempt = 0
        for attempt in range(retries + 1):
            try:
                response = await self._http.post(url, content=body, headers=headers, timeout=self._timeout)
                status_code = response.status_code
                if 200 <= status_code < 300:
                    logger.info(f"Webhook {event} delivered to {url} (attempt {attempt + 1})")
                    return DeliveryResult(True, attempt + 1, status_code)
                error = f"HTTP {status_code}"
                if 400 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_ERRORS:
                    logger.warning(f"Webhook {event} to {url} rejected with {status_code}, not retrying")
                    return DeliveryResult(False, attempt + 1, status_code, error)
            except httpx.HTTPError as e:
                error = f"{type(e).__name__}: {e}"

            if attempt < retries:
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(f"Webhook {event} to {url} failed ({error}), retrying in {delay:.1f}s")
                await self._sleep(delay)

        logger.error(f"Webhook {event} to {url} failed after {attempt + 1} attempts: {error}")
        return DeliveryResult(False, attempt + 1, status_code, error)

    def dispatch(
        self,
        url: Optional[str],
        secret: Optional[str],
        payload: Dict[str, Any],
        max_retries: Optional[int] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule delivery in the background; no-op without a url/secret."""
        if not url or not secret:
            return None
        task = asyncio.get_running_loop().create_task(self.deliver(url, secret, payload, max_retries))
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Webhook delivery task crashed: {exc}")

    async def aclose(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries (cancelling them after ``timeout``)."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning(f"Cancelled {len(not_done)} undelivered webhooks on shutdown")
