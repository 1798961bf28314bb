"""Signed webhook delivery for payment and claim events."""

from x402_facilitator.webhooks.dispatcher import (
    DeliveryResult,
    WebhookDispatcher,
    WebhookEvent,
    sign_payload,
)

__all__ = ["DeliveryResult", "WebhookDispatcher", "WebhookEvent", "sign_payload"]
