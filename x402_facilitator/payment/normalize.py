"""
Normalization of x402 payment payloads and requirements.

Both protocol versions collapse into ``CanonicalPayment`` /
``CanonicalRequirements`` before any chain adapter sees them.
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from x402_facilitator.errors import PaymentValidationError
from x402_facilitator.payment.types import (
    CanonicalPayment,
    CanonicalRequirements,
    PaymentPayloadV1,
    PaymentPayloadV2,
    PaymentRequirements,
)

logger = logging.getLogger(__name__)

RawPayload = Union[str, bytes, Dict[str, Any]]


def decode_payment_header(encoded: Union[str, bytes]) -> Dict[str, Any]:
    """Decode a base64-encoded JSON payment document.

    Raises:
        PaymentValidationError: If the value is not base64 JSON
    """
    try:
        if isinstance(encoded, str):
            encoded = encoded.strip().encode("ascii")
        padded = encoded + b"=" * (-len(encoded) % 4)
        try:
            decoded_bytes = base64.b64decode(padded, validate=True)
        except binascii.Error:
            decoded_bytes = base64.urlsafe_b64decode(padded)
        document = json.loads(decoded_bytes.decode("utf-8"))
    except (ValueError, UnicodeError, binascii.Error) as e:
        raise PaymentValidationError(f"Failed to decode payment payload: {e}") from e

    if not isinstance(document, dict):
        raise PaymentValidationError("Payment payload must decode to a JSON object")
    return document


def _payload_version(document: Dict[str, Any], request_version: Optional[int]) -> int:
    version = document.get("x402Version", document.get("x402_version"))
    if version is None:
        version = request_version
    if version is None:
        version = 2 if "accepted" in document else 1
    try:
        version = int(version)
    except (TypeError, ValueError):
        raise PaymentValidationError(f"Invalid x402Version: {version!r}")
    if version not in (1, 2):
        raise PaymentValidationError(f"Unsupported x402Version: {version}")
    return version


def normalize_payment(raw: RawPayload, request_version: Optional[int] = None) -> CanonicalPayment:
    """Decode and normalize a v1 or v2 payment payload.

    Args:
        raw: Base64 JSON string, or an already-parsed object
        request_version: ``x402Version`` from the enclosing request, if any

    Returns:
        CanonicalPayment

    Raises:
        PaymentValidationError: If the payload is malformed
    """
    if isinstance(raw, (str, bytes)):
        document = decode_payment_header(raw)
    elif isinstance(raw, dict):
        document = raw
    else:
        raise PaymentValidationError(f"Unsupported payment payload type: {type(raw).__name__}")

    version = _payload_version(document, request_version)
    document = {**document, "x402Version": version}

    try:
        if version == 1:
            v1 = PaymentPayloadV1.model_validate(document)
            return CanonicalPayment(
                x402_version=1,
                scheme=v1.scheme,
                network=v1.network,
                payload=v1.payload,
            )
        v2 = PaymentPayloadV2.model_validate(document)
    except ValidationError as e:
        raise PaymentValidationError(f"Invalid v{version} payment payload: {e.errors()}") from e

    return CanonicalPayment(
        x402_version=2,
        scheme=v2.accepted.scheme,
        network=v2.accepted.network,
        payload=v2.payload,
        extensions=v2.extensions or {},
    )


def normalize_requirements(
    requirements: Union[PaymentRequirements, Dict[str, Any]],
    x402_version: int = 1,
) -> CanonicalRequirements:
    """Normalize payment requirements.

    v2 requirements carry an exact ``amount``; v1 requirements carry
    ``maxAmountRequired``. When both are present the version decides.

    Raises:
        PaymentValidationError: If the requirements are malformed
    """
    if not isinstance(requirements, PaymentRequirements):
        try:
            requirements = PaymentRequirements.model_validate(requirements)
        except ValidationError as e:
            raise PaymentValidationError(f"Invalid payment requirements: {e.errors()}") from e

    if x402_version >= 2 and requirements.amount is not None:
        amount, exact = requirements.amount, True
    elif requirements.max_amount_required is not None:
        amount, exact = requirements.max_amount_required, False
    else:
        amount, exact = requirements.amount, True

    return CanonicalRequirements(
        scheme=requirements.scheme,
        network=requirements.network,
        asset=requirements.asset,
        pay_to=requirements.pay_to,
        amount=int(amount),
        exact=exact,
        resource=requirements.resource or "",
        max_timeout_seconds=requirements.max_timeout_seconds,
        extra=dict(requirements.extra or {}),
    )
