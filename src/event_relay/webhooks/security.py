"""Webhook security utilities.

Provides HMAC signature generation and verification for webhook payloads
so receivers can confirm a delivery came from the platform untampered.
"""

import hashlib
import hmac
import json
import secrets
import string
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Header names sent with every delivery
SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
IDEMPOTENCY_HEADER = "X-Webhook-Idempotency-Key"

SECRET_PUNCTUATION = "!@#$%^&*()-_=+"
SECRET_ALPHABET = string.ascii_letters + string.digits + SECRET_PUNCTUATION


def canonical_json(payload: dict[str, Any] | str) -> str:
    """Serialize a payload deterministically.

    Keys are sorted and separators are compact, so equal payloads always
    produce the same bytes regardless of insertion order.
    """
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def generate_signature(payload: dict[str, Any] | str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for a webhook payload.

    Args:
        payload: Webhook payload (dict or already-serialized JSON string).
        secret: Subscription secret.

    Returns:
        Hex digest of HMAC-SHA256(secret, canonical_json(payload)).
    """
    payload_str = canonical_json(payload)

    signature = hmac.new(
        secret.encode("utf-8"),
        payload_str.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()

    logger.debug("webhook_signature_generated", payload_length=len(payload_str))

    return signature


def verify_signature(
    payload: dict[str, Any] | str,
    signature: str,
    secret: str,
) -> bool:
    """Verify HMAC-SHA256 signature of a webhook payload.

    Args:
        payload: Webhook payload (dict or JSON string).
        signature: Claimed hex signature.
        secret: Subscription secret.

    Returns:
        True if signature is valid, False otherwise.
    """
    expected_signature = generate_signature(payload, secret)

    # compare_digest runs in constant time for equal-length inputs and
    # returns False without inspecting content when lengths differ
    is_valid = hmac.compare_digest(
        signature.encode("utf-8"),
        expected_signature.encode("utf-8"),
    )

    if not is_valid:
        logger.warning("webhook_signature_invalid")
    else:
        logger.debug("webhook_signature_verified")

    return is_valid


def create_signature_headers(
    payload: dict[str, Any],
    secret: str,
    *,
    event_type: str | None = None,
    idempotency_key: str | None = None,
) -> dict[str, str]:
    """Create HTTP headers with signature for webhook delivery.

    Args:
        payload: Envelope being delivered.
        secret: Subscription secret.
        event_type: Event type advertised in the event header.
        idempotency_key: Stable key receivers can deduplicate replays on.

    Returns:
        Dictionary of headers to include in request.
    """
    headers = {SIGNATURE_HEADER: generate_signature(payload, secret)}
    if event_type:
        headers[EVENT_HEADER] = event_type
    if idempotency_key:
        headers[IDEMPOTENCY_HEADER] = idempotency_key
    return headers


def verify_from_headers(
    payload: dict[str, Any] | str,
    headers: dict[str, str],
    secret: str,
) -> bool:
    """Verify webhook signature from request headers.

    Args:
        payload: Received webhook payload.
        headers: Request headers.
        secret: Subscription secret.

    Returns:
        True if signature is valid.

    Raises:
        ValueError: If the signature header is missing.
    """
    # Header lookups are case-insensitive on the wire
    normalized = {key.lower(): value for key, value in headers.items()}
    signature = normalized.get(SIGNATURE_HEADER.lower())

    if not signature:
        raise ValueError(f"Missing {SIGNATURE_HEADER} header")

    return verify_signature(payload, signature, secret)


def generate_secret(length: int = 32) -> str:
    """Generate a high-entropy subscription secret.

    The result always mixes upper case, lower case, digits and punctuation.

    Args:
        length: Secret length (at least 4).

    Returns:
        Random secret string.
    """
    if length < 4:
        raise ValueError("Secret length must be at least 4")

    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(SECRET_PUNCTUATION),
    ]
    rest = [secrets.choice(SECRET_ALPHABET) for _ in range(length - len(required))]
    chars = required + rest
    # Required classes must not sit at fixed positions
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
