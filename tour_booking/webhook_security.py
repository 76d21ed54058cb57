"""
Webhook Security Module

Signature verification for Stripe webhooks:
- Raw body is read before any JSON parsing
- Constant-time signature comparison
- Timestamp tolerance against replayed deliveries
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

from .config import STRIPE_WEBHOOK_TOLERANCE_SECONDS

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = STRIPE_WEBHOOK_TOLERANCE_SECONDS


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(
    timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[int] = None
) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds
        now: Current unix time (defaults to time.time())

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        webhook_time = int(timestamp)
        current_time = int(time.time()) if now is None else now
        age = abs(current_time - webhook_time)

        if age > max_age:
            logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
            return False

        return True
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False


def parse_stripe_signature_header(signature_header: str) -> tuple[Optional[str], list[str]]:
    """
    Split a Stripe-Signature header ("t=<timestamp>,v1=<sig>[,v1=<sig>...]").

    Several v1 entries are present while an endpoint secret is being rolled.
    """
    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = MAX_WEBHOOK_AGE_SECONDS,
    now: Optional[int] = None,
) -> None:
    """
    Verify a Stripe webhook signature over the raw request body.

    Raises:
        WebhookSignatureError: header missing or malformed, timestamp outside
            tolerance, or no v1 signature matches
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")

    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp, signatures = parse_stripe_signature_header(signature_header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Invalid signature format")

    if not verify_timestamp(timestamp, max_age=tolerance, now=now):
        raise WebhookSignatureError("Webhook timestamp outside tolerance")

    # Stripe signs "<timestamp>.<payload>"
    signed_payload = timestamp.encode("utf-8") + b"." + payload
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    if not any(constant_time_compare(expected_signature, sig) for sig in signatures):
        raise WebhookSignatureError("Invalid webhook signature")


async def verify_stripe_webhook(request: Request, secret: str) -> bytes:
    """
    Verify Stripe webhook signature.

    Stripe uses:
    - Header: 'Stripe-Signature' (format: "t=<timestamp>,v1=<signature>")

    Args:
        request: FastAPI request object
        secret: Webhook endpoint secret from Stripe

    Returns:
        Raw request body, for parsing after verification
    """
    # Get raw body BEFORE any parsing - this is critical
    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    logger.debug("📥 Stripe webhook received")

    try:
        verify_stripe_signature(raw_body, signature_header, secret)
    except WebhookSignatureError as e:
        logger.warning(f"🚫 Stripe webhook rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.debug("✅ Stripe webhook signature verified")
    return raw_body


def create_stripe_signature(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value for a payload (outgoing calls and tests)"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_hmac_sha256(secret, f"{timestamp}.".encode("utf-8") + payload)
    return f"t={timestamp},v1={signature}"
