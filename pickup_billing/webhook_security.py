"""
Webhook Security Module

Stripe webhook signature verification:
- Constant-time signature comparison
- Timestamp tolerance check against replayed deliveries
- Raw body returned for parsing after verification
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time."""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    age = abs(int(time.time()) - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def parse_stripe_signature_header(header: str) -> tuple[Optional[str], list[str]]:
    """Split "t=<ts>,v1=<sig>[,v1=<sig>...]" into the timestamp and every v1 signature."""
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def _reject(detail: str, raise_on_failure: bool, raw_body: bytes) -> tuple[bool, bytes]:
    if raise_on_failure:
        raise HTTPException(status_code=400, detail=detail)
    return False, raw_body


async def verify_stripe_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Stripe webhook signature.

    Stripe uses:
    - Header: 'Stripe-Signature' (format: "t=<timestamp>,v1=<signature>")
    - Signed payload: "<timestamp>.<raw body>"

    Args:
        request: FastAPI request object
        secret: Webhook endpoint secret from Stripe
        raise_on_failure: If True, raises HTTPException(400) on failure

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    logger.debug("📥 Stripe webhook received")

    if not signature_header:
        logger.warning("🚫 Stripe webhook missing signature header")
        return _reject("Missing Stripe signature", raise_on_failure, raw_body)

    timestamp, signatures = parse_stripe_signature_header(signature_header)
    if not timestamp or not signatures:
        logger.warning("🚫 Stripe webhook invalid signature format")
        return _reject("Invalid signature format", raise_on_failure, raw_body)

    if not verify_timestamp(timestamp):
        return _reject("Webhook timestamp expired", raise_on_failure, raw_body)

    signed_payload = timestamp.encode("utf-8") + b"." + raw_body
    expected_signature = compute_hmac_sha256(secret, signed_payload)

    if not any(constant_time_compare(expected_signature, sig) for sig in signatures):
        logger.warning("🚫 Stripe webhook signature mismatch")
        return _reject("Invalid webhook signature", raise_on_failure, raw_body)

    logger.debug("✅ Stripe webhook signature verified")
    return True, raw_body


def create_stripe_signature(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header value, for tests and local replays."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = str(timestamp).encode("utf-8") + b"." + payload
    return f"t={timestamp},v1={compute_hmac_sha256(secret, signed_payload)}"
