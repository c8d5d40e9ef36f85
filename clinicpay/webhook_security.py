"""
Webhook Security Module

Signature helpers shared by the PayOS adapter and the webhook endpoint:
- Constant-time signature comparison (prevents timing attacks)
- HMAC-SHA256 over the raw request body
- PayOS canonical "key=value&..." request signing
"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def constant_time_compare(a: str, b: str) -> bool:
    """Timing-safe equality for hex digests; empty values never match"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def canonical_payload(fields: dict) -> str:
    """Render fields as PayOS signs them: keys sorted, 'key=value' joined by '&'"""
    parts = []
    for key in sorted(fields):
        value = fields[key]
        if value is None:
            value = ""
        parts.append(f"{key}={value}")
    return "&".join(parts)


def sign_payos_request(secret: str, fields: dict) -> str:
    """Signature PayOS expects on create-link requests"""
    return compute_hmac_sha256(secret, canonical_payload(fields).encode("utf-8"))


def verify_payos_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a PayOS webhook: hex HMAC-SHA256 of the raw body with the checksum key.

    Args:
        raw_body: Request body exactly as received
        signature: Hex signature from the request header
        secret: Shared checksum key

    Returns:
        True if the signature matches, False otherwise
    """
    if not secret:
        logger.error("❌ PayOS checksum key not configured, rejecting webhook")
        return False

    if not signature:
        logger.warning("🚫 Missing PayOS webhook signature")
        return False

    expected = compute_hmac_sha256(secret, raw_body)
    is_valid = constant_time_compare(expected, signature.strip().lower())

    if not is_valid:
        logger.warning(
            f"⚠️ Signature mismatch - Expected: {expected[:10]}..., Got: {signature[:10]}..."
        )

    return is_valid
