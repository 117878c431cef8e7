"""
Utility functions for request authentication.
"""

import hmac
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def tokens_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time string comparison; a missing token never matches."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_meta_signature(body: bytes, signature_header: Optional[str], app_secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header of a webhook delivery.

    Args:
        body: Raw request body bytes
        signature_header: Header value, ``sha256=<hex HMAC-SHA256 of body>``
        app_secret: META_APP_SECRET; verification is skipped when empty

    Returns:
        True if signature is valid (or no secret is configured), False otherwise
    """
    if not app_secret:
        logger.debug("META_APP_SECRET not set, skipping signature verification")
        return True
    if not signature_header:
        logger.info("Missing signature header")
        return False

    expected_signature = SIGNATURE_PREFIX + hmac.new(
        app_secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    is_valid = tokens_match(signature_header, expected_signature)
    logger.info(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
