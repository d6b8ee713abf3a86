"""Shopify webhook signature verification.

Security contract:
- Constant-time comparison via ``hmac.compare_digest``
- Missing secret -> verification always fails (fail-closed)
- Missing or malformed header -> verification fails
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from storesync.exceptions import WebhookVerificationError

logger = logging.getLogger(__name__)

SHOPIFY_HMAC_HEADER = "x-shopify-hmac-sha256"


def compute_shopify_hmac(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of *body*, as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify_hmac(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Check the ``X-Shopify-Hmac-SHA256`` header against *body*.

    Args:
        secret: The app's webhook signing secret.
        body: Raw request body bytes.
        signature_header: Header value, possibly ``None``.
    """
    if not secret:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set, rejecting webhook")
        return False
    if not signature_header:
        return False
    return hmac.compare_digest(compute_shopify_hmac(secret, body), signature_header)


def require_shopify_hmac(secret: str, body: bytes, signature_header: str | None) -> None:
    """Like ``verify_shopify_hmac`` but raises ``WebhookVerificationError``."""
    if not verify_shopify_hmac(secret, body, signature_header):
        raise WebhookVerificationError("Shopify webhook signature did not verify")
