"""HMAC-SHA256 signatures over raw webhook bodies."""

from __future__ import annotations

import hashlib
import hmac

import structlog

from src.tenantsync.core.errors import AuthError

logger = structlog.get_logger(__name__)


def build_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of body keyed with secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check a webhook signature.

    Verification only applies when both a secret is configured and the
    caller sent a signature header. In every other case the body is
    accepted as-is.

    Returns:
        True if the signature was checked and matched, False if the check
        did not apply.

    Raises:
        AuthError: If the signature does not match.
    """
    if not secret or not signature:
        return False
    expected = build_signature(body, secret)
    if not hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8")):
        logger.warning("webhook_signature_mismatch")
        raise AuthError("Invalid signature")
    return True
