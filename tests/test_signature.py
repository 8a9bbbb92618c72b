"""Tests for webhook HMAC signatures."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from src.tenantsync.core.errors import AuthError
from src.tenantsync.sync.signature import build_signature, verify_signature

BODY = b'{"operation":"INSERT","table":"quotes","tenant_id":"T1","data":{"id":1}}'


def test_build_signature_is_hex_hmac_sha256():
    """Signatures are lowercase hex HMAC-SHA256 over the raw body."""
    expected = hmac.new(b"secret", BODY, hashlib.sha256).hexdigest()
    assert build_signature(BODY, "secret") == expected


def test_matching_signature_verifies():
    assert verify_signature(BODY, build_signature(BODY, "secret"), "secret") is True


def test_signature_comparison_ignores_case_and_whitespace():
    """Some senders upper-case the digest or pad the header."""
    signature = f"  {build_signature(BODY, 'secret').upper()} "
    assert verify_signature(BODY, signature, "secret") is True


def test_mismatch_raises():
    with pytest.raises(AuthError):
        verify_signature(BODY, build_signature(BODY, "other"), "secret")


def test_tampered_body_raises():
    signature = build_signature(BODY, "secret")
    with pytest.raises(AuthError):
        verify_signature(BODY.replace(b"T1", b"T2"), signature, "secret")


@pytest.mark.parametrize("signature,secret", [(None, "secret"), ("", "secret"), ("abc", ""), ("abc", None)])
def test_check_skipped_without_secret_or_header(signature, secret):
    """False means "not checked", which the caller decides how to treat."""
    assert verify_signature(BODY, signature, secret) is False
