"""HMAC-SHA256 verification of inbound webhook bodies."""

from __future__ import annotations

import hashlib
import hmac
from enum import Enum
from typing import Mapping, Optional

# Checked in order, first non-empty value wins
SIGNATURE_HEADERS = (
    "X-Mindbody-Signature",
    "X-MB-Signature",
    "X-Signature",
    "Signature",
)

SIGNATURE_PREFIX = "sha256="


class SignatureError(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    MISSING_SIGNATURE_KEY = "missing_signature_key"
    INVALID_SIGNATURE = "invalid_signature"

    @property
    def description(self) -> str:
        return {
            SignatureError.MISSING_SIGNATURE: "Missing webhook signature",
            SignatureError.MISSING_SIGNATURE_KEY: "Webhook signature key is not configured",
            SignatureError.INVALID_SIGNATURE: "Invalid webhook signature",
        }[self]


def extract_signature(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def compute_signature(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(raw_body: bytes, presented: Optional[str], secret: Optional[str]) -> Optional[SignatureError]:
    """Return None when the signature matches, otherwise the failure kind."""
    if not presented:
        return SignatureError.MISSING_SIGNATURE
    if not secret:
        return SignatureError.MISSING_SIGNATURE_KEY
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8")):
        return SignatureError.INVALID_SIGNATURE
    return None
