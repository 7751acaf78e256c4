"""HMAC-SHA256 request signatures.

The signature is computed over the raw request body exactly as received, keyed
with the base64-decoded signing secret, and transmitted as lowercase hex in the
X-Smallstep-Signature header. The body is never re-serialized before hashing.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re

from .errors import (
    webhook_error,
    WEBHOOK_E_BAD_SIGNATURE_HEADER,
    WEBHOOK_E_SECRET_INVALID,
)

_HEX_RE = re.compile(r"[0-9a-fA-F]*")


def decode_signature_header(value: str) -> bytes:
    """Decode the hex signature header. An empty header decodes to b""."""
    value = value or ""
    try:
        if not _HEX_RE.fullmatch(value):
            raise ValueError("non-hexadecimal character in signature")
        return bytes.fromhex(value)
    except ValueError as e:
        raise webhook_error(
            WEBHOOK_E_BAD_SIGNATURE_HEADER,
            "Invalid X-Smallstep-Signature header",
            cause=str(e),
        ) from e


def decode_signing_key(signing: str) -> bytes:
    """Decode a base64 signing secret (standard alphabet, padded)."""
    try:
        return base64.b64decode(signing, validate=True)
    except (binascii.Error, ValueError) as e:
        raise webhook_error(
            WEBHOOK_E_SECRET_INVALID,
            "Signing secret is not valid base64",
            http_status=500,
            cause=str(e),
        ) from e


def compute_signature(body: bytes, key: bytes) -> bytes:
    return hmac.new(key, body, hashlib.sha256).digest()


def sign_body(body: bytes, signing: str) -> str:
    """Hex signature for ``body`` under a base64 signing secret (as the CA sends it)."""
    return compute_signature(body, decode_signing_key(signing)).hex()


def verify_signature(body: bytes, signature: bytes, key: bytes) -> bool:
    """Constant-time comparison of ``signature`` with HMAC-SHA256(key, body)."""
    return hmac.compare_digest(compute_signature(body, key), signature)
