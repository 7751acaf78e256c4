"""Adapters over ``cryptography`` for the certificate material in webhook payloads.

Each helper either returns a parsed object or raises ``ValueError``; callers
decide which HTTP status a failure maps to.
"""

from __future__ import annotations

import base64
import struct
from typing import Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

SSH_CERT_SUFFIX = "-cert-v01@openssh.com"


def parse_x509_csr(der: bytes) -> x509.CertificateSigningRequest:
    """Parse a DER-encoded PKCS#10 request. The request signature is not checked."""
    if not der:
        raise ValueError("empty certificate request")
    try:
        return x509.load_der_x509_csr(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ValueError(f"invalid certificate request: {e}") from e


def _read_ssh_string(blob: bytes, offset: int = 0) -> Tuple[bytes, int]:
    if len(blob) < offset + 4:
        raise ValueError("truncated SSH string length")
    (length,) = struct.unpack(">I", blob[offset:offset + 4])
    start = offset + 4
    end = start + length
    if len(blob) < end:
        raise ValueError("truncated SSH string")
    return blob[start:end], end


def ssh_key_type(blob: bytes) -> str:
    """Return the algorithm name that prefixes an SSH wire-format key."""
    raw_type, _ = _read_ssh_string(blob)
    try:
        key_type = raw_type.decode("ascii")
    except UnicodeDecodeError as e:
        raise ValueError("SSH key type is not ASCII") from e
    if not key_type:
        raise ValueError("empty SSH key type")
    return key_type


def parse_ssh_public_key(blob: bytes):
    """Parse an SSH wire-format public key (or OpenSSH certificate) blob.

    Returns a ``cryptography`` public key, or an ``SSHCertificate`` when the
    blob is itself a certificate.
    """
    if not blob:
        raise ValueError("empty SSH public key")
    key_type = ssh_key_type(blob)
    line = key_type.encode("ascii") + b" " + base64.b64encode(blob)
    try:
        if key_type.endswith(SSH_CERT_SUFFIX):
            return serialization.load_ssh_public_identity(line)
        return serialization.load_ssh_public_key(line)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ValueError(f"invalid SSH public key ({key_type}): {e}") from e
