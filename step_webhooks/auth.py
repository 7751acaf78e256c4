"""Optional second-factor credentials layered on top of the body signature.

A webhook secret may carry a bearer token, or a basic-auth username/password,
or neither. When neither is configured the HMAC signature is the only factor.
"""

from __future__ import annotations

import base64
import binascii
import hmac
from typing import Optional, Tuple

from .config import WebhookSecret
from .errors import webhook_error, WEBHOOK_E_UNAUTHORIZED


def _equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def parse_basic_auth(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """Extract (username, password) from an HTTP Basic Authorization header.

    Returns None when the header is absent or not well-formed Basic credentials.
    """
    if not authorization:
        return None
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


def check_credentials(secret: WebhookSecret, authorization: Optional[str], webhook_id: str = "") -> None:
    """Raise a 401 WebhookError unless the Authorization header satisfies ``secret``."""
    if secret.uses_bearer:
        if not _equal(authorization or "", f"Bearer {secret.bearer}"):
            raise webhook_error(
                WEBHOOK_E_UNAUTHORIZED,
                "Unauthorized",
                http_status=401,
                webhook_id=webhook_id,
                cause="incorrect bearer authorization header",
            )
    elif secret.uses_basic:
        username, password = parse_basic_auth(authorization) or ("", "")
        # Both comparisons always run.
        user_ok = _equal(username, secret.username)
        pass_ok = _equal(password, secret.password)
        if not (user_ok and pass_ok):
            raise webhook_error(
                WEBHOOK_E_UNAUTHORIZED,
                "Unauthorized",
                http_status=401,
                webhook_id=webhook_id,
                cause="incorrect basic authorization header",
            )
