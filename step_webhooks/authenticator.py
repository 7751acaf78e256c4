"""Request authentication pipeline for inbound webhook calls.

Steps run in a fixed order and stop at the first failure:

1. X-Smallstep-Webhook-ID header present          (400)
2. webhook ID has a configured secret              (500)
3. bearer / basic credentials, if configured      (401)
4. X-Smallstep-Signature is hex                    (400)
5. body readable                                   (400)
6. signing secret is base64                        (500)
7. HMAC-SHA256(secret, raw body) == signature      (400)
8. body decodes into a WebhookRequestBody          (500)

Nothing in the body is looked at before step 7 succeeds. The optional
timestamp freshness check runs after step 8 and is disabled unless a clock
skew window is configured.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError
from starlette.requests import ClientDisconnect, Request

from .auth import check_credentials
from .config import SecretRegistry
from .errors import (
    WebhookError,
    webhook_error,
    WEBHOOK_E_ID_REQUIRED,
    WEBHOOK_E_UNKNOWN_ID,
    WEBHOOK_E_BODY_UNREADABLE,
    WEBHOOK_E_INVALID_SIGNATURE,
    WEBHOOK_E_BODY_INVALID,
    WEBHOOK_E_STALE_REQUEST,
)
from .metrics import record_auth_failure
from .models import WebhookRequestBody
from .signature import decode_signature_header, decode_signing_key, verify_signature

logger = logging.getLogger("step_webhooks")

HEADER_WEBHOOK_ID = "X-Smallstep-Webhook-ID"
HEADER_SIGNATURE = "X-Smallstep-Signature"

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp into an aware UTC datetime, or None."""
    if not ts:
        return None
    s = str(ts).strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    # Go emits nanoseconds; datetime only holds microseconds.
    s = _FRACTION_RE.sub(r".\1", s)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuthenticatedRequest:
    """A request whose signature has been verified and whose body was decoded."""

    webhook_id: str
    body: WebhookRequestBody
    raw_body: bytes


class RequestAuthenticator:
    """Turns an inbound HTTP request into an AuthenticatedRequest or a WebhookError."""

    def __init__(self, secrets: SecretRegistry, max_clock_skew_seconds: int = 0):
        self.secrets = secrets
        self.max_clock_skew_seconds = max(0, int(max_clock_skew_seconds or 0))

    async def authenticate(self, request: Request) -> AuthenticatedRequest:
        webhook_id = request.headers.get(HEADER_WEBHOOK_ID, "")
        try:
            return await self._authenticate(request, webhook_id)
        except WebhookError as e:
            record_auth_failure(e.code)
            log = logger.error if e.is_server_error else logger.warning
            log(
                "Webhook authentication failed for %s: %s (%s)",
                webhook_id or "<missing id>",
                e,
                e.details.get("cause", ""),
            )
            raise

    async def _authenticate(self, request: Request, webhook_id: str) -> AuthenticatedRequest:
        if not webhook_id:
            raise webhook_error(WEBHOOK_E_ID_REQUIRED, f"Missing {HEADER_WEBHOOK_ID} header")

        secret = self.secrets.get(webhook_id)
        if secret is None:
            raise webhook_error(
                WEBHOOK_E_UNKNOWN_ID,
                f"Missing signing secret for webhook {webhook_id}",
                http_status=500,
                webhook_id=webhook_id,
                cause=self.secrets.config_error or "no secret configured",
            )

        check_credentials(secret, request.headers.get("Authorization"), webhook_id=webhook_id)

        signature = decode_signature_header(request.headers.get(HEADER_SIGNATURE, ""))

        try:
            raw_body = await request.body()
        except ClientDisconnect as e:
            raise webhook_error(
                WEBHOOK_E_BODY_UNREADABLE,
                "Failed to read body",
                cause=f"{type(e).__name__}: {e}",
            ) from e

        key = decode_signing_key(secret.signing)
        if not verify_signature(raw_body, signature, key):
            raise webhook_error(
                WEBHOOK_E_INVALID_SIGNATURE,
                "Invalid signature",
                cause="request signature mismatch",
            )

        try:
            body = WebhookRequestBody.model_validate_json(raw_body)
        except ValidationError as e:
            raise webhook_error(
                WEBHOOK_E_BODY_INVALID,
                "Malformed webhook request body",
                http_status=500,
                cause=f"{e.error_count()} validation error(s): "
                f"{[(err['loc'], err['msg']) for err in e.errors()[:3]]}",
            ) from e

        self._check_freshness(body)
        return AuthenticatedRequest(webhook_id=webhook_id, body=body, raw_body=raw_body)

    def _check_freshness(self, body: WebhookRequestBody) -> None:
        if not self.max_clock_skew_seconds:
            return
        ts = parse_timestamp(body.timestamp)
        if ts is None:
            raise webhook_error(
                WEBHOOK_E_STALE_REQUEST,
                "Missing or invalid timestamp",
                cause=f"unparseable timestamp {body.timestamp!r}",
            )
        skew = timedelta(seconds=self.max_clock_skew_seconds)
        now = datetime.now(timezone.utc)
        if abs(now - ts) > skew:
            raise webhook_error(
                WEBHOOK_E_STALE_REQUEST,
                "Stale request",
                cause=f"timestamp {body.timestamp} outside +/-{self.max_clock_skew_seconds}s",
            )
