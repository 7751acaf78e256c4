"""Stable error taxonomy for the webhook receiver.

A single exception type carries a machine-readable code and the HTTP status the
transport layer should answer with. Server-side failures (5xx) never expose
their message to the caller; the exception handler substitutes a generic body
and the detail stays in the server log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Request authentication
WEBHOOK_E_ID_REQUIRED = "WEBHOOK_E_ID_REQUIRED"
WEBHOOK_E_UNKNOWN_ID = "WEBHOOK_E_UNKNOWN_ID"
WEBHOOK_E_UNAUTHORIZED = "WEBHOOK_E_UNAUTHORIZED"
WEBHOOK_E_BAD_SIGNATURE_HEADER = "WEBHOOK_E_BAD_SIGNATURE_HEADER"
WEBHOOK_E_BODY_UNREADABLE = "WEBHOOK_E_BODY_UNREADABLE"
WEBHOOK_E_SECRET_INVALID = "WEBHOOK_E_SECRET_INVALID"
WEBHOOK_E_INVALID_SIGNATURE = "WEBHOOK_E_INVALID_SIGNATURE"
WEBHOOK_E_BODY_INVALID = "WEBHOOK_E_BODY_INVALID"
WEBHOOK_E_STALE_REQUEST = "WEBHOOK_E_STALE_REQUEST"

# Payload parsing / callbacks
WEBHOOK_E_CSR_INVALID = "WEBHOOK_E_CSR_INVALID"
WEBHOOK_E_SSH_KEY_INVALID = "WEBHOOK_E_SSH_KEY_INVALID"
WEBHOOK_E_CALLBACK_FAILED = "WEBHOOK_E_CALLBACK_FAILED"

# Generic
WEBHOOK_E_REQUEST_TOO_LARGE = "WEBHOOK_E_REQUEST_TOO_LARGE"
WEBHOOK_E_BAD_REQUEST = "WEBHOOK_E_BAD_REQUEST"
WEBHOOK_E_INTERNAL = "WEBHOOK_E_INTERNAL"

GENERIC_SERVER_MESSAGE = "Internal Server Error"


@dataclass
class WebhookError(Exception):
    """Terminal failure for a single webhook request."""

    code: str
    message: str
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_server_error(self) -> bool:
        return int(self.http_status) >= 500

    def as_dict(self) -> Dict[str, Any]:
        """Caller-facing body. 5xx errors are reduced to a generic message."""
        if self.is_server_error:
            return {"code": WEBHOOK_E_INTERNAL, "message": GENERIC_SERVER_MESSAGE}
        return {"code": self.code, "message": self.message}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def webhook_error(code: str, message: str, *, http_status: int = 400, **details: Any) -> WebhookError:
    return WebhookError(code=code, message=message, http_status=http_status, details=details)
