"""step-ca webhook receiver.

Authenticates enrichment and authorization webhook calls from step-ca and
delegates lookups and allow/deny decisions to an injected callback object.

Convenience imports
------------------
These are available as top-level imports and are loaded lazily, so importing
the package does not pull in FastAPI:

    from step_webhooks import create_app, WebhookHandler
    from step_webhooks import SecretRegistry, WebhookSecret, StaticIdentityStore
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments."""

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "create_app",
    "WebhookHandler",
    "RequestAuthenticator",
    "SecretRegistry",
    "WebhookSecret",
    "ServerSettings",
    "WebhookCallbacks",
    "StaticIdentityStore",
    "WebhookError",
    "sign_body",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "create_app": ("step_webhooks.server", "create_app"),
    "WebhookHandler": ("step_webhooks.server", "WebhookHandler"),
    "RequestAuthenticator": ("step_webhooks.authenticator", "RequestAuthenticator"),
    "SecretRegistry": ("step_webhooks.config", "SecretRegistry"),
    "WebhookSecret": ("step_webhooks.config", "WebhookSecret"),
    "ServerSettings": ("step_webhooks.config", "ServerSettings"),
    "WebhookCallbacks": ("step_webhooks.callbacks", "WebhookCallbacks"),
    "StaticIdentityStore": ("step_webhooks.callbacks", "StaticIdentityStore"),
    "WebhookError": ("step_webhooks.errors", "WebhookError"),
    "sign_body": ("step_webhooks.signature", "sign_body"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'step_webhooks' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
