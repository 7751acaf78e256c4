"""Static configuration for the webhook receiver.

Secrets are keyed by webhook ID and loaded once at startup; nothing here is
mutated while requests are being served.

Env vars:
  - WEBHOOK_SECRETS_JSON: JSON object mapping webhook_id -> secret object
  - WEBHOOK_SECRETS_FILE: path to a JSON file with the same mapping
  - WEBHOOK_MAX_REQUEST_BYTES: Content-Length ceiling (default 1048576)
  - WEBHOOK_MAX_CLOCK_SKEW_SECONDS: timestamp freshness window, 0 disables
  - WEBHOOK_METRICS_ENABLED: expose /metrics (default true)
  - WEBHOOK_METRICS_TOKEN: bearer token required by /metrics when set

A secret object looks like::

    {"signing": "<base64 key>", "bearer": "...", "username": "...", "password": "..."}

Only ``signing`` is required.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

ENV_SECRETS_JSON = "WEBHOOK_SECRETS_JSON"
ENV_SECRETS_FILE = "WEBHOOK_SECRETS_FILE"
ENV_MAX_REQUEST_BYTES = "WEBHOOK_MAX_REQUEST_BYTES"
ENV_MAX_CLOCK_SKEW_SECONDS = "WEBHOOK_MAX_CLOCK_SKEW_SECONDS"
ENV_METRICS_ENABLED = "WEBHOOK_METRICS_ENABLED"
ENV_METRICS_TOKEN = "WEBHOOK_METRICS_TOKEN"

DEFAULT_MAX_REQUEST_BYTES = 1048576

logger = logging.getLogger("step_webhooks")


@dataclass(frozen=True)
class WebhookSecret:
    """Shared secret material for one webhook ID."""

    signing: str
    bearer: str = ""
    username: str = ""
    password: str = ""

    @property
    def uses_bearer(self) -> bool:
        return bool(self.bearer)

    @property
    def uses_basic(self) -> bool:
        # Bearer wins when both are configured.
        return not self.bearer and bool(self.username or self.password)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WebhookSecret":
        if not isinstance(data, Mapping):
            raise ValueError("secret entry must be a JSON object")
        signing = data.get("signing")
        if not isinstance(signing, str) or not signing:
            raise ValueError("secret entry requires a non-empty 'signing' string")
        return cls(
            signing=signing,
            bearer=str(data.get("bearer") or ""),
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
        )

    def __repr__(self) -> str:
        # Keep key material out of logs and tracebacks.
        mode = "bearer" if self.uses_bearer else "basic" if self.uses_basic else "signature"
        return f"WebhookSecret(mode={mode!r})"


def load_json_mapping(json_env: str, file_env: str) -> tuple:
    """Return (mapping, configured, error) for a *_JSON / *_FILE env pair."""
    raw_json = os.getenv(json_env)
    file_path = os.getenv(file_env)
    if not raw_json and not file_path:
        return {}, False, None
    try:
        if raw_json:
            data = json.loads(raw_json)
            source = json_env
        else:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            source = file_path
        if not isinstance(data, dict):
            raise ValueError(f"{source} must contain a JSON object")
        return data, True, None
    except Exception as e:
        logger.error("Failed to load %s/%s: %s", json_env, file_env, e)
        return {}, True, f"{type(e).__name__}: {e}"


@dataclass(frozen=True)
class SecretRegistry:
    """Read-only mapping of webhook ID -> WebhookSecret."""

    secrets: Mapping[str, WebhookSecret] = field(default_factory=dict)
    config_error: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SecretRegistry":
        """Build from a plain mapping. Any malformed entry fails the whole registry."""
        try:
            secrets = {
                str(webhook_id): value if isinstance(value, WebhookSecret) else WebhookSecret.from_dict(value)
                for webhook_id, value in config.items()
            }
        except (ValueError, AttributeError) as e:
            logger.error("Invalid webhook secret configuration: %s", e)
            return cls(secrets={}, config_error=str(e))
        return cls(secrets=secrets)

    @classmethod
    def load_from_env(cls) -> "SecretRegistry":
        """Load secrets from env/file.

        If configuration is present but malformed the registry carries a
        config_error and refuses every lookup, so requests fail closed.
        """
        data, _configured, error = load_json_mapping(ENV_SECRETS_JSON, ENV_SECRETS_FILE)
        if error:
            return cls(secrets={}, config_error=error)
        return cls.from_config(data)

    def get(self, webhook_id: str) -> Optional[WebhookSecret]:
        if self.config_error:
            return None
        return self.secrets.get(webhook_id)

    def __contains__(self, webhook_id: object) -> bool:
        return not self.config_error and webhook_id in self.secrets

    def __len__(self) -> int:
        return len(self.secrets)


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %d", name, os.getenv(name), default)
        return default


@dataclass(frozen=True)
class ServerSettings:
    """Transport-level knobs for the FastAPI app."""

    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES
    max_clock_skew_seconds: int = 0
    metrics_enabled: bool = True
    metrics_token: str = ""

    @classmethod
    def load_from_env(cls) -> "ServerSettings":
        return cls(
            max_request_bytes=_env_int(ENV_MAX_REQUEST_BYTES, DEFAULT_MAX_REQUEST_BYTES),
            max_clock_skew_seconds=max(0, _env_int(ENV_MAX_CLOCK_SKEW_SECONDS, 0)),
            metrics_enabled=_env_bool(ENV_METRICS_ENABLED, True),
            metrics_token=(os.getenv(ENV_METRICS_TOKEN, "") or "").strip(),
        )
