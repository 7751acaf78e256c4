"""Pluggable lookup / authorization capabilities.

The receiver never decides anything on its own: enrichment data and allow/deny
decisions come from an injected ``WebhookCallbacks`` implementation. Methods
are called from a worker thread and must be safe for concurrent use. Errors
are reported by raising; the caller answers 500.

``StaticIdentityStore`` is a reference implementation over an in-memory
mapping, suitable for demos and tests.

Env vars (StaticIdentityStore.load_from_env):
  - WEBHOOK_IDENTITIES_JSON: JSON object mapping identity key -> data
  - WEBHOOK_IDENTITIES_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Protocol, Tuple, runtime_checkable

from .config import load_json_mapping
from .models import SSHCertificate, SSHCertificateRequest, X509Certificate, X509CertificateRequest

ENV_IDENTITIES_JSON = "WEBHOOK_IDENTITIES_JSON"
ENV_IDENTITIES_FILE = "WEBHOOK_IDENTITIES_FILE"


@runtime_checkable
class WebhookCallbacks(Protocol):
    """Capabilities consumed by the dispatch handlers."""

    def lookup_x509(self, key: str, csr: X509CertificateRequest) -> Tuple[Any, bool]:
        """Return (data, found) for an X.509 enrichment request."""
        ...

    def lookup_ssh(self, key: str, request: SSHCertificateRequest) -> Tuple[Any, bool]:
        """Return (data, found) for an SSH enrichment request."""
        ...

    def allow_x509(self, certificate: X509Certificate) -> bool:
        ...

    def allow_ssh(self, certificate: SSHCertificate) -> bool:
        ...


@dataclass(frozen=True)
class StaticIdentityStore:
    """Identity store backed by a read-only mapping.

    Enrichment returns ``(mapping[key], True)`` or ``(None, False)``. X.509
    certificates are authorized when their subject common name is a known
    identity; SSH certificates are always authorized.
    """

    identities: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "identities", MappingProxyType(dict(self.identities)))

    @classmethod
    def load_from_env(cls) -> "StaticIdentityStore":
        data, _configured, error = load_json_mapping(ENV_IDENTITIES_JSON, ENV_IDENTITIES_FILE)
        if error:
            raise ValueError(f"invalid identity store configuration: {error}")
        return cls(identities=data)

    def _lookup(self, key: str) -> Tuple[Any, bool]:
        if key in self.identities:
            return self.identities[key], True
        return None, False

    def lookup_x509(self, key: str, csr: X509CertificateRequest) -> Tuple[Any, bool]:
        return self._lookup(key)

    def lookup_ssh(self, key: str, request: SSHCertificateRequest) -> Tuple[Any, bool]:
        return self._lookup(key)

    def allow_x509(self, certificate: X509Certificate) -> bool:
        return certificate.subject.common_name in self.identities

    def allow_ssh(self, certificate: SSHCertificate) -> bool:
        return True
