"""Wire models for step-ca webhook calls.

The request body carries a timestamp plus one payload whose meaning depends on
the route it was delivered to. Every payload field is optional on the wire;
handlers only read the one that matches their route and treat an absent
payload as an empty descriptor.

Byte fields are standard base64 strings (Go's encoding of ``[]byte``).
"""

from __future__ import annotations

import base64
import binascii
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PrivateAttr


def _decode_b64(value: Any) -> Any:
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    try:
        return base64.b64decode(value.replace("\r", "").replace("\n", ""), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64: {e}") from e


Base64Field = Annotated[bytes, BeforeValidator(_decode_b64)]


def _null_list(value: Any) -> Any:
    return [] if value is None else value


def _null_dict(value: Any) -> Any:
    return {} if value is None else value


# Go encodes nil slices and maps as null.
StrList = Annotated[List[str], BeforeValidator(_null_list)]
AnyList = Annotated[List[Any], BeforeValidator(_null_list)]
StrDict = Annotated[Dict[str, str], BeforeValidator(_null_dict)]


class _WireModel(BaseModel):
    # Unknown fields from newer CA versions are kept, never rejected.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Subject(_WireModel):
    common_name: str = Field("", alias="commonName")
    country: StrList = Field(default_factory=list)
    organization: StrList = Field(default_factory=list)
    organizational_unit: StrList = Field(default_factory=list, alias="organizationalUnit")
    serial_number: str = Field("", alias="serialNumber")


class X509CertificateRequest(_WireModel):
    """CSR descriptor sent on the enrich-X.509 route."""

    subject: Subject = Field(default_factory=Subject)
    sans: AnyList = Field(default_factory=list)
    public_key_algorithm: str = Field("", alias="publicKeyAlgorithm")
    raw: Base64Field = b""

    _csr: Any = PrivateAttr(default=None)

    @property
    def certificate_request(self):
        """Parsed ``cryptography`` CSR, set by the handler after validation."""
        return self._csr


class X509Certificate(_WireModel):
    """Certificate template sent on the authorize-X.509 route."""

    subject: Subject = Field(default_factory=Subject)
    sans: AnyList = Field(default_factory=list)
    serial_number: Optional[Any] = Field(None, alias="serialNumber")
    public_key_algorithm: str = Field("", alias="publicKeyAlgorithm")
    not_before: str = Field("", alias="notBefore")
    not_after: str = Field("", alias="notAfter")
    raw: Base64Field = b""


class SSHCertificateRequest(_WireModel):
    """SSH certificate request sent on the enrich-SSH route."""

    public_key: Base64Field = Field(b"", alias="publicKey")
    type: str = ""
    key_id: str = Field("", alias="keyID")
    principals: StrList = Field(default_factory=list)

    _public_key: Any = PrivateAttr(default=None)

    @property
    def parsed_public_key(self):
        return self._public_key


class SSHCertificate(_WireModel):
    """SSH certificate template sent on the authorize-SSH route.

    ``public_key`` and ``signature_key`` arrive as SSH wire-format blobs; the
    handler parses them and exposes the key objects via the ``parsed_*``
    properties before the policy callback sees the certificate.
    """

    type: str = ""
    key_id: str = Field("", alias="keyId")
    principals: StrList = Field(default_factory=list)
    serial: int = 0
    valid_after: int = Field(0, alias="validAfter")
    valid_before: int = Field(0, alias="validBefore")
    critical_options: StrDict = Field(default_factory=dict, alias="criticalOptions")
    extensions: StrDict = Field(default_factory=dict)
    public_key: Base64Field = Field(b"", alias="publicKey")
    signature_key: Base64Field = Field(b"", alias="signatureKey")

    _public_key: Any = PrivateAttr(default=None)
    _signature_key: Any = PrivateAttr(default=None)

    @property
    def parsed_public_key(self):
        return self._public_key

    @property
    def parsed_signature_key(self):
        return self._signature_key


class WebhookRequestBody(_WireModel):
    """Authenticated request envelope. Only valid after signature verification."""

    timestamp: str = ""
    provisioner_name: str = Field("", alias="provisionerName")
    provisioner_type: str = Field("", alias="provisionerType")
    token: Any = None
    attestation_data: Any = Field(None, alias="attestationData")
    x509_certificate_request: Optional[X509CertificateRequest] = Field(None, alias="x509CertificateRequest")
    x509_certificate: Optional[X509Certificate] = Field(None, alias="x509Certificate")
    ssh_certificate_request: Optional[SSHCertificateRequest] = Field(None, alias="sshCertificateRequest")
    ssh_certificate: Optional[SSHCertificate] = Field(None, alias="sshCertificate")


class WebhookResponseBody(BaseModel):
    """Response returned to the CA."""

    data: Any = None
    allow: bool = False
