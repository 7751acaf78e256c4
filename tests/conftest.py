import base64
import json
import time

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from step_webhooks.callbacks import StaticIdentityStore
from step_webhooks.config import SecretRegistry, ServerSettings, WebhookSecret
from step_webhooks.server import create_app
from step_webhooks.signature import sign_body

WEBHOOK_ID = "8509cf3b-c657-4f69-bf78-636be7cd91fc"
BEARER_WEBHOOK_ID = "0d5a9b6e-3c2f-4c8a-9a51-3f0b7d1e2c44"
BASIC_WEBHOOK_ID = "6f1e2d3c-4b5a-4978-8c6d-5e4f3a2b1c0d"
BAD_SECRET_WEBHOOK_ID = "c0ffee00-0000-4000-8000-000000000000"

SIGNING = base64.b64encode(b"k" * 64).decode("ascii")


def make_csr_der(common_name: str = "alice") -> bytes:
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.DER)


def ssh_wire_key(public_key) -> bytes:
    line = public_key.public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
    return base64.b64decode(line.split()[1])


def make_ssh_blob(kind: str = "ed25519") -> bytes:
    if kind == "rsa":
        return ssh_wire_key(rsa.generate_private_key(public_exponent=65537, key_size=2048).public_key())
    if kind == "ecdsa":
        return ssh_wire_key(ec.generate_private_key(ec.SECP256R1()).public_key())
    return ssh_wire_key(ed25519.Ed25519PrivateKey.generate().public_key())


def make_ssh_cert_blob(key_id: str = "alice") -> bytes:
    ca = ed25519.Ed25519PrivateKey.generate()
    user = ed25519.Ed25519PrivateKey.generate().public_key()
    now = int(time.time())
    cert = (
        serialization.SSHCertificateBuilder()
        .public_key(user)
        .serial(1)
        .type(serialization.SSHCertificateType.USER)
        .key_id(key_id.encode("ascii"))
        .valid_principals([key_id.encode("ascii")])
        .valid_after(now - 60)
        .valid_before(now + 3600)
        .sign(ca)
    )
    return base64.b64decode(cert.public_bytes().split()[1])


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def x509_enrich_payload(common_name: str = "alice") -> dict:
    return {
        "timestamp": "2026-10-18T12:00:00.123456789Z",
        "provisionerName": "admin",
        "provisionerType": "JWK",
        "x509CertificateRequest": {
            "subject": {"commonName": common_name},
            "sans": [{"type": "email", "value": common_name + "@example.com"}],
            "publicKeyAlgorithm": "ECDSA",
            "raw": b64(make_csr_der(common_name)),
        },
    }


def ssh_enrich_payload(key_id: str = "alice", public_key: bytes = None) -> dict:
    return {
        "timestamp": "2026-10-18T12:00:00Z",
        "sshCertificateRequest": {
            "publicKey": b64(make_ssh_blob() if public_key is None else public_key),
            "type": "user",
            "keyID": key_id,
            "principals": [key_id],
        },
    }


def x509_authorize_payload(common_name: str) -> dict:
    return {
        "timestamp": "2026-10-18T12:00:00Z",
        "x509Certificate": {
            "subject": {"commonName": common_name},
            "sans": [],
            "publicKeyAlgorithm": "ECDSA",
            "notBefore": "2026-10-18T12:00:00Z",
            "notAfter": "2026-10-19T12:00:00Z",
        },
    }


def ssh_authorize_payload(key_id: str = "alice", public_key=None, signature_key=None) -> dict:
    cert = {"type": "user", "keyId": key_id, "principals": [key_id], "validAfter": 0, "validBefore": 1}
    if public_key is not None:
        cert["publicKey"] = b64(public_key)
    if signature_key is not None:
        cert["signatureKey"] = b64(signature_key)
    return {"timestamp": "2026-10-18T12:00:00Z", "sshCertificate": cert}


@pytest.fixture
def secrets():
    return SecretRegistry.from_config(
        {
            WEBHOOK_ID: {"signing": SIGNING},
            BEARER_WEBHOOK_ID: {"signing": SIGNING, "bearer": "s3cr3t-token"},
            BASIC_WEBHOOK_ID: {"signing": SIGNING, "username": "step", "password": "hunter2"},
            BAD_SECRET_WEBHOOK_ID: WebhookSecret(signing="not base64!!"),
        }
    )


@pytest.fixture
def identities():
    return StaticIdentityStore({"alice": {"role": "eng"}, "carl@smallstep.com": {"role": "eng"}})


@pytest.fixture
def make_client(secrets, identities):
    def _make(callbacks=None, settings=None, registry=None):
        app = create_app(
            callbacks=identities if callbacks is None else callbacks,
            secrets=secrets if registry is None else registry,
            settings=settings or ServerSettings(),
        )
        return TestClient(app)

    return _make


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def signed_post():
    """POST a body signed the way step-ca signs it."""

    def _post(client, path, payload=None, *, raw=None, webhook_id=WEBHOOK_ID, signing=SIGNING, headers=None):
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        h = {"Content-Type": "application/json", "X-Smallstep-Signature": sign_body(body, signing)}
        if webhook_id is not None:
            h["X-Smallstep-Webhook-ID"] = webhook_id
        h.update(headers or {})
        return client.post(path, content=body, headers={k: v for k, v in h.items() if v is not None})

    return _post
