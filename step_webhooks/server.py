"""
step-ca Webhook Receiver

FastAPI app that step-ca calls while issuing certificates.

Routes:
- POST /{identity}          enrich an X.509 certificate request
- POST /ssh/{identity}      enrich an SSH certificate request
- POST /auth/...            authorize an X.509 certificate
- POST /auth-ssh/...        authorize an SSH certificate

Every call is authenticated with the per-webhook shared secret (HMAC-SHA256
over the raw body, plus optional bearer/basic credentials) before any of its
payload is interpreted. Lookups and allow/deny decisions are delegated to an
injected WebhookCallbacks implementation.
"""

from __future__ import annotations

import json
import logging
import tempfile
import time
from typing import Any, Awaitable, Callable, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse, Response

from .auth import _equal
from .authenticator import RequestAuthenticator
from .callbacks import StaticIdentityStore, WebhookCallbacks
from .config import SecretRegistry, ServerSettings
from .errors import (
    WebhookError,
    webhook_error,
    WEBHOOK_E_BAD_REQUEST,
    WEBHOOK_E_CALLBACK_FAILED,
    WEBHOOK_E_CSR_INVALID,
    WEBHOOK_E_INTERNAL,
    WEBHOOK_E_REQUEST_TOO_LARGE,
    WEBHOOK_E_SSH_KEY_INVALID,
)
from .metrics import instrument_fastapi, record_decision, record_request
from .models import (
    SSHCertificate,
    SSHCertificateRequest,
    WebhookResponseBody,
    X509Certificate,
    X509CertificateRequest,
)
from .parsing import parse_ssh_public_key, parse_x509_csr

logger = logging.getLogger("step_webhooks")

ROUTE_ENRICH_X509 = "enrich_x509"
ROUTE_ENRICH_SSH = "enrich_ssh"
ROUTE_AUTHORIZE_X509 = "authorize_x509"
ROUTE_AUTHORIZE_SSH = "authorize_ssh"


def resolve_identity_key(path: str) -> str:
    """Return the last segment of a URL path ("" when the path ends in '/')."""
    return path.rpartition("/")[2]


def encode_response(result: WebhookResponseBody) -> Response:
    """Serialize a response body as JSON.

    Callback data is arbitrary; anything that cannot be encoded is a 500.
    """
    try:
        content = json.dumps(
            {"data": jsonable_encoder(result.data), "allow": bool(result.allow)},
            separators=(",", ":"),
        )
    except (TypeError, ValueError) as e:
        logger.error("Failed to encode webhook response: %s", e)
        raise webhook_error(
            WEBHOOK_E_INTERNAL,
            "Failed to encode response",
            http_status=500,
            cause=f"{type(e).__name__}: {e}",
        ) from e
    return Response(content=content + "\n", media_type="application/json")


def _lookup_result(name: str, identity: str, result: Any) -> Tuple[Any, bool]:
    try:
        data, found = result
    except (TypeError, ValueError) as e:
        logger.error("Callback %s returned %r for %r; expected (data, found)", name, type(result).__name__, identity)
        raise webhook_error(
            WEBHOOK_E_CALLBACK_FAILED, f"{name} returned an invalid result", http_status=500, identity=identity
        ) from e
    return data, _decision(name, identity, found)


def _decision(name: str, identity: str, value: Any) -> bool:
    if not isinstance(value, bool):
        logger.error("Callback %s returned %r for %r; expected a bool", name, type(value).__name__, identity)
        raise webhook_error(
            WEBHOOK_E_CALLBACK_FAILED, f"{name} returned an invalid result", http_status=500, identity=identity
        )
    return value


class WebhookHandler:
    """The four webhook operations.

    Each method authenticates the request, prepares the payload for its route
    and calls the matching callback. Failures are raised as WebhookError.
    """

    def __init__(self, authenticator: RequestAuthenticator, callbacks: WebhookCallbacks):
        self.authenticator = authenticator
        self.callbacks = callbacks

    async def _call(self, name: str, identity: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(fn, *args)
        except Exception as e:
            logger.error("Callback %s failed for %r: %s", name, identity, e, exc_info=True)
            raise webhook_error(
                WEBHOOK_E_CALLBACK_FAILED,
                f"{name} failed",
                http_status=500,
                identity=identity,
                cause=f"{type(e).__name__}: {e}",
            ) from e

    async def enrich_x509(self, request: Request) -> WebhookResponseBody:
        auth = await self.authenticator.authenticate(request)
        key = resolve_identity_key(request.url.path)
        csr = auth.body.x509_certificate_request or X509CertificateRequest()
        try:
            csr._csr = parse_x509_csr(csr.raw)
        except ValueError as e:
            logger.error("Failed to parse certificate request for %r (webhook %s): %s", key, auth.webhook_id, e)
            raise webhook_error(
                WEBHOOK_E_CSR_INVALID, "Invalid certificate request", http_status=500, identity=key
            ) from e

        result = await self._call("lookup_x509", key, self.callbacks.lookup_x509, key, csr)
        data, found = _lookup_result("lookup_x509", key, result)
        logger.info("Received X.509 enriching webhook request for %r (found=%s)", key, found)
        logger.debug("Sent data for %r: %r", key, data)
        return WebhookResponseBody(data=data, allow=found)

    async def enrich_ssh(self, request: Request) -> WebhookResponseBody:
        auth = await self.authenticator.authenticate(request)
        key = resolve_identity_key(request.url.path)
        cr = auth.body.ssh_certificate_request or SSHCertificateRequest()
        try:
            cr._public_key = parse_ssh_public_key(cr.public_key)
        except ValueError as e:
            logger.warning("Failed to parse SSH public key for %r (webhook %s): %s", key, auth.webhook_id, e)
            raise webhook_error(WEBHOOK_E_SSH_KEY_INVALID, "Invalid SSH public key", identity=key) from e

        result = await self._call("lookup_ssh", key, self.callbacks.lookup_ssh, key, cr)
        data, found = _lookup_result("lookup_ssh", key, result)
        logger.info("Received SSH enriching webhook request for %r (found=%s)", key, found)
        logger.debug("Sent data for %r: %r", key, data)
        return WebhookResponseBody(data=data, allow=found)

    async def authorize_x509(self, request: Request) -> WebhookResponseBody:
        auth = await self.authenticator.authenticate(request)
        cert = auth.body.x509_certificate or X509Certificate()
        subject = cert.subject.common_name
        result = await self._call("allow_x509", subject, self.callbacks.allow_x509, cert)
        allow = _decision("allow_x509", subject, result)
        logger.info("Authorization for X.509 certificate %r: allow=%s", subject, allow)
        return WebhookResponseBody(data=None, allow=allow)

    async def authorize_ssh(self, request: Request) -> WebhookResponseBody:
        auth = await self.authenticator.authenticate(request)
        cert = auth.body.ssh_certificate or SSHCertificate()
        subject = cert.key_id
        for field_name, blob, attr in (
            ("publicKey", cert.public_key, "_public_key"),
            ("signatureKey", cert.signature_key, "_signature_key"),
        ):
            if not blob:
                continue
            try:
                setattr(cert, attr, parse_ssh_public_key(blob))
            except ValueError as e:
                logger.error("Failed to parse SSH %s for %r (webhook %s): %s", field_name, subject, auth.webhook_id, e)
                raise webhook_error(
                    WEBHOOK_E_SSH_KEY_INVALID, f"Invalid SSH {field_name}", http_status=500, identity=subject
                ) from e

        result = await self._call("allow_ssh", subject, self.callbacks.allow_ssh, cert)
        allow = _decision("allow_ssh", subject, result)
        logger.info("Authorization for SSH certificate %r: allow=%s", subject, allow)
        return WebhookResponseBody(data=None, allow=allow)


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(
    callbacks: Optional[WebhookCallbacks] = None,
    secrets: Optional[SecretRegistry] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Anything not passed in is loaded from the environment (see config.py and
    callbacks.py for the variables).
    """
    from . import __version__

    if secrets is None:
        secrets = SecretRegistry.load_from_env()
    if settings is None:
        settings = ServerSettings.load_from_env()
    if callbacks is None:
        callbacks = StaticIdentityStore.load_from_env()
    if not isinstance(callbacks, WebhookCallbacks):
        raise TypeError("callbacks must implement lookup_x509, lookup_ssh, allow_x509 and allow_ssh")
    if secrets.config_error:
        logger.error("Webhook secrets are misconfigured; every request will fail: %s", secrets.config_error)
    elif not len(secrets):
        logger.warning("No webhook secrets configured; every request will fail")

    handler = WebhookHandler(
        RequestAuthenticator(secrets, max_clock_skew_seconds=settings.max_clock_skew_seconds),
        callbacks,
    )

    app = FastAPI(
        title="step-ca Webhooks",
        description="Enrichment and authorization webhooks for step-ca",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.handler = handler
    app.state.settings = settings

    @app.exception_handler(WebhookError)
    async def _webhook_error_handler(request: Request, exc: WebhookError):
        return JSONResponse(status_code=int(exc.http_status), content=exc.as_dict())

    max_request_bytes = settings.max_request_bytes

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(
                    status_code=400,
                    content={"code": WEBHOOK_E_BAD_REQUEST, "message": "Bad Content-Length"},
                )
            if too_large:
                return JSONResponse(
                    status_code=413,
                    content={"code": WEBHOOK_E_REQUEST_TOO_LARGE, "message": "Request too large"},
                )
        return await call_next(req)

    if settings.metrics_enabled:
        metrics_token = settings.metrics_token

        def _authorize_metrics(req: Request) -> bool:
            if not metrics_token:
                return True
            authz = (req.headers.get("Authorization") or "").strip()
            return authz.lower().startswith("bearer ") and _equal(authz.split(" ", 1)[1].strip(), metrics_token)

        instrument_fastapi(app, authorize=_authorize_metrics)

    @app.get("/healthz", include_in_schema=False)
    async def healthz():
        return {"status": "ok"}

    async def _dispatch(
        route: str,
        operation: Callable[[Request], Awaitable[WebhookResponseBody]],
        request: Request,
    ) -> Response:
        started = time.time()
        try:
            result = await operation(request)
            response = encode_response(result)
        except WebhookError as e:
            record_request(route, e.code, started)
            raise
        record_decision(route, result.allow)
        record_request(route, "ok", started)
        return response

    # Longer prefixes first: the enrich-X.509 route matches every path.
    @app.post("/ssh/{rest:path}")
    async def enrich_ssh(request: Request):
        return await _dispatch(ROUTE_ENRICH_SSH, handler.enrich_ssh, request)

    @app.post("/auth-ssh/{rest:path}")
    async def authorize_ssh(request: Request):
        return await _dispatch(ROUTE_AUTHORIZE_SSH, handler.authorize_ssh, request)

    @app.post("/auth/{rest:path}")
    async def authorize_x509(request: Request):
        return await _dispatch(ROUTE_AUTHORIZE_X509, handler.authorize_x509, request)

    # Subtree roots without the trailing slash redirect instead of being read as identity keys.
    @app.post("/ssh", include_in_schema=False)
    @app.post("/auth-ssh", include_in_schema=False)
    @app.post("/auth", include_in_schema=False)
    async def _subtree_redirect(request: Request):
        url = request.url.replace(path=request.url.path + "/")
        return RedirectResponse(str(url), status_code=301)

    @app.post("/{rest:path}")
    async def enrich_x509(request: Request):
        return await _dispatch(ROUTE_ENRICH_X509, handler.enrich_x509, request)

    return app


def client_ca_bundle(paths: list) -> str:
    """Return one CA file for uvicorn, concatenating several PEM files if needed."""
    if len(paths) == 1:
        return paths[0]
    with tempfile.NamedTemporaryFile("w", suffix=".pem", prefix="client-ca-", delete=False) as bundle:
        for path in paths:
            with open(path, "r", encoding="utf-8") as f:
                pem = f.read()
            bundle.write(pem if pem.endswith("\n") else pem + "\n")
    logger.debug("Combined %d client CA files into %s", len(paths), bundle.name)
    return bundle.name


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def main(argv: Optional[list] = None) -> int:
    """
    Entry point for the step-webhooks CLI.

    Usage:
        step-webhooks --certfile webhook.crt --keyfile webhook.key --client-ca root_ca.crt
        step-webhooks --host 127.0.0.1 --port 8080      # plain HTTP behind a TLS proxy
    """
    import argparse
    import ssl

    parser = argparse.ArgumentParser(
        description="step-ca enrichment and authorization webhook server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    WEBHOOK_SECRETS_JSON / WEBHOOK_SECRETS_FILE        webhook_id -> {signing, bearer, username, password}
    WEBHOOK_IDENTITIES_JSON / WEBHOOK_IDENTITIES_FILE  identity key -> enrichment data
    WEBHOOK_MAX_REQUEST_BYTES                          request size limit (default 1048576)
    WEBHOOK_MAX_CLOCK_SKEW_SECONDS                     timestamp freshness window (default 0, disabled)
    WEBHOOK_METRICS_ENABLED / WEBHOOK_METRICS_TOKEN    /metrics exposure
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=4443, help="Port to bind (default: 4443)")
    parser.add_argument("--certfile", default=None, help="Server TLS certificate (PEM)")
    parser.add_argument("--keyfile", default=None, help="Server TLS private key (PEM)")
    parser.add_argument(
        "--client-ca",
        action="append",
        default=[],
        help="PEM file of CAs that client certificates must chain to; repeatable, enables mutual TLS",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if bool(args.certfile) != bool(args.keyfile):
        parser.error("--certfile and --keyfile must be given together")
    if args.client_ca and not args.certfile:
        parser.error("--client-ca requires --certfile/--keyfile")

    import uvicorn

    app = create_app()

    ssl_kwargs: dict = {}
    if args.certfile:
        ssl_kwargs.update(ssl_certfile=args.certfile, ssl_keyfile=args.keyfile)
    if args.client_ca:
        ssl_kwargs.update(ssl_ca_certs=client_ca_bundle(args.client_ca), ssl_cert_reqs=ssl.CERT_REQUIRED)

    scheme = "https" if args.certfile else "http"
    logger.info("Listening on %s://%s:%d (mutual TLS: %s)", scheme, args.host, args.port, bool(args.client_ca))
    uvicorn.run(app, host=args.host, port=args.port, log_level="debug" if args.verbose else "info", **ssl_kwargs)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
