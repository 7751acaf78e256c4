"""Prometheus metrics for the webhook receiver.

Labels stay low-cardinality: route names and outcome codes only, never webhook
IDs or identity keys.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "step_webhooks_requests_total",
    "Webhook requests handled",
    ["route", "outcome"],
)
REQUEST_LATENCY_SECONDS = Histogram(
    "step_webhooks_request_latency_seconds",
    "Webhook request latency in seconds",
    ["route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
AUTH_FAILURES_TOTAL = Counter(
    "step_webhooks_auth_failures_total",
    "Requests rejected by the authentication pipeline",
    ["reason"],
)
DECISIONS_TOTAL = Counter(
    "step_webhooks_decisions_total",
    "Allow/deny results returned to the CA",
    ["route", "allow"],
)


def record_request(route: str, outcome: str, started: float) -> None:
    REQUESTS_TOTAL.labels(route=route, outcome=outcome).inc()
    REQUEST_LATENCY_SECONDS.labels(route=route).observe(time.time() - started)


def record_auth_failure(reason: str) -> None:
    AUTH_FAILURES_TOTAL.labels(reason=reason).inc()


def record_decision(route: str, allow: bool) -> None:
    DECISIONS_TOTAL.labels(route=route, allow="true" if allow else "false").inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach a /metrics endpoint to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
