from __future__ import annotations

import json
import os
import time
import uuid
from datetime import datetime

import sentry_sdk
from flask import current_app, g, has_request_context, request

SUBJECT_KEYS = {
    "order_id": ("order_id", "orderId"),
    "dispute_id": ("dispute_id", "disputeId"),
}
_SCRUBBED_HEADERS = ("authorization", "cookie", "set-cookie", "x-paystack-signature")
_SCRUBBED_FIELDS = ("password", "account_number", "account_name", "bank_code")


def get_request_id() -> str:
    if not has_request_context():
        # Celery worker or CLI.
        return ""
    return getattr(g, "request_id", "") or ""


def _as_id(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def request_subjects() -> dict:
    """Order and dispute ids the current request acts on.

    Taken from the URL rule first, then from a JSON body, then from the
    query string.
    """
    sources = [request.view_args or {}]
    body = request.get_json(silent=True) if request.is_json else None
    if isinstance(body, dict):
        sources.append(body)
    sources.append(request.args)
    subjects = {}
    for field, keys in SUBJECT_KEYS.items():
        found = None
        for source in sources:
            for key in keys:
                found = _as_id(source.get(key))
                if found is not None:
                    break
            if found is not None:
                break
        subjects[field] = found
    return subjects


def note_rollback(label: str, error: BaseException) -> None:
    """Record a rolled-back ledger unit against the current request."""
    code = getattr(error, "code", None) or type(error).__name__
    current_app.logger.warning("txn_rollback label=%s code=%s request_id=%s", label, code, get_request_id())
    if has_request_context():
        g.setdefault("txn_rollbacks", []).append({"label": label, "code": str(code)})


def note_error_code(code: str) -> None:
    if has_request_context():
        g.error_code = code


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    from sentry_sdk.integrations.flask import FlaskIntegration

    try:
        traces_rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip())
    except ValueError:
        traces_rate = 0.0
    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("CAMPUSMARKET_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(traces_rate, 1.0)),
            before_send=scrub_event,
        )
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)
        return
    app.logger.info("sentry_enabled")


def scrub_event(event, hint):
    """Drop credentials and payout bank details before an event leaves."""
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers):
        if key.lower() in _SCRUBBED_HEADERS:
            headers[key] = "[REDACTED]"
    data = req.get("data")
    if isinstance(data, dict):
        for key in _SCRUBBED_FIELDS:
            if key in data:
                data[key] = "[REDACTED]"
    if req:
        event["request"] = req
    return event


def init_otel(app, *, enabled: bool) -> None:
    if not enabled:
        return
    endpoint = (os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or "").strip()
    if not endpoint:
        app.logger.info("otel_disabled_no_endpoint")
        return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.flask import FlaskInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as e:
        # Tracing ships as the optional "otel" extra.
        app.logger.warning("otel_unavailable err=%s", e)
        return

    from campusmarket.extensions import db

    provider = TracerProvider(resource=Resource.create({"service.name": "campusmarket-api"}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    FlaskInstrumentor().instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=db.engine)
    app.logger.info("otel_enabled")


def install_request_observers(app) -> None:
    """Request id in and out, plus one JSON log line per API request.

    The line names the order and dispute the request touched, the error
    code it failed with and any ledger units that rolled back, so a
    support query about one order can be answered from the logs.
    """

    @app.before_request
    def _request_observer_begin():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()
        g.request_subjects = request_subjects()
        for field, value in g.request_subjects.items():
            if value is not None:
                sentry_sdk.set_tag(field, str(value))

    @app.after_request
    def _request_observer_end(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers["X-Request-Id"] = rid
        if not request.path.startswith("/api/"):
            return response
        started = getattr(g, "request_started_at", None)
        subjects = getattr(g, "request_subjects", None) or {}
        line = {
            "event": "api_request",
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "method": request.method,
            "path": request.path,
            "endpoint": request.endpoint,
            "status": int(response.status_code),
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
            "user_id": getattr(g, "auth_user_id", None),
            "role": getattr(g, "auth_role", None),
            "order_id": subjects.get("order_id"),
            "dispute_id": subjects.get("dispute_id"),
            "error": getattr(g, "error_code", None),
            "txn_rollbacks": getattr(g, "txn_rollbacks", []),
        }
        app.logger.info(json.dumps(line))
        return response
