import httpx
from opentelemetry.trace import StatusCode

import mediafetch.tracing as tracing
from mediafetch.config import Settings
from mediafetch.tracing import (
    TracingManager,
    init_tracing,
    inject_trace_context,
    outbound_span,
    record_response,
)


def test_outbound_span_is_noop_without_tracing():
    headers = {}

    with outbound_span("HTTP GET", {"http.url": "https://x"}) as span:
        inject_trace_context(headers)
        assert span is None
    assert headers == {}


def test_disabled_manager_yields_no_span():
    manager = TracingManager(Settings(TRACING_ENABLED=False))

    headers = {}
    manager.inject_context(headers)
    with manager.start_span("HTTP GET") as span:
        assert span is None
    assert headers == {}


def test_enabled_tracing_records_outbound_spans(monkeypatch):
    monkeypatch.setattr(tracing, "_tracing_manager", None)

    manager = init_tracing(Settings(TRACING_ENABLED=True, TRACING_EXPORTER="console"))

    assert init_tracing(Settings()) is manager
    headers = {}
    with outbound_span("HTTP GET", {"http.method": "GET"}) as span:
        assert span is not None
        span.set_attribute("http.status_code", 200)
        inject_trace_context(headers)
    assert "traceparent" in headers
    tracing.shutdown_tracing()


def test_record_response_marks_server_errors(monkeypatch):
    monkeypatch.setattr(tracing, "_tracing_manager", None)
    init_tracing(Settings(TRACING_ENABLED=True, TRACING_EXPORTER="console"))

    with outbound_span("HTTP GET") as span:
        record_response(span, httpx.Response(503))
        assert span.status.status_code == StatusCode.ERROR

    record_response(None, httpx.Response(200))
    tracing.shutdown_tracing()
    assert tracing._tracing_manager is None


def test_unknown_exporter_falls_back_to_console():
    manager = TracingManager(Settings(TRACING_ENABLED=True, TRACING_EXPORTER="zipkin"))

    with manager.start_span("HTTP GET") as span:
        assert span is not None
    manager.shutdown()
    assert manager.tracer is None
