"""OpenTelemetry spans around upstream fetches.

Tracing stays off until :func:`init_tracing` is called. Until then
:func:`outbound_span` yields ``None`` and :func:`inject_trace_context` leaves
request headers untouched, so callers never have to check.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

import httpx
from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.trace import Status, StatusCode

from .config import Settings

# Optional exporter
try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
except ImportError:
    OTLPSpanExporter = None

logger = logging.getLogger(__name__)


def _otlp_exporter(settings: Settings) -> Optional[SpanExporter]:
    if OTLPSpanExporter is None:
        logger.warning(
            "OTLP exporter requested but not installed: pip install 'mediafetch[otlp]'"
        )
        return None
    if settings.tracing_endpoint:
        return OTLPSpanExporter(endpoint=settings.tracing_endpoint)
    return OTLPSpanExporter()


_EXPORTERS: Dict[str, Callable[[Settings], Optional[SpanExporter]]] = {
    "console": lambda settings: ConsoleSpanExporter(),
    "otlp": _otlp_exporter,
}


class TracingManager:
    """Owns the tracer provider used for outbound request spans.

    The provider is private to the manager rather than installed globally, so
    an embedding application keeps control of its own provider.
    """

    def __init__(self, settings: Settings) -> None:
        self.enabled = settings.tracing_enabled
        self.tracer: Optional[trace.Tracer] = None
        self._provider: Optional[TracerProvider] = None

        if not self.enabled:
            logger.info("Tracing disabled for outbound fetches")
            return

        self._provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": settings.tracing_service_name,
                    "service.version": settings.app_version,
                }
            )
        )
        name = settings.tracing_exporter.lower()
        factory = _EXPORTERS.get(name)
        exporter = factory(settings) if factory else None
        if exporter is None:
            logger.warning("Exporter %r unavailable, spans go to the console", name)
            exporter = ConsoleSpanExporter()
        self._provider.add_span_processor(BatchSpanProcessor(exporter))
        self.tracer = self._provider.get_tracer("mediafetch")
        logger.info("Tracing outbound fetches with the %s exporter", name)

    def inject_context(self, headers: Dict[str, str]) -> None:
        """Write ``traceparent``/``tracestate`` for the active span into ``headers``."""
        if self.enabled:
            inject(headers)

    @contextmanager
    def start_span(
        self, name: str, attributes: Optional[Dict[str, Any]] = None
    ) -> Iterator[Optional[trace.Span]]:
        """Open a CLIENT span, or yield ``None`` when disabled.

        An exception escaping the block is recorded on the span and re-raised.
        """
        if self.tracer is None:
            yield None
            return

        with self.tracer.start_as_current_span(
            name,
            kind=trace.SpanKind.CLIENT,
            attributes=attributes or {},
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, f"{type(e).__name__}: {e}"))
                raise

    def shutdown(self) -> None:
        """Flush pending spans and release the exporter."""
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
            self.tracer = None


_tracing_manager: Optional[TracingManager] = None


def init_tracing(settings: Settings) -> TracingManager:
    """Create the process tracing manager; later calls return the same one."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager(settings)
    return _tracing_manager


def shutdown_tracing() -> None:
    global _tracing_manager
    if _tracing_manager is not None:
        _tracing_manager.shutdown()
        _tracing_manager = None


@contextmanager
def outbound_span(
    name: str, attributes: Optional[Dict[str, Any]] = None
) -> Iterator[Optional[trace.Span]]:
    """Span around one upstream request; yields ``None`` while tracing is off."""
    manager = _tracing_manager
    if manager is None:
        yield None
        return
    with manager.start_span(name, attributes) as span:
        yield span


def record_response(span: Optional[trace.Span], response: httpx.Response) -> None:
    """Tag ``span`` with the upstream status; 5xx marks the span as failed."""
    if span is None or not span.is_recording():
        return
    span.set_attribute("http.status_code", response.status_code)
    if response.is_server_error:
        span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))


def inject_trace_context(headers: Dict[str, str]) -> None:
    """Add trace propagation headers for the current span, if tracing is on."""
    manager = _tracing_manager
    if manager is not None:
        manager.inject_context(headers)
