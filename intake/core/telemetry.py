from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from intake.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
SERVICE_VERSION_VALUE = "0.1.0"

logger = logging.getLogger(__name__)


class TraceContextFilter(logging.Filter):
    """Stamp the active span's ids onto every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        span_context = trace.get_current_span().get_span_context()
        record.trace_id = format(span_context.trace_id, "032x") if span_context.is_valid else "-"
        record.span_id = format(span_context.span_id, "016x") if span_context.is_valid else "-"
        return True


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    instrumentor: HTTPXClientInstrumentor | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: int = logging.INFO) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    for handler in root.handlers:
        if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            handler.addFilter(TraceContextFilter())
    root.setLevel(level)


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    """Install a tracer provider and httpx instrumentation when tracing is enabled."""
    if not settings.otel_enabled:
        return TelemetryRuntime()

    provider = _build_provider(settings)
    trace.set_tracer_provider(provider)
    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument(tracer_provider=provider)
    if settings.otel_log_correlation:
        configure_logging(logging.getLogger().level or logging.INFO)
    return TelemetryRuntime(provider=provider, instrumentor=instrumentor)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.instrumentor is not None:
        runtime.instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` into a header mapping, skipping malformed pairs."""
    headers: dict[str, str] = {}
    for pair in (raw or "").split(","):
        name, has_value, value = pair.partition("=")
        if has_value and name.strip():
            headers[name.strip()] = value.strip()
    return headers


def _build_provider(settings: Settings) -> TracerProvider:
    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_VERSION: SERVICE_VERSION_VALUE,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )

    endpoint = _resolve_endpoint(settings)
    if endpoint is None:
        logger.info("tracing enabled without an OTLP endpoint; spans are not exported")
        return provider

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    exporter = OTLPSpanExporter(endpoint=endpoint, headers=headers or None)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    logger.info("exporting spans for %s to %s", settings.otel_service_name, endpoint)
    return provider


def _resolve_endpoint(settings: Settings) -> str | None:
    if settings.otel_exporter_otlp_endpoint:
        return settings.otel_exporter_otlp_endpoint
    traces_endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if traces_endpoint:
        return traces_endpoint
    base_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if base_endpoint:
        return base_endpoint.rstrip("/") + "/v1/traces"
    return None
