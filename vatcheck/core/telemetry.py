"""Tracing and log correlation for the API process and its lookup lanes.

Spans opened through :func:`lookup_span` carry the lookup key and the
jurisdiction, so one VAT number can be followed across retries, the slow
lane drain loop and the outgoing httpx calls.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from vatcheck.core.config import Settings
from vatcheck.core.keys import LookupKey

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
UNTRACED_IDS = ("0" * 32, "0" * 16)
OTLP_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")
UNTRACED_PATHS = "healthz,api/health"

logger = logging.getLogger(__name__)
_lane_tracer = trace.get_tracer("vatcheck.lanes")
_httpx_instrumentor = HTTPXClientInstrumentor()
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging() -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(), format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if settings.otel_log_correlation:
        _install_log_correlation()
    if not settings.otel_enabled:
        return TelemetryRuntime()

    provider = TracerProvider(
        resource=_service_resource(settings),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls=UNTRACED_PATHS)
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(provider=provider, app=app)


def shutdown_api_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()


@contextmanager
def lookup_span(name: str, key: LookupKey, **attributes: str | int | None) -> Iterator[trace.Span]:
    """Open a span for one lookup; ``None`` attributes are skipped."""
    with _lane_tracer.start_as_current_span(name) as span:
        span.set_attribute("vat.lookup_key", key.value)
        span.set_attribute("vat.jurisdiction", key.jurisdiction_code)
        for attribute, value in attributes.items():
            if value is not None:
                span.set_attribute(f"vat.{attribute}", value)
        yield span


@contextmanager
def lane_span(name: str) -> Iterator[trace.Span]:
    with _lane_tracer.start_as_current_span(name) as span:
        yield span


def _service_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "vatcheck.slow_lane.jurisdictions": ",".join(settings.slow_lane_jurisdictions),
        }
    )


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = settings.otel_exporter_otlp_endpoint
    if not endpoint and not any(os.getenv(name) for name in OTLP_ENDPOINT_ENV_VARS):
        logger.info("no OTLP endpoint configured; spans for service=%s stay in-process", settings.otel_service_name)
        return None
    # Unset arguments fall back to the standard OTEL_EXPORTER_OTLP_* variables.
    return OTLPSpanExporter(endpoint=endpoint, headers=settings.otel_exporter_otlp_headers or None)


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = trace.format_trace_id(context.trace_id)
            record.span_id = trace.format_span_id(context.span_id)
        else:
            record.trace_id, record.span_id = UNTRACED_IDS
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
