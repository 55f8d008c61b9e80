from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Iterator, Mapping

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span

from jobintake.core.config import Settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s source=%(poll_source)s run_id=%(poll_run_id)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)
NO_TRACE_ID = "0" * 32
NO_SPAN_ID = "0" * 16

_poll_source: ContextVar[str] = ContextVar("jobintake_poll_source", default="-")
_poll_run_id: ContextVar[str] = ContextVar("jobintake_poll_run_id", default="-")
_base_record_factory = logging.getLogRecordFactory()
_record_factory_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None


def configure_worker_logging(level: int = logging.INFO) -> None:
    """Tag every log record with the active poll source, run id and trace ids."""
    install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def install_log_correlation() -> None:
    global _record_factory_installed
    if _record_factory_installed:
        return

    def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        record.poll_source = _poll_source.get()
        record.poll_run_id = _poll_run_id.get()
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = NO_TRACE_ID
            record.span_id = NO_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _record_factory_installed = True


@contextmanager
def poll_run_span(source: str, run_id: str, **attributes: Any) -> Iterator[Span]:
    """Open the root span of one poll run.

    While the block runs, log records carry ``source`` and ``run_id``.
    """
    source_token = _poll_source.set(source)
    run_token = _poll_run_id.set(run_id)
    try:
        with tracer.start_as_current_span(f"{source}.poll") as span:
            span.set_attribute("poll.source", source)
            span.set_attribute("poll.run_id", run_id)
            for key, value in attributes.items():
                span.set_attribute(f"poll.{key}", value)
            yield span
    finally:
        _poll_run_id.reset(run_token)
        _poll_source.reset(source_token)


def record_summary(span: Span, summary: Mapping[str, Any]) -> None:
    """Copy the scalar counters of a run summary onto its span."""
    for key, value in summary.items():
        if isinstance(value, (bool, int, float, str)):
            span.set_attribute(f"poll.{key}", value)


def setup_worker_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)
    if settings.otel_log_correlation:
        install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "jobintake.feeds_configured": bool((settings.rss_feeds or "").strip()),
            "jobintake.mailbox_configured": bool(settings.gmail_client_id and settings.gmail_client_secret),
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_worker_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _httpx_instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info(
            "no OTLP endpoint configured; poll spans stay in-process for service=%s",
            settings.otel_service_name,
        )
        return None
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` header lists; malformed pairs are dropped."""
    parsed: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed
