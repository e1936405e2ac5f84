"""Tracing and ingestion metrics.

Everything here is optional: with ``TASKFLOW_OTEL_ENABLED`` unset the
record helpers are no-ops and ``start_span`` yields ``None``. When enabled,
metrics go to the OTLP exporter and, if ``TASKFLOW_PROM_PORT`` is set, to a
Prometheus scrape endpoint as well.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from taskflow import config

logger = logging.getLogger("taskflow.observability")

# name -> (kind, description, label names)
METRICS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "taskflow_ingestion_units_total": ("counter", "Units ingested into the task index", ("unit", "result")),
    "taskflow_ingestion_latency_ms": ("histogram", "Parse, augment and index latency per unit", ("unit", "result")),
    "taskflow_parser_failures_total": ("counter", "Units a parser could not read", ("parser",)),
    "taskflow_calendar_syncs_total": ("counter", "Calendar sync outcomes", ("source", "result")),
    "taskflow_calendar_events_total": ("counter", "Events received from calendar syncs", ("source",)),
}


class _OtelSink:
    def __init__(self, meter):
        self.instruments: dict[str, Any] = {}
        for name, (kind, description, _) in METRICS.items():
            create = meter.create_histogram if kind == "histogram" else meter.create_counter
            self.instruments[name] = create(name, unit="ms" if kind == "histogram" else "1", description=description)

    def add(self, name: str, amount: float, labels: dict[str, str]) -> None:
        instrument = self.instruments[name]
        if METRICS[name][0] == "histogram":
            instrument.record(amount, labels)
        else:
            instrument.add(amount, labels)


class _PrometheusSink:
    def __init__(self, port: int):
        from prometheus_client import Counter, Histogram, start_http_server

        self.instruments: dict[str, Any] = {}
        for name, (kind, description, labels) in METRICS.items():
            cls = Histogram if kind == "histogram" else Counter
            self.instruments[name] = cls(name, description, list(labels))
        start_http_server(port)

    def add(self, name: str, amount: float, labels: dict[str, str]) -> None:
        metric = self.instruments[name].labels(**labels)
        if METRICS[name][0] == "histogram":
            metric.observe(amount)
        else:
            metric.inc(amount)


class _State:
    def __init__(self):
        self.initialized = False
        self.tracer: Any = None
        self.providers: list[Any] = []
        self.instrumentor: Any = None
        self.sinks: list[Any] = []


_state = _State()


def _otlp_url(base: str, signal: str) -> str | None:
    endpoint = (base or "").strip().rstrip("/")
    if not endpoint:
        return None
    if endpoint.endswith(f"/v1/{signal}"):
        return endpoint
    if endpoint.endswith("/v1"):
        return f"{endpoint}/{signal}"
    return f"{endpoint}/v1/{signal}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _emit(name: str, amount: float, labels: dict[str, str]) -> None:
    for sink in _state.sinks:
        try:
            sink.add(name, amount, labels)
        except Exception as e:
            logger.debug(f"Dropping {name} sample: {e}")


def initialize(app: FastAPI | None = None) -> None:
    if _state.initialized:
        if app is not None and _state.instrumentor is not None:
            _state.instrumentor.instrument_app(app)
        return
    _state.initialized = True

    if not config.OTEL_ENABLED:
        logger.info("Telemetry disabled (TASKFLOW_OTEL_ENABLED is not set)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as e:
        logger.warning(f"OpenTelemetry packages unavailable, telemetry stays off: {e}")
        return

    resource = Resource.create({"service.name": config.OTEL_SERVICE_NAME or "taskflow"})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_otlp_url(config.OTEL_ENDPOINT, "traces")))
    )
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=_otlp_url(config.OTEL_ENDPOINT, "metrics")))
    meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(meter_provider)

    _state.tracer = trace.get_tracer("taskflow.dataflow")
    _state.providers = [meter_provider, tracer_provider]
    _state.sinks = [_OtelSink(metrics.get_meter("taskflow.dataflow"))]
    _state.instrumentor = FastAPIInstrumentor()
    if app is not None:
        _state.instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            _state.sinks.append(_PrometheusSink(config.PROM_PORT))
            logger.info(f"Prometheus metrics on port {config.PROM_PORT}")
        except OSError as e:
            logger.warning(f"Prometheus endpoint not started: {e}")

    logger.info(f"Telemetry exporting to {config.OTEL_ENDPOINT}")


def shutdown(app: FastAPI | None = None) -> None:
    if app is not None and _state.instrumentor is not None:
        try:
            _state.instrumentor.uninstrument_app(app)
        except Exception as e:
            logger.debug(f"FastAPI uninstrument failed: {e}")
    for provider in _state.providers:
        try:
            provider.shutdown()
        except Exception as e:
            logger.debug(f"Telemetry provider shutdown failed: {e}")
    _state.tracer = None
    _state.providers = []
    _state.sinks = []


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if _state.tracer is None:
        yield None
        return
    with _state.tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(unit: str, result: str, duration_ms: float) -> None:
    """``unit`` is document, file or calendar; ``result`` is updated, unchanged or error."""
    if not _state.sinks:
        return
    labels = {"unit": _label(unit), "result": _label(result)}
    _emit("taskflow_ingestion_units_total", 1, labels)
    _emit("taskflow_ingestion_latency_ms", max(0.0, float(duration_ms)), labels)


def record_parser_failure(parser: str) -> None:
    if _state.sinks:
        _emit("taskflow_parser_failures_total", 1, {"parser": _label(parser)})


def record_calendar_sync(source_id: str, result: str, event_count: int = 0) -> None:
    if not _state.sinks:
        return
    source = _label(source_id)
    _emit("taskflow_calendar_syncs_total", 1, {"source": source, "result": _label(result)})
    if event_count > 0:
        _emit("taskflow_calendar_events_total", event_count, {"source": source})
