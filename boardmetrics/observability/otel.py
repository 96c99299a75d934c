"""OpenTelemetry + Prometheus fallback wiring for the board metrics backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from boardmetrics import config

logger = logging.getLogger("boardmetrics.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_pass_counter: Any | None = None
_pass_latency_hist: Any | None = None
_items_counter: Any | None = None
_source_failure_counter: Any | None = None

_prom_enabled = False
_prom_pass_counter: Any | None = None
_prom_pass_latency_hist: Any | None = None
_prom_items_counter: Any | None = None
_prom_source_failure_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _pass_counter, _pass_latency_hist, _items_counter, _source_failure_counter
    global _prom_enabled, _prom_pass_counter, _prom_pass_latency_hist
    global _prom_items_counter, _prom_source_failure_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (BOARDMETRICS_OTEL_ENABLED=false)")
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
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "boardmetrics-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "boardmetrics",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("boardmetrics.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("boardmetrics.backend")

    _pass_counter = meter.create_counter(
        "boardmetrics_sync_passes_total",
        unit="1",
        description="Count of sync passes by outcome",
    )
    _pass_latency_hist = meter.create_histogram(
        "boardmetrics_sync_pass_latency_ms",
        unit="ms",
        description="Duration of sync passes",
    )
    _items_counter = meter.create_counter(
        "boardmetrics_items_synced_total",
        unit="1",
        description="Work items upserted by sync passes",
    )
    _source_failure_counter = meter.create_counter(
        "boardmetrics_source_failures_total",
        unit="1",
        description="Failed calls to the work item tracker",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_pass_counter = Counter(
                "boardmetrics_sync_passes_total",
                "Count of sync passes by outcome",
                ["result", "trigger"],
            )
            _prom_pass_latency_hist = Histogram(
                "boardmetrics_sync_pass_latency_ms",
                "Duration of sync passes",
                ["result", "trigger"],
            )
            _prom_items_counter = Counter(
                "boardmetrics_items_synced_total",
                "Work items upserted by sync passes",
                ["trigger"],
            )
            _prom_source_failure_counter = Counter(
                "boardmetrics_source_failures_total",
                "Failed calls to the work item tracker",
                ["operation"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_sync_pass(result: str, duration_ms: float, *, trigger: str, items: int = 0) -> None:
    labels = {"result": result or "unknown", "trigger": trigger or "unknown"}
    latency = max(0.0, float(duration_ms))
    safe_items = max(0, int(items))
    if _enabled and _pass_counter is not None:
        _pass_counter.add(1, labels)
    if _enabled and _pass_latency_hist is not None:
        _pass_latency_hist.record(latency, labels)
    if _enabled and _items_counter is not None and safe_items:
        _items_counter.add(safe_items, {"trigger": labels["trigger"]})
    if _prom_enabled and _prom_pass_counter is not None:
        _prom_pass_counter.labels(**labels).inc()
    if _prom_enabled and _prom_pass_latency_hist is not None:
        _prom_pass_latency_hist.labels(**labels).observe(latency)
    if _prom_enabled and _prom_items_counter is not None and safe_items:
        _prom_items_counter.labels(trigger=labels["trigger"]).inc(safe_items)


def record_source_failure(operation: str) -> None:
    labels = {"operation": operation or "unknown"}
    if _enabled and _source_failure_counter is not None:
        _source_failure_counter.add(1, labels)
    if _prom_enabled and _prom_source_failure_counter is not None:
        _prom_source_failure_counter.labels(**labels).inc()
