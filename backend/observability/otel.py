"""OpenTelemetry + Prometheus fallback wiring for ProjectFlow backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from backend import config

logger = logging.getLogger("projectflow.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_runs_counter: Any | None = None
_run_latency_hist: Any | None = None
_warnings_counter: Any | None = None
_webhook_counter: Any | None = None

_prom_enabled = False
_prom_runs_counter: Any | None = None
_prom_run_latency_hist: Any | None = None
_prom_warnings_counter: Any | None = None
_prom_webhook_counter: Any | None = None


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


def _prom_labels(*, project_id: str, **extra: str) -> dict[str, str]:
    labels = {"project": project_id or "unknown"}
    for key, value in extra.items():
        labels[key] = (value or "").strip() or "unknown"
    return labels


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _runs_counter, _run_latency_hist, _warnings_counter, _webhook_counter
    global _prom_enabled
    global _prom_runs_counter, _prom_run_latency_hist, _prom_warnings_counter, _prom_webhook_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PROJECTFLOW_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "projectflow-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "projectflow",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("projectflow.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("projectflow.backend")

    _runs_counter = meter.create_counter(
        "projectflow_recalculations_total",
        unit="1",
        description="Count of schedule recalculation runs by outcome",
    )
    _run_latency_hist = meter.create_histogram(
        "projectflow_recalculation_latency_ms",
        unit="ms",
        description="Latency of schedule recalculation runs",
    )
    _warnings_counter = meter.create_counter(
        "projectflow_data_quality_warnings_total",
        unit="1",
        description="Data-quality warnings raised during recalculation",
    )
    _webhook_counter = meter.create_counter(
        "projectflow_webhook_events_total",
        unit="1",
        description="Webhook events by routing decision",
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
            _prom_runs_counter = Counter(
                "projectflow_recalculations_total",
                "Count of schedule recalculation runs by outcome",
                ["result", "project"],
            )
            _prom_run_latency_hist = Histogram(
                "projectflow_recalculation_latency_ms",
                "Latency of schedule recalculation runs",
                ["result", "project"],
            )
            _prom_warnings_counter = Counter(
                "projectflow_data_quality_warnings_total",
                "Data-quality warnings raised during recalculation",
                ["kind", "project"],
            )
            _prom_webhook_counter = Counter(
                "projectflow_webhook_events_total",
                "Webhook events by routing decision",
                ["event", "decision", "project"],
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
    except Exception:
        pass
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception:
        pass
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception:
        pass
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


def record_recalculation(result: str, duration_ms: float, *, project_id: str) -> None:
    labels = {
        "result": result or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _runs_counter is not None:
        _runs_counter.add(1, labels)
    if _enabled and _run_latency_hist is not None:
        _run_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_runs_counter is not None:
        prom = _prom_labels(project_id=project_id, result=result)
        _prom_runs_counter.labels(**prom).inc()
    if _prom_enabled and _prom_run_latency_hist is not None:
        prom = _prom_labels(project_id=project_id, result=result)
        _prom_run_latency_hist.labels(**prom).observe(max(0.0, float(duration_ms)))


def record_warning(kind: str, *, project_id: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {
        "kind": kind or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _warnings_counter is not None:
        _warnings_counter.add(safe_count, labels)
    if _prom_enabled and _prom_warnings_counter is not None:
        prom = _prom_labels(project_id=project_id, kind=kind)
        _prom_warnings_counter.labels(**prom).inc(safe_count)


def record_webhook_event(event: str, decision: str, *, project_id: str = "") -> None:
    labels = {
        "event": event or "unknown",
        "decision": decision or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _webhook_counter is not None:
        _webhook_counter.add(1, labels)
    if _prom_enabled and _prom_webhook_counter is not None:
        prom = _prom_labels(project_id=project_id, event=event, decision=decision)
        _prom_webhook_counter.labels(**prom).inc()
