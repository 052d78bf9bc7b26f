"""OpenTelemetry + Prometheus fallback wiring for the Promptly service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable

from fastapi import FastAPI

from promptly import config

logger = logging.getLogger("promptly.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_meter: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_tick_counter: Any | None = None
_sync_tick_latency_hist: Any | None = None
_project_sync_counter: Any | None = None
_cache_build_counter: Any | None = None
_cache_build_latency_hist: Any | None = None
_expiry_recovery_counter: Any | None = None

_prom_enabled = False
_prom_sync_tick_counter: Any | None = None
_prom_sync_tick_latency_hist: Any | None = None
_prom_project_sync_counter: Any | None = None
_prom_cache_build_counter: Any | None = None
_prom_cache_build_latency_hist: Any | None = None
_prom_expiry_recovery_counter: Any | None = None
_prom_active_process_gauge: Any | None = None

_active_process_callback: Callable[[], int] | None = None


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


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_sync_tick_counter, _prom_sync_tick_latency_hist, _prom_project_sync_counter
    global _prom_cache_build_counter, _prom_cache_build_latency_hist, _prom_expiry_recovery_counter
    global _prom_active_process_gauge

    try:
        from prometheus_client import Counter, Gauge, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_sync_tick_counter = Counter(
            "promptly_sync_ticks_total",
            "Repository synchronization ticks by outcome",
            ["result"],
        )
        _prom_sync_tick_latency_hist = Histogram(
            "promptly_sync_tick_latency_ms",
            "Duration of repository synchronization ticks",
            ["result"],
        )
        _prom_project_sync_counter = Counter(
            "promptly_project_syncs_total",
            "Per-project synchronization outcomes",
            ["result", "project"],
        )
        _prom_cache_build_counter = Counter(
            "promptly_cache_builds_total",
            "Context cache builds by reason and outcome",
            ["reason", "result", "project"],
        )
        _prom_cache_build_latency_hist = Histogram(
            "promptly_cache_build_latency_ms",
            "Duration of context cache builds",
            ["reason", "project"],
        )
        _prom_expiry_recovery_counter = Counter(
            "promptly_cache_expiry_recoveries_total",
            "Chat turns retried after the provider discarded a cache",
            ["result", "project"],
        )
        _prom_active_process_gauge = Gauge(
            "promptly_active_git_processes",
            "Supervised subprocesses currently running",
        )
        if _active_process_callback is not None:
            _prom_active_process_gauge.set_function(_active_process_callback)
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _meter, _fastapi_instrumentor
    global _sync_tick_counter, _sync_tick_latency_hist, _project_sync_counter
    global _cache_build_counter, _cache_build_latency_hist, _expiry_recovery_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if config.PROM_PORT > 0:
        _start_prometheus()

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (PROMPTLY_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "promptly"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "promptly",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("promptly")

    _sync_tick_counter = meter.create_counter(
        "promptly_sync_ticks_total",
        unit="1",
        description="Repository synchronization ticks by outcome",
    )
    _sync_tick_latency_hist = meter.create_histogram(
        "promptly_sync_tick_latency_ms",
        unit="ms",
        description="Duration of repository synchronization ticks",
    )
    _project_sync_counter = meter.create_counter(
        "promptly_project_syncs_total",
        unit="1",
        description="Per-project synchronization outcomes",
    )
    _cache_build_counter = meter.create_counter(
        "promptly_cache_builds_total",
        unit="1",
        description="Context cache builds by reason and outcome",
    )
    _cache_build_latency_hist = meter.create_histogram(
        "promptly_cache_build_latency_ms",
        unit="ms",
        description="Duration of context cache builds",
    )
    _expiry_recovery_counter = meter.create_counter(
        "promptly_cache_expiry_recoveries_total",
        unit="1",
        description="Chat turns retried after the provider discarded a cache",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _meter = meter
    _tracer = trace.get_tracer("promptly")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if _active_process_callback is not None:
        _observe_active_processes(_active_process_callback)

    if app:
        _fastapi_instrumentor.instrument_app(app)

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


def _observe_active_processes(callback: Callable[[], int]) -> None:
    from opentelemetry.metrics import Observation

    _meter.create_observable_gauge(
        "promptly_active_git_processes",
        callbacks=[lambda _options: [Observation(int(callback()))]],
        unit="1",
        description="Supervised subprocesses currently running",
    )


def register_active_process_gauge(callback: Callable[[], int]) -> None:
    """Publish the supervisor's in-flight process count."""
    global _active_process_callback
    _active_process_callback = callback
    if _enabled and _meter is not None:
        _observe_active_processes(callback)
    if _prom_enabled and _prom_active_process_gauge is not None:
        _prom_active_process_gauge.set_function(callback)


def record_sync_tick(result: str, duration_ms: float) -> None:
    labels = {"result": result or "unknown"}
    if _enabled and _sync_tick_counter is not None:
        _sync_tick_counter.add(1, labels)
    if _enabled and _sync_tick_latency_hist is not None:
        _sync_tick_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_sync_tick_counter is not None:
        _prom_sync_tick_counter.labels(**labels).inc()
    if _prom_enabled and _prom_sync_tick_latency_hist is not None:
        _prom_sync_tick_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_project_sync(project_id: str, result: str) -> None:
    if _enabled and _project_sync_counter is not None:
        _project_sync_counter.add(1, {"result": result or "unknown", "project_id": project_id or "unknown"})
    if _prom_enabled and _prom_project_sync_counter is not None:
        _prom_project_sync_counter.labels(**_prom_labels(project_id=project_id, result=result)).inc()


def record_cache_build(project_id: str, reason: str, result: str, duration_ms: float) -> None:
    labels = {
        "reason": reason or "unknown",
        "result": result or "unknown",
        "project_id": project_id or "unknown",
    }
    if _enabled and _cache_build_counter is not None:
        _cache_build_counter.add(1, labels)
    if _enabled and _cache_build_latency_hist is not None:
        _cache_build_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_cache_build_counter is not None:
        prom = _prom_labels(project_id=project_id, reason=reason, result=result)
        _prom_cache_build_counter.labels(**prom).inc()
    if _prom_enabled and _prom_cache_build_latency_hist is not None:
        prom = _prom_labels(project_id=project_id, reason=reason)
        _prom_cache_build_latency_hist.labels(**prom).observe(max(0.0, float(duration_ms)))


def record_cache_expiry_recovery(project_id: str, result: str) -> None:
    if _enabled and _expiry_recovery_counter is not None:
        _expiry_recovery_counter.add(1, {"result": result or "unknown", "project_id": project_id or "unknown"})
    if _prom_enabled and _prom_expiry_recovery_counter is not None:
        _prom_expiry_recovery_counter.labels(**_prom_labels(project_id=project_id, result=result)).inc()
