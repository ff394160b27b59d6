"""OpenTelemetry + Prometheus fallback wiring for codexpulse."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from codexpulse import config
from codexpulse.models import EVENT_MSG, RESPONSE_ITEM, SESSION_META, TURN_CONTEXT

logger = logging.getLogger("codexpulse.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_entries_counter: Any | None = None
_parser_failure_counter: Any | None = None
_status_writes_counter: Any | None = None
_status_write_latency_hist: Any | None = None
_rotations_counter: Any | None = None

_prom_enabled = False
_prom_entries_counter: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_status_writes_counter: Any | None = None
_prom_status_write_latency_hist: Any | None = None
_prom_rotations_counter: Any | None = None


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


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


# Entry types come from log content; anything unrecognised shares one label.
_KNOWN_ENTRY_TYPES = frozenset({SESSION_META, TURN_CONTEXT, EVENT_MSG, RESPONSE_ITEM})


def _entry_label(entry_type: str | None) -> str:
    return entry_type if entry_type in _KNOWN_ENTRY_TYPES else "other"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _entries_counter, _parser_failure_counter, _status_writes_counter
    global _status_write_latency_hist, _rotations_counter
    global _prom_enabled, _prom_entries_counter, _prom_parser_failure_counter
    global _prom_status_writes_counter, _prom_status_write_latency_hist, _prom_rotations_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CODEXPULSE_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "codexpulse"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "codexpulse",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("codexpulse")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("codexpulse")

    _entries_counter = meter.create_counter(
        "codexpulse_rollout_entries_total",
        unit="1",
        description="Rollout entries read from tailed session files",
    )
    _parser_failure_counter = meter.create_counter(
        "codexpulse_parser_failures_total",
        unit="1",
        description="Complete JSONL lines dropped as malformed",
    )
    _status_writes_counter = meter.create_counter(
        "codexpulse_status_writes_total",
        unit="1",
        description="Status file writes by status and result",
    )
    _status_write_latency_hist = meter.create_histogram(
        "codexpulse_status_write_latency_ms",
        unit="ms",
        description="Latency of status file writes",
    )
    _rotations_counter = meter.create_counter(
        "codexpulse_session_rotations_total",
        unit="1",
        description="Switches to a newly created rollout file",
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
            _prom_entries_counter = Counter(
                "codexpulse_rollout_entries_total",
                "Rollout entries read from tailed session files",
                ["entry_type"],
            )
            _prom_parser_failure_counter = Counter(
                "codexpulse_parser_failures_total",
                "Complete JSONL lines dropped as malformed",
                ["parser"],
            )
            _prom_status_writes_counter = Counter(
                "codexpulse_status_writes_total",
                "Status file writes by status and result",
                ["status", "result"],
            )
            _prom_status_write_latency_hist = Histogram(
                "codexpulse_status_write_latency_ms",
                "Latency of status file writes",
                ["result"],
            )
            _prom_rotations_counter = Counter(
                "codexpulse_session_rotations_total",
                "Switches to a newly created rollout file",
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


def record_entries(entry_type: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"entry_type": _entry_label(entry_type)}
    if _enabled and _entries_counter is not None:
        _entries_counter.add(safe_count, labels)
    if _prom_enabled and _prom_entries_counter is not None:
        _prom_entries_counter.labels(**labels).inc(safe_count)


def record_parser_failure(parser: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"parser": _label(parser)}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(safe_count, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**labels).inc(safe_count)


def record_status_write(status: str, result: str, duration_ms: float) -> None:
    labels = {"status": _label(status), "result": _label(result)}
    if _enabled and _status_writes_counter is not None:
        _status_writes_counter.add(1, labels)
    if _enabled and _status_write_latency_hist is not None:
        _status_write_latency_hist.record(max(0.0, float(duration_ms)), {"result": labels["result"]})
    if _prom_enabled and _prom_status_writes_counter is not None:
        _prom_status_writes_counter.labels(**labels).inc()
    if _prom_enabled and _prom_status_write_latency_hist is not None:
        _prom_status_write_latency_hist.labels(result=labels["result"]).observe(max(0.0, float(duration_ms)))


def record_session_rotation() -> None:
    if _enabled and _rotations_counter is not None:
        _rotations_counter.add(1)
    if _prom_enabled and _prom_rotations_counter is not None:
        _prom_rotations_counter.inc()
