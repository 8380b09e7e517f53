"""
OpenTelemetry setup and crawl metrics.

Spans and instruments always go through the OpenTelemetry API; the SDK and
OTLP/HTTP exporters are installed only when ``otel_enabled`` is set, so with
telemetry off every call is a no-op.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from intern_collector.settings import CollectorSettings

_OBS_CACHE: Dict[str, "Observability"] = {}
_SDK_CONFIGURED = False


def _otlp_endpoint(base: str, signal: str) -> str:
    endpoint = base.rstrip("/")
    if endpoint.endswith(f"/v1/{signal}"):
        return endpoint
    return f"{endpoint}/v1/{signal}"


def _resource_attributes(service_name: str) -> Dict[str, str]:
    return {
        "service.name": service_name,
        "service.namespace": "intern-collector",
        "deployment.environment": os.getenv("ENVIRONMENT", "local"),
        "service.instance.id": os.getenv("HOSTNAME", "local"),
    }


@dataclass
class CrawlMetrics:
    runs_total: Any
    duration_seconds: Any
    postings_total: Any
    _last_success: Dict[str, float] = field(default_factory=dict)

    def record_success(self, source_id: str, duration: float, counts: Dict[str, int]) -> None:
        self.runs_total.add(1, {"source": source_id, "status": "success"})
        self.duration_seconds.record(duration, {"source": source_id})
        for decision, n in counts.items():
            if n:
                self.postings_total.add(n, {"source": source_id, "decision": decision})
        self._last_success[source_id] = time.time()

    def record_failure(self, source_id: str, duration: float, status: str = "failure") -> None:
        self.runs_total.add(1, {"source": source_id, "status": status})
        self.duration_seconds.record(duration, {"source": source_id})


@dataclass
class Observability:
    tracer: Any
    crawl_metrics: CrawlMetrics


def get_observability(settings: CollectorSettings) -> Observability:
    name = settings.otel_service_name
    if name not in _OBS_CACHE:
        _OBS_CACHE[name] = _configure_observability(settings)
    return _OBS_CACHE[name]


def _configure_sdk(settings: CollectorSettings) -> None:
    global _SDK_CONFIGURED
    if _SDK_CONFIGURED:
        return

    resource = Resource.create(_resource_attributes(settings.otel_service_name))

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_otlp_endpoint(settings.otel_exporter_endpoint, "traces")))
    )
    trace.set_tracer_provider(tracer_provider)

    export_interval = int(os.getenv("OTEL_METRICS_EXPORT_INTERVAL", "60000"))
    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_otlp_endpoint(settings.otel_exporter_endpoint, "metrics")),
        export_interval_millis=export_interval,
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[metric_reader]))
    _SDK_CONFIGURED = True


def _configure_observability(settings: CollectorSettings) -> Observability:
    if settings.otel_enabled:
        _configure_sdk(settings)

    tracer = trace.get_tracer(settings.otel_service_name)
    meter = metrics.get_meter(settings.otel_service_name)
    return Observability(tracer=tracer, crawl_metrics=_build_crawl_metrics(meter))


def _build_crawl_metrics(meter: Any) -> CrawlMetrics:
    runs_total = meter.create_counter(
        "crawl_source_runs_total",
        description="Per-source crawl runs by outcome",
    )
    duration_seconds = meter.create_histogram(
        "crawl_source_duration_seconds",
        unit="s",
        description="Per-source crawl and reconcile duration",
    )
    postings_total = meter.create_counter(
        "crawl_postings_total",
        unit="postings",
        description="Postings by reconciliation decision",
    )
    metrics_obj = CrawlMetrics(
        runs_total=runs_total,
        duration_seconds=duration_seconds,
        postings_total=postings_total,
    )

    def _success_cb(_options: CallbackOptions) -> Iterable[Observation]:
        return [
            Observation(value=value, attributes={"source": name})
            for name, value in metrics_obj._last_success.items()
        ]

    meter.create_observable_gauge(
        "crawl_last_success_timestamp_seconds",
        callbacks=[_success_cb],
        description="Unix timestamp of the last successful crawl per source",
    )
    return metrics_obj
