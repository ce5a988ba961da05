"""OpenTelemetry bootstrap and the per-record sync span.

Tracing and metrics share one OTLP endpoint and one ``Resource``. Without
``OTEL_EXPORTER_OTLP_ENDPOINT`` the API's no-op providers stay installed and
every span and instrument call is free.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import metrics, trace

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "birthday_sync"
METRIC_EXPORT_INTERVAL_MS = 15_000

_installed_for: str | None = None


def init_telemetry(service_name: str) -> bool:
    """Install OTLP tracer and meter providers for ``service_name``.

    Returns True when exporters are active. Providers can only be set once
    per process, so later calls are no-ops that report the earlier outcome.
    """
    global _installed_for

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("No OTLP endpoint configured; tracing and metrics are disabled")
        return False
    if _installed_for is not None:
        logger.debug("Telemetry already installed for %s", _installed_for)
        return True

    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint),
        export_interval_millis=METRIC_EXPORT_INTERVAL_MS,
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

    _installed_for = service_name
    logger.info("Exporting traces and metrics for %s to %s", service_name, endpoint)
    return True


@contextmanager
def record_span(
    record_id: str,
    *,
    force: bool,
    archive: bool,
    tracer: trace.Tracer | None = None,
) -> Iterator[trace.Span]:
    """Open the ``birthday_sync.record`` span around one record sync.

    Exceptions escaping the block are recorded on the span and re-raised.
    """
    tracer = tracer or trace.get_tracer(INSTRUMENTATION_NAME)
    with tracer.start_as_current_span("birthday_sync.record") as span:
        span.set_attributes({"record.id": record_id, "sync.force": force, "sync.archive": archive})
        yield span
