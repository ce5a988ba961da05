"""OpenTelemetry instruments for record synchronization.

  birthday_sync.operations            Counter  (labels: op=create|update|delete,
                                                result=ok|conflict|gone|failed)
  birthday_sync.retries               Counter  (label: status_code)
  birthday_sync.skipped               Counter  (label: reason)
  birthday_sync.record_duration_ms    Histogram (label: status)

Instruments are created on first use from the global MeterProvider, so the
module-level ``sync_metrics`` can be imported before ``init_telemetry`` runs.
"""

from __future__ import annotations

from opentelemetry import metrics

from birthday_sync.core.telemetry import INSTRUMENTATION_NAME


class SyncMetrics:
    def __init__(self, meter: metrics.Meter | None = None) -> None:
        self._meter = meter
        self._instruments: dict[str, metrics.Counter | metrics.Histogram] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        if name not in self._instruments:
            self._instruments[name] = self._get_meter().create_counter(
                name=name, description=description, unit=unit
            )
        return self._instruments[name]

    def _get_meter(self) -> metrics.Meter:
        return self._meter or metrics.get_meter(INSTRUMENTATION_NAME)

    def record_operation(self, op: str, result: str) -> None:
        counter = self._counter(
            "birthday_sync.operations", "Calendar event operations executed", "operations"
        )
        counter.add(1, {"op": op, "result": result})

    def record_retry(self, status_code: int) -> None:
        counter = self._counter(
            "birthday_sync.retries", "Rate-limited calendar calls that were retried", "retries"
        )
        counter.add(1, {"status_code": str(status_code)})

    def record_skip(self, reason: str) -> None:
        counter = self._counter(
            "birthday_sync.skipped", "Record syncs that performed no external work", "records"
        )
        counter.add(1, {"reason": reason})

    def record_duration(self, duration_ms: float, status: str) -> None:
        name = "birthday_sync.record_duration_ms"
        if name not in self._instruments:
            self._instruments[name] = self._get_meter().create_histogram(
                name=name, description="End-to-end duration of one record sync", unit="ms"
            )
        self._instruments[name].record(duration_ms, {"status": status})


sync_metrics = SyncMetrics()
