"""OpenTelemetry metrics instruments for the reminder loop.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  medminder.ticks_total                 Counter
      Reminder evaluations run (immediate + ticker).

  medminder.reminders_dispatched_total  Counter
      Due reminders surfaced to the user.

  medminder.reminders_suppressed_total  Counter
      Due reminders suppressed by the dedup window.

  medminder.adherence_writes_total      Counter  (label: status)
      Adherence records written.

  medminder.timeouts_discarded_total    Counter
      Response-window timeouts that lost the race to a user action.

  medminder.alerts_total                Counter  (label: outcome=sent|failed)
      Family alerts attempted by the escalation sweep.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "medminder"


def init_metrics(service_name: str = "medminder") -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider.

    Safe to call before ``init_metrics``; returns a no-op meter in that case.
    """
    return metrics.get_meter(_METER_NAME)


class ReminderMetrics:
    """Convenience wrapper around the reminder-loop counters.

    Counters are created on first use, so constructing this object before
    ``init_metrics`` is safe (recordings are no-ops until a real provider is
    installed).
    """

    def __init__(self) -> None:
        self._counters: dict[str, metrics.Counter] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._counters.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._counters[name] = counter
        return counter

    def tick(self) -> None:
        self._counter(
            "medminder.ticks_total", "Reminder evaluations run", "evaluations"
        ).add(1)

    def reminder_dispatched(self) -> None:
        self._counter(
            "medminder.reminders_dispatched_total", "Due reminders surfaced", "reminders"
        ).add(1)

    def reminder_suppressed(self) -> None:
        self._counter(
            "medminder.reminders_suppressed_total",
            "Due reminders suppressed by the dedup window",
            "reminders",
        ).add(1)

    def adherence_written(self, status: str) -> None:
        self._counter(
            "medminder.adherence_writes_total", "Adherence records written", "records"
        ).add(1, {"status": status})

    def timeout_discarded(self) -> None:
        self._counter(
            "medminder.timeouts_discarded_total",
            "Response-window timeouts discarded after a user action",
            "timeouts",
        ).add(1)

    def alert(self, *, sent: bool) -> None:
        self._counter("medminder.alerts_total", "Family alerts attempted", "alerts").add(
            1, {"outcome": "sent" if sent else "failed"}
        )
