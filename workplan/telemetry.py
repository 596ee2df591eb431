"""OpenTelemetry wiring for plan runs.

Spans cover the run, each milestone, each task, review cycles and
escalations. Counters and the task-duration histogram are module globals so
the orchestrator and loop controller can call record() without holding a
meter. Export goes over OTLP only when OTLP_ENABLED=true.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from workplan.config import OrchestratorConfig

# Quiet exporter retries when no collector is listening
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Populated by create_metrics()
tasks_counter: metrics.Counter
review_cycles_counter: metrics.Counter
issues_counter: metrics.Counter
escalations_counter: metrics.Counter
blocked_counter: metrics.Counter
task_duration: metrics.Histogram


def setup_telemetry(config: OrchestratorConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Install tracer and meter providers for the workplan service.

    Without OTLP_ENABLED=true and an endpoint, spans and metrics stay in
    process.

    Args:
        config: Supplies otlp_endpoint and service_name

    Returns:
        (tracer, meter) named after the service
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Register the workplan_* instruments on the given meter.

    Counters: tasks finished (by status), review cycles (by target kind),
    issues reported (by severity), escalations, blocked tasks.
    Histogram: task duration, dispatch to completion.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, review_cycles_counter, issues_counter
    global escalations_counter, blocked_counter, task_duration

    tasks_counter = meter.create_counter(
        "workplan_tasks_total",
        description="Tasks that reached a terminal status",
    )

    review_cycles_counter = meter.create_counter(
        "workplan_review_cycles_total",
        description="Review cycles run",
    )

    issues_counter = meter.create_counter(
        "workplan_issues_total",
        description="Issues reported by reviewers",
    )

    escalations_counter = meter.create_counter(
        "workplan_escalations_total",
        description="Escalations to a human",
    )

    blocked_counter = meter.create_counter(
        "workplan_blocked_tasks_total",
        description="Tasks marked blocked",
    )

    task_duration = meter.create_histogram(
        "workplan_task_duration_seconds",
        description="Dispatch to completion time per task",
        unit="s",
    )


def record(counter_name: str, amount: float = 1, attributes: dict | None = None) -> None:
    """Add to a counter or histogram if metrics were created.

    Safely handles the case where create_metrics() hasn't been called.
    """
    try:
        instrument = globals()[counter_name]
    except KeyError:
        # Instruments not initialized - telemetry disabled
        return
    if isinstance(instrument, metrics.Histogram):
        instrument.record(amount, attributes or {})
    else:
        instrument.add(amount, attributes or {})
