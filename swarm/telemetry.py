"""Telemetry setup for OpenTelemetry traces and metrics.

Spans cover the session, each task and each merge; counters track task
outcomes, agent usage, merges and escalations.

Export over OTLP is enabled with OTLP_ENABLED=true; otherwise the SDK
providers record in-process only.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from swarm.config import SwarmConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
tasks_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
task_duration: metrics.Histogram
merges_counter: metrics.Counter
escalations_counter: metrics.Counter


def setup_telemetry(config: SwarmConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry, with OTLP export when enabled.

    Args:
        config: Session configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
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
    """Create metric instruments for session tracking.

    Counters: tasks by terminal status, tokens, cost, merges by result,
    escalations by task. Histogram: task duration.

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global tasks_counter, tokens_counter, cost_counter, task_duration
    global merges_counter, escalations_counter

    tasks_counter = meter.create_counter(
        "swarm_tasks_total",
        description="Tasks reaching a terminal status",
    )

    tokens_counter = meter.create_counter(
        "swarm_tokens_total",
        description="Total agent tokens used",
    )

    cost_counter = meter.create_counter(
        "swarm_cost_usd_total",
        description="Total agent cost in USD",
    )

    task_duration = meter.create_histogram(
        "swarm_task_duration_seconds",
        description="Task duration from first start to terminal status",
        unit="s",
    )

    merges_counter = meter.create_counter(
        "swarm_merges_total",
        description="Merges into the session branch by result",
    )

    escalations_counter = meter.create_counter(
        "swarm_escalations_total",
        description="Total escalations to human",
    )
