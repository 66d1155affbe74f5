"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when OTLP_ENABLED=true.
Otherwise in-process providers are installed and nothing is exported.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from fixpipe.config import PipelineConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
units_counter: metrics.Counter
tasks_counter: metrics.Counter
tokens_counter: metrics.Counter
merges_counter: metrics.Counter
retries_counter: metrics.Counter
phase_duration: metrics.Histogram


def setup_telemetry(config: PipelineConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry.

    Args:
        config: Pipeline configuration with OTLP endpoint and service name

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

    return trace.get_tracer(config.service_name), metrics.get_meter(config.service_name)


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for pipeline tracking.

    Counters: units and tasks by status, tokens by direction, merges by
    status, agent retries. Histogram: phase duration by phase.
    """
    global units_counter, tasks_counter, tokens_counter
    global merges_counter, retries_counter, phase_duration

    units_counter = meter.create_counter(
        "fixpipe_units_total",
        description="Total units of work executed",
    )
    tasks_counter = meter.create_counter(
        "fixpipe_tasks_total",
        description="Total tasks classified",
    )
    tokens_counter = meter.create_counter(
        "fixpipe_tokens_total",
        description="Total agent tokens used",
    )
    merges_counter = meter.create_counter(
        "fixpipe_merges_total",
        description="Total branch merges attempted",
    )
    retries_counter = meter.create_counter(
        "fixpipe_retries_total",
        description="Total agent retries",
    )
    phase_duration = meter.create_histogram(
        "fixpipe_phase_duration_seconds",
        description="Pipeline phase duration",
        unit="s",
    )


# Recording helpers. They are safe to call before create_metrics(): the
# instruments simply do not exist yet and nothing is recorded.


def record_unit(status: str, completed: int, failed: int, input_tokens: int, output_tokens: int) -> None:
    try:
        units_counter.add(1, {"status": status})
        tasks_counter.add(completed, {"status": "done"})
        tasks_counter.add(failed, {"status": "failed"})
        tokens_counter.add(input_tokens, {"direction": "input"})
        tokens_counter.add(output_tokens, {"direction": "output"})
    except NameError:
        pass


def record_merge(success: bool) -> None:
    try:
        merges_counter.add(1, {"status": "merged" if success else "failed"})
    except NameError:
        pass


def record_retry(label: str) -> None:
    try:
        retries_counter.add(1, {"operation": label})
    except NameError:
        pass


def record_phase_duration(phase: str, seconds: float) -> None:
    try:
        phase_duration.record(seconds, {"phase": phase})
    except NameError:
        pass
