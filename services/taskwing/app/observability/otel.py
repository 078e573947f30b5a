"""OpenTelemetry helpers for the TaskWing service."""
from __future__ import annotations

from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ..config import TaskWingSettings

tracer = trace.get_tracer("taskwing")
meter = metrics.get_meter("taskwing")

llm_tokens = meter.create_counter(
    "taskwing.llm.tokens",
    unit="token",
    description="Prompt and completion tokens reported by the LLM provider",
)
agent_runs = meter.create_counter(
    "taskwing.agent.runs",
    description="Agent runs by terminal state",
)


def configure_telemetry(settings: TaskWingSettings) -> bool:
    """Install exporters when an OTLP endpoint is configured.

    Without an endpoint the API's no-op providers stay in place, so spans and
    counters cost nothing.
    """
    endpoint = settings.observability.otel_exporter_otlp_endpoint
    if not endpoint:
        return False
    resource = Resource(attributes={SERVICE_NAME: settings.observability.otel_service_name})

    tracer_provider = TracerProvider(resource=resource)
    tracer_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces")))
    trace.set_tracer_provider(tracer_provider)

    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=f"{endpoint.rstrip('/')}/v1/metrics"))
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    return True


__all__ = ["agent_runs", "configure_telemetry", "llm_tokens", "tracer"]
