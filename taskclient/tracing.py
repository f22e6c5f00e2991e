from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from taskclient.config import settings

_tracing_initialized = False


def build_resource() -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.tracing_service_name,
            SERVICE_VERSION: settings.app_version,
            "taskclient.api_base_url": settings.api_base_url,
        }
    )


def setup_tracing() -> None:
    global _tracing_initialized
    if _tracing_initialized or not settings.tracing_enabled:
        return

    provider = TracerProvider(resource=build_resource())
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracing_initialized = True


def get_tracer() -> trace.Tracer:
    return trace.get_tracer("taskclient", settings.app_version)
