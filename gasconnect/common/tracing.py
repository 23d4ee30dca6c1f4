import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (  # type: ignore[attr-defined]
    OTLPSpanExporter as OTLPGrpcExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (  # type: ignore[attr-defined]
    OTLPSpanExporter as OTLPHttpExporter,
)
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Tracer
from opentelemetry.trace import TracerProvider as APITracerProvider

from .config import ServiceSettings

_LOGGER = logging.getLogger(__name__)
_TRACER_NAME = "gasconnect"


class _Instrumentation:
    """Remembers what has been auto-instrumented so repeated app factories stay idempotent."""

    def __init__(self) -> None:
        self.app_ids: set[int] = set()
        self.httpx = False

    def instrument_app(self, app: FastAPI, provider: APITracerProvider) -> None:
        if id(app) in self.app_ids:
            return
        FastAPIInstrumentor().instrument_app(app, tracer_provider=provider, excluded_urls="health,metrics")
        self.app_ids.add(id(app))

    def instrument_httpx(self, provider: APITracerProvider) -> None:
        if self.httpx:
            return
        try:
            HTTPXClientInstrumentor().instrument(tracer_provider=provider)
        except Exception as exc:  # pragma: no cover - outbound spans are best effort
            _LOGGER.warning("Could not instrument httpx; supplier and identity calls will not be traced: %s", exc)
            return
        self.httpx = True


INSTRUMENTATION = _Instrumentation()


def _exporter_for(settings: ServiceSettings) -> SpanExporter | None:
    endpoint = settings.tracing_endpoint
    if endpoint is None:
        return None
    if settings.tracing_protocol == "grpc":
        return OTLPGrpcExporter(endpoint=endpoint, insecure=settings.tracing_insecure)
    return OTLPHttpExporter(endpoint=endpoint)


def _provider_for(settings: ServiceSettings) -> APITracerProvider:
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        return current

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.app_name,
                "service.namespace": "gasconnect",
                "deployment.environment": settings.environment,
            }
        ),
        # Follow the caller's sampling decision for requests that arrive with a trace context.
        sampler=ParentBased(TraceIdRatioBased(settings.tracing_sample_rate)),
    )
    exporter = _exporter_for(settings)
    if exporter is None:
        _LOGGER.warning(
            "Tracing is enabled for %s but SERVICE_TRACING_ENDPOINT is unset; spans stay in process.",
            settings.app_name,
        )
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # set_tracer_provider only takes effect once per process; report whichever provider won.
    return trace.get_tracer_provider()


def configure_tracing(app: FastAPI, settings: ServiceSettings) -> None:
    """Install the OTLP tracer provider and auto-instrument ``app`` and httpx when tracing is on."""

    if not settings.enable_tracing:
        return

    provider = _provider_for(settings)
    INSTRUMENTATION.instrument_app(app, provider)
    INSTRUMENTATION.instrument_httpx(provider)


def get_tracer() -> Tracer:
    """Return the engine tracer (a no-op tracer until a provider is configured)."""

    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def start_span(name: str, **attributes: Any) -> Iterator[Span]:
    """Open a span named ``name`` with the non-null ``attributes`` attached."""

    clean = {key: value for key, value in attributes.items() if value is not None}
    with get_tracer().start_as_current_span(name, attributes=clean) as span:
        yield span
