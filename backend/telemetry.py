# telemetry.py — OpenTelemetry tracing for the TaskFlow API
"""
Exports spans to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set.
Without an endpoint, or without the `telemetry` extra installed, every
helper here degrades to a no-op so request handling never depends on it.
"""
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger("taskflow.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "taskflow-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def _instrument_fastapi(app, provider):
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)


def _instrument_sqlalchemy(app, provider):
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    from database import engine
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)


def _instrument_httpx(app, provider):
    # Covers the agent's calls to the model endpoint
    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
    HTTPXClientInstrumentor().instrument(tracer_provider=provider)


_INSTRUMENTORS = (
    ("FastAPI", _instrument_fastapi),
    ("SQLAlchemy", _instrument_sqlalchemy),
    ("HTTPX", _instrument_httpx),
)


def setup_telemetry(app=None):
    """Initialise the tracer provider and instrument the app, DB and HTTP client."""
    if not OTLP_ENDPOINT:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.info("OpenTelemetry SDK not installed; tracing disabled")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    for label, instrument in _INSTRUMENTORS:
        if label == "FastAPI" and app is None:
            continue
        try:
            instrument(app, provider)
            logger.info(f"{label} instrumented with OpenTelemetry")
        except ImportError:
            logger.warning(f"OpenTelemetry instrumentation for {label} not installed")

    logger.info(f"OpenTelemetry initialised → {OTLP_ENDPOINT}")
    return provider


def get_tracer(name: str = "taskflow"):
    """Tracer from the global provider, or None when the SDK is absent."""
    try:
        from opentelemetry import trace
    except ImportError:
        return None
    return trace.get_tracer(name, SERVICE_VERSION)


@contextmanager
def span(name: str, **attributes):
    """Start a span when tracing is available; yields the span or None."""
    tracer = get_tracer("taskflow.agent")
    if tracer is None:
        yield None
        return
    with tracer.start_as_current_span(name) as current:
        for key, value in attributes.items():
            if value is not None:
                current.set_attribute(key, value)
        yield current
