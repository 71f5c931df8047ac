# telemetry.py - OpenTelemetry instrumentation for fleet-deploy
"""
Optional distributed tracing. Exports to an OTLP collector when
OTEL_EXPORTER_OTLP_ENDPOINT is set; otherwise does nothing, so the update
service runs unchanged in development and under test.
"""
import os

from logging_system import LogCategory, get_logger

logger = get_logger(LogCategory.TELEMETRY)

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "fleet-deploy-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None, engine=None):
    """Instrument FastAPI and the database engine when an exporter is configured.

    The SDK packages are the `telemetry` extra; without them (or without an
    endpoint) this returns None.
    """
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
        logger.warning("OTEL_EXPORTER_OTLP_ENDPOINT set but the telemetry extra is not installed")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        # Agents poll constantly; keep their health probes out of traces
        FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
        logger.info("FastAPI instrumented with OpenTelemetry")

    if engine is not None:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)
        logger.info("SQLAlchemy instrumented with OpenTelemetry")

    logger.info(f"OpenTelemetry initialised, exporting to {OTLP_ENDPOINT}")
    return provider
