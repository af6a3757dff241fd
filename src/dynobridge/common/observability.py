"""Logging and tracing setup for the bridge process."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
import structlog
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from .settings import BridgeSettings


def _numeric_level(name: str) -> int:
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(settings: BridgeSettings, service_name: str) -> None:
    """Emit every structlog event as one JSON object per line on stdlib logging."""

    level = _numeric_level(settings.log_level)
    # No-op when handlers exist already (uvicorn, pytest), only the level moves.
    logging.basicConfig(format="%(message)s")
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)


def configure_tracing(
    settings: BridgeSettings,
    service_name: str,
    exporter: Optional[SpanExporter] = None,
) -> Optional[TracerProvider]:
    """Build a tracer provider when finished spans have somewhere to go.

    Spans are batched to the OTLP/HTTP endpoint from settings, or handed
    synchronously to ``exporter`` when one is given. With neither, ``None`` is
    returned and the OpenTelemetry API keeps its no-op provider, so nothing is
    recorded.
    """

    if exporter is not None:
        processor = SimpleSpanProcessor(exporter)
    elif settings.otel_exporter_endpoint:
        processor = BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_endpoint, headers=settings.otel_headers)
        )
    else:
        return None

    ratio = max(0.0, min(1.0, settings.otel_sampler_ratio))
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(ratio),
    )
    provider.add_span_processor(processor)
    return provider


def instrument_fastapi_app(app, provider: Optional[TracerProvider]) -> None:
    if provider is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)


def instrument_http_client(client: httpx.AsyncClient, provider: Optional[TracerProvider]) -> None:
    if provider is not None:
        HTTPXClientInstrumentor.instrument_client(client, tracer_provider=provider)
