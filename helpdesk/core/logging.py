"""Logging and tracing setup for the helpdesk service."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from logging.config import dictConfig
from typing import Any, Iterator, Mapping

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from helpdesk import __version__
from helpdesk.core.config import Settings

_TRACER_INITIALISED = False

# Third-party loggers that are too chatty at INFO.
_QUIET_LOGGERS: dict[str, str] = {
    "apscheduler": "WARNING",
    "httpx": "WARNING",
    "uvicorn.access": "WARNING",
}


def parse_otlp_headers(header_string: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` into a header mapping, skipping malformed items."""

    if not header_string:
        return {}
    headers: dict[str, str] = {}
    for item in header_string.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            continue
        headers[key.strip()] = value.strip()
    return headers


def configure_logging(settings: Settings) -> logging.Logger:
    """Configure root logging from settings and return the ``helpdesk`` logger."""

    level_name = settings.log_level.upper()
    level = getattr(logging, level_name, logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": settings.log_format,
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                }
            },
            "loggers": {
                name: {"level": quiet_level} for name, quiet_level in _QUIET_LOGGERS.items()
            },
            "root": {
                "handlers": ["console"],
                "level": level,
            },
        }
    )

    logger = logging.getLogger("helpdesk")
    logger.setLevel(level)
    return logger


def _build_exporter(settings: Settings) -> OTLPSpanExporter:
    # Unset endpoint falls back to the OTEL_EXPORTER_OTLP_* environment.
    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers)
    return OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=headers or None,
    )


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install a tracer provider that ships spans over OTLP/HTTP.

    Returns ``None`` when tracing is disabled or a provider is already installed.
    """

    global _TRACER_INITIALISED

    if not settings.otel_enabled or _TRACER_INITIALISED:
        return None

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "deployment.environment": settings.environment,
            }
        )
    )
    provider.add_span_processor(BatchSpanProcessor(_build_exporter(settings)))
    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _TRACER_INITIALISED

    if provider is None:
        return
    provider.force_flush()
    provider.shutdown()
    _TRACER_INITIALISED = False


@contextmanager
def start_span(name: str, attributes: Mapping[str, Any] | None = None) -> Iterator[trace.Span]:
    """Open a span on the ``helpdesk`` tracer, skipping attributes that are ``None``."""

    tracer = trace.get_tracer("helpdesk", __version__)
    with tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
