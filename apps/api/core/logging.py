"""Logging and tracing setup for the helpdesk API."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from apps.api.core.config import Settings

TRACER_NAME = "helpdesk"

# Library loggers that are chatty at INFO; they only report warnings and above.
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "aiosqlite")

_active_provider: TracerProvider | None = None


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` OTLP header strings, skipping malformed pairs."""

    headers: dict[str, str] = {}
    for pair in (raw or "").split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _logging_config(settings: Settings, level: int) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"default": {"format": settings.log_format}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    """Install the console handler and return the application logger."""

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    dictConfig(_logging_config(settings, level))

    app_logger = logging.getLogger(settings.app_name)
    app_logger.setLevel(level)
    app_logger.debug("Logging configured for %s environment", settings.environment)
    return app_logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Register an OTLP tracer provider when tracing is switched on."""

    global _active_provider

    if not settings.otel_enabled or _active_provider is not None:
        return None

    exporter = OTLPSpanExporter(
        **{
            key: value
            for key, value in (
                ("endpoint", settings.otel_exporter_otlp_endpoint),
                ("headers", _parse_headers(settings.otel_exporter_otlp_headers) or None),
            )
            if value
        }
    )
    provider = TracerProvider(resource=Resource(attributes={"service.name": settings.otel_service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _active_provider = provider
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    global _active_provider

    if provider is None:
        return
    provider.shutdown()
    if provider is _active_provider:
        _active_provider = None


def get_tracer() -> trace.Tracer:
    """Tracer for service spans; a no-op tracer until ``init_tracer`` runs."""

    return trace.get_tracer(TRACER_NAME)
