import logging
from unittest.mock import MagicMock

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from helpdesk.core.config import Settings
from helpdesk.core.logging import (
    configure_logging,
    init_tracer,
    parse_otlp_headers,
    shutdown_tracer,
    start_span,
)


def test_parse_otlp_headers_skips_malformed_items():
    assert parse_otlp_headers("authorization=Bearer abc, x-team = ops ,broken,=novalue") == {
        "authorization": "Bearer abc",
        "x-team": "ops",
    }
    assert parse_otlp_headers(None) == {}


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("LOCK_TIMEOUT_SECONDS", "0.5")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")

    settings = Settings()

    assert settings.lock_timeout_seconds == 0.5
    assert settings.scheduler_enabled is False


def test_configure_logging_quiets_third_party_loggers():
    logger = configure_logging(Settings(log_level="debug"))

    assert logger.name == "helpdesk"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_tracer_disabled_by_default():
    assert init_tracer(Settings(otel_enabled=False)) is None


def test_start_span_skips_missing_attributes(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr("opentelemetry.trace.get_tracer", provider.get_tracer)

    with start_span("work_item.transition", {"work_item.id": "wi-1", "work_item.assignee": None}) as span:
        span.set_attribute("work_item.rejection", "invalid_edge")

    [finished] = exporter.get_finished_spans()
    assert finished.name == "work_item.transition"
    assert dict(finished.attributes) == {"work_item.id": "wi-1", "work_item.rejection": "invalid_edge"}
    assert finished.instrumentation_scope.name == "helpdesk"


def test_shutdown_tracer_flushes_before_shutdown():
    provider = MagicMock()

    shutdown_tracer(provider)
    shutdown_tracer(None)

    assert [call[0] for call in provider.method_calls] == ["force_flush", "shutdown"]
