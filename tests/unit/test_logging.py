"""Tests for config-driven logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from costbook.core import logging as costbook_logging
from costbook.core.logging import build_renderer, configure_logging


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in costbook_logging._installed_handlers:
        root.removeHandler(handler)
    costbook_logging._installed_handlers.clear()
    root.setLevel(level)
    structlog.reset_defaults()


class TestBuildRenderer:
    def test_json(self):
        assert isinstance(build_renderer("json"), structlog.processors.JSONRenderer)
        assert isinstance(build_renderer("JSON"), structlog.processors.JSONRenderer)

    def test_text(self):
        assert isinstance(build_renderer("text"), structlog.dev.ConsoleRenderer)


def test_level_and_format_follow_config(app_config, restore_logging):
    app_config.log_format = "json"
    app_config.log_level = "warning"

    configure_logging(app_config)

    root = logging.getLogger()
    assert root.level == logging.WARNING
    [handler, *_] = costbook_logging._installed_handlers
    assert handler in root.handlers

    record = logging.LogRecord(
        "costbook.rates.service", logging.WARNING, __file__, 1, "rate %s", ("C1",), None
    )
    line = json.loads(handler.format(record))
    assert line["event"] == "rate C1"
    assert line["level"] == "warning"
    assert line["logger"] == "costbook.rates.service"


def test_explicit_level_overrides_config(app_config, restore_logging):
    app_config.log_format = "text"

    configure_logging(app_config, level="error")

    assert logging.getLogger().level == logging.ERROR


def test_reconfiguring_replaces_handlers(app_config, restore_logging):
    configure_logging(app_config)
    first = list(costbook_logging._installed_handlers)

    configure_logging(app_config)

    root = logging.getLogger()
    assert all(handler not in root.handlers for handler in first)
    assert len(costbook_logging._installed_handlers) == len(first)
