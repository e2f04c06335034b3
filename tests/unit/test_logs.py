"""Tests for explicit logging initialization."""

import io
import logging

import pytest

from nllsq.core import logs


@pytest.fixture
def fresh_logging(monkeypatch):
    """Reset the one-time flag and remove handlers added by the test."""
    monkeypatch.setattr(logs, "_initialized", False)
    logger = logging.getLogger(logs.LOGGER_NAME)
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    logger.handlers = handlers
    logger.setLevel(level)


class TestInitializeLogging:
    """Test the one-time logging setup."""

    def test_nothing_configured_implicitly(self, fresh_logging):
        assert not logs.is_logging_initialized()

    def test_first_call_initializes(self, fresh_logging):
        stream = io.StringIO()
        assert logs.initialize_logging(stream=stream)
        assert logs.is_logging_initialized()

        logging.getLogger("nllsq.core.solver.engine").info("hello")
        assert "hello" in stream.getvalue()

    def test_idempotent(self, fresh_logging):
        assert logs.initialize_logging(stream=io.StringIO())
        num_handlers = len(fresh_logging.handlers)
        assert not logs.initialize_logging(stream=io.StringIO())
        assert len(fresh_logging.handlers) == num_handlers

    def test_level(self, fresh_logging):
        logs.initialize_logging(level=logging.WARNING, stream=io.StringIO())
        assert fresh_logging.level == logging.WARNING
