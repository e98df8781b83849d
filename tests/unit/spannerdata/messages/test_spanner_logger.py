"""
Tests for the driver logger.
"""
import logging

from spannerdata.messages import SpannerLogger, get_logger
from spannerdata.messages.logger import ColorFormatter


def _record(name: str, message: str = "ready") -> logging.LogRecord:
    return logging.LogRecord(name, logging.INFO, __file__, 1, message, None, None)


class TestSpannerLogger:
    """Test logger setup."""

    def test_same_name_shares_handlers(self):
        first = get_logger("spannerdata.test.shared")
        second = get_logger("spannerdata.test.shared")

        assert first.logger is second.logger
        assert len(second.logger.handlers) == 2
        assert second.logger.propagate is False

    def test_name_is_colored(self):
        logger = SpannerLogger("spannerdata.test.names")

        formatted = logger.name("sessions/s1")

        assert "sessions/s1" in formatted
        assert formatted.startswith(SpannerLogger.Style.CYAN)


class TestColorFormatter:
    """Test console formatting."""

    def test_pool_records_show_database(self):
        formatter = ColorFormatter("%(scope_name)s%(message)s")

        output = formatter.format(
            _record("spannerdata.pool.projects/p/instances/i/databases/orders")
        )

        assert "[orders]" in output
        assert output.endswith("ready")

    def test_other_records_have_no_scope(self):
        formatter = ColorFormatter("%(scope_name)s%(message)s")

        assert formatter.format(_record("spannerdata.connection")) == "ready"
