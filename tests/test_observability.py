"""Tests for the observability module.

Tests for metrics collection, logging configuration, and error sanitization.
"""
import logging
import tempfile
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import pytest

from notestore.observability import (
    MetricsCollector,
    configure_logging,
    sanitize_error_message,
    timed_operation,
    traced,
)


@pytest.fixture
def restore_logger():
    """Remove handlers configure_logging adds to the notestore logger."""
    logger = logging.getLogger("notestore")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


class TestErrorMessageSanitization:
    """Tests for error message sanitization."""

    def test_sanitize_none_returns_none(self):
        """Sanitizing None should return None."""
        assert sanitize_error_message(None) is None

    def test_sanitize_simple_message(self):
        """Simple messages should pass through unchanged."""
        assert sanitize_error_message("Simple error") == "Simple error"

    def test_sanitize_removes_home_directory(self):
        """Home directory paths should be replaced with ~."""
        home = str(Path.home())
        message = f"{home}/notes/notesdb.sqlite: Permission denied"
        result = sanitize_error_message(message)
        assert home not in result
        assert "~" in result
        assert "notes/notesdb.sqlite" in result

    def test_sanitize_removes_newlines(self):
        """Newlines should be replaced with spaces."""
        message = "Line 1\nLine 2\rLine 3"
        result = sanitize_error_message(message)
        assert "Line 1 Line 2 Line 3" == result

    def test_sanitize_truncates_long_messages(self):
        """Long messages should be truncated with ellipsis."""
        result = sanitize_error_message("a" * 300)
        assert len(result) == 200  # default max length
        assert result.endswith("...")

    def test_sanitize_custom_max_length(self):
        """Custom max length should be respected."""
        result = sanitize_error_message("a" * 100, max_length=50)
        assert len(result) == 50
        assert result.endswith("...")

    def test_sanitize_collapses_whitespace(self):
        """Runs of whitespace collapse and the ends are stripped."""
        assert sanitize_error_message("  word1    word2 \t word3  ") == "word1 word2 word3"


class TestMetricsCollector:
    """Tests for MetricsCollector class."""

    @pytest.fixture
    def metrics_collector(self):
        return MetricsCollector()

    def test_record_successful_operation(self, metrics_collector):
        """Test recording a successful operation."""
        metrics_collector.record_operation("save", 100.0, True)

        metrics = metrics_collector.get_metrics()
        assert metrics["save"]["count"] == 1
        assert metrics["save"]["success_count"] == 1
        assert metrics["save"]["error_count"] == 0
        assert metrics["save"]["avg_duration_ms"] == 100.0
        assert metrics["save"]["last_error"] is None

    def test_record_failed_operation(self, metrics_collector):
        """Test recording a failed operation with error."""
        metrics_collector.record_operation("rekey", 50.0, False, "Test error")

        metrics = metrics_collector.get_metrics()
        assert metrics["rekey"]["error_count"] == 1
        assert metrics["rekey"]["success_rate"] == 0
        assert metrics["rekey"]["last_error"] == "Test error"
        assert metrics["rekey"]["last_error_time"] is not None

    def test_error_message_is_sanitized(self, metrics_collector):
        """Test that error messages are sanitized before storage."""
        home = str(Path.home())
        metrics_collector.record_operation("open", 1.0, False, f"{home}/db.sqlite:\nlocked")

        stored_error = metrics_collector.get_metrics()["open"]["last_error"]
        assert home not in stored_error
        assert stored_error == "~/db.sqlite: locked"

    def test_multiple_operations_aggregated(self, metrics_collector):
        """Test that multiple operations are aggregated correctly."""
        metrics_collector.record_operation("save", 100.0, True)
        metrics_collector.record_operation("save", 200.0, True)
        metrics_collector.record_operation("save", 300.0, False, "Error")

        metrics = metrics_collector.get_metrics()
        assert metrics["save"]["count"] == 3
        assert metrics["save"]["avg_duration_ms"] == 200.0
        assert metrics["save"]["min_duration_ms"] == 100.0
        assert metrics["save"]["max_duration_ms"] == 300.0

    def test_get_summary(self, metrics_collector):
        """Test getting metrics summary."""
        metrics_collector.record_operation("add", 100.0, True)
        metrics_collector.record_operation("move", 200.0, False, "Error")

        summary = metrics_collector.get_summary()
        assert summary["total_operations"] == 2
        assert summary["total_success"] == 1
        assert summary["total_errors"] == 1
        assert summary["overall_success_rate"] == 0.5
        assert set(summary["operations_tracked"]) == {"add", "move"}

    def test_empty_summary(self, metrics_collector):
        assert metrics_collector.get_summary()["overall_success_rate"] == 1.0

    def test_reset_metrics(self, metrics_collector):
        """Test resetting all metrics."""
        metrics_collector.record_operation("add", 100.0, True)
        metrics_collector.reset()
        assert metrics_collector.get_metrics() == {}


class TestTimedOperation:
    """Tests for timed_operation and traced."""

    def test_timed_operation_records_success(self):
        """Test that successful operations are timed and recorded."""
        collector = MetricsCollector()
        with patch("notestore.observability.metrics", collector):
            with timed_operation("list_notes", filter="cafe") as op:
                time.sleep(0.01)  # 10ms
                op["result_count"] = 2

        metrics = collector.get_metrics()
        assert metrics["list_notes"]["success_count"] == 1
        assert metrics["list_notes"]["avg_duration_ms"] >= 10

    def test_timed_operation_records_failure(self):
        """Test that failed operations are recorded and re-raised."""
        collector = MetricsCollector()
        with patch("notestore.observability.metrics", collector):
            with pytest.raises(ValueError):
                with timed_operation("save"):
                    raise ValueError("Test error")

        metrics = collector.get_metrics()
        assert metrics["save"]["error_count"] == 1
        assert "Test error" in metrics["save"]["last_error"]

    def test_traced_decorator(self):
        collector = MetricsCollector()

        @traced("export")
        def export(rows):
            return list(rows)

        @traced()
        def explode():
            raise RuntimeError("boom")

        with patch("notestore.observability.metrics", collector):
            assert export([1, 2]) == [1, 2]
            with pytest.raises(RuntimeError):
                explode()

        metrics = collector.get_metrics()
        assert metrics["export"]["success_count"] == 1
        assert metrics["explode"]["error_count"] == 1
        assert export.__name__ == "export"


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_logging_creates_directory(self, restore_logger):
        """Test that configure_logging creates log directory."""
        with tempfile.TemporaryDirectory() as temp_dir:
            log_dir = Path(temp_dir) / "logs"
            result = configure_logging(log_dir=log_dir, console=False)
            assert result == log_dir
            assert log_dir.is_dir()
            for handler in restore_logger.handlers:
                handler.flush()
            assert (log_dir / "notestore.log").exists()

    def test_configure_logging_sets_level(self, restore_logger):
        """Test that configure_logging sets the correct log level."""
        with tempfile.TemporaryDirectory() as temp_dir:
            configure_logging(log_dir=Path(temp_dir), level=logging.DEBUG, console=False)
            assert restore_logger.level == logging.DEBUG

    def test_configure_logging_is_idempotent(self, restore_logger):
        """Calling twice does not stack file handlers."""
        with tempfile.TemporaryDirectory() as temp_dir:
            configure_logging(log_dir=Path(temp_dir), console=False)
            configure_logging(log_dir=Path(temp_dir), console=False)
            file_handlers = [
                h for h in restore_logger.handlers if isinstance(h, RotatingFileHandler)
            ]
            assert len(file_handlers) == 1
