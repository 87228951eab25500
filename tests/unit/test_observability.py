"""
Unit tests for logging setup and fanout metrics.
"""

import io
import json
import logging

import pytest
from prometheus_client import CollectorRegistry

from action_fanout.logging import JSONFormatter, ServiceNameFilter, setup_logging
from action_fanout import metrics as metrics_module
from action_fanout.metrics import FanoutMetrics, serve_metrics


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestLogging:
    """Test suite for log configuration."""

    def test_json_formatter_includes_extra_fields(self):
        record = logging.LogRecord("action_fanout.test", logging.INFO, __file__, 1, "handled %s", ("e-1",), None)
        record.role = "audit"
        ServiceNameFilter("action-fanout").filter(record)

        document = json.loads(JSONFormatter().format(record))

        assert document["message"] == "handled e-1"
        assert document["level"] == "INFO"
        assert document["service"] == "action-fanout"
        assert document["role"] == "audit"

    def test_setup_logging_json(self, restore_root_logger, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        stream = io.StringIO()

        setup_logging("action-fanout", "DEBUG", json_format=True, stream=stream)
        logging.getLogger("action_fanout.test").debug("hello")

        assert restore_root_logger.level == logging.DEBUG
        assert json.loads(stream.getvalue().splitlines()[-1])["message"] == "hello"

    def test_environment_overrides_level(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        setup_logging("action-fanout", "DEBUG", stream=io.StringIO())

        assert restore_root_logger.level == logging.WARNING


@pytest.mark.unit
class TestFanoutMetrics:
    """Test suite for prometheus metrics."""

    def test_records_handled_outcomes(self):
        metrics = FanoutMetrics(CollectorRegistry())

        metrics.record_handled("audit", "acked", duration=0.01)
        metrics.record_handled("audit", "failed")

        assert metrics.registry.get_sample_value(
            "fanout_events_handled_total", {"role": "audit", "outcome": "acked"}
        ) == 1
        assert metrics.registry.get_sample_value("fanout_handle_duration_seconds_count", {"role": "audit"}) == 1

    def test_running_gauge(self):
        metrics = FanoutMetrics(CollectorRegistry())

        metrics.set_running("cache", True)
        assert metrics.registry.get_sample_value("fanout_runtime_running", {"role": "cache"}) == 1
        metrics.set_running("cache", False)
        assert metrics.registry.get_sample_value("fanout_runtime_running", {"role": "cache"}) == 0


@pytest.mark.unit
class TestServeMetrics:
    """Test suite for the Prometheus exposition server."""

    def test_starts_http_server(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            metrics_module, "start_http_server", lambda port, addr, registry: calls.append((port, addr, registry))
        )
        registry = CollectorRegistry()

        assert serve_metrics(9464, "127.0.0.1", registry=registry) is True
        assert calls == [(9464, "127.0.0.1", registry)]

    def test_bind_failure_is_reported(self, monkeypatch):
        """Test that an unavailable port does not raise."""

        def port_in_use(*args, **kwargs):
            raise OSError("Address already in use")

        monkeypatch.setattr(metrics_module, "start_http_server", port_in_use)

        assert serve_metrics(9464) is False
