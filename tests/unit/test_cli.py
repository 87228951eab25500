"""
Unit tests for the action-fanout command line interface.
"""

import json

import click
import pytest
import yaml
from click.testing import CliRunner

from action_fanout import cli as cli_module
from action_fanout.cli import _parse_payload, cli


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    """Keep the CLI from replacing the test run's log handlers."""
    monkeypatch.setattr(cli_module, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def memory_config(temp_dir):
    path = temp_dir / "fanout.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "broker": {"backend": "memory"},
                "runtime": {"poll_interval": 0.02, "redelivery_delay": 0.01},
                "audit": {"path": str(temp_dir / "audit-log.json")},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.mark.unit
class TestParsePayload:
    """Test suite for key=value payload parsing."""

    def test_scalars_keep_their_type(self):
        payload = _parse_payload(("productId=LAPTOP-001", "amount=1299.99", "gift=true", "note=null"))

        assert payload == {"productId": "LAPTOP-001", "amount": 1299.99, "gift": True, "note": None}

    def test_structured_values_stay_strings(self):
        assert _parse_payload(("tags=[1, 2]",)) == {"tags": "[1, 2]"}

    def test_missing_separator_is_rejected(self):
        with pytest.raises(click.BadParameter):
            _parse_payload(("amount",))


@pytest.mark.unit
class TestCommands:
    """Test suite for CLI commands against the in-memory broker."""

    def test_publish(self, runner, memory_config):
        result = runner.invoke(
            cli,
            ["--config", str(memory_config), "publish", "purchase", "bob456", "-d", "productId=LAPTOP-001"],
            obj={},
        )

        assert result.exit_code == 0, result.output
        assert "Published purchase for bob456" in result.output

    def test_publish_rejects_bad_payload(self, runner, memory_config):
        result = runner.invoke(
            cli, ["--config", str(memory_config), "publish", "login", "alice123", "-d", "device"], obj={}
        )

        assert result.exit_code == 2

    def test_publish_rejects_empty_subject(self, runner, memory_config):
        result = runner.invoke(cli, ["--config", str(memory_config), "publish", "login", " "], obj={})

        assert result.exit_code == 1
        assert "Publish failed" in result.output

    def test_setup(self, runner, memory_config):
        result = runner.invoke(cli, ["--config", str(memory_config), "setup"], obj={})

        assert result.exit_code == 0, result.output
        assert "cache.invalidation.queue" in result.output

    def test_consume_rejects_unknown_role(self, runner, memory_config):
        result = runner.invoke(cli, ["--config", str(memory_config), "consume", "billing"], obj={})

        assert result.exit_code == 2

    def test_consume_metrics_port_overrides_configuration(self, runner, memory_config, monkeypatch):
        received = []

        async def fake_run_consumer(role, settings):
            received.append((role, settings))
            return {"appended": 0}

        monkeypatch.setattr(cli_module, "run_consumer", fake_run_consumer)

        result = runner.invoke(
            cli, ["--config", str(memory_config), "consume", "audit", "--metrics-port", "9464"], obj={}
        )

        assert result.exit_code == 0, result.output
        ((role, settings),) = received
        assert role == "audit"
        assert settings.metrics.port == 9464
        assert settings.broker.backend.value == "memory"

    def test_consume_rejects_invalid_metrics_port(self, runner, memory_config):
        result = runner.invoke(
            cli, ["--config", str(memory_config), "consume", "audit", "--metrics-port", "0"], obj={}
        )

        assert result.exit_code == 2

    def test_demo_writes_audit_log(self, runner, memory_config, temp_dir):
        audit_path = temp_dir / "demo-audit.json"

        result = runner.invoke(
            cli, ["--config", str(memory_config), "demo", "--audit-path", str(audit_path)], obj={}
        )

        assert result.exit_code == 0, result.output
        assert "Published 8 actions" in result.output
        assert len(json.loads(audit_path.read_text(encoding="utf-8"))) == 8

    def test_invalid_config_is_reported(self, runner, temp_dir):
        path = temp_dir / "broken.yaml"
        path.write_text("runtime: {poll_interval: -1}", encoding="utf-8")

        result = runner.invoke(cli, ["--config", str(path), "setup"], obj={})

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
