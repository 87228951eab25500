"""
Command line interface for action-fanout.

    action-fanout setup
    action-fanout publish purchase bob456 -d productId=LAPTOP-001 -d amount=1299.99
    action-fanout consume audit
    action-fanout demo
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConsumerRole, FanoutSettings, load_settings
from .exceptions import FanoutError
from .logging import setup_logging
from .service import publish_action, run_consumer, run_demo, setup

console = Console()
logger = logging.getLogger(__name__)


def _parse_payload(items: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values that are JSON scalars keep their type."""
    payload: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--data")
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        if isinstance(value, (dict, list)):
            value = raw
        payload[key] = value
    return payload


def _render_mapping(title: str, values: dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in values.items():
        table.add_row(str(key), json.dumps(value, default=str) if isinstance(value, dict) else str(value))
    return table


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML configuration file",
)
@click.option("--broker-url", help="Broker URL, overrides configuration")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level, overrides configuration",
)
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.pass_context
def cli(ctx, config_path, broker_url, log_level, json_logs):
    """Broadcast user actions to analytics, notification, audit and cache consumers."""
    overrides: dict[str, Any] = {}
    if broker_url:
        overrides["broker"] = {"url": broker_url}
    if log_level or json_logs:
        overrides["logging"] = {}
        if log_level:
            overrides["logging"]["level"] = log_level.upper()
        if json_logs:
            overrides["logging"]["json_format"] = True

    try:
        settings = load_settings(config_path, **overrides)
    except FanoutError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(settings.service_name, settings.logging.level, settings.logging.json_format)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _settings(ctx) -> FanoutSettings:
    return ctx.obj["settings"]


@cli.command("setup")
@click.pass_context
def setup_command(ctx):
    """Declare the fanout exchange and bind every consumer queue."""
    settings = _settings(ctx)
    try:
        bound = asyncio.run(setup(settings))
    except FanoutError as e:
        raise click.ClickException(f"Setup failed: {e}") from e

    table = Table(title=f"Exchange {settings.topology.exchange} (fanout)")
    table.add_column("Role", style="cyan")
    table.add_column("Queue", style="green")
    for role, queue in bound.items():
        table.add_row(role, queue)
    console.print(table)
    console.print("[green]✓ Exchange and queues are ready[/green]")


@cli.command()
@click.argument("action_kind")
@click.argument("subject_id")
@click.option("--data", "-d", multiple=True, help="Payload field as key=value (repeatable)")
@click.pass_context
def publish(ctx, action_kind, subject_id, data):
    """Publish one user action."""
    payload = _parse_payload(data)
    try:
        event = asyncio.run(publish_action(_settings(ctx), action_kind, subject_id, payload))
    except FanoutError as e:
        raise click.ClickException(f"Publish failed: {e}") from e

    console.print(
        f"[green]✓ Published {event.action_kind} for {event.subject_id}[/green] "
        f"(event {event.event_id})"
    )


@cli.command()
@click.argument("role", type=click.Choice([role.value for role in ConsumerRole]))
@click.option(
    "--metrics-port",
    type=click.IntRange(1, 65535),
    help="Serve Prometheus metrics on this port, overrides configuration",
)
@click.pass_context
def consume(ctx, role, metrics_port):
    """Run one consumer role until interrupted."""
    settings = _settings(ctx)
    if metrics_port is not None:
        settings = settings.model_copy(
            update={"metrics": settings.metrics.model_copy(update={"port": metrics_port})}
        )

    console.print(f"[blue]Starting {role} consumer, press Ctrl+C to stop[/blue]")
    try:
        snapshot = asyncio.run(run_consumer(role, settings))
    except FanoutError as e:
        raise click.ClickException(f"{role} consumer failed: {e}") from e

    console.print(_render_mapping(f"{role} final state", dict(snapshot)))


@cli.command()
@click.option(
    "--audit-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Audit log written by the demo, overrides configuration",
)
@click.pass_context
def demo(ctx, audit_path):
    """Run all four consumers in-process and replay the sample actions."""
    settings = _settings(ctx)
    if audit_path:
        settings = settings.model_copy(
            update={"audit": settings.audit.model_copy(update={"path": audit_path})}
        )

    try:
        result = asyncio.run(run_demo(settings))
    except (FanoutError, asyncio.TimeoutError) as e:
        raise click.ClickException(f"Demo failed: {e}") from e

    console.print(f"[green]✓ Published {len(result.events)} actions to 4 consumers[/green]")
    for role, snapshot in result.snapshots.items():
        console.print(_render_mapping(f"{role} state", dict(snapshot)))

    table = Table(title="Deliveries")
    table.add_column("Role", style="cyan")
    for column in ("consumed", "acked", "failed", "rejected"):
        table.add_column(column.capitalize(), justify="right")
    for role, stats in result.runtime_stats.items():
        table.add_row(
            role,
            *(str(stats[column]) for column in ("consumed", "acked", "failed", "rejected")),
        )
    console.print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
