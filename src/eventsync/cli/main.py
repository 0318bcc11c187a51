"""
Command-line interface for eventsync.

Runs the long-lived process and offers one-shot operational commands:
binding overview, transport health and dead-letter inspection/replay.
"""

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from eventsync import __version__
from eventsync.config import EventSyncConfig, TransportKind, load_config
from eventsync.exceptions import ConfigurationError, TransportConnectionError
from eventsync.messaging.envelope import EventType
from eventsync.messaging.factory import create_transport
from eventsync.messaging.registry import default_registry
from eventsync.service import EventSyncService, configure_logging, create_app

console = Console()


def _config(ctx: click.Context) -> EventSyncConfig:
    return ctx.obj["config"]


def _event_type(value: str) -> EventType:
    try:
        return EventType.parse(value)
    except ConfigurationError as e:
        raise click.BadParameter(e.message)


def _subscriptions(config: EventSyncConfig) -> set[EventType]:
    try:
        return {EventType.parse(name) for name in config.transport.subscribe}
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid transport.subscribe: {e.message}")


def _service(config: EventSyncConfig) -> EventSyncService:
    _subscriptions(config)
    return EventSyncService(config)


@click.group()
@click.version_option(version=__version__, prog_name="eventsync")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(dir_okay=False),
    help="YAML configuration file (environment variables are used otherwise)",
)
@click.option(
    "--transport",
    "-t",
    type=click.Choice([k.value for k in TransportKind]),
    help="Override the configured transport",
)
@click.pass_context
def cli(ctx: click.Context, config_file: str | None, transport: str | None):
    """eventsync - cross-service events and cache coherence"""
    try:
        config = load_config(config_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    if transport:
        config = config.model_copy(
            update={"transport": config.transport.model_copy(update={"kind": TransportKind(transport)})}
        )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.option("--host", help="Bind address for the health endpoint")
@click.option("--port", type=int, help="Port for the health endpoint")
@click.pass_context
def run(ctx: click.Context, host: str | None, port: int | None):
    """Start the service with its health/status endpoints."""
    import uvicorn

    config = _config(ctx)
    configure_logging(config)
    app = create_app(_service(config))

    console.print(
        f"[bold green]Starting {config.service.name}[/bold green] "
        f"(transport: {config.transport.kind.value})"
    )
    uvicorn.run(
        app,
        host=host or config.service.host,
        port=port or config.service.port,
        log_config=None,
    )


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show destination bindings and configured subscriptions."""
    config = _config(ctx)
    registry = default_registry()
    subscribed = _subscriptions(config)

    table = Table(title=f"Bindings ({config.transport.kind.value})")
    table.add_column("Event type", style="cyan")
    table.add_column("Exchange / routing key")
    table.add_column("Channel")
    table.add_column("Queue")
    table.add_column("Subscribed", justify="center")

    for binding in registry:
        queue = (
            binding.broker.queue
            if config.transport.kind == TransportKind.RABBITMQ
            else binding.store.queue
        )
        table.add_row(
            binding.event_type.value,
            f"{binding.broker.exchange} / {binding.broker.routing_key}",
            binding.store.channel,
            queue,
            "[green]yes[/green]" if binding.event_type in subscribed else "",
        )

    console.print(table)
    console.print(
        f"service={config.service.name} max_retries={config.transport.max_retries} "
        f"cache={'on' if config.cache.enabled else 'off'}"
    )


async def _health(config: EventSyncConfig) -> dict:
    service = _service(config)
    try:
        await service.transport.connect()
    except TransportConnectionError as e:
        console.print(f"[red]Transport connection failed:[/red] {e}")
    if service.cache is not None:
        await service.cache.connect()
    try:
        return await service.check_health()
    finally:
        if service.cache is not None:
            await service.cache.close()
        await service.transport.close()


@cli.command()
@click.pass_context
def health(ctx: click.Context):
    """One-shot round trip; exits non-zero when unhealthy."""
    result = asyncio.run(_health(_config(ctx)))

    table = Table(title="Health")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Latency (ms)", justify="right")
    table.add_column("Message")
    for name, check in result["checks"].items():
        latency = check.get("latency_ms")
        table.add_row(
            name,
            str(check["status"]),
            f"{latency:.1f}" if latency is not None else "-",
            check["message"],
        )
    console.print(table)

    if not result["healthy"]:
        console.print("[bold red]UNHEALTHY[/bold red]")
        sys.exit(1)
    console.print(f"[bold green]{str(result['status']).upper()}[/bold green]")


@cli.group()
def dlq():
    """Inspect and replay dead letters."""


async def _with_transport(config: EventSyncConfig, action):
    transport = create_transport(config, default_registry())
    await transport.connect()
    try:
        return await action(transport)
    finally:
        await transport.close()


@dlq.command("stats")
@click.argument("event_type")
@click.pass_context
def dlq_stats(ctx: click.Context, event_type: str):
    """Show queue and dead-letter depth for EVENT_TYPE."""
    et = _event_type(event_type)
    try:
        stats = asyncio.run(_with_transport(_config(ctx), lambda t: t.queue_stats(et)))
    except TransportConnectionError as e:
        raise click.ClickException(str(e))

    table = Table(title=f"Queues for {et.value}")
    table.add_column("Queue", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_row(stats.queue, str(stats.length))
    table.add_row(stats.dead_letter_queue, str(stats.dead_letter_length))
    console.print(table)


@dlq.command("replay")
@click.argument("event_type")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=100, show_default=True)
@click.pass_context
def dlq_replay(ctx: click.Context, event_type: str, limit: int):
    """Move dead letters for EVENT_TYPE back to the live queue with a fresh retry budget."""
    et = _event_type(event_type)
    try:
        count = asyncio.run(
            _with_transport(_config(ctx), lambda t: t.replay_dead_letters(et, limit))
        )
    except TransportConnectionError as e:
        raise click.ClickException(str(e))
    console.print(f"[green]Replayed {count} message(s) for {et.value}[/green]")


if __name__ == "__main__":
    cli()
