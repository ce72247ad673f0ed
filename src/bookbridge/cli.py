"""CLI for the bookbridge calendar engine: serve the API and probe tenants."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import click

from bookbridge.config import BookbridgeConfig, ConfigError, load_config
from bookbridge.models import ensure_valid_timezone

logger = logging.getLogger(__name__)

# Default directory containing bookbridge.toml
DEFAULT_CONFIG_DIR = Path(".")

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help="Directory containing bookbridge.toml",
)


def _load_or_exit(config_dir: Path) -> BookbridgeConfig:
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


def _validate_timezone(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> str | None:
    if value is None:
        return None
    try:
        return ensure_valid_timezone(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """bookbridge: unified availability and booking across Google and Outlook calendars."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", type=int, default=40300, show_default=True, help="Port to listen on")
def serve(config_dir: Path, host: str, port: int) -> None:
    """Run the engine HTTP API."""
    config = _load_or_exit(config_dir)

    from bookbridge.core.logging import configure_logging
    from bookbridge.core.metrics import init_metrics
    from bookbridge.core.telemetry import init_telemetry

    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    init_telemetry("bookbridge")
    init_metrics("bookbridge")

    click.echo(f"Serving bookbridge API on http://{host}:{port}")
    asyncio.run(_serve(config, host, port))


@cli.command("connections")
@_config_option
def connections_cmd(config_dir: Path) -> None:
    """List the calendar connections declared in the config."""
    config = _load_or_exit(config_dir)
    if not config.connections:
        click.echo(f"No connections configured in {config_dir}/")
        return

    click.echo(f"{'Tenant':<16} {'Connection':<32} {'Staff':<16} {'Flags'}")
    click.echo("-" * 80)
    for tenant_id, connections in sorted(config.connections.items()):
        for connection in connections:
            flags = []
            if connection.is_primary:
                flags.append("primary")
            if not connection.active:
                flags.append("inactive")
            staff = connection.staff_member or "-"
            click.echo(f"{tenant_id:<16} {connection.id:<32} {staff:<16} {', '.join(flags)}")


@cli.command()
@_config_option
@click.option("--tenant", "tenant_id", required=True, help="Tenant whose calendars to probe")
def health(config_dir: Path, tenant_id: str) -> None:
    """Probe every active connection of a tenant; exits 1 when none is healthy."""
    config = _load_or_exit(config_dir)
    report = asyncio.run(_health(config, tenant_id))

    click.echo(f"Tenant {tenant_id}: {report.overall_status}")
    for connection in report.connections:
        line = f"  {connection.connection_id:<32} {connection.status}"
        if connection.details:
            line += f"  ({connection.details})"
        click.echo(line)

    if report.overall_status == "error":
        sys.exit(1)


@cli.command()
@_config_option
@click.option("--tenant", "tenant_id", required=True, help="Tenant whose calendars to check")
@click.option("--start", required=True, type=click.DateTime(), help="Window start")
@click.option("--end", required=True, type=click.DateTime(), help="Window end")
@click.option(
    "--timezone",
    default=None,
    callback=_validate_timezone,
    help="IANA timezone for --start/--end",
)
def availability(
    config_dir: Path,
    tenant_id: str,
    start: datetime,
    end: datetime,
    timezone: str | None,
) -> None:
    """Print the merged free/busy slots of a tenant for a window."""
    if end <= start:
        click.echo("--end must be after --start", err=True)
        sys.exit(1)

    config = _load_or_exit(config_dir)
    slots = asyncio.run(_availability(config, tenant_id, start, end, timezone))
    if not slots:
        click.echo("No availability data returned")
        sys.exit(1)

    for slot in slots:
        state = "free" if slot.available else "busy"
        click.echo(f"{slot.start.isoformat()}  {slot.end.isoformat()}  {state}")


def _orchestrator(config: BookbridgeConfig):
    from bookbridge.orchestrator import CalendarOrchestrator
    from bookbridge.registry import InMemoryConnectionRegistry

    return CalendarOrchestrator(
        config.engine,
        providers=config.providers,
        registry=InMemoryConnectionRegistry(config.connections),
    )


async def _health(config: BookbridgeConfig, tenant_id: str):
    orchestrator = _orchestrator(config)
    try:
        return await orchestrator.health_check(orchestrator.registry.salon_config(tenant_id))
    finally:
        await orchestrator.aclose()


async def _availability(
    config: BookbridgeConfig,
    tenant_id: str,
    start: datetime,
    end: datetime,
    timezone: str | None,
):
    orchestrator = _orchestrator(config)
    try:
        salon_config = orchestrator.registry.salon_config(tenant_id)
        return await orchestrator.check_unified_availability(
            salon_config.active_connections, start, end, timezone
        )
    finally:
        await orchestrator.aclose()


async def _serve(config: BookbridgeConfig, host: str, port: int) -> None:
    """Run uvicorn until SIGINT/SIGTERM; uvicorn installs the signal handlers."""
    import uvicorn

    from bookbridge.api.app import create_app

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config),
            host=host,
            port=port,
            log_level=config.logging.level.lower(),
            log_config=None,
        )
    )

    await server.serve()
