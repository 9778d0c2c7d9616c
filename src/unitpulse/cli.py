"""CLI commands for unitpulse."""

import sys
from dataclasses import replace

import click

from unitpulse import logging as console


def _load_config():
    """Load config or exit 1 with the validation message."""
    from unitpulse.config import Config
    from unitpulse.errors import ConfigurationError

    try:
        return Config.load()
    except ConfigurationError as e:
        console.config_error(str(e))
        sys.exit(1)


def _ingress_url(config) -> str:
    host = config.server.host
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{config.server.port}/events"


@click.group()
@click.version_option(package_name="unitpulse")
def main() -> None:
    """Sample service CPU usage and ship it in batches."""
    pass


@main.command()
@click.option("--interval", type=float, help="Seconds between sampling cycles")
@click.option("--window", type=float, help="Seconds each sampler measures for")
@click.option("--buffer-size", type=int, help="Flush once this many rows are buffered")
@click.option("--flush-interval", type=float, help="Flush once this many seconds have passed")
@click.option("--source", type=click.Choice(["systemd", "process"]), help="Service source")
@click.option("--pattern", "patterns", multiple=True, help="Process name pattern (repeatable)")
@click.option("--http-url", help="Forward batches to another ingress")
@click.option("--bind-host", help="Ingress bind address")
@click.option("--port", type=int, help="Ingress port")
@click.option("--no-server", is_flag=True, help="Don't start the HTTP ingress")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging and per-cycle output")
def run(
    interval: float | None,
    window: float | None,
    buffer_size: int | None,
    flush_interval: float | None,
    source: str | None,
    patterns: tuple[str, ...],
    http_url: str | None,
    bind_host: str | None,
    port: int | None,
    no_server: bool,
    verbose: bool,
) -> None:
    """Run the sampling daemon."""
    import asyncio

    from unitpulse.daemon import run_daemon
    from unitpulse.errors import ConfigurationError

    config = _load_config()

    sampling = replace(
        config.sampling,
        interval=config.sampling.interval if interval is None else interval,
        window=config.sampling.window if window is None else window,
        source=source or config.sampling.source,
        process_patterns=list(patterns) or config.sampling.process_patterns,
    )
    buffer = replace(
        config.buffer,
        size_threshold=config.buffer.size_threshold if buffer_size is None else buffer_size,
        time_threshold=config.buffer.time_threshold if flush_interval is None else flush_interval,
    )
    sinks = replace(config.sinks, http_url=config.sinks.http_url if http_url is None else http_url)
    server = replace(
        config.server,
        host=bind_host or config.server.host,
        port=config.server.port if port is None else port,
        enabled=config.server.enabled and not no_server,
    )
    config = replace(config, sampling=sampling, buffer=buffer, sinks=sinks, server=server)

    try:
        config.validate()
    except ConfigurationError as e:
        console.config_error(str(e))
        sys.exit(1)

    try:
        asyncio.run(run_daemon(config, verbose=verbose))
    except RuntimeError as e:
        if "already running" in str(e):
            sys.exit(1)
        raise


@main.command()
@click.option("--window", type=float, help="Seconds to measure for")
@click.option("--source", type=click.Choice(["systemd", "process"]), help="Service source")
@click.option("--pattern", "patterns", multiple=True, help="Process name pattern (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Print rows as JSON")
def sample(
    window: float | None, source: str | None, patterns: tuple[str, ...], as_json: bool
) -> None:
    """Run one sampling cycle and print the rows (nothing is uploaded)."""
    import asyncio
    import json

    from unitpulse.coordinator import CycleCoordinator
    from unitpulse.daemon import build_enumerator
    from unitpulse.errors import ConfigurationError
    from unitpulse.formatting import format_pct
    from unitpulse.models import Row
    from unitpulse.sampler import CpuSampler

    config = _load_config()
    sampling = replace(
        config.sampling,
        window=config.sampling.window if window is None else window,
        source=source or config.sampling.source,
        process_patterns=list(patterns) or config.sampling.process_patterns,
    )
    config = replace(config, sampling=sampling)
    try:
        config.validate()
    except ConfigurationError as e:
        console.config_error(str(e))
        sys.exit(1)

    async def one_cycle():
        coordinator = CycleCoordinator(
            build_enumerator(config),
            CpuSampler(),
            window=config.sampling.window,
            interval=config.sampling.interval,
            results=asyncio.Queue(),
        )
        return await coordinator.run_cycle()

    results = asyncio.run(one_cycle())
    rows = [Row.from_sample(r.identity, r.usage, config.hostname) for r in results]

    if as_json:
        click.echo(json.dumps([r.to_record() for r in rows], indent=2, default=str))
        return

    if not rows:
        click.echo("No services sampled.")
        return

    click.echo(f"{'Service':40}  {'PID':>7}  {'User':>8}  {'System':>8}  {'Total':>8}")
    click.echo("-" * 79)
    for row in sorted(rows, key=lambda r: r.total_pct, reverse=True):
        click.echo(
            f"{row.service_name[:40]:40}  {row.instance:>7}  {format_pct(row.user_pct):>8}  "
            f"{format_pct(row.system_pct):>8}  {format_pct(row.total_pct):>8}"
        )


@main.command()
@click.argument("table")
@click.option("--node-type", required=True, help="Role of the submitting node")
@click.option("--hostname", help="Hostname to report (default: this host)")
@click.option("--data", "data_json", required=True, help="JSON object or array of objects")
@click.option("--immediately", is_flag=True, help="Upload now instead of buffering")
@click.option("--timeout", "upload_timeout", default="", help="Upload timeout, e.g. 5s")
@click.option("--url", help="Ingress URL (default: local daemon)")
def send(
    table: str,
    node_type: str,
    hostname: str | None,
    data_json: str,
    immediately: bool,
    upload_timeout: str,
    url: str | None,
) -> None:
    """Post one event to a running ingress."""
    import asyncio
    import json

    import httpx

    from unitpulse.client import IngressClient, IngressRejected, build_event

    try:
        data = json.loads(data_json)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data") from e

    config = _load_config()
    event = build_event(
        table,
        node_type,
        hostname or config.hostname,
        data,
        send_immediately=immediately,
        upload_timeout=upload_timeout,
    )
    client = IngressClient(url or _ingress_url(config))

    try:
        response = asyncio.run(client.post_event(event))
    except IngressRejected as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except httpx.HTTPError as e:
        click.echo(f"Error: cannot reach ingress at {client.url}: {e}", err=True)
        sys.exit(1)

    click.echo(f"{response['status']}: {response['rows']} row(s)")


@main.command()
def status() -> None:
    """Quick health check."""
    import asyncio

    import httpx

    from unitpulse.client import IngressClient
    from unitpulse.formatting import format_seconds

    config = _load_config()

    daemon_running = config.pid_path.exists()
    click.echo(f"Daemon: {'running' if daemon_running else 'stopped'}")
    if not daemon_running or not config.server.enabled:
        return

    client = IngressClient(_ingress_url(config), timeout=2.0)
    try:
        health = asyncio.run(client.health())
    except httpx.HTTPError as e:
        click.echo(f"Ingress: unreachable ({e})")
        return

    click.echo(f"Ingress: {client.url}")
    click.echo(f"Buffered rows: {health['buffered']}")
    click.echo(f"Last flush: {format_seconds(health['last_flush_age'])} ago")
    click.echo(f"Flushes: {health['flushes']}, upload failures: {health['upload_failures']}")
    click.echo(f"Sinks: {', '.join(health['sinks']) or 'none'}")


@main.command()
@click.option("--limit", "-n", default=20, help="Number of rows to show")
@click.option("--service", "-s", default=None, help="Only rows for this service")
@click.option("--table", "-t", default=None, help="Only rows stored under this table")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
def rows(limit: int, service: str | None, table: str | None, fmt: str) -> None:
    """Show rows stored by the local database sink."""
    import json

    from unitpulse.formatting import format_pct
    from unitpulse.storage import DatabaseNotAvailable, count_rows, get_rows, require_database

    config = _load_config()

    try:
        with require_database(config.db_path) as conn:
            stored = get_rows(conn, limit=limit, service_name=service, table=table)
            total = count_rows(conn)
    except DatabaseNotAvailable:
        click.echo("Database not found. Run 'unitpulse run' first.")
        return

    if fmt == "json":
        click.echo(json.dumps([r.to_record() for r in stored], indent=2, default=str))
        return

    if not stored:
        click.echo("No rows stored.")
        return

    click.echo(
        f"{'Timestamp':19}  {'Service':32}  {'Instance':>10}  {'User':>8}  "
        f"{'System':>8}  {'Total':>8}"
    )
    click.echo("-" * 95)
    for row in stored:
        click.echo(
            f"{row.timestamp.strftime('%Y-%m-%d %H:%M:%S'):19}  {row.service_name[:32]:32}  "
            f"{row.instance[:10]:>10}  {format_pct(row.user_pct):>8}  "
            f"{format_pct(row.system_pct):>8}  {format_pct(row.total_pct):>8}"
        )
    click.echo(f"\nShowing {len(stored)} of {total} stored rows")


@main.command()
@click.option("--days", default=None, type=int, help="Override row retention days")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def prune(days: int | None, dry_run: bool, force: bool) -> None:
    """Delete stored rows older than the retention window."""
    from unitpulse.storage import get_connection, prune_old_rows

    config = _load_config()

    if not config.db_path.exists():
        click.echo("Database not found. Run 'unitpulse run' first.")
        return

    days = days or config.system.retention_days
    if days < 1:
        raise click.BadParameter("must be >= 1", param_hint="--days")

    if dry_run:
        click.echo(f"Would prune rows older than {days} days")
        return

    if not force:
        click.confirm(f"Delete rows older than {days} days?", abort=True)

    conn = get_connection(config.db_path)
    try:
        deleted = prune_old_rows(conn, days=days)
    finally:
        conn.close()

    click.echo(f"Deleted {deleted} rows")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from unitpulse.config import SECTIONS

    cfg = _load_config()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for name in SECTIONS:
        section = getattr(cfg, name)
        click.echo()
        click.echo(f"[{name}]")
        for f in fields(section):
            click.echo(f"  {f.name} = {getattr(section, f.name)!r}")


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from unitpulse.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
