import asyncio
import json
import logging
from datetime import timedelta

import click

from .analytics import DEFAULT_FIELD, PERIOD_FREQUENCIES, period_means, readings_frame, summarize_field
from .config import DEFAULT_HISTORY_LIMIT, TrackerConfig
from .coordinator import RefreshCoordinator
from .errors import ConfigError, FetchError
from .store import SQLRowStore, create_store, fetch_node_history, utc_now


def _load_config() -> TrackerConfig:
    try:
        return TrackerConfig.from_env()
    except ConfigError as e:
        click.secho(f"[!] Invalid configuration: {e}", fg="red")
        raise SystemExit(2)


async def _close_store(store) -> None:
    if hasattr(store, "aclose"):
        await store.aclose()
    elif hasattr(store, "close"):
        store.close()


async def _one_shot_status(config: TrackerConfig):
    store = create_store(config)
    try:
        coordinator = RefreshCoordinator(config, store)
        return await coordinator.refresh()
    finally:
        await _close_store(store)


async def _fetch_node_history(config: TrackerConfig, node: str, days: float):
    store = create_store(config)
    try:
        end = utc_now()
        return await fetch_node_history(store, node, end - timedelta(days=days), end, limit=DEFAULT_HISTORY_LIMIT)
    finally:
        await _close_store(store)


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s ago"
    if seconds < 3600:
        return f"{seconds / 60:.1f} min ago"
    return f"{seconds / 3600:.1f} h ago"


@click.group()
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(log_level):
    """lorawatch - latest reading and online/offline status for LoRa sensor nodes"""
    logging.basicConfig(level=getattr(logging, log_level.upper()))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON")
def status(as_json):
    """
    Fetch the resolution window once and print every node's status.
    """
    config = _load_config()
    try:
        snapshot = asyncio.run(_one_shot_status(config))
    except FetchError as e:
        click.secho(f"[X] Could not reach the row store: {e}", fg="red")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps([snapshot[n].to_dict() for n in config.known_nodes], indent=2))
        return

    now = utc_now()
    click.secho(
        f"[*] {len(config.known_nodes)} nodes · offline threshold "
        f"{config.staleness_threshold.total_seconds() / 60:g} min",
        fg="cyan",
    )
    for node_id in config.known_nodes:
        state = snapshot[node_id]
        label = "ONLINE " if state.online else "OFFLINE"
        click.secho(f"  {label} {node_id}", fg="green" if state.online else "red", bold=True, nl=False)
        if state.latest is None:
            click.echo("  (no data yet)")
            continue
        age = (now - state.latest.captured_at).total_seconds()
        click.echo(f"  last seen {state.latest.captured_at.isoformat()} ({_format_age(age)})")
        for name, value in sorted(state.latest.fields.items()):
            click.echo(f"      {name}: {value}")


@main.command()
@click.argument("node")
@click.option("--field", default=DEFAULT_FIELD, show_default=True, help="Payload field to summarise")
@click.option("--days", default=7.0, show_default=True, type=click.FloatRange(min=0, min_open=True))
@click.option("--daily", is_flag=True, help="Also print per-period means")
@click.option("--period", default="day", show_default=True, type=click.Choice(list(PERIOD_FREQUENCIES)),
              help="Aggregation period for --daily")
def summary(node, field, days, daily, period):
    """
    Mean / min / max / trend of one field for NODE over the last DAYS.
    """
    config = _load_config()
    try:
        readings, errors, truncated = asyncio.run(_fetch_node_history(config, node, days))
    except FetchError as e:
        click.secho(f"[X] Could not reach the row store: {e}", fg="red")
        raise SystemExit(1)

    if errors:
        click.secho(f"[!] Skipped {len(errors)} unreadable rows", fg="yellow")
    if truncated:
        click.secho(f"[!] Row cap of {DEFAULT_HISTORY_LIMIT} reached; only the most recent rows are included",
                    fg="yellow")

    stats = summarize_field(readings, field)
    if stats is None:
        click.secho(f"[!] No numeric '{field}' data for {node} in the last {days:g} days", fg="yellow")
        return

    click.secho(f"[+] {node} · {field} · {stats['count']} readings", fg="green")
    click.echo(f"    Average: {stats['average']}")
    click.echo(f"    Highest: {stats['max']}")
    click.echo(f"    Lowest:  {stats['min']}")
    click.echo(f"    Trend:   {stats['trend']}")
    if daily:
        for day in period_means(readings, field, period=period):
            click.echo(f"    {day['date']}  {day['mean']:>8}  (n={day['count']})")


@main.command()
@click.argument("node")
@click.option("--days", default=1.0, show_default=True, type=click.FloatRange(min=0, min_open=True))
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
def history(node, days, limit):
    """Print NODE's most recent readings as a table."""
    config = _load_config()
    try:
        readings, _, _ = asyncio.run(_fetch_node_history(config, node, days))
    except FetchError as e:
        click.secho(f"[X] Could not reach the row store: {e}", fg="red")
        raise SystemExit(1)

    frame = readings_frame(readings)
    if frame.empty:
        click.secho(f"[!] No readings for {node} in the last {days:g} days", fg="yellow")
        return
    click.echo(frame.tail(limit).drop(columns=["node_id"]).to_string(index=False))


@main.command("init-db")
def init_db():
    """Create the telemetry table in DATABASE_URL."""
    config = _load_config()
    if not config.database_url:
        click.secho("[!] DATABASE_URL is not set", fg="red")
        raise SystemExit(2)
    store = SQLRowStore(config.database_url, table=config.table)
    try:
        store.init_schema()
    finally:
        store.close()
    click.secho(f"[+] Table '{config.table}' is ready", fg="green")


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host, port):
    """Run the HTTP API with the refresh coordinator."""
    import uvicorn

    from .api import create_app

    config = _load_config()
    click.secho(f"[*] Tracking {', '.join(config.known_nodes)} on http://{host}:{port}", fg="cyan")
    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    main()
