"""CLI entry point for wsconform.

Commands:
- wsconform serve    Run the harness server until interrupted
- wsconform run      Run one echo scenario and report the results
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import Config, TransportMode, load_config, parse_lengths
from .events import EventBus, HarnessEvent
from .exceptions import HarnessError
from .orchestrator import ScenarioReport, run_scenario
from .server.lifecycle import start_server

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # websockets logs every handshake at INFO
    if not verbose:
        logging.getLogger("websockets").setLevel(logging.WARNING)


def _apply_server_options(
    config: Config,
    host: str | None,
    port: int | None,
    mode: str | None,
) -> None:
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if mode is not None:
        config.server.mode = TransportMode(mode)


_host_option = click.option("--host", "-H", help="Listen address")
_port_option = click.option("--port", "-P", type=int, help="Listen port (0 picks a free one)")
_mode_option = click.option(
    "--mode", "-m",
    type=click.Choice([m.value for m in TransportMode]),
    help="Transport mode",
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--config", "-c", "config_file", type=click.Path(exists=True, dir_okay=False),
              help="TOML file with [server] and [scenario] tables")
@click.pass_context
def main(ctx: click.Context, verbose: bool, config_file: str | None) -> None:
    """wsconform: WebSocket echo conformance harness."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    try:
        ctx.obj["config"] = load_config(Path(config_file)) if config_file else Config()
    except HarnessError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


@main.command()
@_host_option
@_port_option
@_mode_option
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, mode: str | None) -> None:
    """Run the harness server until interrupted."""
    config: Config = ctx.obj["config"]
    _apply_server_options(config, host, port, mode)
    event_bus = EventBus()

    async def _serve() -> None:
        task, handle = await start_server(config.server, event_bus)
        console.print(
            f"[bold]Serving on {handle.uri}[/bold] ({handle.mode.value} mode), Ctrl-C to stop"
        )
        try:
            await task
        finally:
            handle.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    except HarnessError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@main.command()
@_host_option
@_port_option
@_mode_option
@click.option("--uri", "-u", help="Test an external endpoint instead of a local server")
@click.option("--lengths", "-l", help="Comma separated message lengths, e.g. 0,125,126")
@click.option("--close-before-exit/--no-close-before-exit", default=None,
              help="Close the connection after each round")
@click.option("--server-initiates/--client-initiates", default=None,
              help="Ask the server to start the conversation")
@click.pass_context
def run(
    ctx: click.Context,
    host: str | None,
    port: int | None,
    mode: str | None,
    uri: str | None,
    lengths: str | None,
    close_before_exit: bool | None,
    server_initiates: bool | None,
) -> None:
    """Run one echo scenario and report the results."""
    config: Config = ctx.obj["config"]
    _apply_server_options(config, host, port, mode)
    # A throwaway local server doesn't need a fixed port
    if port is None and not ctx.obj["config_file"]:
        config.server.port = 0

    scenario = config.scenario
    if uri is not None:
        scenario.uri = uri
    if close_before_exit is not None:
        scenario.close_before_exit = close_before_exit
    if server_initiates is not None:
        scenario.server_initiates = server_initiates

    event_bus = EventBus()
    events: list[HarnessEvent] = []
    event_bus.subscribe(events.append)

    try:
        if lengths is not None:
            scenario.msg_lengths = parse_lengths(lengths)
        report = asyncio.run(run_scenario(scenario, config.server, event_bus))
    except (HarnessError, OSError) as e:
        console.print(f"[red]Scenario failed to run: {e}[/red]")
        sys.exit(1)

    _display_events(events)
    _display_report(report)
    if not report.ok:
        sys.exit(1)


def _display_events(events: list[HarnessEvent]) -> None:
    table = Table(title="Events")
    table.add_column("Event", style="bold")
    table.add_column("Side")
    table.add_column("Length", justify="right")
    table.add_column("Details", style="dim")

    for event in events:
        style = "red" if event.is_failure else None
        details = ", ".join(f"{k}={v}" for k, v in event.data.items())
        table.add_row(
            event.event_type.value,
            event.side.value if event.side else "",
            "" if event.length is None else str(event.length),
            details,
            style=style,
        )
    console.print(table)


def _display_report(report: ScenarioReport) -> None:
    console.print(f"\n[bold]Scenario at {report.uri}[/bold]\n")
    console.print(f"  Expected:  {report.expected_rounds}")
    console.print(f"  Verified:  [green]{report.verified_rounds}[/green]")
    console.print(f"  Failures:  [red]{len(report.failures)}[/red]")
    if report.skipped:
        console.print(f"  Skipped:   {', '.join(map(str, report.skipped))}")
    console.print(f"  Time:      {report.elapsed_seconds:.2f}s")
    if report.ok:
        console.print("\n[green]All round trips echoed exactly.[/green]")
    else:
        console.print("\n[red]Scenario failed.[/red]")
