#!/usr/bin/env python3
"""OpenTherm Gateway to MQTT bridge CLI.

This CLI connects to an OpenTherm Gateway (OTGW) over TCP, publishes its
data points on MQTT and accepts gateway commands from MQTT and from a raw
passthrough listener.

Examples:
    # Gateway on otgw.local, broker on localhost
    python bridge.py start --tcp-host otgw.local --mqtt-broker localhost

    # Settings from a file, topics under home/
    python bridge.py start --config appsettings.json --mqtt-prefix home/

    # Settings from OTGW_* environment variables only
    OTGW_TCP_HOST=otgw.local OTGW_MQTT_BROKER=localhost python bridge.py start

    # Decode captured gateway lines
    python bridge.py decode B40191580 T00000300
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

# Ensure the otgw2mqtt package is importable
if __name__ == "__main__":
    import os
    sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from otgw2mqtt import __version__
from otgw2mqtt.bridge import (
    DATA_POINTS,
    CommandResponse,
    ConfigurationError,
    FrameCodec,
    GatewayBridge,
    StatusFrame,
    load_config,
    render_value,
)
from otgw2mqtt.bridge.config import log_level_from_env

app = typer.Typer(
    name="otgw2mqtt",
    help="OpenThermGateway2MQTT - OpenTherm Gateway to MQTT bridge",
    add_completion=False,
)
console = Console()

logger = logging.getLogger("otgw2mqtt")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich output; LOG_LEVEL sets the level unless verbose."""
    level = logging.DEBUG if verbose else log_level_from_env()
    logging.basicConfig(
        level=level,
        format="[%(name)s] %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def _log_unhandled_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled exception: %s",
        context.get("message", "unknown error"),
        exc_info=exc,
    )


@app.command()
def start(
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="JSON or YAML settings file (appsettings.json layout accepted)",
    ),
    # Gateway options
    tcp_host: Optional[str] = typer.Option(
        None,
        "--tcp-host",
        "-th",
        help="Host address of the OpenTherm Gateway",
    ),
    tcp_port: Optional[int] = typer.Option(
        None,
        "--tcp-port",
        "-tp",
        help="TCP port of the OpenTherm Gateway (default: 2323)",
    ),
    # MQTT options
    mqtt_broker: Optional[str] = typer.Option(
        None,
        "--mqtt-broker",
        "-mb",
        help="Host address of the MQTT broker",
    ),
    mqtt_port: Optional[int] = typer.Option(
        None,
        "--mqtt-port",
        "-mp",
        help="Port of the MQTT broker (default: 1883)",
    ),
    mqtt_username: Optional[str] = typer.Option(
        None,
        "--mqtt-username",
        help="MQTT username",
    ),
    mqtt_password: Optional[str] = typer.Option(
        None,
        "--mqtt-password",
        help="MQTT password",
    ),
    mqtt_prefix: Optional[str] = typer.Option(
        None,
        "--mqtt-prefix",
        help="Prefix prepended to every topic, e.g. 'home/'",
    ),
    # Passthrough options
    listen_host: Optional[str] = typer.Option(
        None,
        "--listen-host",
        help="Host address to bind the passthrough listener",
    ),
    listen_port: Optional[int] = typer.Option(
        None,
        "--listen-port",
        help="Port of the passthrough listener, 0 disables it (default: 2323)",
    ),
    # General options
    reconnect_delay: Optional[float] = typer.Option(
        None,
        "--reconnect-delay",
        help="Seconds between reconnect attempts (default: 15)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Start the bridge.

    Settings are read from the --config file, then OTGW_* environment
    variables, then the options given here.
    """
    console.print(f"OpenThermGateway2MQTT version {__version__}")
    setup_logging(verbose)

    try:
        config = load_config(config_file).merged(
            tcp_host=tcp_host,
            tcp_port=tcp_port,
            mqtt_broker=mqtt_broker,
            mqtt_port=mqtt_port,
            mqtt_username=mqtt_username,
            mqtt_password=mqtt_password,
            mqtt_prefix=mqtt_prefix,
            listen_host=listen_host,
            listen_port=listen_port,
            reconnect_delay=reconnect_delay,
        )
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    # Display configuration
    table = Table(title="Bridge Configuration", show_header=True)
    table.add_column("Side", style="cyan")
    table.add_column("Connection", style="yellow")

    table.add_row("OTGW (client)", f"{config.tcp_host or '-'}:{config.tcp_port}")
    table.add_row(
        "MQTT broker",
        f"{config.mqtt_broker or '-'}:{config.mqtt_port}"
        + (f" as {config.mqtt_username}" if config.mqtt_username else ""),
    )
    table.add_row("Topic prefix", repr(config.mqtt_prefix))
    table.add_row(
        "Passthrough (server)",
        f"{config.listen_host}:{config.listen_port}" if config.listen_port else "disabled",
    )

    console.print(table)
    console.print()

    bridge = GatewayBridge(config)

    console.print(Panel.fit("[bold green]Starting bridge...[/bold green]"))

    async def run():
        # Handle graceful shutdown
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_log_unhandled_exception)
        stop_event = asyncio.Event()

        def signal_handler():
            console.print("\n[yellow]Shutting down...[/yellow]")
            stop_event.set()

        # Register signal handlers
        try:
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

        try:
            await bridge.start()
            console.print("[bold green]Bridge running. Press Ctrl+C to stop.[/bold green]")

            # Wait for stop signal or periodic stats display
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=60)
                except asyncio.TimeoutError:
                    stats = bridge.get_stats()
                    console.print(
                        f"[dim]Stats: link {stats['link_state']}, "
                        f"{stats['lines_received']} lines, "
                        f"{stats['values_published']} published, "
                        f"{stats['passthrough_clients']} clients[/dim]"
                    )
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")
        finally:
            await bridge.stop()
            console.print("[green]Bridge stopped.[/green]")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


@app.command()
def decode(
    lines: List[str] = typer.Argument(..., help="Gateway lines, e.g. B40191580"),
) -> None:
    """Decode gateway lines offline and show the resulting values."""
    codec = FrameCodec()

    table = Table(title="Decoded Lines", show_header=True)
    table.add_column("Line", style="cyan")
    table.add_column("Kind", style="green")
    table.add_column("Values", style="yellow")

    for line in lines:
        event = codec.decode(line)
        if isinstance(event, StatusFrame):
            names = {p.data_id: p.name for p in DATA_POINTS}
            values = ", ".join(
                f"{names[data_id]}={render_value(value)}"
                for data_id, value in event.values.items()
            )
            table.add_row(line, f"{event.target.name} {event.kind.name}", values or "-")
        elif isinstance(event, CommandResponse):
            follow = f" (sends {event.follow_up.to_line()})" if event.follow_up else ""
            table.add_row(line, "COMMAND", f"command_{event.code.lower()}={event.result}{follow}")
        else:
            table.add_row(line, "[dim]ignored[/dim]", "-")

    console.print(table)


@app.command()
def points() -> None:
    """List the data points published by the bridge."""
    table = Table(title="Data Points", show_header=True)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name", style="green")
    table.add_column("Encoding", style="yellow")

    for point in DATA_POINTS:
        if point.is_derived:
            encoding = f"flag of {point.source_id} @ {point.offset}"
        else:
            encoding = point.encoding.value
        table.add_row(str(point.data_id), point.name, encoding)

    console.print(table)


@app.command()
def info() -> None:
    """Display bridge topics and usage information."""
    console.print(
        Panel.fit(
            "[bold]OpenThermGateway2MQTT[/bold]\n\n"
            "Bridges an OpenTherm Gateway (TCP, port 2323) to an MQTT broker\n"
            "and re-exposes the raw gateway stream on a passthrough listener.\n\n"
            "[bold]Topics:[/bold]\n"
            "  • <prefix>otgw/status/<name> - changed values (QoS 2, retained)\n"
            "  • <prefix>otgw/status/command_<code> - gateway command results\n"
            "  • <prefix>otgw/command/<CODE> - publish a value to send CODE=value\n\n"
            "[bold]Passthrough:[/bold]\n"
            "  Connect with e.g. telnet to the listen port: every gateway line\n"
            "  is echoed to you and every line you type is sent to the gateway.\n\n"
            "[bold]Environment:[/bold]\n"
            "  OTGW_TCP_HOST, OTGW_TCP_PORT, OTGW_MQTT_BROKER, OTGW_MQTT_PORT,\n"
            "  OTGW_MQTT_USERNAME, OTGW_MQTT_PASSWORD, OTGW_MQTT_PREFIX,\n"
            "  OTGW_LISTEN_HOST, OTGW_LISTEN_PORT, LOG_LEVEL\n",
            title="About",
        )
    )


if __name__ == "__main__":
    app()
