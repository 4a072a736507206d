from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from otgw2mqtt.bridge.protocol import DATA_POINTS_BY_NAME
from otgw2mqtt.mock_server import MockGateway, MockGatewayConfig, MockGatewayServer, load_config

app = typer.Typer(help="Mock OpenTherm Gateway CLI")
console = Console()


def _parse_assignments(items: Optional[List[str]]) -> dict:
    values = {}
    for item in items or []:
        if "=" not in item:
            raise typer.BadParameter(f"Expected name=value, got '{item}'")
        name, raw = item.split("=", 1)
        point = DATA_POINTS_BY_NAME.get(name)
        if point is None or point.is_derived:
            raise typer.BadParameter(f"Unknown data point: {name}")
        values[name] = raw if "/" in raw else float(raw)
    return values


async def _interactive_console(server: MockGatewayServer) -> None:
    gateway = server.gateway
    console.print("[bold cyan]Interactive console ready[/]. Commands: help, set, send, emit, snapshot, quit")
    while True:
        try:
            raw = await asyncio.to_thread(input, "mock-otgw> ")
        except (EOFError, KeyboardInterrupt):
            console.print("Exiting console...")
            return
        parts = raw.strip().split(maxsplit=2)
        if not parts:
            continue
        cmd = parts[0].lower()
        if cmd in {"quit", "exit"}:
            return
        if cmd == "help":
            console.print("Available commands: set <name> <value> | send <line> | emit | snapshot | quit")
            continue
        if cmd == "snapshot":
            console.print(gateway.snapshot())
            continue
        if cmd == "emit":
            await server.emit_status()
            continue
        if cmd == "send" and len(parts) >= 2:
            await server.emit_line(raw.strip()[len(parts[0]):].strip())
            continue
        if cmd == "set" and len(parts) >= 3:
            name, value = parts[1], parts[2]
            try:
                gateway.set_value(name, value if "/" in value else float(value))
            except ValueError as exc:
                console.print(f"{exc}")
                continue
            console.print(f"Set {name} to {value}")
            continue
        console.print(f"Unknown command: {raw}")


async def _run_server(cfg: MockGatewayConfig, interactive: bool) -> None:
    gateway = MockGateway(cfg)
    server = MockGatewayServer(gateway, host=cfg.host, port=cfg.port, interval=cfg.interval)
    await server.start()
    console.print(f"[green]Mock gateway running on tcp {cfg.host}:{server.bound_port}. Press Ctrl+C to stop.[/]")
    try:
        if interactive:
            await _interactive_console(server)
        else:
            stop_event = asyncio.Event()
            await stop_event.wait()
    finally:
        await server.stop()


@app.command()
def start(
    config: Optional[Path] = typer.Option(None, exists=True, readable=True, help="Path to YAML/JSON scenario"),
    host: Optional[str] = typer.Option(None, help="TCP host to bind"),
    port: Optional[int] = typer.Option(None, help="TCP port to bind (default: 2323)"),
    interval: Optional[float] = typer.Option(None, help="Seconds between status bursts"),
    value: Optional[List[str]] = typer.Option(None, "--value", help="Initial value as name=value (repeatable)"),
    interactive: bool = typer.Option(False, help="Launch interactive console for runtime control"),
):
    """Start the mock gateway over TCP."""

    try:
        cfg = load_config(config) if config else MockGatewayConfig()
        if host:
            cfg.host = host
        if port is not None:
            cfg.port = port
        if interval is not None:
            cfg.interval = interval
        cfg.values.update(_parse_assignments(value))
        cfg.validate()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        asyncio.run(_run_server(cfg, interactive))
    except KeyboardInterrupt:
        console.print("Stopping server...")


@app.command()
def status(config: Path = typer.Option(..., exists=True, readable=True, help="Scenario file to inspect")):
    """Print the status lines a scenario produces."""

    cfg = load_config(config)
    gateway = MockGateway(cfg)
    table = Table(title="Mock Gateway Scenario")
    table.add_column("Line")
    table.add_column("Name")
    table.add_column("Value")
    names = [n for n in DATA_POINTS_BY_NAME if n in cfg.values]
    for line, name in zip(gateway.status_lines(), names):
        table.add_row(line, name, str(cfg.values[name]))
    console.print(table)
    console.print(f"Listening on {cfg.host}:{cfg.port}, interval {cfg.interval}s")


if __name__ == "__main__":
    app()
