"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import typer

from heatmatctl.api import Client
from heatmatctl.api import scan as scan_devices
from heatmatctl.core import codec
from heatmatctl.core.errors import HeatmatError
from heatmatctl.core.loader import default_config_path, load_config, load_variants
from heatmatctl.core.model import DeviceSnapshot, DeviceVariant, MatConfig

app = typer.Typer(help="Bluetooth LE heating mat control")

T = TypeVar("T")

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config.yaml")
TIMEOUT_OPTION = typer.Option(30.0, "--timeout", help="Seconds to wait for the mat to connect")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection activity to stderr")) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _format_snapshot(snapshot: DeviceSnapshot, variant: DeviceVariant) -> str:
    heating = "on" if snapshot.heating else "off"
    timer = "off"
    if snapshot.timer_on:
        timer = f"{snapshot.timer_hours} h ({variant.timer_percent(snapshot.timer_hours):.0f}%)"
    return f"temperature={snapshot.target_temperature:g}C heating={heating} timer={timer}"


async def _one_shot(
    config: MatConfig,
    timeout: float,
    action: Callable[[Client], Awaitable[T]],
) -> tuple[T, DeviceSnapshot]:
    async with Client(config) as mat:
        await mat.wait_ready(timeout)
        await mat.refresh()
        result = await action(mat)
        return result, mat.get_snapshot()


async def _watch(config: MatConfig, duration: float | None) -> None:
    async with Client(config) as mat:
        mat.add_listener(lambda snapshot: typer.echo(_format_snapshot(snapshot, config.variant)))
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)


@app.command("variants")
def list_variants() -> None:
    """List device variants and their temperature levels."""
    try:
        loaded = load_variants()
        for warning in loaded.warnings:
            typer.echo(f"Warning: {warning}", err=True)
        for variant in sorted(loaded.variants.values(), key=lambda v: v.id):
            typer.echo(f"{variant.id}: {variant.name} (timer up to {variant.max_timer_hours} h)")
            for level, celsius in sorted(variant.levels.items()):
                suffix = " (off)" if level == 0 else ""
                typer.echo(f"  level {level}: {celsius:g}C{suffix}")
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("packet")
def show_packet(level: int) -> None:
    """Print the control packet for LEVEL."""
    try:
        typer.echo(codec.encode(level).hex())
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("decode")
def decode_packet(payload: str) -> None:
    """Decode a hex PAYLOAD received from the mat."""
    try:
        data = bytes.fromhex(payload.strip().removeprefix("0x"))
    except ValueError:
        typer.echo(f"Error: '{payload}' is not valid hex", err=True)
        raise typer.Exit(code=1) from None
    try:
        typer.echo(f"level {codec.decode(data)}")
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    seconds: float = typer.Option(5.0, "--seconds", help="Discovery window"),
    adapter: str | None = typer.Option(None, "--adapter", help="Bluetooth adapter, e.g. hci0"),
    config: Path | None = CONFIG_OPTION,
) -> None:
    """List nearby Bluetooth devices, marking the configured mat."""
    try:
        target = None
        adapter_id = adapter
        config_path = config or default_config_path()
        if config is not None or config_path.exists():
            mat_config = load_config(config_path)
            target = mat_config.identity.address
            adapter_id = adapter or mat_config.identity.adapter_id

        found = asyncio.run(scan_devices(seconds, adapter_id=adapter_id or "hci0", target_address=target))
        if not found:
            typer.echo("No Bluetooth devices found")
            return
        for device, is_target in found:
            marker = " <- configured mat" if is_target else ""
            typer.echo(f"{device.address} {device.name}{marker}")
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("run")
def run_session(
    config: Path | None = CONFIG_OPTION,
    duration: float | None = typer.Option(None, "--duration", help="Stop after this many seconds"),
) -> None:
    """Keep the mat connected and print every state change until interrupted."""
    try:
        mat_config = load_config(config)
        typer.echo(f"Watching {mat_config.identity.name} ({mat_config.identity.address}), variant {mat_config.variant.id}")
        asyncio.run(_watch(mat_config, duration))
    except KeyboardInterrupt:
        typer.echo("Stopped")
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("temp")
def set_temperature(
    celsius: float,
    config: Path | None = CONFIG_OPTION,
    timeout: float = TIMEOUT_OPTION,
) -> None:
    """Set the mat temperature (values at or below the off threshold switch it off)."""
    try:
        mat_config = load_config(config)
        level = mat_config.variant.level_for(celsius)
        written, snapshot = asyncio.run(_one_shot(mat_config, timeout, lambda mat: mat.set_temperature(celsius)))
        if written:
            typer.echo(f"Set level {level} ({mat_config.variant.levels[level]:g}C)")
        else:
            typer.echo(f"Level {level} already active")
        typer.echo(_format_snapshot(snapshot, mat_config.variant))
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("timer")
def set_timer(
    hours: float,
    config: Path | None = CONFIG_OPTION,
    timeout: float = TIMEOUT_OPTION,
) -> None:
    """Set the auto-off timer in hours (0 switches the mat off)."""
    try:
        mat_config = load_config(config)
        written, snapshot = asyncio.run(_one_shot(mat_config, timeout, lambda mat: mat.request_timer_hours(hours)))
        if written:
            typer.echo(f"Timer set to {snapshot.timer_hours} h")
        else:
            typer.echo("Timer not changed")
        typer.echo(_format_snapshot(snapshot, mat_config.variant))
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("power")
def set_power(
    state: str,
    config: Path | None = CONFIG_OPTION,
    timeout: float = TIMEOUT_OPTION,
) -> None:
    """Switch heating on (resuming the last temperature) or off."""
    normalized = state.strip().lower()
    if normalized not in {"on", "off"}:
        typer.echo(f"Error: power state must be 'on' or 'off', got '{state}'", err=True)
        raise typer.Exit(code=1)
    try:
        mat_config = load_config(config)
        on = normalized == "on"
        written, snapshot = asyncio.run(_one_shot(mat_config, timeout, lambda mat: mat.set_power(on)))
        if written:
            typer.echo(f"Power {normalized}")
        else:
            typer.echo(f"Power already {normalized}")
        typer.echo(_format_snapshot(snapshot, mat_config.variant))
    except HeatmatError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
