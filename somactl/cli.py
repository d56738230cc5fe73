"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, is_dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer

from somactl import __version__
from somactl.core.codec import buffer_to_hex
from somactl.core.errors import AdapterError, BleError, DeviceSelectionError, SomactlError
from somactl.core.loader import load_settings
from somactl.core.model import ClientSettings, DeviceFound, Notification, Response
from somactl.core.peripheral import PeripheralDelegate
from somactl.soma.client import SOMA_SETTINGS, SomaClient
from somactl.soma.frames import Trigger
from somactl.soma.service import Shade, SomaService

if TYPE_CHECKING:
    from somactl.transports.bleak_adapter import BleakAdapter

LOGGER = logging.getLogger("somactl.cli")

app = typer.Typer(help="Command line interface to SOMA devices")

DEVICE_ENVVAR = "SOMA_DEVICE"


@dataclass
class Options:
    rssi: int | None = None
    timeout: float | None = None
    debug: int = 0
    config: Path | None = None


def build_client(settings: ClientSettings) -> tuple[BleakAdapter, SomaClient]:
    try:
        from somactl.transports.bleak_adapter import BleakAdapter
    except ImportError as exc:  # pragma: no cover - import failure path
        raise AdapterError("BLE support requires 'bleak'. Install dependency and retry.") from exc
    adapter = BleakAdapter()
    return adapter, SomaClient(adapter, settings)


def _configure_logging(debug: int) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
    )


def _trace_delegate(delegate: PeripheralDelegate, debug: int) -> None:
    def on_error(error: Exception) -> None:
        if isinstance(error, BleError):
            request = error.request
            if request is None:
                LOGGER.warning("%s: %s", delegate.id, error)
            else:
                LOGGER.warning("%s: request %s: %s: %s", delegate.id, request.id, request, error)
            return
        LOGGER.error("%s: %s", delegate.id, error)

    def on_response(response: Response) -> None:
        request = response.request
        if response.parsed_value is None:
            LOGGER.debug("%s: request %s: %s: ok", delegate.id, request.id, request)
        else:
            LOGGER.debug(
                "%s: request %s: %s: response: %s", delegate.id, request.id, request, response.parsed_value
            )
        if debug > 1 and response.buffer is not None:
            LOGGER.debug(
                "%s: request %s: %s: response buffer: %s",
                delegate.id,
                request.id,
                request,
                buffer_to_hex(response.buffer),
            )

    def on_notification(notification: Notification) -> None:
        if debug > 1:
            LOGGER.debug(
                "notification: %s/%s: %s",
                notification.service_key,
                notification.key,
                buffer_to_hex(notification.buffer),
            )
        LOGGER.debug(
            "notification: %s/%s: %s", notification.service_key, notification.key, notification.parsed_value
        )

    delegate.on("error", on_error)
    delegate.on("request", lambda r: LOGGER.debug("%s: request %s: %s", delegate.id, r.id, r))
    delegate.on("response", on_response)
    delegate.on("connected", lambda rssi: LOGGER.debug("%s: connected (rssi: %s)", delegate.id, rssi))
    delegate.on("disconnected", lambda: LOGGER.debug("%s: disconnected", delegate.id))
    delegate.on("notification", on_notification)


def _trace_client(client: SomaClient, debug: int) -> None:
    client.on("error", lambda error: LOGGER.warning("%s", error))
    client.on("enabled", lambda info: LOGGER.debug("bluetooth enabled on %s", info.name))
    client.on("disabled", lambda: LOGGER.warning("bluetooth disabled"))
    client.on("peripheral", lambda delegate: _trace_delegate(delegate, debug))


async def _session(
    settings: ClientSettings,
    debug: int,
    action: Callable[[SomaService], Awaitable[Any]],
) -> Any:
    adapter, client = build_client(settings)
    service = SomaService(client)
    for warning in service.runtime_warnings:
        typer.echo(f"Warning: {warning}", err=True)
    _trace_client(client, debug)
    adapter.power_on()
    try:
        return await action(service)
    finally:
        await client.close()


def _run(
    ctx: typer.Context,
    action: Callable[[SomaService, str | None], Awaitable[Any]],
    device: str | None = None,
    *,
    require_device: bool = True,
) -> Any:
    options: Options = ctx.obj or Options()
    try:
        loaded = load_settings(options.config, SOMA_SETTINGS)
        settings = loaded.settings
        if options.rssi is not None:
            settings = replace(settings, rssi=options.rssi)
        if options.timeout is not None:
            settings = replace(settings, timeout=options.timeout)
        hint = device or loaded.device
        if require_device and not hint:
            raise DeviceSelectionError(
                f"Missing device name or mac address. Set {DEVICE_ENVVAR} or specify as argument."
            )
        return asyncio.run(_session(settings, options.debug, lambda service: action(service, hint)))
    except SomactlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def _json_default(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, Enum):
        return value.name.lower()
    if isinstance(value, (bytes, bytearray)):
        return buffer_to_hex(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, default=_json_default))


def _echo_shade(shade: Shade) -> None:
    typer.echo(
        f"{shade.address or shade.id}: {shade.name} ({shade.kind}), "
        f"position: {shade.position}%, battery: {shade.battery}%, rssi: {shade.rssi}"
    )


def _echo_device(device: DeviceFound) -> None:
    name = f" [{device.name}]" if device.name else ""
    manufacturer = f" by {device.manufacturer.name}" if device.manufacturer is not None else ""
    typer.echo(f"{device.address or device.id}:{name}{manufacturer}, rssi: {device.rssi}")


def _echo_trigger(trigger: Trigger) -> None:
    days = ", ".join(trigger.weekday_names) or "never"
    state = "enabled" if trigger.enabled else "disabled"
    morning = ", morning mode" if trigger.morning_mode else ""
    typer.echo(f"{trigger.id}: {trigger.describe()} on {days}, position: {trigger.position}%, {state}{morning}")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


DEVICE_ARGUMENT = typer.Argument(
    None,
    envvar=DEVICE_ENVVAR,
    show_envvar=True,
    help="Display name or mac address of the device",
)


@app.callback()
def main(
    ctx: typer.Context,
    rssi: int | None = typer.Option(
        None, "--rssi", "-r", min=-100, max=-50, help="Minimum RSSI (default -100)"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", min=1, max=120, help="Timeout in seconds (default 15)"
    ),
    debug: int = typer.Option(
        0, "--debug", "-D", count=True, help="Print debug messages; repeat to include raw buffers"
    ),
    config: Path | None = typer.Option(None, "--config", "-c", help="Settings file"),
    version: bool = typer.Option(
        False, "--version", "-V", callback=_version_callback, is_eager=True, help="Print version and exit"
    ),
) -> None:
    _configure_logging(debug)
    ctx.obj = Options(rssi=rssi, timeout=timeout, debug=debug, config=config)


@app.command("discover")
def discover(
    ctx: typer.Context,
    all_devices: bool = typer.Option(False, "--all", "-a", help="List all BLE devices, not only SOMA devices"),
) -> None:
    """Discover SOMA devices."""
    if all_devices:
        devices = _run(
            ctx,
            lambda service, _: service.discover_devices(service.client.timeout, on_found=_echo_device),
            require_device=False,
        )
        if not devices:
            typer.echo("No BLE devices found")
        return
    shades = _run(
        ctx,
        lambda service, _: service.discover(service.client.timeout, on_found=_echo_shade),
        require_device=False,
    )
    if not shades:
        typer.echo("No SOMA devices found")


@app.command("probe")
def probe(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """Read all readable characteristics of a device."""
    _echo_json(_run(ctx, lambda service, hint: service.probe(hint), device))


@app.command("info")
def info(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """Get device info."""
    _echo_shade(_run(ctx, lambda service, hint: service.info(hint), device))


@app.command("open")
def open_shade(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """Open device."""
    shade = _run(ctx, lambda service, hint: service.open(hint), device)
    typer.echo(f"{shade.position}%")


@app.command("close")
def close_shade(
    ctx: typer.Context,
    device: str | None = DEVICE_ARGUMENT,
    direction: str | None = typer.Argument(None, help="Direction for Tilt devices: down (default) or up"),
) -> None:
    """Close device."""
    if direction is None and device in ("up", "down"):
        direction, device = device, os.environ.get(DEVICE_ENVVAR)
    if direction not in (None, "up", "down"):
        raise typer.BadParameter(f"{direction}: invalid direction", param_hint="DIRECTION")
    up = direction == "up"
    shade = _run(ctx, lambda service, hint: service.close(hint, up=up), device)
    typer.echo(f"{shade.position}%")


@app.command("stop")
def stop(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """Stop current movement."""
    shade = _run(ctx, lambda service, hint: service.stop(hint), device)
    typer.echo(f"{shade.position}%")


@app.command("position")
def position(
    ctx: typer.Context,
    device: str | None = DEVICE_ARGUMENT,
    value: int | None = typer.Argument(None, min=-100, max=100, help="Position to set the device to"),
) -> None:
    """Get or set position.

    Tilt devices take -100..100; use `--` before negative values.
    """
    shade = _run(ctx, lambda service, hint: service.position(hint, value), device)
    if value is None:
        _echo_shade(shade)
    else:
        typer.echo(f"{shade.position}%")


@app.command("triggers")
def triggers(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """List the triggers of a device."""
    found = _run(ctx, lambda service, hint: service.triggers(hint), device)
    if not found:
        typer.echo("No triggers")
        return
    for trigger in found:
        _echo_trigger(trigger)


@app.command("config")
def config(ctx: typer.Context, device: str | None = DEVICE_ARGUMENT) -> None:
    """Show the shade configuration."""
    _echo_json(_run(ctx, lambda service, hint: service.config(hint), device))


def run() -> None:
    app()


if __name__ == "__main__":
    run()
