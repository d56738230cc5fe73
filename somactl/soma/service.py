"""Service layer used by the CLI and the public API."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from somactl.core.codec import normalize_address
from somactl.core.errors import DeviceNotFoundError
from somactl.core.model import DeviceFound, PlatformInfo
from somactl.soma.client import SomaClient, SomaPeripheral
from somactl.soma.frames import ShadeConfig, Trigger

_MAC_RE = re.compile(r"^[0-9A-F]{2}(?:[:-][0-9A-F]{2}){5}$", re.IGNORECASE)


@dataclass(frozen=True)
class Shade:
    id: str
    address: str | None
    name: str
    tilt: bool
    position: int
    battery: int
    rssi: int

    @property
    def kind(self) -> str:
        return "Tilt" if self.tilt else "Smart Shades"

    @classmethod
    def from_device(cls, device: DeviceFound) -> Shade:
        data = device.data
        return cls(
            id=device.id,
            address=device.address,
            name=data.display_name or device.name or device.id,
            tilt=data.supports_tilt,
            position=data.current_position,
            battery=data.battery,
            rssi=device.rssi,
        )


def matches(device: DeviceFound, hint: str) -> bool:
    """Match a shade by MAC address, peripheral id or display name."""
    if _MAC_RE.match(hint):
        return device.address == normalize_address(hint)
    if hint.lower() == device.id.lower():
        return True
    return device.data is not None and device.data.display_name == hint


class SomaService:
    def __init__(self, client: SomaClient) -> None:
        self.client = client
        self.runtime_warnings = _runtime_warnings(client.platform)

    async def discover(
        self,
        duration: float,
        on_found: Callable[[Shade], Any] | None = None,
    ) -> list[Shade]:
        """Collect the shades seen within `duration` seconds."""
        found: dict[str, Shade] = {}

        def on_shade(device: DeviceFound) -> None:
            if device.id in found:
                return
            shade = Shade.from_device(device)
            found[device.id] = shade
            if on_found is not None:
                on_found(shade)

        self.client.on("shade_found", on_shade)
        try:
            await self.client.search()
            await asyncio.sleep(duration)
        finally:
            self.client.off("shade_found", on_shade)
        return list(found.values())

    async def discover_devices(
        self,
        duration: float,
        on_found: Callable[[DeviceFound], Any] | None = None,
    ) -> list[DeviceFound]:
        """Collect every BLE device seen within `duration` seconds, SOMA or not."""
        found: dict[str, DeviceFound] = {}

        def on_device(device: DeviceFound) -> None:
            if device.id in found:
                return
            found[device.id] = device
            if on_found is not None:
                on_found(device)

        self.client.on("device_found", on_device)
        try:
            await self.client.search()
            await asyncio.sleep(duration)
        finally:
            self.client.off("device_found", on_device)
        return list(found.values())

    async def find(self, hint: str, timeout: float | None = None) -> DeviceFound:
        timeout = self.client.timeout if timeout is None else timeout
        future: asyncio.Future[DeviceFound] = asyncio.get_running_loop().create_future()

        def on_shade(device: DeviceFound) -> None:
            if not future.done() and matches(device, hint):
                future.set_result(device)

        self.client.on("shade_found", on_shade)
        try:
            await self.client.search()
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise DeviceNotFoundError(f"{hint}: device not found") from None
        finally:
            self.client.off("shade_found", on_shade)

    async def info(self, hint: str) -> Shade:
        return Shade.from_device(await self.find(hint))

    async def peripheral(self, hint: str) -> SomaPeripheral:
        device = await self.find(hint)
        return self.client.peripheral_delegate(
            device.peripheral,
            venetian_mode=device.data.supports_tilt,
        )

    async def refresh(self, delegate: SomaPeripheral) -> Shade:
        """Disconnect and wait for the next advertisement, which carries the position."""
        await delegate.disconnect()
        return Shade.from_device(await self.find(delegate.address or delegate.id))

    async def open(self, hint: str) -> Shade:
        delegate = await self.peripheral(hint)
        await delegate.set_position(0)
        return await self.refresh(delegate)

    async def close(self, hint: str, up: bool = False) -> Shade:
        delegate = await self.peripheral(hint)
        if delegate.venetian_mode:
            await delegate.set_position(-100 if up else 100)
        else:
            await delegate.set_position(100)
        return await self.refresh(delegate)

    async def stop(self, hint: str) -> Shade:
        delegate = await self.peripheral(hint)
        await delegate.stop()
        return await self.refresh(delegate)

    async def position(self, hint: str, position: int | None = None) -> Shade:
        if position is None:
            return await self.info(hint)
        delegate = await self.peripheral(hint)
        await delegate.set_position(position)
        return await self.refresh(delegate)

    async def probe(self, hint: str) -> dict[str, dict[str, Any]]:
        delegate = await self.peripheral(hint)
        values = await delegate.read_all()
        await delegate.disconnect()
        return values

    async def triggers(self, hint: str) -> list[Trigger]:
        delegate = await self.peripheral(hint)
        triggers = await delegate.read_triggers()
        await delegate.disconnect()
        return triggers

    async def config(self, hint: str) -> ShadeConfig:
        delegate = await self.peripheral(hint)
        config = await delegate.read_config()
        await delegate.disconnect()
        return config


def _runtime_warnings(platform: PlatformInfo) -> tuple[str, ...]:
    warnings: list[str] = []
    if not platform.supported:
        warnings.append(f"{platform.name} ({platform.machine}): platform not supported, expect BLE failures.")
    return tuple(warnings)
