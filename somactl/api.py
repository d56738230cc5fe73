"""Stable public API for building tooling on top of somactl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from typing import Any

from somactl.core.client import BleClient
from somactl.core.definitions import (
    GATT_DEFINITIONS,
    CharacteristicDefinition,
    DefinitionRegistry,
    ServiceDefinition,
    ValueFormat,
)
from somactl.core.errors import (
    AdapterError,
    BleAdapterUnavailableError,
    BleDisconnectedError,
    BleError,
    BleOperationError,
    BleTimeoutError,
    CatalogueError,
    CharacteristicNotFoundError,
    DecodeError,
    DefinitionError,
    DeviceNotFoundError,
    DeviceSelectionError,
    EncodeError,
    ServiceNotFoundError,
    SettingsError,
    SomactlError,
    TriggerCommandError,
    UnknownCharacteristicError,
    UnknownServiceError,
    UnsupportedOperationError,
)
from somactl.core.loader import load_settings
from somactl.core.model import (
    ClientSettings,
    ConnectionState,
    DeviceFound,
    Notification,
    Request,
    Response,
    ScanState,
)
from somactl.core.peripheral import PeripheralDelegate
from somactl.soma.client import SOMA_SETTINGS, SomaClient, SomaPeripheral
from somactl.soma.frames import ShadeAdvertisement, ShadeConfig, Trigger, TriggerKind
from somactl.soma.service import Shade, SomaService
from somactl.transports.base import Adapter

__all__ = [
    "SomactlError",
    "AdapterError",
    "BleError",
    "BleAdapterUnavailableError",
    "BleTimeoutError",
    "BleDisconnectedError",
    "BleOperationError",
    "DefinitionError",
    "UnknownServiceError",
    "UnknownCharacteristicError",
    "UnsupportedOperationError",
    "ServiceNotFoundError",
    "CharacteristicNotFoundError",
    "DecodeError",
    "EncodeError",
    "CatalogueError",
    "SettingsError",
    "TriggerCommandError",
    "DeviceSelectionError",
    "DeviceNotFoundError",
    "ClientSettings",
    "ConnectionState",
    "ScanState",
    "DeviceFound",
    "Request",
    "Response",
    "Notification",
    "CharacteristicDefinition",
    "ServiceDefinition",
    "DefinitionRegistry",
    "ValueFormat",
    "GATT_DEFINITIONS",
    "Adapter",
    "BleClient",
    "PeripheralDelegate",
    "SomaClient",
    "SomaPeripheral",
    "Shade",
    "ShadeAdvertisement",
    "ShadeConfig",
    "Trigger",
    "TriggerKind",
    "Client",
]


class Client:
    """Public client for interacting with SOMA devices.

    A `Client` wraps adapter setup, device lookup and the shade operations
    behind a stable async API intended for third-party tools. Use it as an
    async context manager so connections are released on exit.
    """

    def __init__(
        self,
        *,
        adapter: Adapter | None = None,
        settings: ClientSettings | None = None,
    ) -> None:
        if settings is None:
            settings = load_settings(defaults=SOMA_SETTINGS).settings
        if adapter is None:
            from somactl.transports.bleak_adapter import BleakAdapter

            adapter = BleakAdapter()
        self._adapter = adapter
        self._service = SomaService(SomaClient(adapter, settings))

    @property
    def runtime_warnings(self) -> tuple[str, ...]:
        return self._service.runtime_warnings

    @property
    def client(self) -> SomaClient:
        return self._service.client

    async def __aenter__(self) -> Client:
        self._adapter.power_on()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._service.client.close()

    async def discover(self, duration: float | None = None) -> list[Shade]:
        return await self._service.discover(self.client.timeout if duration is None else duration)

    async def info(self, device: str) -> Shade:
        return await self._service.info(device)

    async def peripheral(self, device: str) -> SomaPeripheral:
        return await self._service.peripheral(device)

    async def set_position(self, device: str, position: int) -> Shade:
        return await self._service.position(device, position)

    async def open(self, device: str) -> Shade:
        return await self._service.open(device)

    async def close_shade(self, device: str, *, up: bool = False) -> Shade:
        return await self._service.close(device, up=up)

    async def stop(self, device: str) -> Shade:
        return await self._service.stop(device)

    async def probe(self, device: str) -> dict[str, dict[str, Any]]:
        return await self._service.probe(device)

    async def triggers(self, device: str) -> list[Trigger]:
        return await self._service.triggers(device)

    async def config(self, device: str) -> ShadeConfig:
        return await self._service.config(device)
