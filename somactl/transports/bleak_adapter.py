"""Native adapter backend built on bleak."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Iterator, Sequence

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from somactl.core.codec import pack, uuid_to_string
from somactl.core.errors import AdapterError
from somactl.core.events import EventEmitter
from somactl.core.model import Advertisement
from somactl.transports.base import POWERED_OFF, POWERED_ON

LOGGER = logging.getLogger(__name__)


@contextlib.contextmanager
def _adapter_errors(description: str) -> Iterator[None]:
    try:
        yield
    except (BleakError, OSError, asyncio.TimeoutError) as exc:
        raise AdapterError(f"{description}: {exc or type(exc).__name__}") from exc


def _advertisement(advertisement_data: AdvertisementData) -> Advertisement:
    manufacturer_data = None
    for company_id, payload in advertisement_data.manufacturer_data.items():
        manufacturer_data = pack("<H", company_id) + bytes(payload)
        break
    return Advertisement(
        local_name=advertisement_data.local_name,
        manufacturer_data=manufacturer_data,
    )


def _peripheral_id(address: str) -> str:
    return address.replace(":", "").replace("-", "").lower()


class BleakCharacteristic(EventEmitter):
    def __init__(self, client: BleakClient, characteristic: BleakGATTCharacteristic) -> None:
        super().__init__()
        self._client = client
        self._characteristic = characteristic
        self.uuid = uuid_to_string(characteristic.uuid)
        self.properties = tuple(characteristic.properties)

    async def read(self) -> bytes:
        with _adapter_errors(f"read {self.uuid}"):
            return bytes(await self._client.read_gatt_char(self._characteristic))

    async def write(self, buffer: bytes, without_response: bool = False) -> None:
        with _adapter_errors(f"write {self.uuid}"):
            await self._client.write_gatt_char(
                self._characteristic,
                buffer,
                response=not without_response,
            )

    async def subscribe(self) -> None:
        with _adapter_errors(f"subscribe {self.uuid}"):
            await self._client.start_notify(self._characteristic, self._on_notify)

    def _on_notify(self, _: BleakGATTCharacteristic, data: bytearray) -> None:
        self.emit("data", bytes(data), True)


class BleakService:
    def __init__(self, client: BleakClient, service: BleakGATTService) -> None:
        self.uuid = uuid_to_string(service.uuid)
        self.characteristics = [BleakCharacteristic(client, c) for c in service.characteristics]

    async def discover_characteristics(self, uuids: Sequence[str]) -> list[BleakCharacteristic]:
        wanted = {uuid_to_string(u) for u in uuids}
        return [c for c in self.characteristics if not wanted or c.uuid in wanted]


class BleakPeripheral(EventEmitter):
    """One advertised device; connections go through a fresh `BleakClient`."""

    def __init__(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        super().__init__()
        self.id = _peripheral_id(device.address)
        # CoreBluetooth hands out UUIDs instead of MAC addresses.
        self.address = device.address if ":" in device.address else ""
        self.connectable = True
        self._device = device
        self.rssi = advertisement_data.rssi
        self.advertisement = _advertisement(advertisement_data)
        self._client: BleakClient | None = None
        self._connect_task: asyncio.Task[object] | None = None
        self._services: list[BleakService] | None = None
        self._connected = False

    @property
    def state(self) -> str:
        return "connected" if self._connected else "disconnected"

    def update(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        self._device = device
        self.rssi = advertisement_data.rssi
        self.advertisement = _advertisement(advertisement_data)

    @property
    def idle(self) -> bool:
        """Neither connected nor connecting."""
        return not self._connected and self._connect_task is None

    async def connect(self) -> None:
        self._services = None
        client = BleakClient(self._device, disconnected_callback=self._on_disconnected)
        self._client = client
        task = asyncio.current_task()
        self._connect_task = task
        try:
            with _adapter_errors(f"connect {self.id}"):
                await client.connect()
        finally:
            if self._connect_task is task:
                self._connect_task = None
        if self._client is not client:
            # A later attempt replaced this one; drop the late link.
            LOGGER.debug("%s: dropping superseded connection", self.id)
            with _adapter_errors(f"disconnect {self.id}"):
                await client.disconnect()
            return
        self._connected = True
        self.emit("connect")

    def cancel_connect(self) -> None:
        if self._connect_task is not None:
            self._connect_task.cancel()

    async def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        with _adapter_errors(f"disconnect {self.id}"):
            await client.disconnect()
        if self._connected:
            self._on_disconnected(client)

    def _on_disconnected(self, client: BleakClient) -> None:
        if client is not self._client or not self._connected:
            return
        self._connected = False
        self._services = None
        self.emit("disconnect")

    def _bound_services(self) -> list[BleakService]:
        client = self._client
        if client is None or not self._connected:
            raise AdapterError(f"{self.id}: not connected")
        if self._services is None:
            with _adapter_errors(f"services of {self.id}"):
                self._services = [BleakService(client, s) for s in client.services]
        return self._services

    async def discover_services(self, uuids: Sequence[str]) -> list[BleakService]:
        wanted = {uuid_to_string(u) for u in uuids}
        return [s for s in self._bound_services() if not wanted or s.uuid in wanted]

    async def discover_all(self) -> list[BleakService]:
        return list(self._bound_services())


class BleakAdapter(EventEmitter):
    """Adapter backend for the default bleak adapter.

    Peripherals not advertised for `forget_after` seconds are forgotten
    unless connected or connecting.
    """

    def __init__(self, forget_after: float = 300.0) -> None:
        super().__init__()
        self.state = "unknown"
        self.forget_after = forget_after
        self._clock = time.monotonic
        self._scanner: BleakScanner | None = None
        self._peripherals: dict[str, BleakPeripheral] = {}
        self._last_seen: dict[str, float] = {}
        self._last_pruned = self._clock()
        self._seen: set[str] = set()
        self._allow_duplicates = False

    def power_on(self) -> None:
        """Report the adapter as available.

        bleak has no adapter state events; a missing adapter surfaces as an
        error on the first scan.
        """
        self._set_state(POWERED_ON)

    def power_off(self) -> None:
        self._set_state(POWERED_OFF)

    def _set_state(self, state: str) -> None:
        if state != self.state:
            self.state = state
            self.emit("state_change", state)

    async def start_scanning(self, allow_duplicates: bool = False) -> None:
        self._allow_duplicates = allow_duplicates
        self._seen.clear()
        if self._scanner is None:
            self._scanner = BleakScanner(detection_callback=self._on_detection)
        with _adapter_errors("start scanning"):
            await self._scanner.start()
        self.emit("scan_start")

    async def stop_scanning(self) -> None:
        if self._scanner is None:
            return
        with _adapter_errors("stop scanning"):
            await self._scanner.stop()
        self.emit("scan_stop")

    def _prune(self, now: float) -> None:
        self._last_pruned = now
        for peripheral_id, seen in list(self._last_seen.items()):
            if now - seen > self.forget_after and self._peripherals[peripheral_id].idle:
                del self._peripherals[peripheral_id]
                del self._last_seen[peripheral_id]
                self._seen.discard(peripheral_id)

    def _on_detection(self, device: BLEDevice, advertisement_data: AdvertisementData) -> None:
        now = self._clock()
        if now - self._last_pruned > self.forget_after:
            self._prune(now)
        peripheral_id = _peripheral_id(device.address)
        self._last_seen[peripheral_id] = now
        peripheral = self._peripherals.get(peripheral_id)
        if peripheral is None:
            peripheral = BleakPeripheral(device, advertisement_data)
            self._peripherals[peripheral_id] = peripheral
        else:
            peripheral.update(device, advertisement_data)
        if not self._allow_duplicates:
            if peripheral_id in self._seen:
                return
            self._seen.add(peripheral_id)
        self.emit("discover", peripheral)
