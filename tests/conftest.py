from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable

import pytest

from somactl.core.codec import uuid_to_string
from somactl.core.errors import AdapterError
from somactl.core.events import EventEmitter
from somactl.core.model import Advertisement, ClientSettings
from somactl.transports.base import POWERED_OFF, POWERED_ON


async def _hang() -> None:
    await asyncio.Event().wait()


class FakeCharacteristic(EventEmitter):
    def __init__(
        self,
        uuid: str,
        properties: Iterable[str] = ("read",),
        value: bytes = b"",
        on_write: Callable[[bytes], None] | None = None,
    ) -> None:
        super().__init__()
        self.uuid = uuid_to_string(uuid)
        self.properties = tuple(properties)
        self.value = value
        self.on_write = on_write
        self.failures: list[BaseException] = []
        self.hang = False
        self.hangs = 0
        self.reads = 0
        self.writes: list[tuple[bytes, bool]] = []
        self.subscriptions = 0

    async def _step(self) -> None:
        if self.failures:
            raise self.failures.pop(0)
        if self.hangs:
            self.hangs -= 1
            await _hang()
        if self.hang:
            await _hang()

    async def read(self) -> bytes:
        await self._step()
        self.reads += 1
        return self.value

    async def write(self, buffer: bytes, without_response: bool = False) -> None:
        await self._step()
        self.writes.append((bytes(buffer), without_response))
        if self.on_write is not None:
            self.on_write(bytes(buffer))

    async def subscribe(self) -> None:
        await self._step()
        self.subscriptions += 1

    def notify(self, buffer: bytes) -> None:
        self.emit("data", bytes(buffer), True)


class FakeService:
    def __init__(self, uuid: str, characteristics: Iterable[FakeCharacteristic] = ()) -> None:
        self.uuid = uuid_to_string(uuid)
        self.characteristics = list(characteristics)
        self.discover_calls = 0

    async def discover_characteristics(self, uuids):
        self.discover_calls += 1
        wanted = {uuid_to_string(u) for u in uuids}
        return [c for c in self.characteristics if c.uuid in wanted]


class FakePeripheral(EventEmitter):
    def __init__(
        self,
        id: str = "aabbccddeeff",
        address: str = "aa:bb:cc:dd:ee:ff",
        rssi: int = -60,
        services: Iterable[FakeService] = (),
        manufacturer_data: bytes | None = None,
        local_name: str | None = None,
        connectable: bool = True,
    ) -> None:
        super().__init__()
        self.id = id
        self.address = address
        self.rssi = rssi
        self.connectable = connectable
        self.advertisement = Advertisement(local_name=local_name, manufacturer_data=manufacturer_data)
        self.services = list(services)
        self.state = "disconnected"
        self.connect_failures: list[BaseException] = []
        self.connect_gate: asyncio.Event | None = None
        self.connect_calls = 0
        self.cancel_calls = 0
        self.discover_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_failures:
            raise self.connect_failures.pop(0)
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        self.state = "connected"
        self.emit("connect")

    def cancel_connect(self) -> None:
        self.cancel_calls += 1

    async def disconnect(self) -> None:
        self.drop()

    def drop(self) -> None:
        if self.state == "connected":
            self.state = "disconnected"
            self.emit("disconnect")

    async def discover_services(self, uuids):
        self.discover_calls += 1
        if self.state != "connected":
            raise AdapterError("not connected")
        wanted = {uuid_to_string(u) for u in uuids}
        return [s for s in self.services if s.uuid in wanted]

    async def discover_all(self):
        self.discover_calls += 1
        return list(self.services)


class FakeAdapter(EventEmitter):
    def __init__(self, state: str = POWERED_ON) -> None:
        super().__init__()
        self.state = state
        self.start_calls = 0
        self.stop_calls = 0
        self.allow_duplicates: bool | None = None

    def power_on(self) -> None:
        self.state = POWERED_ON
        self.emit("state_change", POWERED_ON)

    def power_off(self) -> None:
        self.state = POWERED_OFF
        self.emit("state_change", POWERED_OFF)

    async def start_scanning(self, allow_duplicates: bool = False) -> None:
        self.start_calls += 1
        self.allow_duplicates = allow_duplicates
        self.emit("scan_start")

    async def stop_scanning(self) -> None:
        self.stop_calls += 1
        self.emit("scan_stop")

    def discover(self, peripheral: FakePeripheral) -> None:
        self.emit("discover", peripheral)


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        timeout=0.2,
        scan_duration=30,
        connection_duration=60,
        retries=5,
        retry_delay=0,
        restart_delay=0,
    )


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()
