from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from somactl.core.errors import AdapterError
from somactl.transports import bleak_adapter
from somactl.transports.base import POWERED_ON
from somactl.transports.bleak_adapter import BleakAdapter, BleakPeripheral


def _detection(address: str, rssi: int = -60):
    device = SimpleNamespace(address=address, name="S")
    advertisement_data = SimpleNamespace(
        local_name="S",
        rssi=rssi,
        manufacturer_data={0x0370: bytes([0x02, 0x55, 40, 40]) + b"Bedroom\x00"},
    )
    return device, advertisement_data


def test_peripheral_from_advertisement() -> None:
    peripheral = BleakPeripheral(*_detection("AA:BB:CC:DD:EE:01"))
    assert peripheral.id == "aabbccddee01"
    assert peripheral.address == "AA:BB:CC:DD:EE:01"
    assert peripheral.advertisement.manufacturer_data[:2] == b"\x70\x03"
    assert peripheral.advertisement.local_name == "S"
    assert peripheral.state == "disconnected"

    # CoreBluetooth identifiers are not addresses.
    apple = BleakPeripheral(*_detection("1B2C3D4E-0000-1111-2222-333344445555"))
    assert apple.address == ""


def test_detection_suppresses_duplicates_unless_allowed() -> None:
    adapter = BleakAdapter()
    discovered = []
    adapter.on("discover", discovered.append)

    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:01", rssi=-60))
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:01", rssi=-50))
    assert len(discovered) == 1

    adapter._allow_duplicates = True
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:01", rssi=-40))
    assert len(discovered) == 2
    assert discovered[0] is discovered[1]
    assert discovered[1].rssi == -40


def test_power_on_reports_state_once() -> None:
    adapter = BleakAdapter()
    states = []
    adapter.on("state_change", states.append)
    adapter.power_on()
    adapter.power_on()
    assert states == [POWERED_ON]


@pytest.mark.asyncio
async def test_discovery_requires_connection() -> None:
    peripheral = BleakPeripheral(*_detection("AA:BB:CC:DD:EE:01"))
    with pytest.raises(AdapterError, match="not connected"):
        await peripheral.discover_all()


class GatedClient:
    """Stands in for `BleakClient`; `connect` waits for its gate."""

    instances: list[GatedClient] = []

    def __init__(self, device, disconnected_callback=None) -> None:
        self.gate = asyncio.Event()
        self.connected = False
        self._disconnected_callback = disconnected_callback
        self.services = []
        GatedClient.instances.append(self)

    async def connect(self) -> None:
        await self.gate.wait()
        self.connected = True

    async def disconnect(self) -> None:
        if self.connected:
            self.connected = False
            self._disconnected_callback(self)


@pytest.fixture
def gated_clients(monkeypatch: pytest.MonkeyPatch) -> list[GatedClient]:
    GatedClient.instances = []
    monkeypatch.setattr(bleak_adapter, "BleakClient", GatedClient)
    return GatedClient.instances


@pytest.mark.asyncio
async def test_superseded_connect_is_disconnected(gated_clients) -> None:
    peripheral = BleakPeripheral(*_detection("AA:BB:CC:DD:EE:01"))
    events = []
    peripheral.on("connect", lambda: events.append("connect"))
    peripheral.on("disconnect", lambda: events.append("disconnect"))

    first = asyncio.ensure_future(peripheral.connect())
    await asyncio.sleep(0)
    second = asyncio.ensure_future(peripheral.connect())
    await asyncio.sleep(0)
    stale, current = gated_clients

    current.gate.set()
    await second
    assert peripheral.state == "connected"

    stale.gate.set()
    await first
    assert not stale.connected
    assert current.connected
    assert peripheral.state == "connected"
    assert events == ["connect"]

    await peripheral.disconnect()
    assert not current.connected
    assert events == ["connect", "disconnect"]


def test_unseen_peripherals_are_forgotten() -> None:
    adapter = BleakAdapter(forget_after=60)
    now = [0.0]
    adapter._clock = lambda: now[0]
    adapter._last_pruned = 0.0
    discovered = []
    adapter.on("discover", discovered.append)

    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:01"))
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:02"))
    now[0] = 50.0
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:02"))
    connected = discovered[0]
    connected._connected = True

    now[0] = 100.0
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:03"))
    assert set(adapter._peripherals) == {"aabbccddee01", "aabbccddee02", "aabbccddee03"}

    now[0] = 200.0
    adapter._on_detection(*_detection("AA:BB:CC:DD:EE:04"))
    assert set(adapter._peripherals) == {"aabbccddee01", "aabbccddee04"}
    assert adapter._peripherals["aabbccddee01"] is connected
