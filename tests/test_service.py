from __future__ import annotations

import asyncio
import contextlib
from dataclasses import replace

import pytest
from conftest import FakeCharacteristic, FakePeripheral, FakeService

from somactl.core.errors import DeviceNotFoundError
from somactl.core.model import DeviceFound, PlatformInfo
from somactl.soma.client import SomaClient
from somactl.soma.definitions import MOTOR_SERVICE, soma_uuid
from somactl.soma.frames import parse_manufacturer_data
from somactl.soma.service import Shade, SomaService, matches


def _advertisement(battery: int, position: int, name: bytes) -> bytes:
    return bytes([0x70, 0x03, 0x02, battery, position, position]) + name + b"\x00"


class FakeMotor:
    """Shade whose advertised position follows the target position it is sent."""

    def __init__(self, id: str, address: str, name: bytes, battery: int, position: int) -> None:
        self.battery = battery
        self.name = name
        self.target_state = FakeCharacteristic(
            soma_uuid("1526"), properties=("write",), on_write=self._on_target
        )
        self.control = FakeCharacteristic(soma_uuid("1530"), properties=("write",))
        self.peripheral = FakePeripheral(
            id=id,
            address=address,
            local_name="S",
            manufacturer_data=_advertisement(battery, position, name),
            services=[FakeService(MOTOR_SERVICE, [self.target_state, self.control])],
        )

    def _on_target(self, buffer: bytes) -> None:
        self.peripheral.advertisement = replace(
            self.peripheral.advertisement,
            manufacturer_data=_advertisement(self.battery, buffer[0], self.name),
        )


@contextlib.asynccontextmanager
async def advertising(adapter, *motors: FakeMotor):
    async def advertise() -> None:
        while True:
            for motor in motors:
                adapter.discover(motor.peripheral)
            await asyncio.sleep(0.01)

    task = asyncio.ensure_future(advertise())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@pytest.fixture
def bedroom() -> FakeMotor:
    return FakeMotor("bedroom", "aa:bb:cc:dd:ee:01", b"Bedroom", 0x55, 40)


@pytest.fixture
def kitchen() -> FakeMotor:
    return FakeMotor("kitchen", "aa:bb:cc:dd:ee:02", b"Kitchen", 0x8A, 50)


@pytest.fixture
def service(adapter, settings) -> SomaService:
    return SomaService(SomaClient(adapter, settings))


def test_matches_by_address_id_or_name(bedroom) -> None:
    device = DeviceFound(
        id="bedroom",
        address="AA:BB:CC:DD:EE:01",
        manufacturer=None,
        manufacturer_data=None,
        name=None,
        rssi=-60,
        data=parse_manufacturer_data(bedroom.peripheral.advertisement.manufacturer_data),
    )
    assert matches(device, "aa-bb-cc-dd-ee-01")
    assert not matches(device, "AA:BB:CC:DD:EE:02")
    assert matches(device, "BEDROOM")
    assert matches(device, "Bedroom")
    assert not matches(device, "Kitchen")


def test_unsupported_platform_warning(adapter, settings) -> None:
    client = SomaClient(adapter, settings)
    client.platform = PlatformInfo("Windows", "AMD64", "Windows")
    assert SomaService(client).runtime_warnings == (
        "Windows (AMD64): platform not supported, expect BLE failures.",
    )


@pytest.mark.asyncio
async def test_discover_reports_each_shade_once(adapter, service, bedroom, kitchen) -> None:
    reported = []
    async with advertising(adapter, bedroom, kitchen):
        shades = await service.discover(0.05, on_found=reported.append)

    assert shades == reported
    assert [shade.name for shade in shades] == ["Bedroom", "Kitchen"]
    assert shades[0] == Shade(
        id="bedroom",
        address="AA:BB:CC:DD:EE:01",
        name="Bedroom",
        tilt=False,
        position=40,
        battery=85,
        rssi=-60,
    )
    assert shades[1].kind == "Tilt"
    assert shades[1].position == 0
    await service.client.close()


@pytest.mark.asyncio
async def test_missing_device_times_out(adapter, service, bedroom) -> None:
    async with advertising(adapter, bedroom):
        with pytest.raises(DeviceNotFoundError, match="Nowhere"):
            await service.find("Nowhere", timeout=0.05)
    await service.client.close()


@pytest.mark.asyncio
async def test_info_and_position_query(adapter, service, bedroom) -> None:
    async with advertising(adapter, bedroom):
        shade = await service.info("Bedroom")
        queried = await service.position("aa:bb:cc:dd:ee:01")

    assert shade.position == 40
    assert queried == shade
    assert bedroom.peripheral.connect_calls == 0
    await service.client.close()


@pytest.mark.asyncio
async def test_open_reports_new_position(adapter, service, bedroom) -> None:
    async with advertising(adapter, bedroom):
        shade = await service.open("Bedroom")

    assert bedroom.target_state.writes == [(b"\x00", False)]
    assert shade.position == 0
    assert bedroom.peripheral.state == "disconnected"
    await service.client.close()


@pytest.mark.asyncio
async def test_close_tilt_device(adapter, service, kitchen) -> None:
    async with advertising(adapter, kitchen):
        down = await service.close("Kitchen")
        up = await service.close("Kitchen", up=True)

    assert kitchen.target_state.writes == [(b"\x64", False), (b"\x00", False)]
    assert down.position == 100
    assert up.position == -100
    await service.client.close()


@pytest.mark.asyncio
async def test_set_position_and_stop(adapter, service, bedroom) -> None:
    async with advertising(adapter, bedroom):
        moved = await service.position("Bedroom", 75)
        stopped = await service.stop("Bedroom")

    assert moved.position == 75
    assert stopped.position == 75
    assert bedroom.control.writes == [(b"\x00", False)]
    await service.client.close()
