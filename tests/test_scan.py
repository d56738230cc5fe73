from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from conftest import FakeAdapter, FakePeripheral

from somactl.core.client import BleClient
from somactl.core.model import ScanState
from somactl.transports.base import POWERED_OFF


def _scan_events(client: BleClient) -> list[tuple[str, bool]]:
    events: list[tuple[str, bool]] = []
    client.on("scan_start", lambda by_me: events.append(("scan_start", by_me)))
    client.on("scan_stop", lambda by_me: events.append(("scan_stop", by_me)))
    return events


def test_device_found_filters_weak_and_unconnectable(adapter, settings) -> None:
    client = BleClient(adapter, replace(settings, rssi=-85))
    found = []
    client.on("device_found", found.append)

    adapter.discover(FakePeripheral(id="near", rssi=-80, manufacturer_data=bytes.fromhex("700302640000")))
    adapter.discover(FakePeripheral(id="far", rssi=-90))
    adapter.discover(FakePeripheral(id="beacon", rssi=-40, connectable=False))

    assert [device.id for device in found] == ["near"]
    device = found[0]
    assert device.address == "AA:BB:CC:DD:EE:FF"
    assert device.manufacturer.name == "Wazombi Labs OÜ"
    assert device.rssi == -80


@pytest.mark.asyncio
async def test_search_started_by_client(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    events = _scan_events(client)

    await client.search()
    await client.search()

    assert client.scan_state is ScanState.SCANNING
    assert adapter.start_calls == 1
    assert events == [("scan_start", True)]
    await client.close()


@pytest.mark.asyncio
async def test_search_stops_after_duration(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    events = _scan_events(client)

    await client.search(duration=0.05)
    await asyncio.sleep(0.1)

    assert client.scan_state is ScanState.IDLE
    assert adapter.stop_calls == 1
    assert events == [("scan_start", True), ("scan_stop", True)]


@pytest.mark.asyncio
async def test_scan_by_another_client(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    events = _scan_events(client)

    adapter.emit("scan_start")
    await asyncio.sleep(0.05)
    adapter.emit("scan_stop")
    await asyncio.sleep(0.05)

    assert events == [("scan_start", False), ("scan_stop", False)]
    assert adapter.start_calls == 0
    assert client.scan_state is ScanState.IDLE


@pytest.mark.asyncio
async def test_continuous_scan_restarts_after_external_stop(adapter, settings) -> None:
    client = BleClient(adapter, replace(settings, scan_duration=0))
    events = _scan_events(client)

    await client.search()
    adapter.emit("scan_stop")
    await asyncio.sleep(0.05)

    assert adapter.start_calls == 2
    assert events == [("scan_start", True), ("scan_stop", False), ("scan_start", True)]
    assert client.scan_state is ScanState.SCANNING
    await client.close()


@pytest.mark.asyncio
async def test_timed_scan_does_not_restart(adapter, settings) -> None:
    client = BleClient(adapter, settings)

    await client.search()
    adapter.emit("scan_stop")
    await asyncio.sleep(0.05)

    assert adapter.start_calls == 1
    assert client.scan_state is ScanState.IDLE


@pytest.mark.asyncio
async def test_enabling_adapter_starts_search(settings) -> None:
    adapter = FakeAdapter(state=POWERED_OFF)
    client = BleClient(adapter, replace(settings, allow_duplicates=True))
    enabled = []
    disabled = []
    client.on("enabled", enabled.append)
    client.on("disabled", lambda: disabled.append(True))

    adapter.power_on()
    await asyncio.sleep(0.01)

    assert enabled == [client.platform]
    assert adapter.start_calls == 1
    assert adapter.allow_duplicates is True

    adapter.power_off()
    assert disabled == [True]
    assert client.scan_state is ScanState.IDLE


def test_delegate_registry_routes_fresh_handles(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    created = []
    client.on("peripheral", created.append)

    delegate = client.peripheral_delegate(FakePeripheral(id="shade"))
    fresh = FakePeripheral(id="shade")
    assert client.peripheral_delegate(fresh) is delegate
    assert delegate.peripheral is fresh
    assert created == [delegate]

    client.release(delegate)
    assert client.delegates() == []
    assert delegate.peripheral is None
    assert client.peripheral_delegate(fresh) is not delegate
