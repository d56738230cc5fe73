from __future__ import annotations

import asyncio

import pytest
from conftest import FakeAdapter, FakePeripheral

from somactl.core.client import BleClient
from somactl.core.errors import (
    AdapterError,
    BleAdapterUnavailableError,
    BleDisconnectedError,
    BleOperationError,
    BleTimeoutError,
)
from somactl.core.model import ConnectionState, PlatformInfo, Request
from somactl.core.peripheral import PeripheralDelegate
from somactl.transports.base import POWERED_OFF


class Recorder:
    def __init__(self, emitter, *events: str) -> None:
        self.events: list[tuple[str, object]] = []
        for event in events:
            emitter.on(event, lambda *args, event=event: self.events.append((event, args[0] if args else None)))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


async def _hang(cancelled: list[bool]) -> None:
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        cancelled.append(True)
        raise


async def _started() -> None:
    # Let the pending operation run up to its first suspension point.
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_disabled_adapter_fails_without_request(settings) -> None:
    client = BleClient(FakeAdapter(state=POWERED_OFF), settings)
    recorder = Recorder(client, "request", "response", "error")
    started = []

    async def operation() -> None:
        started.append(True)

    with pytest.raises(BleAdapterUnavailableError) as excinfo:
        await client.execute(Request("start_scanning"), operation())

    assert not started
    assert excinfo.value.request.id == 1
    assert recorder.names() == ["error"]


@pytest.mark.asyncio
async def test_client_request_is_numbered_and_reported(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    recorder = Recorder(client, "request", "response", "error")

    async def operation() -> bytes:
        return b"\x01\x02"

    first = await client.execute(Request("start_scanning"), operation())
    second = await client.execute(Request("stop_scanning"), operation())

    assert (first.request.id, second.request.id) == (1, 2)
    assert first.buffer == b"\x01\x02"
    assert first.parsed_value == "0x01 02"
    assert recorder.names() == ["request", "response", "request", "response"]


@pytest.mark.asyncio
async def test_timeout_cancels_operation(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    cancelled: list[bool] = []

    with pytest.raises(BleTimeoutError) as excinfo:
        await client.execute(Request("start_scanning"), _hang(cancelled), timeout=0.05)
    await asyncio.sleep(0)

    assert excinfo.value.request.kind == "start_scanning"
    assert cancelled == [True]


@pytest.mark.asyncio
async def test_adapter_error_becomes_operation_error(adapter, settings) -> None:
    client = BleClient(adapter, settings)

    async def operation() -> None:
        raise AdapterError("not permitted")

    with pytest.raises(BleOperationError, match="not permitted") as excinfo:
        await client.execute(Request("start_scanning"), operation())
    assert isinstance(excinfo.value.__cause__, AdapterError)


@pytest.mark.asyncio
async def test_adapter_turned_off_fails_pending_request(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    cancelled: list[bool] = []

    task = asyncio.ensure_future(client.execute(Request("start_scanning"), _hang(cancelled)))
    await _started()
    adapter.power_off()

    with pytest.raises(BleAdapterUnavailableError):
        await task
    await asyncio.sleep(0)
    assert cancelled == [True]
    assert not client.enabled


@pytest.mark.asyncio
async def test_disconnect_fails_pending_request(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    peripheral = FakePeripheral()
    delegate = PeripheralDelegate(client, peripheral)
    await delegate.connect()
    cancelled: list[bool] = []

    task = asyncio.ensure_future(delegate.execute(Request("read"), _hang(cancelled)))
    await _started()
    peripheral.drop()

    with pytest.raises(BleDisconnectedError):
        await task
    await asyncio.sleep(0)
    assert cancelled == [True]
    assert delegate.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_request_resolves_once(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    peripheral = FakePeripheral()
    delegate = PeripheralDelegate(client, peripheral)
    await delegate.connect()
    recorder = Recorder(delegate, "response", "error")

    async def operation() -> bytes:
        peripheral.drop()
        return b"\x01"

    with pytest.raises(BleDisconnectedError):
        await delegate.execute(Request("read"), operation())
    await asyncio.sleep(0.05)

    assert recorder.names() == ["error"]


@pytest.mark.asyncio
async def test_connect_timeout_cancels_attempt(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    client.platform = PlatformInfo("Linux", "x86_64", "Linux", supported=True)
    peripheral = FakePeripheral()
    peripheral.connect_gate = asyncio.Event()
    delegate = PeripheralDelegate(client, peripheral)

    with pytest.raises(BleTimeoutError):
        await delegate.connect()

    assert peripheral.cancel_calls == 1
    assert delegate.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_timeout_without_cancel_support_leaves_attempt_running(adapter, settings) -> None:
    client = BleClient(adapter, settings)
    client.platform = PlatformInfo("Darwin", "arm64", "macOS", supported=True, cancel_connect_supported=False)
    peripheral = FakePeripheral()
    peripheral.connect_gate = asyncio.Event()
    delegate = PeripheralDelegate(client, peripheral)
    connected = []
    delegate.on("connected", connected.append)

    with pytest.raises(BleTimeoutError):
        await delegate.connect()
    assert peripheral.cancel_calls == 0
    assert delegate.state is ConnectionState.DISCONNECTED

    peripheral.connect_gate.set()
    await asyncio.sleep(0.01)
    assert delegate.state is ConnectionState.CONNECTED
    assert connected == [-60]
    await delegate.disconnect()
