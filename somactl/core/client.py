"""BLE client: adapter state, scan controller and the request core.

Every primitive operation, adapter or peripheral level, goes through
`BleClient.execute`, which enforces the timeout, adapter-disabled and
peripheral-disconnected guards and resolves each request exactly once.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import platform
from collections.abc import Awaitable
from dataclasses import replace
from pathlib import Path
from typing import Any

from somactl.core.codec import (
    buffer_to_hex,
    buffer_to_manufacturer,
    normalize_address,
    uuid_to_string,
)
from somactl.core.errors import (
    AdapterError,
    BleAdapterUnavailableError,
    BleDisconnectedError,
    BleError,
    BleOperationError,
    BleTimeoutError,
    DecodeError,
)
from somactl.core.events import EventEmitter
from somactl.core.model import (
    ClientSettings,
    ConnectionState,
    DeviceFound,
    Notification,
    PlatformInfo,
    Request,
    Response,
    ScanState,
)
from somactl.core.peripheral import PeripheralDelegate, discard
from somactl.transports.base import POWERED_ON, Adapter, NativePeripheral

LOGGER = logging.getLogger(__name__)

_RASPBERRY_PI_PROBE = Path("/usr/bin/vcgencmd")

# (state, native event) -> (new state, caused by our own request)
_SCAN_TRANSITIONS: dict[tuple[ScanState, str], tuple[ScanState, bool]] = {
    (ScanState.IDLE, "scan_start"): (ScanState.SCANNING, False),
    (ScanState.STARTING, "scan_start"): (ScanState.SCANNING, True),
    (ScanState.STARTING, "scan_stop"): (ScanState.IDLE, False),
    (ScanState.SCANNING, "scan_stop"): (ScanState.IDLE, False),
    (ScanState.STOPPING, "scan_stop"): (ScanState.IDLE, True),
}


def detect_platform() -> PlatformInfo:
    system = platform.system()
    machine = platform.machine()
    if system == "Darwin":
        return PlatformInfo(
            system,
            machine,
            "macOS",
            supported=True,
            cancel_connect_supported=False,
            disconnect_after_operation=True,
        )
    if system == "Linux":
        if _RASPBERRY_PI_PROBE.exists():
            return PlatformInfo(system, machine, "Raspberry Pi OS", supported=True)
        return PlatformInfo(system, machine, "Linux", supported=True)
    return PlatformInfo(system, machine, system or "unknown")


def _make_response(request: Request, result: Any) -> Response:
    if isinstance(result, Notification):
        return Response(request, result, result.buffer, result.parsed_value)
    if isinstance(result, (bytes, bytearray)):
        buffer = bytes(result)
        if not buffer:
            return Response(request, result, buffer)
        delegate = request.characteristic
        if delegate is None:
            return Response(request, result, buffer, buffer_to_hex(buffer))
        try:
            return Response(request, result, buffer, delegate.decode(buffer))
        except DecodeError as exc:
            return Response(request, result, buffer, decode_error=exc)
    if isinstance(result, (list, tuple)):
        return Response(
            request,
            result,
            parsed_value=[uuid_to_string(getattr(item, "uuid", None)) or item for item in result],
        )
    return Response(request, result)


class BleClient(EventEmitter):
    """Client for the local BLE adapter.

    Events: `enabled(PlatformInfo)`, `disabled`, `scan_start(by_me)`,
    `scan_stop(by_me)`, `device_found(DeviceFound)`, `peripheral(delegate)`
    when a delegate is created, and `request`, `response`, `error` for
    adapter level requests.
    """

    peripheral_delegate_class: type[PeripheralDelegate] = PeripheralDelegate

    def __init__(self, adapter: Adapter, settings: ClientSettings | None = None) -> None:
        super().__init__()
        settings = settings or ClientSettings()
        self.adapter = adapter
        self.rssi = settings.rssi
        self.timeout = settings.timeout
        self.scan_duration = settings.scan_duration
        self.connection_duration = settings.connection_duration
        self.retries = settings.retries
        self.retry_delay = settings.retry_delay
        self.restart_delay = settings.restart_delay
        self.allow_duplicates = settings.allow_duplicates
        self.platform = detect_platform()
        self.scan_state = ScanState.IDLE
        self._adapter_state = adapter.state
        self._scan_timer: asyncio.TimerHandle | None = None
        self._request_ids = itertools.count(1)
        self._delegates: dict[str, PeripheralDelegate] = {}
        adapter.on("state_change", self._on_state_change)
        adapter.on("scan_start", self._on_scan_start)
        adapter.on("scan_stop", self._on_scan_stop)
        adapter.on("discover", self._on_discover)
        adapter.on("warning", self._on_warning)

    @property
    def enabled(self) -> bool:
        return self._adapter_state == POWERED_ON

    # Adapter events.

    def _on_state_change(self, state: str) -> None:
        was_enabled = self.enabled
        self._adapter_state = state
        if self.enabled:
            if not was_enabled:
                LOGGER.debug("adapter %s on %s", state, self.platform.name)
                self.emit("enabled", self.platform)
                self.spawn(self.search())
            return
        LOGGER.debug("adapter %s", state)
        self.scan_state = ScanState.IDLE
        self._cancel_scan_timer()
        if was_enabled:
            self.emit("disabled")

    def _on_warning(self, message: str) -> None:
        LOGGER.warning("adapter: %s", message)

    def _on_scan_start(self) -> None:
        self._scan_transition("scan_start")

    def _on_scan_stop(self) -> None:
        self._scan_transition("scan_stop")

    def _on_discover(self, peripheral: NativePeripheral) -> None:
        delegate = self._delegates.get(peripheral.id)
        if delegate is not None:
            if delegate.peripheral is not peripheral and delegate.state is ConnectionState.DISCONNECTED:
                delegate.peripheral = peripheral
            if delegate.address is None:
                delegate.address = normalize_address(peripheral.address)
        if not peripheral.connectable or peripheral.rssi < self.rssi:
            return
        advertisement = peripheral.advertisement
        self.emit(
            "device_found",
            DeviceFound(
                id=peripheral.id,
                address=normalize_address(peripheral.address),
                manufacturer=buffer_to_manufacturer(advertisement.manufacturer_data),
                manufacturer_data=advertisement.manufacturer_data,
                name=advertisement.local_name,
                rssi=peripheral.rssi,
                peripheral=peripheral,
            ),
        )

    # Scan controller.

    def _scan_transition(self, event: str) -> None:
        transition = _SCAN_TRANSITIONS.get((self.scan_state, event))
        if transition is None:
            LOGGER.debug("ignore %s while %s", event, self.scan_state.value)
            return
        self.scan_state, by_me = transition
        if self.scan_state is ScanState.SCANNING:
            LOGGER.debug("scanning started%s", "" if by_me else " by another client")
            self.emit("scan_start", by_me)
            if by_me and self.scan_duration > 0:
                loop = asyncio.get_running_loop()
                self._scan_timer = loop.call_later(self.scan_duration, self._on_scan_timeout)
            return
        self._cancel_scan_timer()
        LOGGER.debug("scanning stopped%s", "" if by_me else " by adapter")
        self.emit("scan_stop", by_me)
        if not by_me and self.scan_duration == 0 and self.enabled:
            self.spawn(self._restart_search())

    def _cancel_scan_timer(self) -> None:
        if self._scan_timer is not None:
            self._scan_timer.cancel()
            self._scan_timer = None

    def _on_scan_timeout(self) -> None:
        self._scan_timer = None
        self.spawn(self.stop_search())

    async def _restart_search(self) -> None:
        await asyncio.sleep(self.restart_delay)
        await self.search()

    async def search(self, duration: float | None = None, allow_duplicates: bool | None = None) -> None:
        """Start scanning; `duration` 0 scans continuously."""
        if self.scan_state in (ScanState.STARTING, ScanState.SCANNING):
            return
        if duration is not None:
            self.scan_duration = duration
        if allow_duplicates is not None:
            self.allow_duplicates = allow_duplicates
        self._cancel_scan_timer()
        self.scan_state = ScanState.STARTING
        try:
            await self.execute(
                Request("start_scanning"),
                self.adapter.start_scanning(self.allow_duplicates),
            )
        except BaseException:
            if self.scan_state is ScanState.STARTING:
                self.scan_state = ScanState.IDLE
            raise
        if self.scan_state is ScanState.STARTING:
            self._scan_transition("scan_start")

    async def stop_search(self) -> None:
        if self.scan_state is not ScanState.SCANNING:
            return
        self._cancel_scan_timer()
        self.scan_state = ScanState.STOPPING
        try:
            await self.execute(Request("stop_scanning"), self.adapter.stop_scanning())
        except BaseException:
            if self.scan_state is ScanState.STOPPING:
                self.scan_state = ScanState.SCANNING
            raise
        if self.scan_state is ScanState.STOPPING:
            self._scan_transition("scan_stop")

    # Peripheral delegates.

    def peripheral_delegate(self, peripheral: NativePeripheral) -> PeripheralDelegate:
        """Return the delegate for `peripheral`, creating it on first use."""
        delegate = self._delegates.get(peripheral.id)
        if delegate is None:
            delegate = self.peripheral_delegate_class(self, peripheral)
            self._delegates[peripheral.id] = delegate
            self.emit("peripheral", delegate)
        elif delegate.state is ConnectionState.DISCONNECTED:
            delegate.peripheral = peripheral
        return delegate

    def delegates(self) -> list[PeripheralDelegate]:
        return list(self._delegates.values())

    def release(self, delegate: PeripheralDelegate) -> None:
        if self._delegates.get(delegate.id) is delegate:
            del self._delegates[delegate.id]
        delegate.destroy()

    async def close(self) -> None:
        """Stop scanning, disconnect and release all peripherals."""
        try:
            await self.stop_search()
        except BleError as exc:
            LOGGER.debug("stop scanning: %s", exc)
        for delegate in self.delegates():
            try:
                await delegate.disconnect()
            except BleError as exc:
                LOGGER.debug("%s: disconnect: %s", delegate.id, exc)
            self.release(delegate)
        self._cancel_scan_timer()
        self.cancel_tasks()

    # Request core.

    def _cancel_connect(self, request: Request) -> None:
        delegate = request.peripheral
        if delegate is None or delegate.peripheral is None:
            return
        try:
            delegate.peripheral.cancel_connect()
        except AdapterError as exc:
            LOGGER.debug("%s: cancel connect: %s", delegate.id, exc)

    async def execute(
        self,
        request: Request,
        operation: Awaitable[Any],
        timeout: float | None = None,
    ) -> Response:
        """Await `operation` on behalf of `request`.

        Requests without a peripheral are numbered and reported here;
        peripheral requests are numbered and reported by their delegate.
        """
        timeout = self.timeout if timeout is None else timeout
        delegate = request.peripheral
        client_scoped = delegate is None
        if client_scoped:
            request = replace(request, id=next(self._request_ids))
        if not self.enabled:
            discard(operation)
            error = BleAdapterUnavailableError("bluetooth disabled", request)
            if client_scoped:
                self.emit("error", error)
            raise error
        if client_scoped:
            self.emit("request", request)

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[Any] = loop.create_future()
        task = asyncio.ensure_future(operation)

        def settle(error: BaseException | None = None, result: Any = None) -> bool:
            if outcome.done():
                return False
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(result)
            return True

        def on_timeout() -> None:
            if not settle(BleTimeoutError(f"no response in {timeout:g}s", request)):
                return
            if request.kind == "connect":
                if not self.platform.cancel_connect_supported:
                    # The attempt resolves later and its outcome is dropped.
                    return
                self._cancel_connect(request)
            task.cancel()

        def on_disabled(*_: Any) -> None:
            if settle(BleAdapterUnavailableError("bluetooth disabled", request)):
                task.cancel()

        def on_disconnected(*_: Any) -> None:
            if settle(BleDisconnectedError("unexpected disconnect", request)):
                task.cancel()

        def on_done(done: asyncio.Future[Any]) -> None:
            if done.cancelled():
                settle(BleOperationError("cancelled", request))
                return
            exc = done.exception()
            if exc is None:
                settle(result=done.result())
            elif isinstance(exc, AdapterError):
                error = BleOperationError(str(exc), request)
                error.__cause__ = exc
                settle(error)
            else:
                settle(exc)

        timer = loop.call_later(timeout, on_timeout)
        self.once("disabled", on_disabled)
        guard_disconnect = delegate is not None and request.kind != "disconnect"
        if guard_disconnect:
            delegate.once("disconnected", on_disconnected)
        task.add_done_callback(on_done)
        try:
            try:
                result = await outcome
            except asyncio.CancelledError:
                outcome.cancel()
                task.cancel()
                raise
        except Exception as exc:
            if client_scoped:
                self.emit("error", exc)
            raise
        finally:
            timer.cancel()
            self.off("disabled", on_disabled)
            if guard_disconnect:
                delegate.off("disconnected", on_disconnected)

        response = _make_response(request, result)
        if client_scoped:
            self.emit("response", response)
        return response
