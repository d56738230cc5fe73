"""Peripheral, service and characteristic delegates.

A `PeripheralDelegate` represents one physical device across reconnects. It
owns a `ServiceDelegate` per known service, which owns a
`CharacteristicDelegate` per known characteristic. Native handles are bound
lazily on first use and cleared on every disconnect, so each operation
re-discovers what it needs after a reconnect.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import replace
from typing import TYPE_CHECKING, Any, TypeVar

from somactl.core.codec import buffer_to_hex, normalize_address, uuid_to_string
from somactl.core.definitions import (
    GATT_DEFINITIONS,
    CharacteristicDefinition,
    DefinitionRegistry,
    ServiceDefinition,
)
from somactl.core.errors import (
    BleAdapterUnavailableError,
    CharacteristicNotFoundError,
    DecodeError,
    ServiceNotFoundError,
    UnknownCharacteristicError,
    UnknownServiceError,
    UnsupportedOperationError,
)
from somactl.core.events import EventEmitter
from somactl.core.model import ConnectionState, Notification, Request, Response
from somactl.core.retry import call_with_retries
from somactl.transports.base import NativeCharacteristic, NativePeripheral, NativeService

if TYPE_CHECKING:
    from somactl.core.client import BleClient

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# (state, native event) -> (new state, caused by our own request)
_CONNECTION_TRANSITIONS: dict[tuple[ConnectionState, str], tuple[ConnectionState, bool]] = {
    (ConnectionState.DISCONNECTED, "connect"): (ConnectionState.CONNECTED, False),
    (ConnectionState.CONNECTING, "connect"): (ConnectionState.CONNECTED, True),
    (ConnectionState.CONNECTING, "disconnect"): (ConnectionState.DISCONNECTED, False),
    (ConnectionState.CONNECTED, "disconnect"): (ConnectionState.DISCONNECTED, False),
    (ConnectionState.DISCONNECTING, "disconnect"): (ConnectionState.DISCONNECTED, True),
}


def discard(operation: Awaitable[Any]) -> None:
    """Drop an operation that will never be awaited."""
    if inspect.iscoroutine(operation):
        operation.close()
    elif isinstance(operation, asyncio.Future):
        operation.cancel()


class PeripheralDelegate(EventEmitter):
    """Delegate for one BLE peripheral.

    Events: `request`, `response`, `error`, `connected(rssi)`,
    `disconnected`, `notification(Notification)` and
    `"<service_key>/<characteristic_key>"` for notifications of one
    characteristic.
    """

    def __init__(
        self,
        client: BleClient,
        peripheral: NativePeripheral,
        definitions: Iterable[ServiceDefinition] = (),
    ) -> None:
        super().__init__()
        self.client = client
        self.definitions: DefinitionRegistry = GATT_DEFINITIONS.merged(definitions)
        self.id = peripheral.id
        self.address: str | None = None
        self.state = ConnectionState.DISCONNECTED
        self.connection_duration = client.connection_duration
        self._request_ids = itertools.count(1)
        self._connect_lock = asyncio.Lock()
        self._idle_timer: asyncio.TimerHandle | None = None
        self._peripheral: NativePeripheral | None = None
        self.service_delegates: dict[str, ServiceDelegate] = {}
        self._services_by_uuid: dict[str, ServiceDelegate] = {}
        for definition in self.definitions:
            self._add_service_delegate(ServiceDelegate(self, definition))
        self.peripheral = peripheral

    @property
    def peripheral(self) -> NativePeripheral | None:
        return self._peripheral

    @peripheral.setter
    def peripheral(self, peripheral: NativePeripheral | None) -> None:
        if peripheral is self._peripheral:
            return
        if self._peripheral is not None:
            self._peripheral.off("connect", self._on_native_connect)
            self._peripheral.off("disconnect", self._on_native_disconnect)
            self._reset_handles()
        self._peripheral = peripheral
        if peripheral is not None:
            peripheral.on("connect", self._on_native_connect)
            peripheral.on("disconnect", self._on_native_disconnect)
            if self.address is None:
                self.address = normalize_address(peripheral.address)

    def destroy(self) -> None:
        self._cancel_idle_timer()
        self.cancel_tasks()
        self.peripheral = None

    def _add_service_delegate(self, delegate: ServiceDelegate) -> None:
        self.service_delegates[delegate.key] = delegate
        self._services_by_uuid[delegate.uuid] = delegate

    def _bind_service(self, service: NativeService) -> ServiceDelegate:
        uuid = uuid_to_string(service.uuid)
        delegate = self._services_by_uuid.get(uuid)
        if delegate is None:
            delegate = ServiceDelegate(self, self.definitions.service(uuid))
            self._add_service_delegate(delegate)
        delegate.service = service
        return delegate

    def _reset_handles(self) -> None:
        for delegate in self.service_delegates.values():
            delegate.service = None

    def service_delegate(self, key: str) -> ServiceDelegate:
        delegate = self.service_delegates.get(key)
        if delegate is None:
            raise UnknownServiceError(f"{key}: unknown service key")
        return delegate

    def characteristic_delegate(self, service_key: str, key: str) -> CharacteristicDelegate:
        return self.service_delegate(service_key).characteristic_delegate(key)

    # Connection state machine.

    def _on_native_connect(self) -> None:
        self._transition("connect")

    def _on_native_disconnect(self) -> None:
        self._transition("disconnect")

    def _transition(self, event: str) -> None:
        transition = _CONNECTION_TRANSITIONS.get((self.state, event))
        if transition is None:
            LOGGER.debug("%s: ignore %s while %s", self.id, event, self.state.value)
            return
        self.state, self_initiated = transition
        if self.state is ConnectionState.CONNECTED:
            self._on_connected()
        else:
            self._on_disconnected(self_initiated)

    def _on_connected(self) -> None:
        if self.address is None and self._peripheral is not None:
            self.address = normalize_address(self._peripheral.address)
        rssi = self._peripheral.rssi if self._peripheral is not None else None
        LOGGER.debug("%s: connected (rssi: %s)", self.id, rssi)
        self.emit("connected", rssi)
        self._arm_idle_timer()

    def _on_disconnected(self, self_initiated: bool) -> None:
        self._cancel_idle_timer()
        self._reset_handles()
        LOGGER.debug(
            "%s: disconnected%s", self.id, "" if self_initiated else " unexpectedly"
        )
        self.emit("disconnected")
        if not self_initiated and self.connection_duration == 0:
            self.spawn(self.connect())

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self.connection_duration > 0:
            loop = asyncio.get_running_loop()
            self._idle_timer = loop.call_later(self.connection_duration, self._on_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_idle(self) -> None:
        self._idle_timer = None
        self.spawn(self.disconnect())

    async def connect(self, duration: float | None = None) -> None:
        """Connect, unless already connected.

        `duration` sets the idle time after which the connection is dropped;
        0 keeps the peripheral connected, reconnecting when it drops.
        """
        if duration is not None:
            self.connection_duration = duration
        async with self._connect_lock:
            if self.state is ConnectionState.CONNECTED:
                self._arm_idle_timer()
                return
            self._cancel_idle_timer()
            self.state = ConnectionState.CONNECTING
            try:
                await self.execute(Request("connect"), self._native().connect())
            except BaseException:
                if self.state is ConnectionState.CONNECTING:
                    self.state = ConnectionState.DISCONNECTED
                raise
            if self.state is ConnectionState.CONNECTING:
                self._transition("connect")

    async def disconnect(self) -> None:
        self._cancel_idle_timer()
        if self.state is not ConnectionState.CONNECTED:
            if self.state is ConnectionState.DISCONNECTED:
                self._reset_handles()
            return
        self.state = ConnectionState.DISCONNECTING
        try:
            await self.execute(Request("disconnect"), self._native().disconnect())
        except BaseException:
            if self.state is ConnectionState.DISCONNECTING:
                self.state = ConnectionState.CONNECTED
            raise
        if self.state is ConnectionState.DISCONNECTING:
            self._transition("disconnect")

    def _native(self) -> NativePeripheral:
        if self._peripheral is None:
            raise UnsupportedOperationError(f"{self.id}: peripheral delegate has been destroyed")
        return self._peripheral

    # Requests.

    async def execute(
        self,
        request: Request,
        operation: Awaitable[Any],
        timeout: float | None = None,
    ) -> Response:
        """Execute a request through the client, reporting it on this delegate."""
        request = replace(request, id=next(self._request_ids), peripheral=self)
        if not self.client.enabled:
            discard(operation)
            error = BleAdapterUnavailableError("bluetooth disabled", request)
            self.emit("error", error)
            raise error
        self.emit("request", request)
        try:
            response = await self.client.execute(request, operation, timeout)
        except Exception as exc:
            self.emit("error", exc)
            raise
        if response.decode_error is not None:
            self.emit("error", response.decode_error)
        self.emit("response", response)
        return response

    async def _with_retries(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        return await call_with_retries(
            operation,
            retries=self.client.retries,
            delay=self.client.retry_delay,
            description=f"{self.id}: {description}",
        )

    async def _release(self) -> None:
        """Drop the link after a single read or write where the platform needs it.

        Kept while a subscription is active, since notifications need the link.
        """
        if not self.client.platform.disconnect_after_operation:
            return
        for service_delegate in self.service_delegates.values():
            if any(c.subscribed for c in service_delegate.characteristic_delegates.values()):
                return
        await self.disconnect()

    async def read(self, service_key: str, key: str) -> Response:
        delegate = self.characteristic_delegate(service_key, key)
        response = await self._with_retries(delegate.read, f"{delegate.event}: read")
        await self._release()
        return response

    async def write(
        self,
        service_key: str,
        key: str,
        buffer: bytes,
        without_response: bool = False,
    ) -> Response:
        delegate = self.characteristic_delegate(service_key, key)
        response = await self._with_retries(
            lambda: delegate.write(buffer, without_response),
            f"{delegate.event}: write",
        )
        await self._release()
        return response

    async def write_value(self, service_key: str, key: str, value: Any, without_response: bool = False) -> Response:
        """Encode `value` with the characteristic's definition and write it."""
        delegate = self.characteristic_delegate(service_key, key)
        buffer = delegate.definition.encode(value)
        return await self.write(service_key, key, buffer, without_response)

    async def subscribe(self, service_key: str, key: str) -> Response:
        delegate = self.characteristic_delegate(service_key, key)
        return await self._with_retries(delegate.subscribe, f"{delegate.event}: subscribe")

    async def notification(
        self,
        service_key: str,
        key: str,
        prompt: Callable[[], Awaitable[Any]] | None = None,
    ) -> Response:
        """Wait for the next notification of a characteristic.

        `prompt` runs after the wait is armed, so a notification it triggers
        is never missed.
        """
        delegate = self.characteristic_delegate(service_key, key)
        return await self._with_retries(
            lambda: delegate.notification(prompt), f"{delegate.event}: notification"
        )

    async def exchange(
        self,
        service_key: str,
        request_key: str,
        response_key: str,
        buffer: bytes,
        without_response: bool = False,
    ) -> Response:
        """Write a command and return the notification that answers it.

        Subscribes to the response characteristic first, when not yet
        subscribed since the last (re)connect.
        """
        request_delegate = self.characteristic_delegate(service_key, request_key)
        response_delegate = self.characteristic_delegate(service_key, response_key)

        async def operation() -> Response:
            await response_delegate.discover()
            if not response_delegate.subscribed:
                await response_delegate.subscribe()
            return await response_delegate.notification(
                lambda: request_delegate.write(buffer, without_response)
            )

        return await self._with_retries(operation, f"{request_delegate.event}: exchange")

    async def read_all(self) -> dict[str, dict[str, Any]]:
        """Discover everything and read all readable characteristics.

        Returns `{service_key: {characteristic_key: value}}`; values that
        cannot be decoded are left out.
        """
        return await self._with_retries(self._read_all, "read all")

    async def _read_all(self) -> dict[str, dict[str, Any]]:
        await self.connect()
        response = await self.execute(
            Request("discover_all"),
            self._native().discover_all(),
            max(30.0, self.client.timeout),
        )
        for service in response.result or ():
            service_delegate = self._bind_service(service)
            for characteristic in service.characteristics:
                service_delegate.bind_characteristic(characteristic)
        values: dict[str, dict[str, Any]] = {}
        for key, service_delegate in list(self.service_delegates.items()):
            if service_delegate.service is None:
                continue
            service_values: dict[str, Any] = {}
            for characteristic_key, delegate in list(service_delegate.characteristic_delegates.items()):
                if delegate.characteristic is None or not delegate.can_read:
                    continue
                read = await delegate.read()
                if read.parsed_value is not None:
                    service_values[characteristic_key] = read.parsed_value
            if service_values:
                values[key] = service_values
        return values


class ServiceDelegate:
    """Delegate for one GATT service of a peripheral."""

    def __init__(self, peripheral_delegate: PeripheralDelegate, definition: ServiceDefinition) -> None:
        self.peripheral_delegate = peripheral_delegate
        self.definition = definition
        self.uuid = definition.uuid
        self.key = definition.key
        self.name = definition.name
        self.characteristic_delegates: dict[str, CharacteristicDelegate] = {}
        self._characteristics_by_uuid: dict[str, CharacteristicDelegate] = {}
        for characteristic_definition in definition.characteristics.values():
            self._add_characteristic_delegate(CharacteristicDelegate(self, characteristic_definition))
        self._service: NativeService | None = None

    @property
    def service(self) -> NativeService | None:
        return self._service

    @service.setter
    def service(self, service: NativeService | None) -> None:
        self._service = service
        if service is None:
            for delegate in self.characteristic_delegates.values():
                delegate.characteristic = None

    def _add_characteristic_delegate(self, delegate: CharacteristicDelegate) -> None:
        self.characteristic_delegates[delegate.key] = delegate
        self._characteristics_by_uuid[delegate.uuid] = delegate

    def characteristic_delegate(self, key: str) -> CharacteristicDelegate:
        delegate = self.characteristic_delegates.get(key)
        if delegate is None:
            raise UnknownCharacteristicError(f"{key}: unknown characteristic key")
        return delegate

    def bind_characteristic(self, characteristic: NativeCharacteristic) -> CharacteristicDelegate:
        uuid = uuid_to_string(characteristic.uuid)
        delegate = self._characteristics_by_uuid.get(uuid)
        if delegate is None:
            delegate = CharacteristicDelegate(self, self.definition.characteristic(uuid))
            self._add_characteristic_delegate(delegate)
        delegate.characteristic = characteristic
        return delegate

    async def discover(self) -> None:
        await self.peripheral_delegate.connect()
        if self._service is not None:
            return
        response = await self.execute(
            Request("discover_service", "discover"),
            self.peripheral_delegate._native().discover_services([self.uuid]),
        )
        for service in response.result or ():
            if uuid_to_string(service.uuid) == self.uuid:
                self.service = service
                return
        raise ServiceNotFoundError(f"{self.key}: service not found on {self.peripheral_delegate.id}")

    async def execute(
        self,
        request: Request,
        operation: Awaitable[Any],
        timeout: float | None = None,
    ) -> Response:
        request = replace(request, description=f"{self.key}: {request.description}", service=self)
        return await self.peripheral_delegate.execute(request, operation, timeout)


class CharacteristicDelegate:
    """Delegate for one GATT characteristic of a service."""

    def __init__(self, service_delegate: ServiceDelegate, definition: CharacteristicDefinition) -> None:
        self.service_delegate = service_delegate
        self.peripheral_delegate = service_delegate.peripheral_delegate
        self.definition = definition
        self.uuid = definition.uuid
        self.key = definition.key
        self.name = definition.name
        self.subscribed = False
        self._characteristic: NativeCharacteristic | None = None

    @property
    def event(self) -> str:
        return f"{self.service_delegate.key}/{self.key}"

    @property
    def characteristic(self) -> NativeCharacteristic | None:
        return self._characteristic

    @characteristic.setter
    def characteristic(self, characteristic: NativeCharacteristic | None) -> None:
        if characteristic is self._characteristic:
            return
        if self._characteristic is not None:
            self._characteristic.off("data", self._on_data)
        self._characteristic = characteristic
        self.subscribed = False
        if characteristic is not None and self.can_notify:
            characteristic.on("data", self._on_data)

    @property
    def properties(self) -> tuple[str, ...]:
        if self._characteristic is None:
            return ()
        return tuple(self._characteristic.properties)

    @property
    def can_read(self) -> bool:
        return "read" in self.properties

    @property
    def can_write(self) -> bool:
        properties = self.properties
        return "write" in properties or "write-without-response" in properties

    @property
    def can_notify(self) -> bool:
        properties = self.properties
        return "notify" in properties or "indicate" in properties

    def decode(self, buffer: bytes) -> Any:
        return self.definition.decode(buffer)

    def _on_data(self, buffer: bytes, is_notification: bool = True) -> None:
        if not is_notification:
            return
        parsed_value = None
        try:
            parsed_value = self.decode(buffer)
        except DecodeError as exc:
            self.peripheral_delegate.emit("error", exc)
        notification = Notification(
            service_key=self.service_delegate.key,
            key=self.key,
            buffer=bytes(buffer),
            parsed_value=parsed_value,
        )
        self.peripheral_delegate.emit("notification", notification)
        self.peripheral_delegate.emit(self.event, notification)

    async def discover(self) -> None:
        await self.service_delegate.discover()
        if self._characteristic is not None:
            return
        service = self.service_delegate.service
        if service is None:
            raise ServiceNotFoundError(f"{self.service_delegate.key}: service no longer bound")
        response = await self.execute(
            Request("discover_characteristic", "discover"),
            service.discover_characteristics([self.uuid]),
        )
        for characteristic in response.result or ():
            if uuid_to_string(characteristic.uuid) == self.uuid:
                self.characteristic = characteristic
                return
        raise CharacteristicNotFoundError(f"{self.event}: characteristic not found")

    def _bound(self) -> NativeCharacteristic:
        if self._characteristic is None:
            raise CharacteristicNotFoundError(f"{self.event}: characteristic not bound")
        return self._characteristic

    async def read(self) -> Response:
        await self.discover()
        if not self.can_read:
            raise UnsupportedOperationError(f"{self.key}: characteristic does not support read")
        return await self.execute(Request("read"), self._bound().read())

    async def write(self, buffer: bytes, without_response: bool = False) -> Response:
        await self.discover()
        if not self.can_write:
            raise UnsupportedOperationError(f"{self.key}: characteristic does not support write")
        return await self.execute(
            Request("write", f"write {buffer_to_hex(bytes(buffer))}"),
            self._bound().write(bytes(buffer), without_response),
        )

    async def subscribe(self) -> Response:
        await self.discover()
        if not self.can_notify:
            raise UnsupportedOperationError(f"{self.key}: characteristic does not support notify")
        response = await self.execute(Request("subscribe"), self._bound().subscribe())
        self.subscribed = True
        return response

    async def notification(self, prompt: Callable[[], Awaitable[Any]] | None = None) -> Response:
        await self.discover()
        if not self.can_notify:
            raise UnsupportedOperationError(f"{self.key}: characteristic does not support notify")
        waiter = self.peripheral_delegate.wait_for(self.event)
        try:
            if prompt is not None:
                await prompt()
        except BaseException:
            waiter.cancel()
            raise
        return await self.execute(Request("notification"), waiter)

    async def execute(
        self,
        request: Request,
        operation: Awaitable[Any],
        timeout: float | None = None,
    ) -> Response:
        request = replace(
            request,
            description=f"{self.key}: {request.description}",
            characteristic=self,
        )
        return await self.service_delegate.execute(request, operation, timeout)
