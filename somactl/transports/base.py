"""Native adapter interfaces.

A backend wraps a BLE stack behind these protocols. UUIDs are exchanged in
the form produced by `somactl.core.codec.uuid_to_string`. Objects emit events
through `on`/`off`:

- adapter: `state_change(state)` once `power_on` is called, `scan_start`,
  `scan_stop`, `discover(peripheral)`, `warning(message)`;
- peripheral: `connect`, `disconnect`;
- characteristic: `data(buffer, is_notification)`.

Primitives raise `somactl.core.errors.AdapterError` on failure.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Callable, Protocol

from somactl.core.model import Advertisement

POWERED_ON = "poweredOn"
POWERED_OFF = "poweredOff"


class EventSource(Protocol):
    def on(self, event: str, listener: Callable[..., Any]) -> Any: ...

    def off(self, event: str, listener: Callable[..., Any]) -> Any: ...


class NativeCharacteristic(EventSource, Protocol):
    uuid: str
    properties: Sequence[str]

    async def read(self) -> bytes: ...

    async def write(self, buffer: bytes, without_response: bool = False) -> None: ...

    async def subscribe(self) -> None: ...


class NativeService(Protocol):
    uuid: str
    characteristics: Sequence[NativeCharacteristic]

    async def discover_characteristics(self, uuids: Sequence[str]) -> list[NativeCharacteristic]: ...


class NativePeripheral(EventSource, Protocol):
    id: str
    address: str
    rssi: int
    connectable: bool
    advertisement: Advertisement
    state: str

    async def connect(self) -> None: ...

    def cancel_connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def discover_services(self, uuids: Sequence[str]) -> list[NativeService]: ...

    async def discover_all(self) -> list[NativeService]: ...


class Adapter(EventSource, Protocol):
    state: str

    def power_on(self) -> None: ...

    async def start_scanning(self, allow_duplicates: bool = False) -> None: ...

    async def stop_scanning(self) -> None: ...
