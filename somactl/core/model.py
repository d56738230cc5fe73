"""Core data models shared by the client, the delegates and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ScanState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    SCANNING = "scanning"
    STOPPING = "stopping"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


@dataclass(frozen=True)
class Manufacturer:
    code: str
    name: str


@dataclass(frozen=True)
class Advertisement:
    local_name: str | None = None
    manufacturer_data: bytes | None = None


@dataclass(frozen=True)
class PlatformInfo:
    system: str
    machine: str
    name: str
    supported: bool = False
    cancel_connect_supported: bool = True
    disconnect_after_operation: bool = False


@dataclass(frozen=True)
class ClientSettings:
    rssi: int = -100
    timeout: float = 15.0
    scan_duration: float = 30.0
    connection_duration: float = 120.0
    retries: int = 5
    retry_delay: float = 0.25
    restart_delay: float = 1.0
    allow_duplicates: bool = False


@dataclass(frozen=True)
class Request:
    """One logical operation against the adapter or a peripheral.

    `kind` names the operation (`connect`, `read`, ...); `description` is the
    human readable form, prefixed with the service and characteristic keys
    as the request passes up the delegate chain.
    """

    kind: str
    description: str = ""
    id: int | None = None
    peripheral: Any = field(default=None, compare=False, repr=False)
    service: Any = field(default=None, compare=False, repr=False)
    characteristic: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.description:
            object.__setattr__(self, "description", self.kind)

    def __str__(self) -> str:
        return self.description


@dataclass(frozen=True)
class Response:
    request: Request
    result: Any = field(default=None, repr=False)
    buffer: bytes | None = None
    parsed_value: Any = None
    decode_error: Exception | None = None


@dataclass(frozen=True)
class Notification:
    service_key: str
    key: str
    buffer: bytes
    parsed_value: Any = None


@dataclass(frozen=True)
class DeviceFound:
    id: str
    address: str | None
    manufacturer: Manufacturer | None
    manufacturer_data: bytes | None
    name: str | None
    rssi: int
    peripheral: Any = field(default=None, compare=False, repr=False)
    data: Any = None
