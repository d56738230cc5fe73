"""Declarative service and characteristic definitions.

A definition binds a UUID to a human readable name, a derived key and a
value format. Formats are closed enums dispatched through lookup tables;
characteristics without a definition fall back to `ValueFormat.RAW_HEX`.
The registry is immutable: per-peripheral state lives in the delegates.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from somactl.core.codec import (
    buffer_to_hex,
    encode_cstring,
    encode_date,
    hex_to_buffer,
    name_to_key,
    pack,
    parse_cstring,
    parse_date,
    parse_string,
    to_hex,
    unpack,
    unpack_one,
    uuid_to_string,
)
from somactl.core.errors import EncodeError, UnsupportedOperationError
from somactl.core.loader import load_catalogue


class ValueCodec(Protocol):
    def decode(self, buffer: bytes) -> Any: ...

    def encode(self, value: Any) -> bytes: ...


class ValueFormat(Enum):
    """Generic GATT value formats."""

    RAW_HEX = "raw_hex"
    STRING = "string"
    CSTRING = "cstring"
    UINT8 = "uint8"
    UINT16 = "uint16"
    HEX_UINT8 = "hex_uint8"
    HEX_UINT16 = "hex_uint16"
    BOOL = "bool"
    DATE = "date"
    CONNECTION_PARAMETERS = "connection_parameters"
    SERVICE_CHANGED = "service_changed"

    def decode(self, buffer: bytes) -> Any:
        return _DECODERS[self](bytes(buffer))

    def encode(self, value: Any) -> bytes:
        encoder = _ENCODERS.get(self)
        if encoder is None:
            raise UnsupportedOperationError(f"{self.value}: format cannot be encoded")
        return encoder(value)


def _decode_connection_parameters(buffer: bytes) -> dict[str, int]:
    minimum, maximum, latency, timeout = unpack("<4H", buffer)
    return {
        "minimum_connection_interval": minimum,
        "maximum_connection_interval": maximum,
        "slave_latency": latency,
        "connection_supervision_timeout_multiplier": timeout,
    }


def _decode_service_changed(buffer: bytes) -> dict[str, int]:
    start, end = unpack("<2H", buffer)
    return {
        "start_of_affected_attribute_handle_range": start,
        "end_of_affected_attribute_handle_range": end,
    }


def _encode_raw(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return hex_to_buffer(value)
    raise EncodeError(f"{value!r}: expected bytes or hex string")


def _encode_hex_uint(fmt: str) -> Callable[[Any], bytes]:
    def encode(value: Any) -> bytes:
        if isinstance(value, str):
            try:
                value = int(value, 16)
            except ValueError as exc:
                raise EncodeError(f"{value!r}: not a hex number") from exc
        return pack(fmt, value)

    return encode


_DECODERS: dict[ValueFormat, Callable[[bytes], Any]] = {
    ValueFormat.RAW_HEX: buffer_to_hex,
    ValueFormat.STRING: parse_string,
    ValueFormat.CSTRING: parse_cstring,
    ValueFormat.UINT8: lambda b: unpack_one("<B", b),
    ValueFormat.UINT16: lambda b: unpack_one("<H", b),
    ValueFormat.HEX_UINT8: lambda b: to_hex(unpack_one("<B", b)),
    ValueFormat.HEX_UINT16: lambda b: to_hex(unpack_one("<H", b), 4),
    ValueFormat.BOOL: lambda b: unpack_one("<B", b) != 0,
    ValueFormat.DATE: parse_date,
    ValueFormat.CONNECTION_PARAMETERS: _decode_connection_parameters,
    ValueFormat.SERVICE_CHANGED: _decode_service_changed,
}

_ENCODERS: dict[ValueFormat, Callable[[Any], bytes]] = {
    ValueFormat.RAW_HEX: _encode_raw,
    ValueFormat.STRING: lambda v: str(v).encode("utf-8"),
    ValueFormat.CSTRING: lambda v: encode_cstring(str(v)),
    ValueFormat.UINT8: lambda v: pack("<B", v),
    ValueFormat.UINT16: lambda v: pack("<H", v),
    ValueFormat.HEX_UINT8: _encode_hex_uint("<B"),
    ValueFormat.HEX_UINT16: _encode_hex_uint("<H"),
    ValueFormat.BOOL: lambda v: pack("<B", 1 if v else 0),
    ValueFormat.DATE: encode_date,
}


@dataclass(frozen=True)
class CharacteristicDefinition:
    uuid: str
    name: str
    format: ValueCodec = ValueFormat.RAW_HEX
    key: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "uuid", uuid_to_string(self.uuid))
        if not self.key:
            object.__setattr__(self, "key", name_to_key(self.name) or self.uuid)

    def decode(self, buffer: bytes) -> Any:
        return self.format.decode(buffer)

    def encode(self, value: Any) -> bytes:
        return self.format.encode(value)


@dataclass(frozen=True)
class ServiceDefinition:
    uuid: str
    name: str
    characteristics: Mapping[str, CharacteristicDefinition] = field(default_factory=dict)
    key: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "uuid", uuid_to_string(self.uuid))
        if not self.key:
            object.__setattr__(self, "key", name_to_key(self.name) or self.uuid)
        object.__setattr__(
            self,
            "characteristics",
            MappingProxyType({uuid_to_string(u): d for u, d in self.characteristics.items()}),
        )

    def characteristic(self, uuid: str) -> CharacteristicDefinition:
        """Return the definition for `uuid`, or a raw hex definition if there is none."""
        uuid = uuid_to_string(uuid)
        definition = self.characteristics.get(uuid)
        if definition is None:
            return unknown_characteristic(uuid)
        return definition


def service(uuid: str, name: str, *characteristics: CharacteristicDefinition) -> ServiceDefinition:
    return ServiceDefinition(
        uuid=uuid,
        name=name,
        characteristics={c.uuid: c for c in characteristics},
    )


def characteristic(uuid: str, name: str, value_format: ValueCodec = ValueFormat.RAW_HEX) -> CharacteristicDefinition:
    return CharacteristicDefinition(uuid=uuid, name=name, format=value_format)


def unknown_service(uuid: str) -> ServiceDefinition:
    uuid = uuid_to_string(uuid)
    name = load_catalogue().services.get(uuid)
    return ServiceDefinition(uuid=uuid, name=name or uuid, key=name_to_key(name) or uuid)


def unknown_characteristic(uuid: str) -> CharacteristicDefinition:
    uuid = uuid_to_string(uuid)
    name = load_catalogue().characteristics.get(uuid)
    return CharacteristicDefinition(uuid=uuid, name=name or uuid, key=name_to_key(name) or uuid)


class DefinitionRegistry:
    """Immutable set of service definitions, looked up by UUID or key."""

    def __init__(self, services: Iterable[ServiceDefinition] = ()) -> None:
        by_uuid = {s.uuid: s for s in services}
        self._by_uuid: Mapping[str, ServiceDefinition] = MappingProxyType(by_uuid)
        self._by_key: Mapping[str, ServiceDefinition] = MappingProxyType(
            {s.key: s for s in by_uuid.values()}
        )

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(self._by_uuid.values())

    def __len__(self) -> int:
        return len(self._by_uuid)

    def __contains__(self, uuid: object) -> bool:
        return isinstance(uuid, str) and uuid_to_string(uuid) in self._by_uuid

    def get(self, uuid: str) -> ServiceDefinition | None:
        return self._by_uuid.get(uuid_to_string(uuid))

    def by_key(self, key: str) -> ServiceDefinition | None:
        return self._by_key.get(key)

    def service(self, uuid: str) -> ServiceDefinition:
        """Return the definition for `uuid`, or one synthesised from the catalogue."""
        definition = self.get(uuid)
        if definition is None:
            return unknown_service(uuid)
        return definition

    def merged(self, other: Iterable[ServiceDefinition]) -> DefinitionRegistry:
        """Return a new registry; definitions from `other` win on equal UUIDs."""
        combined = dict(self._by_uuid)
        for definition in other:
            combined[definition.uuid] = definition
        return DefinitionRegistry(combined.values())


GATT_DEFINITIONS = DefinitionRegistry(
    [
        service(
            "1800",
            "Generic Access",
            characteristic("2A00", "Device Name", ValueFormat.STRING),
            characteristic("2A01", "Appearance", ValueFormat.HEX_UINT16),
            characteristic(
                "2A04",
                "Peripheral Preferred Connection Parameters",
                ValueFormat.CONNECTION_PARAMETERS,
            ),
        ),
        service(
            "1801",
            "Generic Attribute",
            characteristic("2A05", "Service Changed", ValueFormat.SERVICE_CHANGED),
        ),
        service(
            "180A",
            "Device Information",
            characteristic("2A29", "Manufacturer Name", ValueFormat.STRING),
            characteristic("2A24", "Model Number", ValueFormat.STRING),
            characteristic("2A25", "Serial Number", ValueFormat.STRING),
            characteristic("2A27", "Hardware Revision", ValueFormat.STRING),
            characteristic("2A26", "Firmware Revision", ValueFormat.STRING),
            characteristic("2A28", "Software Revision", ValueFormat.STRING),
        ),
        service(
            "180F",
            "Battery Service",
            characteristic("2A19", "Battery Level", ValueFormat.UINT8),
        ),
    ]
)
