"""SOMA binary frames: advertisement data, triggers, motor and shade state.

All decoders are pure functions of the buffer and raise `DecodeError` when
it is too short. Encoders raise `EncodeError` on out-of-range values.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from somactl.core.codec import (
    buffer_to_hex,
    flags_to_names,
    names_to_flags,
    pack,
    parse_cstring,
    to_hex,
    unpack,
    unpack_one,
)
from somactl.core.errors import DecodeError, EncodeError, UnsupportedOperationError

MANUFACTURER_CODE = "0370"

EVERY_DAY = 0x7F
WEEKDAYS: dict[int, str] = {
    0x01: "sunday",
    0x02: "monday",
    0x04: "tuesday",
    0x08: "wednesday",
    0x10: "thursday",
    0x20: "friday",
    0x40: "saturday",
}

FLAG_ENABLED = 0x01
FLAG_SUNSET_OR_LIGHT = 0x02
FLAG_SUN = 0x04
FLAG_MORNING_MODE = 0x80
_KNOWN_FLAGS = FLAG_ENABLED | FLAG_SUNSET_OR_LIGHT | FLAG_SUN | FLAG_MORNING_MODE

MAX_TRIGGERS = 16


def _lookup(enum: type[Enum], code: int) -> Any:
    """Return the enum member for `code`, or its hex form when unknown."""
    try:
        return enum(code)
    except ValueError:
        return to_hex(code)


# Advertisement.


@dataclass(frozen=True)
class ShadeAdvertisement:
    protocol: str
    battery: int
    supports_tilt: bool
    current_position: int
    target_position: int
    display_name: str

    @property
    def venetian_mode(self) -> bool:
        return self.supports_tilt


def parse_manufacturer_data(buffer: bytes) -> ShadeAdvertisement:
    """Decode SOMA manufacturer data, company id included.

    The high bit of the battery byte flags tilt support; tilt devices report
    positions in 0..100 that map to -100..100.
    """
    buffer = bytes(buffer)
    protocol, battery, current, target = unpack("<4B", buffer, 2)
    supports_tilt = (battery & 0x80) != 0
    if supports_tilt:
        current = current * 2 - 100
        target = target * 2 - 100
    return ShadeAdvertisement(
        protocol=to_hex(protocol),
        battery=battery & 0x7F,
        supports_tilt=supports_tilt,
        current_position=current,
        target_position=target,
        display_name=parse_cstring(buffer[6:]),
    )


# Triggers.


def weekday_names(mask: int) -> list[str]:
    if mask & EVERY_DAY == EVERY_DAY:
        return ["every day"]
    return flags_to_names(mask, WEEKDAYS)


def weekday_mask(names: Iterable[str]) -> int:
    names = [name.strip().lower() for name in names]
    if "every day" in names:
        return EVERY_DAY
    return names_to_flags(tuple(names), WEEKDAYS)


class TriggerKind(Enum):
    SUNRISE = "sunrise"
    SUNSET = "sunset"
    LIGHT_LEVEL = "light_level"
    TIME = "time"


_KIND_FLAGS: dict[TriggerKind, int] = {
    TriggerKind.SUNRISE: FLAG_SUN,
    TriggerKind.SUNSET: FLAG_SUN | FLAG_SUNSET_OR_LIGHT,
    TriggerKind.LIGHT_LEVEL: FLAG_SUNSET_OR_LIGHT,
    TriggerKind.TIME: 0,
}


def _trigger_kind(flags: int) -> TriggerKind:
    if flags & FLAG_SUN:
        return TriggerKind.SUNSET if flags & FLAG_SUNSET_OR_LIGHT else TriggerKind.SUNRISE
    if flags & FLAG_SUNSET_OR_LIGHT:
        return TriggerKind.LIGHT_LEVEL
    return TriggerKind.TIME


@dataclass(frozen=True)
class Trigger:
    """One motor trigger.

    `value` depends on `kind`: the signed offset from sunrise or sunset,
    the light level threshold (positive: above, negative: below), or the
    unix time whose time of day fires the trigger.
    """

    kind: TriggerKind
    value: int
    weekdays: int = EVERY_DAY
    position: int = 0
    enabled: bool = True
    morning_mode: bool = False
    id: int | None = None
    # Firmware bits not modelled above, written back unchanged.
    extra_flags: int = 0

    @classmethod
    def decode(cls, buffer: bytes, trigger_id: int | None = None) -> Trigger:
        value, weekdays, position, flags = unpack("<iBBB", bytes(buffer))
        return cls(
            kind=_trigger_kind(flags),
            value=value,
            weekdays=weekdays,
            position=position,
            enabled=(flags & FLAG_ENABLED) != 0,
            morning_mode=(flags & FLAG_MORNING_MODE) != 0,
            id=trigger_id,
            extra_flags=flags & ~_KNOWN_FLAGS,
        )

    @property
    def flags(self) -> int:
        flags = _KIND_FLAGS[self.kind] | (self.extra_flags & ~_KNOWN_FLAGS & 0xFF)
        if self.enabled:
            flags |= FLAG_ENABLED
        if self.morning_mode:
            flags |= FLAG_MORNING_MODE
        return flags

    def encode(self) -> bytes:
        if not 0 <= self.position <= 100:
            raise EncodeError(f"{self.position}: trigger position not in 0..100")
        return pack("<iBBB", self.value, self.weekdays & EVERY_DAY, self.position, self.flags)

    @property
    def weekday_names(self) -> list[str]:
        return weekday_names(self.weekdays)

    def describe(self) -> str:
        if self.kind is TriggerKind.TIME:
            moment = datetime.fromtimestamp(self.value, tz=timezone.utc)
            return f"at {moment.strftime('%H:%M')}"
        if self.kind is TriggerKind.LIGHT_LEVEL:
            if self.value > 0:
                return f"light level > {self.value}"
            return f"light level < {-self.value}"
        return f"{self.kind.value} {self.value:+d}"


class TriggerCommand(Enum):
    ADD = 0x13
    REMOVE = 0x23
    READ = 0x33
    EDIT = 0x43
    CLEAR_ALL = 0x63


class TriggerStatus(Enum):
    SUCCESS = 0x30
    FAILED = 0xF0


_RECORD_COMMANDS = (TriggerCommand.ADD, TriggerCommand.EDIT)


@dataclass(frozen=True)
class TriggerRequest:
    command: TriggerCommand | str
    id: int = 0
    trigger: Trigger | None = None

    def encode(self) -> bytes:
        return encode_trigger_request(self.command, self.id, self.trigger)


@dataclass(frozen=True)
class TriggerResponse:
    status: TriggerStatus | str
    command: TriggerCommand | str
    trigger: Trigger | None = None

    @property
    def ok(self) -> bool:
        return self.status is TriggerStatus.SUCCESS


def decode_trigger_request(buffer: bytes) -> TriggerRequest:
    buffer = bytes(buffer)
    code, trigger_id = unpack("<BH", buffer)
    command = _lookup(TriggerCommand, code)
    trigger = None
    if command in _RECORD_COMMANDS:
        trigger = Trigger.decode(buffer[3:], trigger_id)
    return TriggerRequest(command=command, id=trigger_id, trigger=trigger)


def encode_trigger_request(
    command: TriggerCommand | str,
    trigger_id: int = 0,
    trigger: Trigger | None = None,
) -> bytes:
    if not isinstance(command, TriggerCommand):
        raise EncodeError(f"{command}: unknown trigger command")
    frame = pack("<BH", command.value, trigger_id)
    if command in _RECORD_COMMANDS:
        if trigger is None:
            raise EncodeError(f"{command.name.lower()}: trigger record required")
        frame += trigger.encode()
    return frame


def decode_trigger_response(buffer: bytes) -> TriggerResponse:
    buffer = bytes(buffer)
    status_code, command_code = unpack("<BB", buffer)
    status = _lookup(TriggerStatus, status_code)
    command = _lookup(TriggerCommand, command_code)
    trigger = None
    if status is TriggerStatus.SUCCESS and command is TriggerCommand.READ:
        trigger_id = unpack_one("<H", buffer, 2)
        trigger = Trigger.decode(buffer[4:], trigger_id)
    return TriggerResponse(status=status, command=command, trigger=trigger)


# Motor and shade state.


@dataclass(frozen=True)
class MotorState:
    position: int
    triggers: tuple[int, ...] = ()


def decode_motor_current_state(buffer: bytes) -> MotorState:
    buffer = bytes(buffer)
    position = unpack_one("<B", buffer)
    count = min(MAX_TRIGGERS, (len(buffer) - 1) // 2)
    ids = unpack(f"<{count}H", buffer, 1) if count else ()
    return MotorState(position=position, triggers=tuple(i for i in ids if i != 0))


@dataclass(frozen=True)
class ShadeState:
    charging_level: int
    panel_level: int


def decode_shade_state(buffer: bytes) -> ShadeState:
    charging_level, panel_level = unpack("<2H", bytes(buffer))
    return ShadeState(charging_level=charging_level, panel_level=panel_level)


class MotorCommand(Enum):
    STOP = 0x00
    UP = 0x69
    DOWN = 0x96


def encode_motor_command(command: MotorCommand) -> bytes:
    return bytes([command.value])


def encode_calibration(enabled: bool) -> bytes:
    return bytes([0x01 if enabled else 0x00])


def encode_position(position: int, venetian_mode: bool = False) -> bytes:
    """Encode a target position.

    Tilt devices take -100..100 (negative closes upwards), mapped onto the
    0..100 range of the motor.
    """
    if venetian_mode:
        if not -100 <= position <= 100:
            raise EncodeError(f"{position}: position not in -100..100")
        position = (position + 100) // 2
    elif not 0 <= position <= 100:
        raise EncodeError(f"{position}: position not in 0..100")
    return pack("<B", position)


# Shade configuration.

CONFIG_QUERY = 0x01
CONFIG_SET = 0x02


class ConfigTag(Enum):
    BOOT = 0x01
    TIME_OFFSET = 0x02
    MOTOR_SPEED = 0x03
    SUN = 0x04
    VENETIAN_MODE = 0x05


def _minutes_to_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class _ConfigRule:
    width: int
    decode: Callable[[bytes], dict[str, Any]]
    encode: Callable[[Any], bytes] | None = None


_CONFIG_RULES: dict[ConfigTag, _ConfigRule] = {
    ConfigTag.BOOT: _ConfigRule(
        2,
        lambda v: {"restart_reason": to_hex(v[0]), "boot_seq": v[1]},
    ),
    ConfigTag.TIME_OFFSET: _ConfigRule(
        4,
        lambda v: {"time_offset": unpack_one("<i", v)},
        lambda value: pack("<i", value),
    ),
    ConfigTag.MOTOR_SPEED: _ConfigRule(
        1,
        lambda v: {"motor_speed": v[0]},
        lambda value: pack("<B", value),
    ),
    ConfigTag.SUN: _ConfigRule(
        4,
        lambda v: dict(zip(("sunrise", "sunset"), map(_minutes_to_time, unpack("<2H", v)))),
    ),
    ConfigTag.VENETIAN_MODE: _ConfigRule(
        1,
        lambda v: {"venetian_mode": v[0] != 0},
        lambda value: pack("<B", 1 if value else 0),
    ),
}


@dataclass(frozen=True)
class ShadeConfig:
    restart_reason: str | None = None
    boot_seq: int | None = None
    time_offset: int | None = None
    motor_speed: int | None = None
    sunrise: str | None = None
    sunset: str | None = None
    venetian_mode: bool | None = None
    unknown_tags: tuple[str, ...] = ()
    raw_value: str | None = field(default=None, compare=False)


def decode_shade_config(buffer: bytes) -> ShadeConfig:
    """Decode a configuration frame: a 2-byte header and a TLV record stream."""
    buffer = bytes(buffer)
    unpack("<BB", buffer)  # header: opcode, length
    values: dict[str, Any] = {}
    unknown: list[str] = []
    offset = 2
    while offset < len(buffer):
        code, length = unpack("<BB", buffer, offset)
        offset += 2
        value = buffer[offset : offset + length]
        if len(value) < length:
            raise DecodeError(f"config tag {to_hex(code)}: truncated at offset {offset}")
        offset += length
        tag = _lookup(ConfigTag, code)
        rule = _CONFIG_RULES.get(tag) if isinstance(tag, ConfigTag) else None
        if rule is None:
            unknown.append(to_hex(code))
            continue
        if length < rule.width:
            raise DecodeError(f"{tag.name.lower()}: {length} bytes, expected {rule.width}")
        values.update(rule.decode(value[: rule.width]))
    return ShadeConfig(**values, unknown_tags=tuple(unknown), raw_value=buffer_to_hex(buffer))


def encode_config_query(tags: Iterable[ConfigTag] = ()) -> bytes:
    """Encode a configuration query; no tags queries everything."""
    body = bytes(tag.value for tag in tags)
    return bytes([CONFIG_QUERY, len(body)]) + body


def encode_config_set(tag: ConfigTag, value: Any) -> bytes:
    rule = _CONFIG_RULES[tag]
    if rule.encode is None:
        raise UnsupportedOperationError(f"{tag.name.lower()}: configuration value is read-only")
    encoded = rule.encode(value)
    record = bytes([tag.value, len(encoded)]) + encoded
    return bytes([CONFIG_SET, len(record)]) + record


class SomaFormat(Enum):
    """Value formats of the SOMA vendor characteristics."""

    MOTOR_CURRENT_STATE = "motor_current_state"
    TRIGGER_REQUEST = "trigger_request"
    TRIGGER_RESPONSE = "trigger_response"
    SHADE_STATE = "shade_state"
    SHADE_CONFIG = "shade_config"

    def decode(self, buffer: bytes) -> Any:
        return _DECODERS[self](bytes(buffer))

    def encode(self, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if self is SomaFormat.TRIGGER_REQUEST and isinstance(value, TriggerRequest):
            return value.encode()
        raise UnsupportedOperationError(f"{self.value}: cannot encode {type(value).__name__}")


_DECODERS: dict[SomaFormat, Callable[[bytes], Any]] = {
    SomaFormat.MOTOR_CURRENT_STATE: decode_motor_current_state,
    SomaFormat.TRIGGER_REQUEST: decode_trigger_request,
    SomaFormat.TRIGGER_RESPONSE: decode_trigger_response,
    SomaFormat.SHADE_STATE: decode_shade_state,
    SomaFormat.SHADE_CONFIG: decode_shade_config,
}
