from __future__ import annotations

import pytest

from somactl.core.codec import (
    buffer_to_hex,
    buffer_to_manufacturer,
    encode_cstring,
    encode_date,
    flags_to_names,
    hex_to_buffer,
    name_to_key,
    names_to_flags,
    normalize_address,
    parse_cstring,
    parse_date,
    to_hex,
    unpack,
    uuid_to_full,
    uuid_to_string,
)
from somactl.core.errors import DecodeError, EncodeError


def test_hex_formatting() -> None:
    assert to_hex(0x1A) == "0x1A"
    assert to_hex(0x370, 4, False) == "0370"
    assert buffer_to_hex(b"\x01\x02\xff") == "0x01 02 FF"
    assert buffer_to_hex(None) is None
    assert hex_to_buffer("0x01 02 ff") == b"\x01\x02\xff"


def test_hex_to_buffer_rejects_garbage() -> None:
    with pytest.raises(EncodeError):
        hex_to_buffer("xyz")
    with pytest.raises(EncodeError):
        hex_to_buffer("abc")


def test_uuid_normalisation() -> None:
    assert uuid_to_string("0000180f-0000-1000-8000-00805f9b34fb") == "180F"
    assert uuid_to_string("00001861b87f490c92cb11ba5ea5167c") == "00001861-B87F-490C-92CB-11BA5EA5167C"
    assert uuid_to_string("2a19") == "2A19"
    assert uuid_to_full("180F") == "0000180f-0000-1000-8000-00805f9b34fb"


def test_name_to_key() -> None:
    assert name_to_key("Motor Current State") == "motor_current_state"
    assert name_to_key("Peripheral Preferred Connection Parameters") == (
        "peripheral_preferred_connection_parameters"
    )
    assert name_to_key(None) is None


def test_parse_cstring_drops_stray_zero() -> None:
    assert parse_cstring(b"Kitchen0") == "Kitchen"
    assert parse_cstring(b"Room 10") == "Room 10"
    assert parse_cstring(b"Bedroom\x00\x00junk") == "Bedroom"
    assert encode_cstring("Den", 6) == b"Den\x00\x00\x00"


def test_parse_date_is_utc() -> None:
    buffer = encode_date(1_700_000_000)
    assert parse_date(buffer) == "2023-11-14T22:13:20"


def test_short_buffer_raises_decode_error() -> None:
    with pytest.raises(DecodeError):
        unpack("<2H", b"\x01\x02\x03")
    with pytest.raises(ValueError):
        parse_date(b"\x01")


def test_manufacturer_lookup() -> None:
    manufacturer = buffer_to_manufacturer(bytes.fromhex("70030288"))
    assert manufacturer is not None
    assert manufacturer.code == "0370"
    assert manufacturer.name == "Wazombi Labs OÜ"

    unknown = buffer_to_manufacturer(bytes.fromhex("fffe0000"))
    assert unknown is not None
    assert unknown.name == "0xFEFF"

    assert buffer_to_manufacturer(b"\x70\x03") is None


def test_flags_and_addresses() -> None:
    names = {0x01: "a", 0x02: "b", 0x04: "c"}
    assert flags_to_names(0x05, names) == ["a", "c"]
    assert names_to_flags(["b", "c"], names) == 0x06
    with pytest.raises(EncodeError):
        names_to_flags(["z"], names)
    assert normalize_address("aa-bb-cc-dd-ee-ff") == "AA:BB:CC:DD:EE:FF"
    assert normalize_address("") is None
