"""Stateless conversions between byte buffers and human readable values."""

from __future__ import annotations

import re
import struct
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from somactl.core.errors import DecodeError, EncodeError
from somactl.core.loader import load_catalogue
from somactl.core.model import Manufacturer

_BASE_UUID_SUFFIX = "00001000800000805f9b34fb"
_HEX_RE = re.compile(r"^[0-9a-f]*$")
_TRAILING_ZERO_RE = re.compile(r"^.*[^0-9 ]0$")


def to_hex(value: int, digits: int = 2, prefix: bool = True) -> str:
    """Format an integer as an upper case hex string of `digits` digits."""
    text = format(value, "X").rjust(digits, "0")[-digits:]
    return ("0x" if prefix else "") + text


def buffer_to_hex(buffer: bytes | bytearray | None) -> str | None:
    """Format a buffer as `0x01 02 03`, or None when there is no buffer."""
    if buffer is None or not isinstance(buffer, (bytes, bytearray)):
        return None
    return "0x" + " ".join(to_hex(b, 2, False) for b in buffer)


def hex_to_buffer(value: str) -> bytes:
    normalized = value.strip().lower()
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    normalized = normalized.replace(" ", "").replace(":", "")
    if len(normalized) % 2 != 0 or not _HEX_RE.match(normalized):
        raise EncodeError(f"{value!r}: not a valid hex buffer")
    return bytes.fromhex(normalized)


def unpack(fmt: str, buffer: bytes, offset: int = 0) -> tuple[Any, ...]:
    """`struct.unpack_from` that raises DecodeError on short buffers."""
    size = struct.calcsize(fmt)
    if offset < 0 or len(buffer) < offset + size:
        raise DecodeError(
            f"buffer of {len(buffer)} bytes too short for {size} bytes at offset {offset}"
        )
    return struct.unpack_from(fmt, buffer, offset)


def unpack_one(fmt: str, buffer: bytes, offset: int = 0) -> Any:
    return unpack(fmt, buffer, offset)[0]


def pack(fmt: str, *values: Any) -> bytes:
    try:
        return struct.pack(fmt, *values)
    except struct.error as exc:
        raise EncodeError(f"cannot encode {values!r} as {fmt!r}: {exc}") from exc


def buffer_to_manufacturer(buffer: bytes | None) -> Manufacturer | None:
    """Extract the manufacturer code and name from advertisement data.

    The first two bytes hold the company identifier, little endian. The name
    is looked up in the bundled catalogue, falling back to the hex code.
    """
    if buffer is None or not isinstance(buffer, (bytes, bytearray)) or len(buffer) < 4:
        return None
    code = to_hex(unpack_one("<H", buffer), 4, False)
    name = load_catalogue().companies.get(code)
    return Manufacturer(code=code, name=name if name is not None else "0x" + code)


def name_to_key(name: str | None) -> str | None:
    """Map a human readable name to a key: `"Motor Current State"` -> `"motor_current_state"`."""
    if name is None or not isinstance(name, str):
        return None
    words = name.replace("-", " ").split()
    return "_".join(word.lower() for word in words)


def uuid_to_string(uuid: str | None) -> str | None:
    """Normalise a UUID to the form used in definitions.

    UUIDs based on the Bluetooth base UUID collapse to their 16-bit form
    (`"180F"`); other 128-bit UUIDs are dashed and upper case.
    """
    if uuid is None or not isinstance(uuid, str):
        return None
    compact = uuid.replace("-", "").lower()
    if len(compact) == 32:
        if compact.startswith("0000") and compact.endswith(_BASE_UUID_SUFFIX):
            return compact[4:8].upper()
        return "-".join(
            [compact[0:8], compact[8:12], compact[12:16], compact[16:20], compact[20:32]]
        ).upper()
    return compact.upper()


def uuid_to_full(uuid: str) -> str:
    """Expand a normalised UUID to the dashed lower case 128-bit form."""
    compact = uuid.replace("-", "").lower()
    if len(compact) == 4:
        compact = "0000" + compact + _BASE_UUID_SUFFIX
    elif len(compact) == 8:
        compact = compact + _BASE_UUID_SUFFIX
    if len(compact) != 32:
        raise EncodeError(f"{uuid!r}: not a valid UUID")
    return "-".join(
        [compact[0:8], compact[8:12], compact[12:16], compact[16:20], compact[20:32]]
    )


def normalize_address(address: str | None) -> str | None:
    if not address:
        return None
    return address.replace("-", ":").upper()


def parse_string(buffer: bytes) -> str:
    return buffer.decode("utf-8", errors="replace").strip()


def parse_cstring(buffer: bytes) -> str:
    """Decode a NUL terminated, space padded string.

    Some firmware leaves a stray `0` after the name; it is dropped unless it
    follows a digit or a space.
    """
    text = buffer.decode("utf-8", errors="replace")
    end = text.find("\0")
    if end >= 0:
        text = text[:end]
    text = text.strip()
    if _TRAILING_ZERO_RE.match(text):
        text = text[:-1]
    return text


def encode_cstring(value: str, size: int | None = None) -> bytes:
    encoded = value.encode("utf-8")
    if size is not None:
        if len(encoded) >= size:
            raise EncodeError(f"{value!r}: longer than {size - 1} bytes")
        return encoded.ljust(size, b"\0")
    return encoded + b"\0"


def parse_date(buffer: bytes) -> str:
    """Decode a 32-bit unix timestamp as `YYYY-MM-DDTHH:MM:SS` (UTC)."""
    seconds = unpack_one("<I", buffer)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def encode_date(value: datetime | int) -> bytes:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = int(value.timestamp())
    return pack("<I", value)


def flags_to_names(value: int, names: Mapping[int, str]) -> list[str]:
    """List the names of the bits set in `value`, in bit order."""
    return [name for bit, name in sorted(names.items()) if value & bit]


def names_to_flags(values: list[str] | tuple[str, ...], names: Mapping[int, str]) -> int:
    lookup = {name: bit for bit, name in names.items()}
    mask = 0
    for value in values:
        bit = lookup.get(value)
        if bit is None:
            raise EncodeError(f"{value!r}: unknown flag")
        mask |= bit
    return mask
