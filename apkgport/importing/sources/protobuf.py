"""Minimal protobuf wire-format reader.

The newer package variant stores per-row configuration and the media
index as protobuf messages. Only the handful of fields the importer
needs are read; everything else is skipped by wire type.
"""

from __future__ import annotations

from collections.abc import Iterator

WIRE_VARINT = 0
WIRE_FIXED64 = 1
WIRE_LENGTH = 2
WIRE_FIXED32 = 5


class ProtobufDecodeError(ValueError):
    """Raised when a buffer is not valid protobuf wire data."""


def read_varint(data: bytes, pos: int) -> tuple[int, int]:
    """Read a varint starting at ``pos``; return ``(value, new_pos)``."""
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ProtobufDecodeError("Truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise ProtobufDecodeError("Varint too long")


def iter_fields(data: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield ``(field_number, wire_type, value)`` for each top-level field.

    Varints yield ints, length-delimited fields yield bytes and fixed
    width fields yield their raw little-endian integer.
    """
    pos = 0
    while pos < len(data):
        key, pos = read_varint(data, pos)
        field_number = key >> 3
        wire_type = key & 0x07
        if wire_type == WIRE_VARINT:
            value, pos = read_varint(data, pos)
            yield field_number, wire_type, value
        elif wire_type == WIRE_LENGTH:
            length, pos = read_varint(data, pos)
            end = pos + length
            if end > len(data):
                raise ProtobufDecodeError("Truncated length-delimited field")
            yield field_number, wire_type, data[pos:end]
            pos = end
        elif wire_type == WIRE_FIXED64:
            if pos + 8 > len(data):
                raise ProtobufDecodeError("Truncated fixed64 field")
            yield field_number, wire_type, int.from_bytes(data[pos : pos + 8], "little")
            pos += 8
        elif wire_type == WIRE_FIXED32:
            if pos + 4 > len(data):
                raise ProtobufDecodeError("Truncated fixed32 field")
            yield field_number, wire_type, int.from_bytes(data[pos : pos + 4], "little")
            pos += 4
        else:
            raise ProtobufDecodeError(f"Unsupported wire type {wire_type}")


def decode_message(data: bytes | None) -> dict[int, list[int | bytes]]:
    """Group a message's fields by number, preserving repeat order."""
    message: dict[int, list[int | bytes]] = {}
    if not data:
        return message
    for field_number, _wire_type, value in iter_fields(data):
        message.setdefault(field_number, []).append(value)
    return message


def get_string(message: dict[int, list[int | bytes]], number: int) -> str:
    values = message.get(number)
    if not values or not isinstance(values[-1], bytes):
        return ""
    return values[-1].decode("utf-8", errors="replace")


def get_int(
    message: dict[int, list[int | bytes]], number: int, default: int = 0
) -> int:
    values = message.get(number)
    if not values or not isinstance(values[-1], int):
        return default
    return values[-1]


def get_message(
    message: dict[int, list[int | bytes]], number: int
) -> dict[int, list[int | bytes]]:
    values = message.get(number)
    if not values or not isinstance(values[-1], bytes):
        return {}
    return decode_message(values[-1])


__all__ = [
    "ProtobufDecodeError",
    "decode_message",
    "get_int",
    "get_message",
    "get_string",
    "iter_fields",
    "read_varint",
]
