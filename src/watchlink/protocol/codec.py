"""Encode and decode characteristic values for each logical service."""

from __future__ import annotations

import struct
from datetime import datetime
from typing import Any, Callable, Final

from ..exceptions import DecodeError, UnsupportedServiceError
from .services import Service
from .update import DataPacket, parse_ack

HRM_FLAG_UINT16 = 0x01

# Bluetooth Current Time Service adjust reason: manual time update
CTS_ADJUST_MANUAL = 0x01


def encode_current_time(now: datetime, adjust_reason: int = CTS_ADJUST_MANUAL) -> bytes:
    """Build a Current Time Service value.

    Format:
        [year:2 LE][month][day][hour][minute][second][weekday][fractions256][adjust_reason]
        - weekday: 1 = Monday ... 7 = Sunday
    """
    fractions256 = now.microsecond * 256 // 1_000_000
    return struct.pack(
        "<HBBBBBBBB",
        now.year,
        now.month,
        now.day,
        now.hour,
        now.minute,
        now.second,
        now.isoweekday(),
        fractions256,
        adjust_reason,
    )


def _require_length(service: Service, data: bytes, expected: int) -> None:
    if len(data) < expected:
        raise DecodeError(service, len(data), f"need {expected} bytes, got {len(data)}")
    if len(data) > expected:
        raise DecodeError(service, expected, f"unexpected trailing bytes ({len(data)} total)")


def decode_battery_level(data: bytes) -> int:
    """Decode battery percentage (uint8, 0-100)."""
    _require_length(Service.BATTERY_LEVEL, data, 1)
    level = data[0]
    if level > 100:
        raise DecodeError(Service.BATTERY_LEVEL, 0, f"battery level {level} exceeds 100")
    return level


def decode_heart_rate(data: bytes) -> int:
    """Decode a Heart Rate Measurement value.

    Only the flags byte and the bpm field are interpreted; energy expended
    and RR intervals may follow and are ignored.
    """
    if not data:
        raise DecodeError(Service.HEART_RATE, 0, "empty frame")

    flags = data[0]
    if flags & HRM_FLAG_UINT16:
        if len(data) < 3:
            raise DecodeError(Service.HEART_RATE, len(data), "truncated uint16 heart rate")
        return struct.unpack_from("<H", data, 1)[0]

    if len(data) < 2:
        raise DecodeError(Service.HEART_RATE, len(data), "truncated uint8 heart rate")
    return data[1]


def decode_step_count(data: bytes) -> int:
    """Decode step counter (uint32 LE)."""
    _require_length(Service.STEP_COUNT, data, 4)
    return struct.unpack("<I", data)[0]


def decode_firmware_version(data: bytes) -> str:
    """Decode firmware revision string.

    Trailing NUL padding is removed; every remaining byte must be printable ASCII.
    """
    text = data.rstrip(b"\x00")
    if not text:
        raise DecodeError(Service.FIRMWARE_VERSION, 0, "empty version string")
    for offset, byte in enumerate(text):
        if not 0x20 <= byte <= 0x7E:
            raise DecodeError(
                Service.FIRMWARE_VERSION, offset, f"non-printable byte 0x{byte:02x}"
            )
    return text.decode("ascii")


def _encode_current_time(value: Any) -> bytes:
    if isinstance(value, datetime):
        return encode_current_time(value)
    if isinstance(value, (bytes, bytearray)) and len(value) == 10:
        return bytes(value)
    raise TypeError(f"current_time expects datetime, got {type(value).__name__}")


def _encode_update_control(value: Any) -> bytes:
    to_bytes = getattr(value, "to_bytes", None)
    if to_bytes is None or isinstance(value, int):
        raise TypeError(f"update_control expects an update command, got {type(value).__name__}")
    return to_bytes()


def _encode_update_data(value: Any) -> bytes:
    if not isinstance(value, DataPacket):
        raise TypeError(f"update_data expects DataPacket, got {type(value).__name__}")
    return value.to_bytes()


_DECODERS: Final[dict[Service, Callable[[bytes], Any]]] = {
    Service.BATTERY_LEVEL: decode_battery_level,
    Service.HEART_RATE: decode_heart_rate,
    Service.STEP_COUNT: decode_step_count,
    Service.FIRMWARE_VERSION: decode_firmware_version,
    Service.UPDATE_ACK: parse_ack,
}

_ENCODERS: Final[dict[Service, Callable[[Any], bytes]]] = {
    Service.CURRENT_TIME: _encode_current_time,
    Service.UPDATE_CONTROL: _encode_update_control,
    Service.UPDATE_DATA: _encode_update_data,
}


def decode(service: Service, data: bytes | bytearray) -> Any:
    """Decode a value read or notified on a service.

    Raises:
        UnsupportedServiceError: If the service carries no decodable values
        DecodeError: If the frame is malformed
    """
    decoder = _DECODERS.get(service)
    if decoder is None:
        raise UnsupportedServiceError(f"{service.value} has no readable value")
    return decoder(bytes(data))


def encode(service: Service, value: Any) -> bytes:
    """Encode a value to write on a service.

    Raises:
        UnsupportedServiceError: If the service is not writable
        TypeError: If the value has the wrong type for the service
    """
    encoder = _ENCODERS.get(service)
    if encoder is None:
        raise UnsupportedServiceError(f"{service.value} is not writable")
    return encoder(value)
