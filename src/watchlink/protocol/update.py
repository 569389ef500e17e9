"""Update-transfer control, data and acknowledgment frames."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from ..exceptions import DecodeError
from .services import MAX_CHUNK_SIZE, Service


class UpdateOpcode(IntEnum):
    """Commands written to the update control point."""

    START = 0x01
    VERIFY = 0x02
    ABORT = 0x03
    RESUME = 0x04


class AckType(IntEnum):
    """First byte of every update-ack notification."""

    RESPONSE = 0x10
    CHUNK = 0x11
    CHECKSUM = 0x12


class ResponseStatus(IntEnum):
    """Device status codes (legacy Nordic DFU numbering)."""

    SUCCESS = 0x01
    INVALID_STATE = 0x02
    NOT_SUPPORTED = 0x03
    DATA_SIZE_EXCEEDS_LIMIT = 0x04
    CRC_ERROR = 0x05
    OPERATION_FAILED = 0x06


@dataclass(frozen=True, slots=True)
class StartCommand:
    """Negotiate a new transfer.

    Format:
        [opcode:1][kind:1][size:4][crc32:4][chunk_size:2][version:ascii]
        - all integers little-endian
    """

    kind: int
    size: int
    checksum: int
    chunk_size: int
    version: str = ""

    def to_bytes(self) -> bytes:
        if not 0 < self.chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"Chunk size {self.chunk_size} out of range (1-{MAX_CHUNK_SIZE})")
        header = struct.pack(
            "<BBIIH",
            UpdateOpcode.START,
            self.kind,
            self.size,
            self.checksum & 0xFFFFFFFF,
            self.chunk_size,
        )
        return header + self.version.encode("ascii")


@dataclass(frozen=True, slots=True)
class VerifyCommand:
    """Ask the device to recompute the checksum of the received image."""

    def to_bytes(self) -> bytes:
        return bytes([UpdateOpcode.VERIFY])


@dataclass(frozen=True, slots=True)
class AbortCommand:
    """Cancel the transfer on the device."""

    def to_bytes(self) -> bytes:
        return bytes([UpdateOpcode.ABORT])


@dataclass(frozen=True, slots=True)
class ResumeCommand:
    """Continue an interrupted transfer at the given chunk index."""

    next_index: int

    def to_bytes(self) -> bytes:
        return struct.pack("<BI", UpdateOpcode.RESUME, self.next_index)


UpdateCommand = StartCommand | VerifyCommand | AbortCommand | ResumeCommand


@dataclass(frozen=True, slots=True)
class DataPacket:
    """One chunk of the image.

    Format: [index:4 LE][payload]
    """

    index: int
    payload: bytes

    def to_bytes(self) -> bytes:
        if len(self.payload) > MAX_CHUNK_SIZE:
            raise ValueError(f"Chunk size {len(self.payload)} exceeds maximum {MAX_CHUNK_SIZE}")
        return struct.pack("<I", self.index) + self.payload


@dataclass(frozen=True, slots=True)
class ControlResponse:
    """Device response to a control command."""

    opcode: UpdateOpcode
    status: ResponseStatus

    @property
    def ok(self) -> bool:
        return self.status == ResponseStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class ChunkAck:
    """Per-chunk acknowledgment."""

    index: int
    status: ResponseStatus

    @property
    def ok(self) -> bool:
        return self.status == ResponseStatus.SUCCESS


@dataclass(frozen=True, slots=True)
class ChecksumReport:
    """Checksum the device computed over the fully received image."""

    checksum: int


AckFrame = ControlResponse | ChunkAck | ChecksumReport

_ACK_LENGTHS = {
    AckType.RESPONSE: 3,
    AckType.CHUNK: 6,
    AckType.CHECKSUM: 5,
}


def _status(data: bytes, offset: int) -> ResponseStatus:
    try:
        return ResponseStatus(data[offset])
    except ValueError:
        raise DecodeError(
            Service.UPDATE_ACK, offset, f"unknown status 0x{data[offset]:02x}"
        ) from None


def parse_ack(data: bytes) -> AckFrame:
    """Parse an update-ack notification.

    Formats:
        [0x10][opcode:1][status:1]   control response
        [0x11][index:4 LE][status:1] chunk ack
        [0x12][crc32:4 LE]           checksum report

    Raises:
        DecodeError: If the frame type, length or a field is invalid
    """
    if not data:
        raise DecodeError(Service.UPDATE_ACK, 0, "empty frame")

    try:
        ack_type = AckType(data[0])
    except ValueError:
        raise DecodeError(
            Service.UPDATE_ACK, 0, f"unknown frame type 0x{data[0]:02x}"
        ) from None

    expected = _ACK_LENGTHS[ack_type]
    if len(data) != expected:
        raise DecodeError(
            Service.UPDATE_ACK,
            min(len(data), expected),
            f"{ack_type.name.lower()} frame must be {expected} bytes, got {len(data)}",
        )

    if ack_type == AckType.RESPONSE:
        try:
            opcode = UpdateOpcode(data[1])
        except ValueError:
            raise DecodeError(
                Service.UPDATE_ACK, 1, f"unknown opcode 0x{data[1]:02x}"
            ) from None
        return ControlResponse(opcode=opcode, status=_status(data, 2))

    if ack_type == AckType.CHUNK:
        index = struct.unpack_from("<I", data, 1)[0]
        return ChunkAck(index=index, status=_status(data, 5))

    checksum = struct.unpack_from("<I", data, 1)[0]
    return ChecksumReport(checksum=checksum)
