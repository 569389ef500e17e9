"""BLE protocol implementation."""

from .chunking import chunk_bounds, chunk_count, iter_chunks
from .codec import (
    decode,
    decode_battery_level,
    decode_firmware_version,
    decode_heart_rate,
    decode_step_count,
    encode,
    encode_current_time,
)
from .services import (
    DEFAULT_BINDINGS,
    DEFAULT_CHUNK_SIZE,
    DEVICE_NAME,
    REQUIRED_SERVICES,
    SERVICE_ACCESS,
    TELEMETRY_SERVICES,
    Access,
    Service,
    merge_bindings,
)
from .update import (
    AbortCommand,
    AckFrame,
    AckType,
    ChecksumReport,
    ChunkAck,
    ControlResponse,
    DataPacket,
    ResponseStatus,
    ResumeCommand,
    StartCommand,
    UpdateOpcode,
    VerifyCommand,
    parse_ack,
)

__all__ = [
    "Service",
    "Access",
    "SERVICE_ACCESS",
    "DEFAULT_BINDINGS",
    "REQUIRED_SERVICES",
    "TELEMETRY_SERVICES",
    "DEFAULT_CHUNK_SIZE",
    "DEVICE_NAME",
    "merge_bindings",
    "decode",
    "encode",
    "encode_current_time",
    "decode_battery_level",
    "decode_heart_rate",
    "decode_step_count",
    "decode_firmware_version",
    "UpdateOpcode",
    "AckType",
    "ResponseStatus",
    "StartCommand",
    "VerifyCommand",
    "AbortCommand",
    "ResumeCommand",
    "DataPacket",
    "ControlResponse",
    "ChunkAck",
    "ChecksumReport",
    "AckFrame",
    "parse_ack",
    "chunk_count",
    "chunk_bounds",
    "iter_chunks",
]
