"""Logical GATT services exposed by InfiniTime watches."""

from __future__ import annotations

from enum import Enum, IntFlag
from typing import Final, Mapping


class Service(str, Enum):
    """Logical services, independent of their wire identifiers."""

    CURRENT_TIME = "current_time"
    BATTERY_LEVEL = "battery_level"
    HEART_RATE = "heart_rate"
    STEP_COUNT = "step_count"
    FIRMWARE_VERSION = "firmware_version"
    UPDATE_CONTROL = "update_control"
    UPDATE_DATA = "update_data"
    UPDATE_ACK = "update_ack"


class Access(IntFlag):
    """Operations a logical service supports."""

    READ = 0x01
    WRITE = 0x02
    NOTIFY = 0x04


SERVICE_ACCESS: Final[dict[Service, Access]] = {
    Service.CURRENT_TIME: Access.WRITE,
    Service.BATTERY_LEVEL: Access.READ | Access.NOTIFY,
    Service.HEART_RATE: Access.READ | Access.NOTIFY,
    Service.STEP_COUNT: Access.READ | Access.NOTIFY,
    Service.FIRMWARE_VERSION: Access.READ,
    Service.UPDATE_CONTROL: Access.WRITE,
    Service.UPDATE_DATA: Access.WRITE,
    Service.UPDATE_ACK: Access.NOTIFY,
}

# Characteristic UUIDs used by InfiniTime firmware
DEFAULT_BINDINGS: Final[Mapping[Service, str]] = {
    Service.CURRENT_TIME: "00002a2b-0000-1000-8000-00805f9b34fb",
    Service.BATTERY_LEVEL: "00002a19-0000-1000-8000-00805f9b34fb",
    Service.HEART_RATE: "00002a37-0000-1000-8000-00805f9b34fb",
    Service.STEP_COUNT: "00030001-78fc-48fe-8e23-433b3a1942d0",
    Service.FIRMWARE_VERSION: "00002a26-0000-1000-8000-00805f9b34fb",
    Service.UPDATE_CONTROL: "00001531-1212-efde-1523-785feabcd123",
    Service.UPDATE_DATA: "00001532-1212-efde-1523-785feabcd123",
    # Acks arrive as notifications on the control point
    Service.UPDATE_ACK: "00001531-1212-efde-1523-785feabcd123",
}

REQUIRED_SERVICES: Final[frozenset[Service]] = frozenset({
    Service.FIRMWARE_VERSION,
    Service.BATTERY_LEVEL,
})

TELEMETRY_SERVICES: Final[frozenset[Service]] = frozenset({
    Service.BATTERY_LEVEL,
    Service.HEART_RATE,
    Service.STEP_COUNT,
    Service.FIRMWARE_VERSION,
})

DEVICE_NAME = "InfiniTime"

# Chunking constants
UPDATE_INDEX_SIZE = 4  # uint32 chunk index prefix on every data packet
DEFAULT_CHUNK_SIZE = 240  # 4 + 240 bytes fits a 247-byte ATT MTU
MAX_CHUNK_SIZE = 0xFFFF


def supports(service: Service, access: Access) -> bool:
    """Check whether a service allows the given access."""
    return bool(SERVICE_ACCESS[service] & access)


def merge_bindings(overrides: Mapping[Service | str, str] | None) -> dict[Service, str]:
    """Apply UUID overrides on top of the default binding table.

    Args:
        overrides: Mapping of service (or service name) to characteristic UUID

    Returns:
        Complete binding table

    Raises:
        ValueError: If an override names an unknown service
    """
    bindings = dict(DEFAULT_BINDINGS)
    for key, uuid in (overrides or {}).items():
        try:
            service = Service(key)
        except ValueError:
            raise ValueError(f"Unknown service in bindings: {key!r}") from None
        bindings[service] = uuid.lower()
    return bindings
