"""Data models for InfiniTime watches."""

from .device import DeviceHandle, SessionStatus
from .enums import SessionState, TransferState, UpdateKind
from .firmware import SemanticVersion, VersionRange
from .manifest import (
    ManifestEntry,
    ObsoleteFile,
    ResourceArchive,
    ResourceManifest,
)
from .telemetry import (
    BatteryLevel,
    FirmwareVersion,
    HeartRate,
    StepCount,
    TelemetrySample,
    make_sample,
)
from .update import UpdateImage, UpdateProgress, UpdateTransfer, crc32

__all__ = [
    "DeviceHandle",
    "SessionStatus",
    "SessionState",
    "TransferState",
    "UpdateKind",
    "SemanticVersion",
    "VersionRange",
    "ManifestEntry",
    "ObsoleteFile",
    "ResourceArchive",
    "ResourceManifest",
    "BatteryLevel",
    "FirmwareVersion",
    "HeartRate",
    "StepCount",
    "TelemetrySample",
    "make_sample",
    "UpdateImage",
    "UpdateProgress",
    "UpdateTransfer",
    "crc32",
]
