"""WatchLink BLE Session Package.

  Pure Python package for talking to InfiniTime smartwatches over BLE:
  telemetry, clock sync and over-the-air updates.
  """

from .bridge import DesktopBridge
from .config import SessionConfig, load_config
from .discovery import discover_devices, find_device
from .exceptions import (
    AlreadyInProgressError,
    ChunkTimeoutError,
    ConnectError,
    ConnectTimeoutError,
    DecodeError,
    DeviceRejectedError,
    DeviceUnreachableError,
    DisconnectedError,
    GattOperationError,
    IncompatibleVersionError,
    IntegrityMismatchError,
    InvalidImageError,
    LinkLostError,
    MalformedResponseError,
    OpError,
    OpTimeoutError,
    ServiceMissingError,
    SourceUnavailableError,
    StreamClosedError,
    TransferFailedError,
    UnsupportedServiceError,
    UpdateAbortedError,
    UpdateError,
    WatchLinkError,
)
from .models.device import DeviceHandle, SessionStatus
from .models.enums import SessionState, TransferState, UpdateKind
from .models.firmware import SemanticVersion, VersionRange
from .models.manifest import ResourceArchive, ResourceManifest
from .models.telemetry import BatteryLevel, FirmwareVersion, HeartRate, StepCount, TelemetrySample
from .models.update import UpdateImage, UpdateProgress, UpdateTransfer
from .policies import ReconnectPolicy
from .protocol import DEVICE_NAME, Service
from .resolver import (
    LocalFileSource,
    ReleaseMetadata,
    ReleaseResolver,
    fetch_image,
    latest_release,
    select_latest,
)
from .session import DeviceSession, SessionRegistry
from .streams import Broadcaster, NotificationStream
from .telemetry import TelemetryMultiplexer
from .transport import GattClient
from .update import UpdateEngine

__version__ = "0.1.0"

__all__ = [
    # Main API
    "DeviceSession",
    "SessionRegistry",
    "GattClient",
    "UpdateEngine",
    "TelemetryMultiplexer",
    "DesktopBridge",
    "discover_devices",
    "find_device",
    # Config
    "SessionConfig",
    "load_config",
    "ReconnectPolicy",
    # Streams
    "NotificationStream",
    "Broadcaster",
    # Exceptions
    "WatchLinkError",
    "StreamClosedError",
    "ConnectError",
    "DeviceUnreachableError",
    "ServiceMissingError",
    "ConnectTimeoutError",
    "OpError",
    "OpTimeoutError",
    "DisconnectedError",
    "MalformedResponseError",
    "DecodeError",
    "UnsupportedServiceError",
    "GattOperationError",
    "UpdateError",
    "AlreadyInProgressError",
    "IncompatibleVersionError",
    "ChunkTimeoutError",
    "IntegrityMismatchError",
    "LinkLostError",
    "UpdateAbortedError",
    "SourceUnavailableError",
    "DeviceRejectedError",
    "InvalidImageError",
    "TransferFailedError",
    # Models - Session
    "DeviceHandle",
    "SessionState",
    "SessionStatus",
    # Models - Telemetry
    "BatteryLevel",
    "HeartRate",
    "StepCount",
    "FirmwareVersion",
    "TelemetrySample",
    # Models - Update
    "UpdateKind",
    "UpdateImage",
    "UpdateProgress",
    "UpdateTransfer",
    "TransferState",
    "SemanticVersion",
    "VersionRange",
    "ResourceArchive",
    "ResourceManifest",
    # Release sources
    "ReleaseMetadata",
    "ReleaseResolver",
    "LocalFileSource",
    "fetch_image",
    "latest_release",
    "select_latest",
    # Protocol
    "Service",
    "DEVICE_NAME",
]
