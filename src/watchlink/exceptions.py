"""Exception hierarchy for watchlink."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol.services import Service


class WatchLinkError(Exception):
    """Base exception for all watchlink errors."""


class StreamClosedError(WatchLinkError):
    """Raised when reading from a notification stream that has ended."""


# Connection errors (surfaced to the caller, retried only by the session)


class ConnectError(WatchLinkError):
    """Connecting to the watch failed."""


class DeviceUnreachableError(ConnectError):
    """Device not found during scan or transport connection refused."""


class ServiceMissingError(ConnectError):
    """A required GATT service is not exposed by the device."""

    def __init__(self, service: Service, message: str | None = None):
        self.service = service
        super().__init__(message or f"Required service {service.value} not found on device")


class ConnectTimeoutError(ConnectError):
    """Connection attempt exceeded its timeout."""


# Operation errors


class OpError(WatchLinkError):
    """A single read/write/subscribe operation failed."""


class OpTimeoutError(OpError):
    """Operation did not complete within its timeout."""


class DisconnectedError(OpError):
    """Transport is not connected."""


class MalformedResponseError(OpError):
    """Device sent a frame that does not match the protocol."""


class DecodeError(MalformedResponseError):
    """Frame could not be decoded.

    Attributes:
        service: Logical service the frame belongs to
        offset: Byte offset of the offending field
    """

    def __init__(self, service: Service, offset: int, detail: str):
        self.service = service
        self.offset = offset
        self.detail = detail
        super().__init__(f"{service.value}: malformed frame at byte {offset}: {detail}")


class UnsupportedServiceError(OpError):
    """Service is unknown, absent on this device, or lacks the requested access."""


class GattOperationError(OpError):
    """Link is up but the GATT operation was refused."""


# Update errors (terminal for the affected transfer only)


class UpdateError(WatchLinkError):
    """Update transfer failed."""


class AlreadyInProgressError(UpdateError):
    """Another transfer is still active."""


class IncompatibleVersionError(UpdateError):
    """Image is not compatible with the installed firmware."""


class ChunkTimeoutError(UpdateError):
    """Chunk was not acknowledged after all retries."""

    def __init__(self, index: int, attempts: int):
        self.index = index
        self.attempts = attempts
        super().__init__(f"Chunk {index} not acknowledged after {attempts} attempts")


class IntegrityMismatchError(UpdateError):
    """Checksum or size does not match the declared value."""

    def __init__(self, expected: int, actual: int, what: str = "checksum"):
        self.expected = expected
        self.actual = actual
        if what == "checksum":
            super().__init__(f"checksum mismatch: expected 0x{expected:08x}, got 0x{actual:08x}")
        else:
            super().__init__(f"{what} mismatch: expected {expected}, got {actual}")


class LinkLostError(UpdateError):
    """Link dropped and the transfer could not be resumed."""


class UpdateAbortedError(UpdateError):
    """Transfer was aborted by the caller."""


class SourceUnavailableError(UpdateError):
    """Release resolver could not supply the image."""


class DeviceRejectedError(UpdateError):
    """Device refused the transfer."""


class InvalidImageError(UpdateError):
    """Image or resource archive is structurally invalid."""


class TransferFailedError(UpdateError):
    """Transfer failed on an unexpected protocol error."""
