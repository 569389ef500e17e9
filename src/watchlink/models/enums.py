from __future__ import annotations

from enum import Enum, IntEnum


class SessionState(str, Enum):
    """Device session lifecycle states."""
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    RESOLVING_SERVICES = "resolving_services"
    READY = "ready"
    RECONNECTING = "reconnecting"


class UpdateKind(IntEnum):
    """Update image kinds (wire values of the START command)."""
    FIRMWARE = 0x01
    RESOURCES = 0x02


class TransferState(str, Enum):
    """Update transfer states.

    COMPLETE, ABORTED and FAILED are terminal.
    """
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    SUSPENDED = "suspended"     # link lost mid-transfer, waiting to resume
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.COMPLETE, TransferState.ABORTED, TransferState.FAILED)
