"""Device identity and session status models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .enums import SessionState

if TYPE_CHECKING:
    from bleak.backends.device import BLEDevice


@dataclass(frozen=True)
class DeviceHandle:
    """Identifier and transport address of one watch.

    Attributes:
        address: Bluetooth address (or platform identifier on macOS)
        name: Advertised name, if known
        ble_device: BLEDevice from a previous scan; skips rescanning on connect
    """

    address: str
    name: str | None = None
    ble_device: BLEDevice | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_ble_device(cls, device: BLEDevice) -> DeviceHandle:
        return cls(address=device.address, name=device.name, ble_device=device)


@dataclass(frozen=True)
class SessionStatus:
    """Session state snapshot published on every transition."""

    state: SessionState
    reason: str | None = None
    error: Exception | None = None
    timestamp: float = field(default_factory=time.time)
