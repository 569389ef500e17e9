"""BLE transport layer."""

from .connection import GattClient

__all__ = ["GattClient"]
