"""Scan for InfiniTime watches."""

from __future__ import annotations

import logging

from bleak import BleakScanner

from .exceptions import DeviceUnreachableError
from .models.device import DeviceHandle
from .protocol.services import DEVICE_NAME

_LOGGER = logging.getLogger(__name__)


async def discover_devices(
        timeout: float = 10.0,
        name: str = DEVICE_NAME,
) -> dict[str, DeviceHandle]:
    """Scan for watches advertising the given name.

    Args:
        timeout: Scan duration in seconds (default: 10)
        name: Advertised device name to match (default: "InfiniTime")

    Returns:
        Mapping of address to DeviceHandle
    """
    _LOGGER.debug("Scanning for %s devices (%.1fs)", name, timeout)
    found = await BleakScanner.discover(timeout=timeout)

    devices = {
        device.address: DeviceHandle.from_ble_device(device)
        for device in found
        if device.name == name
    }
    _LOGGER.info("Found %d %s device(s)", len(devices), name)
    return devices


async def find_device(address: str, timeout: float = 10.0) -> DeviceHandle | None:
    """Locate one watch by address.

    Returns:
        DeviceHandle bound to the scanned BLEDevice, or None if not seen

    Raises:
        DeviceUnreachableError: If the scan itself fails (e.g. adapter off)
    """
    try:
        device = await BleakScanner.find_device_by_address(address, timeout=timeout)
    except Exception as e:
        raise DeviceUnreachableError(f"Scan for {address} failed: {e}") from e
    if device is None:
        _LOGGER.debug("Device %s not seen within %.1fs", address, timeout)
        return None
    return DeviceHandle.from_ble_device(device)
