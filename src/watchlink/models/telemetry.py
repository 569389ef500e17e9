"""Telemetry samples delivered by the watch."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Union

from ..protocol.services import Service


@dataclass(frozen=True, slots=True)
class BatteryLevel:
    """Battery charge in percent (0-100)."""

    percent: int
    received_at: float = field(default_factory=time.time)

    service = Service.BATTERY_LEVEL


@dataclass(frozen=True, slots=True)
class HeartRate:
    """Heart rate in beats per minute."""

    bpm: int
    received_at: float = field(default_factory=time.time)

    service = Service.HEART_RATE


@dataclass(frozen=True, slots=True)
class StepCount:
    """Step counter since the watch's last daily reset."""

    steps: int
    received_at: float = field(default_factory=time.time)

    service = Service.STEP_COUNT


@dataclass(frozen=True, slots=True)
class FirmwareVersion:
    """Firmware revision string reported by the watch."""

    version: str
    received_at: float = field(default_factory=time.time)

    service = Service.FIRMWARE_VERSION


TelemetrySample = Union[BatteryLevel, HeartRate, StepCount, FirmwareVersion]

_SAMPLE_TYPES: dict[Service, type] = {
    Service.BATTERY_LEVEL: BatteryLevel,
    Service.HEART_RATE: HeartRate,
    Service.STEP_COUNT: StepCount,
    Service.FIRMWARE_VERSION: FirmwareVersion,
}


def make_sample(service: Service, value: Any, received_at: float | None = None) -> TelemetrySample:
    """Wrap a decoded value into the sample type for its service.

    Raises:
        KeyError: If the service does not produce telemetry
    """
    sample_type = _SAMPLE_TYPES[service]
    if received_at is None:
        return sample_type(value)
    return sample_type(value, received_at)
