"""Shared fixtures: a scripted in-memory InfiniTime watch."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Callable

import pytest

from watchlink.exceptions import DeviceUnreachableError, DisconnectedError, ServiceMissingError
from watchlink.models.device import DeviceHandle
from watchlink.models.update import crc32
from watchlink.protocol.services import REQUIRED_SERVICES, Service
from watchlink.protocol.update import (
    AbortCommand,
    ChecksumReport,
    ChunkAck,
    ControlResponse,
    DataPacket,
    ResponseStatus,
    ResumeCommand,
    StartCommand,
    UpdateOpcode,
    VerifyCommand,
)
from watchlink.telemetry import TelemetryMultiplexer

ADDRESS = "AA:BB:CC:DD:EE:FF"

OK = ResponseStatus.SUCCESS


class FakeWatch:
    """Stands in for GattClient and plays the device side of the update protocol.

    Acks are delivered with loop.call_soon, like bleak notification callbacks.
    chunk_script(index, attempt) returns the frames sent in reply to a data
    packet; by default every chunk is acknowledged once.
    """

    def __init__(
            self,
            firmware: str = "1.13.0",
            handle: DeviceHandle | None = None,
            multiplexer: TelemetryMultiplexer | None = None,
            on_link_lost: Callable[[Any], None] | None = None,
    ):
        self.handle = handle or DeviceHandle(ADDRESS, "InfiniTime")
        self.firmware = firmware
        self.available: set[Service] = set(Service)
        self.multiplexer = multiplexer or TelemetryMultiplexer()
        self.on_link_lost = on_link_lost
        self.values: dict[Service, Any] = {
            Service.BATTERY_LEVEL: 87,
            Service.HEART_RATE: 72,
            Service.STEP_COUNT: 1234,
        }

        self.connected = False
        self.open_calls = 0
        self.open_failures = 0
        self.handlers: dict[Service, Callable[[Any], None]] = {}
        self.notify_starts: Counter[Service] = Counter()
        self.notify_stops: Counter[Service] = Counter()
        self.writes: list[tuple[Service, Any]] = []

        # Device side of the update protocol
        self.start_status = OK
        self.resume_status = OK
        self.verify_checksum: int | None = None
        self.chunk_script: Callable[[int, int], list[Any]] | None = None
        self.drop_link_after_chunk: int | None = None
        self.data_packets: list[int] = []
        self.received: dict[int, bytes] = {}
        self.resumed_at: list[int] = []

    # -- GattClient surface --

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def capabilities(self) -> frozenset[Service]:
        return frozenset(self.available)

    def supports(self, service: Service) -> bool:
        return service in self.available

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_failures:
            self.open_failures -= 1
            raise DeviceUnreachableError(f"Device {self.handle.address} not found")
        self.connected = True

    async def resolve_services(self) -> frozenset[Service]:
        missing = sorted(REQUIRED_SERVICES - self.available, key=lambda s: s.value)
        if missing:
            await self.disconnect()
            raise ServiceMissingError(missing[0])
        return self.capabilities

    async def connect(self) -> FakeWatch:
        await self.open()
        await self.resolve_services()
        await self.multiplexer.attach(self)
        return self

    async def disconnect(self) -> None:
        self.connected = False
        self.handlers.clear()
        self.multiplexer.detach()

    def _check(self) -> None:
        if not self.connected:
            raise DisconnectedError("Not connected")

    async def read(self, service: Service) -> Any:
        self._check()
        if service == Service.FIRMWARE_VERSION:
            return self.firmware
        return self.values[service]

    async def write(self, service: Service, value: Any) -> None:
        self._check()
        self.writes.append((service, value))
        self._respond(value)

    async def subscribe(self, service: Service, maxsize: int | None = None):
        self._check()
        return await self.multiplexer.subscribe(service, maxsize)

    async def start_notify(self, service: Service, handler: Callable[[Any], None]) -> None:
        self._check()
        self.handlers[service] = handler
        self.notify_starts[service] += 1

    async def stop_notify(self, service: Service) -> None:
        self.handlers.pop(service, None)
        self.notify_stops[service] += 1

    # -- Test controls --

    def notify(self, service: Service, value: Any) -> None:
        """Deliver a decoded notification (or decode error) now."""
        handler = self.handlers.get(service)
        if handler is not None:
            handler(value)

    def drop_link(self) -> None:
        """Simulate the radio link going away."""
        self.connected = False
        self.handlers.clear()
        self.multiplexer.detach()
        if self.on_link_lost is not None:
            self.on_link_lost(self)

    def written(self, kind: type) -> list[Any]:
        return [value for _, value in self.writes if isinstance(value, kind)]

    def _send(self, frame: Any) -> None:
        asyncio.get_running_loop().call_soon(self.notify, Service.UPDATE_ACK, frame)

    def _respond(self, value: Any) -> None:
        if isinstance(value, StartCommand):
            self._send(ControlResponse(UpdateOpcode.START, self.start_status))
        elif isinstance(value, DataPacket):
            self.data_packets.append(value.index)
            attempt = self.data_packets.count(value.index)
            if self.chunk_script is None:
                frames = [ChunkAck(value.index, OK)]
            else:
                frames = self.chunk_script(value.index, attempt)
            if any(isinstance(f, ChunkAck) and f.index == value.index and f.ok for f in frames):
                self.received[value.index] = value.payload
            for frame in frames:
                self._send(frame)
            if self.drop_link_after_chunk == value.index and attempt == 1:
                asyncio.get_running_loop().call_soon(self.drop_link)
        elif isinstance(value, VerifyCommand):
            data = b"".join(self.received[i] for i in sorted(self.received))
            checksum = crc32(data) if self.verify_checksum is None else self.verify_checksum
            self._send(ChecksumReport(checksum))
        elif isinstance(value, ResumeCommand):
            self.resumed_at.append(value.next_index)
            self._send(ControlResponse(UpdateOpcode.RESUME, self.resume_status))
        elif isinstance(value, AbortCommand):
            pass


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.001)


def drain(stream) -> list[Any]:
    """Pop everything currently buffered in a stream without waiting."""
    items = []
    while len(stream):
        items.append(stream._buffer.popleft())
    return items


@pytest.fixture
def watch() -> FakeWatch:
    return FakeWatch()
