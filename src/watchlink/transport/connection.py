"""BLE connection management."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from ..exceptions import (
    ConnectError,
    ConnectTimeoutError,
    DeviceUnreachableError,
    DisconnectedError,
    GattOperationError,
    OpTimeoutError,
    ServiceMissingError,
    UnsupportedServiceError,
    WatchLinkError,
)
from ..models.device import DeviceHandle
from ..protocol import codec
from ..protocol.services import (
    DEFAULT_BINDINGS,
    REQUIRED_SERVICES,
    Access,
    Service,
    supports,
)
from ..telemetry import TelemetryMultiplexer

if TYPE_CHECKING:
    from bleak.backends.characteristic import BleakGATTCharacteristic

    from ..streams import NotificationStream

_LOGGER = logging.getLogger(__name__)


class GattClient:
    """Owns the BLE link to one watch and maps logical services onto it.

    Features:
    - Automatic retry logic with bleak-retry-connector
    - Service caching for faster reconnections
    - Capability negotiation (optional services are detected, not required)
    - One lock serializing every GATT operation on the link
    - Fan-out notification streams through a TelemetryMultiplexer
    """

    def __init__(
            self,
            handle: DeviceHandle,
            bindings: Mapping[Service, str] | None = None,
            timeout: float = 10.0,
            operation_timeout: float = 5.0,
            max_attempts: int = 4,
            use_services_cache: bool = True,
            multiplexer: TelemetryMultiplexer | None = None,
            on_link_lost: Callable[[GattClient], None] | None = None,
    ):
        """Initialize GATT client.

        Args:
            handle: Watch to connect to
            bindings: Service -> characteristic UUID table (default: InfiniTime UUIDs)
            timeout: Connection timeout in seconds (default: 10)
            operation_timeout: Per read/write timeout in seconds (default: 5)
            max_attempts: Maximum connection attempts for bleak-retry-connector (default: 4)
            use_services_cache: Enable GATT service caching for faster reconnections (default: True)
            multiplexer: Notification registry to share, e.g. across reconnects
            on_link_lost: Called when the link drops without disconnect() being called
        """
        self.handle = handle
        self.bindings = dict(bindings or DEFAULT_BINDINGS)
        self.timeout = timeout
        self.operation_timeout = operation_timeout
        self.max_attempts = max_attempts
        self.use_services_cache = use_services_cache
        self.multiplexer = multiplexer or TelemetryMultiplexer()
        self.on_link_lost = on_link_lost

        self._client: BleakClient | None = None
        self._characteristics: dict[Service, BleakGATTCharacteristic] = {}
        self._notifying: set[str] = set()
        self._lock = asyncio.Lock()
        self._closing = False
        self._lost = False

    async def __aenter__(self) -> GattClient:
        """Connect to device (context manager entry)."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Disconnect from device (context manager exit)."""
        await self.disconnect()

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to device."""
        return self._client is not None and self._client.is_connected and not self._lost

    @property
    def capabilities(self) -> frozenset[Service]:
        """Services present on the connected device."""
        return frozenset(self._characteristics)

    def supports(self, service: Service) -> bool:
        return service in self._characteristics

    async def connect(self) -> GattClient:
        """Connect, resolve services and attach the multiplexer.

        Raises:
            DeviceUnreachableError: If the device cannot be found or connected
            ServiceMissingError: If a required service is absent
            ConnectTimeoutError: If connection times out
        """
        await self.open()
        await self.resolve_services()
        await self.multiplexer.attach(self)
        return self

    async def open(self) -> None:
        """Establish the transport connection.

        Uses bleak-retry-connector for automatic retry logic and service caching.
        """
        if self.is_connected:
            return  # Already connected

        self._closing = False
        self._lost = False

        try:
            _LOGGER.debug(
                "Connecting to %s with bleak-retry-connector (max_attempts=%d)",
                self.handle.address,
                self.max_attempts,
            )

            # Resolve address to BLEDevice if not provided
            device = self.handle.ble_device
            if device is None:
                device = await BleakScanner.find_device_by_address(
                    self.handle.address,
                    timeout=self.timeout,
                )
                if device is None:
                    raise DeviceUnreachableError(
                        f"Device {self.handle.address} not found during scan"
                    )

            self._client = await establish_connection(
                client_class=BleakClientWithServiceCache,
                device=device,
                name=self.handle.name or device.name or self.handle.address,
                disconnected_callback=self._on_disconnect,
                max_attempts=self.max_attempts,
                use_services_cache=self.use_services_cache,
                timeout=self.timeout,
            )
        except ConnectError:
            raise
        except asyncio.TimeoutError as e:
            raise ConnectTimeoutError(
                f"Connection timeout after {self.timeout}s"
            ) from e
        except Exception as e:
            raise DeviceUnreachableError(
                f"Failed to connect: {e}"
            ) from e

        _LOGGER.debug("Connected to %s", self.handle.address)

    async def resolve_services(self) -> frozenset[Service]:
        """Map bound services onto the device's characteristics.

        Returns:
            Services present on this device

        Raises:
            ServiceMissingError: If a required service is absent
        """
        if self._client is None or not self._client.is_connected:
            raise DisconnectedError("Not connected")

        services = self._client.services
        found: dict[Service, BleakGATTCharacteristic] = {}
        for service, uuid in self.bindings.items():
            characteristic = services.get_characteristic(uuid)
            if characteristic is not None:
                found[service] = characteristic

        missing = sorted(REQUIRED_SERVICES - found.keys(), key=lambda s: s.value)
        if missing:
            await self.disconnect()
            raise ServiceMissingError(missing[0])

        self._characteristics = found
        _LOGGER.info(
            "Resolved %d services on %s (optional missing: %s)",
            len(found),
            self.handle.address,
            ", ".join(s.value for s in Service if s not in found) or "none",
        )
        return self.capabilities

    async def disconnect(self) -> None:
        """Disconnect from device. Idempotent."""
        self._closing = True
        self.multiplexer.detach()
        client, self._client = self._client, None
        self._notifying.clear()
        if client and client.is_connected:
            try:
                _LOGGER.debug("Disconnecting from %s", self.handle.address)
                await client.disconnect()
            except Exception as e:
                _LOGGER.warning("Error during disconnect: %s", e)

    def _on_disconnect(self, _client: BleakClient) -> None:
        """Handle link loss reported by bleak."""
        if self._closing or self._lost:
            return
        self._lost = True
        self._notifying.clear()
        _LOGGER.warning("Link to %s lost", self.handle.address)
        self.multiplexer.detach()
        if self.on_link_lost is not None:
            self.on_link_lost(self)

    def _require(self, service: Service, access: Access) -> BleakGATTCharacteristic:
        """Reject the operation unless connected and the service allows it."""
        if not self.is_connected:
            raise DisconnectedError("Not connected")
        if not supports(service, access):
            raise UnsupportedServiceError(
                f"{service.value} does not support {access.name.lower()}"
            )
        characteristic = self._characteristics.get(service)
        if characteristic is None:
            raise UnsupportedServiceError(f"{service.value} not available on device")
        return characteristic

    async def _run(self, service: Service, operation: str, coro_factory: Callable[[], Any]) -> Any:
        """Run one GATT operation under the link lock with a bounded timeout."""
        async with self._lock:
            if not self.is_connected:
                raise DisconnectedError("Not connected")
            try:
                return await asyncio.wait_for(coro_factory(), timeout=self.operation_timeout)
            except asyncio.TimeoutError as e:
                raise OpTimeoutError(
                    f"{operation} {service.value} timed out after {self.operation_timeout}s"
                ) from e
            except BleakError as e:
                if not self.is_connected:
                    raise DisconnectedError(f"{operation} {service.value} failed: {e}") from e
                raise GattOperationError(f"{operation} {service.value} failed: {e}") from e

    async def read(self, service: Service) -> Any:
        """Read and decode a service value.

        Raises:
            DisconnectedError: If not connected
            OpTimeoutError: If the read times out
            DecodeError: If the value is malformed
        """
        characteristic = self._require(service, Access.READ)
        data = await self._run(
            service, "Read", lambda: self._client.read_gatt_char(characteristic)
        )
        return codec.decode(service, data)

    async def write(self, service: Service, value: Any) -> None:
        """Encode and write a service value.

        Raises:
            DisconnectedError: If not connected
            OpTimeoutError: If the write is not confirmed in time
        """
        characteristic = self._require(service, Access.WRITE)
        data = codec.encode(service, value)
        # Prefer acknowledged writes; fall back for write-without-response characteristics
        response = "write" in characteristic.properties
        await self._run(
            service,
            "Write",
            lambda: self._client.write_gatt_char(characteristic, data, response=response),
        )

    async def subscribe(self, service: Service, maxsize: int | None = None) -> NotificationStream:
        """Open a fan-out notification stream for a service."""
        if not self.is_connected:
            raise DisconnectedError("Not connected")
        return await self.multiplexer.subscribe(service, maxsize)

    async def start_notify(self, service: Service, handler: Callable[[Any], None]) -> None:
        """Start GATT notifications and feed decoded values to handler.

        Decode errors are passed to handler as exception instances.
        """
        characteristic = self._require(service, Access.NOTIFY)

        def on_notification(_sender: Any, data: bytearray) -> None:
            try:
                value = codec.decode(service, data)
            except WatchLinkError as e:
                handler(e)
                return
            handler(value)

        await self._run(
            service,
            "Subscribe",
            lambda: self._client.start_notify(characteristic, on_notification),
        )
        self._notifying.add(characteristic.uuid)
        _LOGGER.debug("Notifications started for %s", service.value)

    async def stop_notify(self, service: Service) -> None:
        """Stop GATT notifications for a service."""
        characteristic = self._require(service, Access.NOTIFY)
        if characteristic.uuid not in self._notifying:
            return
        await self._run(
            service,
            "Unsubscribe",
            lambda: self._client.stop_notify(characteristic),
        )
        self._notifying.discard(characteristic.uuid)
        _LOGGER.debug("Notifications stopped for %s", service.value)
