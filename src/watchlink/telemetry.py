"""Fan-out of characteristic notifications to independent consumers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import OpError, UnsupportedServiceError
from .models.telemetry import make_sample
from .protocol.services import TELEMETRY_SERVICES, Access, Service, supports
from .streams import DEFAULT_BUFFER_SIZE, NotificationStream

if TYPE_CHECKING:
    from .transport.connection import GattClient

_LOGGER = logging.getLogger(__name__)


class TelemetryMultiplexer:
    """Per-service registry of consumer streams sharing one GATT subscription.

    Each notification is delivered to every consumer of its service in
    registration order. The GATT notification is started with the first
    consumer and stopped when the last one closes. The registry survives
    link loss: detach() drops the client, attach() restarts notifications on
    the new client, and consumers see no end-of-stream in between.
    """

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._consumers: dict[Service, list[NotificationStream]] = {}
        self._client: GattClient | None = None
        self._lock = asyncio.Lock()

    @property
    def client(self) -> GattClient | None:
        return self._client

    @property
    def active_services(self) -> list[Service]:
        """Services with at least one consumer."""
        return list(self._consumers)

    def consumer_count(self, service: Service) -> int:
        return len(self._consumers.get(service, ()))

    async def subscribe(self, service: Service, maxsize: int | None = None) -> NotificationStream:
        """Register a new consumer for a service.

        Raises:
            UnsupportedServiceError: If the service does not notify or the
                attached device lacks it
            OpError: If starting the GATT notification fails
        """
        if not supports(service, Access.NOTIFY):
            raise UnsupportedServiceError(f"{service.value} does not support notifications")

        stream = NotificationStream(
            key=service,
            maxsize=maxsize or self.buffer_size,
            release=self._release,
        )
        async with self._lock:
            consumers = self._consumers.get(service)
            if not consumers and self._client is not None:
                await self._client.start_notify(service, self._handler(service))
            self._consumers.setdefault(service, []).append(stream)

        _LOGGER.debug(
            "Subscribed to %s (%d consumers)", service.value, self.consumer_count(service)
        )
        return stream

    async def _release(self, stream: NotificationStream) -> None:
        service = stream.key
        async with self._lock:
            consumers = self._consumers.get(service, [])
            if stream not in consumers:
                return
            consumers.remove(stream)
            if consumers:
                return
            del self._consumers[service]
            client = self._client
            if client is not None and client.is_connected:
                try:
                    await client.stop_notify(service)
                except OpError as e:
                    _LOGGER.warning("Failed to stop %s notifications: %s", service.value, e)
                    return
        _LOGGER.debug("Last consumer of %s closed, notifications stopped", service.value)

    def _handler(self, service: Service):
        def handle(value: Any) -> None:
            self.dispatch(service, value)
        return handle

    def dispatch(self, service: Service, value: Any) -> None:
        """Deliver a decoded value (or decode error) to every consumer of a service."""
        consumers = self._consumers.get(service)
        if not consumers:
            return

        if isinstance(value, Exception):
            _LOGGER.warning("Malformed %s notification: %s", service.value, value)
            for stream in list(consumers):
                stream.push_error(value)
            return

        item = make_sample(service, value) if service in TELEMETRY_SERVICES else value
        for stream in list(consumers):
            stream.push(item)

    async def attach(self, client: GattClient) -> None:
        """Bind to a connected client and restart notifications for active services."""
        async with self._lock:
            self._client = client
            for service in list(self._consumers):
                if not client.supports(service):
                    _LOGGER.warning(
                        "%s not available after reconnect, ending its streams", service.value
                    )
                    for stream in self._consumers.pop(service):
                        stream.push_error(
                            UnsupportedServiceError(f"{service.value} not available on device")
                        )
                        stream.end()
                    continue
                await client.start_notify(service, self._handler(service))
        if self._consumers:
            _LOGGER.debug(
                "Restored notifications for %s",
                ", ".join(service.value for service in self._consumers),
            )

    def detach(self) -> None:
        """Drop the client binding without ending any stream."""
        self._client = None

    async def close(self) -> None:
        """Stop notifications and end every consumer stream."""
        async with self._lock:
            client, self._client = self._client, None
            consumers, self._consumers = self._consumers, {}
            for service, streams in consumers.items():
                if client is not None and client.is_connected:
                    try:
                        await client.stop_notify(service)
                    except OpError as e:
                        _LOGGER.warning("Failed to stop %s notifications: %s", service.value, e)
                for stream in streams:
                    stream.end()
        _LOGGER.debug("Telemetry multiplexer closed")
