"""Device session lifecycle and reconnection."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from .config import SessionConfig
from .discovery import find_device
from .exceptions import (
    ConnectError,
    DeviceUnreachableError,
    DisconnectedError,
    LinkLostError,
    OpError,
    ServiceMissingError,
    UnsupportedServiceError,
    WatchLinkError,
)
from .models.device import DeviceHandle, SessionStatus
from .models.enums import SessionState
from .models.update import UpdateImage, UpdateProgress, UpdateTransfer
from .protocol.services import Service
from .streams import Broadcaster, NotificationStream
from .telemetry import TelemetryMultiplexer
from .transport.connection import GattClient
from .update import UpdateEngine

_LOGGER = logging.getLogger(__name__)

_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.DISCONNECTED: {SessionState.DISCOVERING, SessionState.CONNECTING},
    SessionState.DISCOVERING: {SessionState.CONNECTING, SessionState.DISCONNECTED},
    SessionState.CONNECTING: {SessionState.RESOLVING_SERVICES, SessionState.DISCONNECTED},
    SessionState.RESOLVING_SERVICES: {SessionState.READY, SessionState.DISCONNECTED},
    SessionState.READY: {SessionState.RECONNECTING, SessionState.DISCONNECTED},
    SessionState.RECONNECTING: {SessionState.READY, SessionState.DISCONNECTED},
}

ClientFactory = Callable[[DeviceHandle], GattClient]
DeviceFinder = Callable[[str, float], Awaitable[DeviceHandle | None]]


class DeviceSession:
    """One watch: connection lifecycle, telemetry and updates.

    The session owns a single TelemetryMultiplexer and UpdateEngine for its
    whole life, so subscriptions and an in-flight transfer survive link loss.
    Unexpected disconnects in READY trigger a background reconnect loop with
    jittered exponential backoff that runs until it succeeds or disconnect()
    is called.

    Usage:
        async with DeviceSession("AA:BB:CC:DD:EE:FF") as session:
            level = await session.read(Service.BATTERY_LEVEL)
            async with await session.subscribe(Service.HEART_RATE) as stream:
                async for sample in stream:
                    print(sample.bpm)
    """

    def __init__(
            self,
            device: DeviceHandle | str,
            config: SessionConfig | None = None,
            *,
            client_factory: ClientFactory | None = None,
            finder: DeviceFinder | None = None,
    ):
        """Initialize session.

        Args:
            device: DeviceHandle from a scan, or a bare address
            config: Session tunables (default: SessionConfig())
            client_factory: Builds the GattClient for a handle
            finder: Resolves an address to a DeviceHandle (default: BLE scan)
        """
        self.handle = DeviceHandle(device) if isinstance(device, str) else device
        self.config = config or SessionConfig()
        self.multiplexer = TelemetryMultiplexer(self.config.telemetry_buffer_size)
        self.engine = UpdateEngine.from_config(self.config)

        self._client_factory = client_factory or self._make_client
        self._finder = finder or find_device
        self._policy = self.config.reconnect_policy()
        self._client: GattClient | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._state = SessionState.DISCONNECTED
        self._status: Broadcaster[SessionStatus] = Broadcaster("session_status", replay_last=True)
        self._status.publish(SessionStatus(SessionState.DISCONNECTED))

    async def __aenter__(self) -> DeviceSession:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    @property
    def address(self) -> str:
        return self.handle.address

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def client(self) -> GattClient | None:
        return self._client

    @property
    def status(self) -> SessionStatus:
        """Most recent status published."""
        return self._status.last

    def status_updates(self, maxsize: int | None = None) -> NotificationStream[SessionStatus]:
        """Stream of status changes, starting with the current status."""
        return self._status.subscribe(maxsize)

    def update_progress(self, maxsize: int | None = None) -> NotificationStream[UpdateProgress]:
        """Stream of update progress snapshots."""
        return self.engine.progress.subscribe(maxsize)

    def _transition(
            self,
            state: SessionState,
            reason: str | None = None,
            error: Exception | None = None,
    ) -> bool:
        if state not in _TRANSITIONS[self._state]:
            _LOGGER.warning(
                "Invalid session transition: %s -> %s", self._state.value, state.value
            )
            return False
        _LOGGER.debug("Session %s: %s -> %s", self.address, self._state.value, state.value)
        self._state = state
        self._status.publish(SessionStatus(state, reason=reason, error=error))
        return True

    def _make_client(self, handle: DeviceHandle) -> GattClient:
        return GattClient(
            handle,
            bindings=self.config.bindings,
            timeout=self.config.connect_timeout,
            operation_timeout=self.config.operation_timeout,
            max_attempts=self.config.max_connect_attempts,
            use_services_cache=self.config.use_services_cache,
            multiplexer=self.multiplexer,
            on_link_lost=self._on_link_lost,
        )

    # -- Lifecycle --

    async def connect(self) -> DeviceSession:
        """Discover, connect and resolve services.

        Returns:
            self, in READY

        Raises:
            DeviceUnreachableError: If the device is not found or refuses the link
            ServiceMissingError: If a required service is absent
            ConnectTimeoutError: If connecting times out
        """
        if self._state in (SessionState.READY, SessionState.RECONNECTING):
            return self
        if self._state != SessionState.DISCONNECTED:
            raise ConnectError(f"Connect already in progress ({self._state.value})")

        try:
            if self.handle.ble_device is None:
                self._transition(SessionState.DISCOVERING)
                found = await self._finder(self.address, self.config.scan_timeout)
                if found is None:
                    raise DeviceUnreachableError(f"Device {self.address} not found")
                self.handle = found

            self._transition(SessionState.CONNECTING)
            client = self._client_factory(self.handle)
            self._client = client
            await client.open()

            self._transition(SessionState.RESOLVING_SERVICES)
            await client.resolve_services()
            await self._bring_up(client)
            if not client.is_connected:
                raise DeviceUnreachableError(f"Link to {self.address} dropped while connecting")
        except (ConnectError, OpError) as e:
            _LOGGER.warning("Failed to connect to %s: %s", self.address, e)
            await self._release_client()
            self._transition(SessionState.DISCONNECTED, reason=f"Connect failed: {e}", error=e)
            raise
        except asyncio.CancelledError:
            await self._release_client()
            self._transition(SessionState.DISCONNECTED, reason="Connect cancelled")
            raise
        except Exception as e:
            _LOGGER.exception("Unexpected error connecting to %s", self.address)
            await self._release_client()
            self._transition(SessionState.DISCONNECTED, reason=f"Connect failed: {e!r}", error=e)
            raise

        self._transition(SessionState.READY)
        _LOGGER.info("Session ready: %s", self.address)
        return self

    async def _bring_up(self, client: GattClient) -> None:
        """Restore notifications, hand the link to the engine, sync the clock."""
        await self.multiplexer.attach(client)
        self.engine.attach(client)
        if self.config.sync_time_on_connect and client.supports(Service.CURRENT_TIME):
            try:
                await client.write(Service.CURRENT_TIME, datetime.now())
            except OpError as e:
                _LOGGER.warning("Time sync failed: %s", e)

    async def _release_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.disconnect()

    def _on_link_lost(self, client: GattClient) -> None:
        if client is not self._client or self._state != SessionState.READY:
            return
        _LOGGER.warning("Link to %s lost, reconnecting", self.address)
        self._transition(SessionState.RECONNECTING, reason="Link lost")
        self.multiplexer.detach()
        self.engine.suspend()
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(client))

    async def _reconnect(self, client: GattClient) -> None:
        self._policy.reset()
        while True:
            delay = self._policy.next_delay()
            _LOGGER.info(
                "Reconnecting to %s in %.1fs (attempt %d)",
                self.address,
                delay,
                self._policy.attempt_count,
            )
            await asyncio.sleep(delay)

            try:
                await client.open()
                await client.resolve_services()
                await self._bring_up(client)
            except ServiceMissingError as e:
                _LOGGER.error("Reconnect to %s failed permanently: %s", self.address, e)
                await self._abandon(f"Reconnect failed: {e}", e)
                return
            except (ConnectError, OpError) as e:
                _LOGGER.warning(
                    "Reconnect attempt %d to %s failed: %s",
                    self._policy.attempt_count,
                    self.address,
                    e,
                )
                await client.disconnect()
                continue
            except Exception as e:
                _LOGGER.exception("Unexpected error reconnecting to %s", self.address)
                await self._abandon(f"Reconnect failed: {e!r}", e)
                return

            if not client.is_connected:
                _LOGGER.warning("Link to %s dropped again while restoring session", self.address)
                self.multiplexer.detach()
                self.engine.suspend()
                await client.disconnect()
                continue

            self._reconnect_task = None
            self._policy.reset()
            self._transition(SessionState.READY, reason="Reconnected")
            _LOGGER.info("Reconnected to %s", self.address)
            return

    async def _abandon(self, reason: str, error: Exception) -> None:
        """End a reconnect loop for good: fail the transfer, end streams, drop the link."""
        self._reconnect_task = None
        await self.engine.detach()
        await self.multiplexer.close()
        await self._release_client()
        self._transition(SessionState.DISCONNECTED, reason=reason, error=error)

    async def disconnect(self) -> None:
        """Close the session. Idempotent.

        Cancels reconnection, fails an in-flight update with LinkLostError,
        ends every telemetry stream, then releases the transport.
        """
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

        await self.engine.detach()
        await self.multiplexer.close()
        await self._release_client()

        if self._state != SessionState.DISCONNECTED:
            self._transition(SessionState.DISCONNECTED, reason="Disconnected")
            _LOGGER.info("Session closed: %s", self.address)

    # -- Operations --

    def _require_ready(self) -> GattClient:
        if self._state != SessionState.READY or self._client is None:
            raise DisconnectedError(f"Session {self.address} is {self._state.value}")
        return self._client

    async def read(self, service: Service) -> Any:
        """Read and decode a service value."""
        return await self._require_ready().read(service)

    async def write(self, service: Service, value: Any) -> None:
        """Encode and write a service value."""
        await self._require_ready().write(service, value)

    async def subscribe(self, service: Service, maxsize: int | None = None) -> NotificationStream:
        """Open a notification stream for a service.

        Allowed while RECONNECTING; delivery starts once the link is back.

        Raises:
            DisconnectedError: If the session is neither READY nor RECONNECTING
            UnsupportedServiceError: If the device lacks the service
        """
        if self._state == SessionState.RECONNECTING:
            return await self.multiplexer.subscribe(service, maxsize)
        client = self._require_ready()
        if not client.supports(service):
            raise UnsupportedServiceError(f"{service.value} not available on device")
        return await client.subscribe(service, maxsize)

    async def sync_time(self, now: datetime | None = None) -> None:
        """Set the watch clock (default: local time)."""
        await self.write(Service.CURRENT_TIME, now or datetime.now())

    def start_update(self, image: UpdateImage, *, force: bool = False) -> UpdateTransfer:
        """Start an update transfer in the background.

        Raises:
            LinkLostError: While reconnecting
            DisconnectedError: If the session is not READY
            AlreadyInProgressError: If a transfer is active
        """
        if self._state == SessionState.RECONNECTING:
            raise LinkLostError(f"Session {self.address} is reconnecting")
        self._require_ready()
        return self.engine.start(image, force=force)

    async def run_update(self, image: UpdateImage, *, force: bool = False) -> UpdateTransfer:
        """Start an update and wait for it to finish.

        Raises:
            UpdateError: If the transfer did not complete
        """
        self.start_update(image, force=force)
        transfer = await self.engine.wait()
        if transfer.error is not None:
            raise transfer.error
        return transfer

    async def abort_update(self) -> UpdateTransfer | None:
        """Abort the active transfer, if any."""
        return await self.engine.abort()


class SessionRegistry:
    """Caller-owned set of sessions keyed by address.

    Usage:
        async with SessionRegistry() as registry:
            session = await registry.open("AA:BB:CC:DD:EE:FF")
    """

    def __init__(
            self,
            config: SessionConfig | None = None,
            session_factory: Callable[[DeviceHandle], DeviceSession] | None = None,
    ):
        self.config = config or SessionConfig()
        self._session_factory = session_factory or (
            lambda handle: DeviceSession(handle, self.config)
        )
        self._sessions: dict[str, DeviceSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, address: str) -> bool:
        return address in self._sessions

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close_all()

    def get(self, address: str) -> DeviceSession | None:
        return self._sessions.get(address)

    async def open(self, device: DeviceHandle | str) -> DeviceSession:
        """Connect a session, reusing an existing one for the same address.

        Raises:
            ConnectError: If connecting fails; the session is not registered
        """
        handle = DeviceHandle(device) if isinstance(device, str) else device
        session = self._sessions.get(handle.address)
        if session is None:
            session = self._session_factory(handle)
            self._sessions[handle.address] = session
        try:
            await session.connect()
        except WatchLinkError:
            self._sessions.pop(handle.address, None)
            raise
        return session

    async def close(self, address: str) -> None:
        session = self._sessions.pop(address, None)
        if session is not None:
            await session.disconnect()

    async def close_all(self) -> None:
        """Disconnect every session."""
        for address in list(self._sessions):
            await self.close(address)
