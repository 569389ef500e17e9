"""Streams consumed by desktop front-ends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models.device import SessionStatus
from .models.telemetry import TelemetrySample
from .models.update import UpdateProgress
from .protocol.services import TELEMETRY_SERVICES, Service
from .streams import NotificationStream

if TYPE_CHECKING:
    from .session import DeviceSession


class DesktopBridge:
    """Read-only view of a session for a GUI or other desktop integration.

    Every method returns an independent, cancellable NotificationStream;
    closing one never affects another consumer.
    """

    def __init__(self, session: DeviceSession, buffer_size: int | None = None):
        self.session = session
        self.buffer_size = buffer_size

    def session_status(self) -> NotificationStream[SessionStatus]:
        """Session state changes, starting with the current state."""
        return self.session.status_updates(self.buffer_size)

    async def telemetry(self, service: Service) -> NotificationStream[TelemetrySample]:
        """Samples from one telemetry service.

        Raises:
            ValueError: If service is not a telemetry service
            DisconnectedError: If the session is not connected
        """
        if service not in TELEMETRY_SERVICES:
            raise ValueError(f"{service.value} is not a telemetry service")
        return await self.session.subscribe(service, self.buffer_size)

    def update_progress(self) -> NotificationStream[UpdateProgress]:
        """Progress of update transfers (state and percent complete)."""
        return self.session.update_progress(self.buffer_size)
