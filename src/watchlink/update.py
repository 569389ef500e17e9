"""Over-the-air update engine."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable

from .exceptions import (
    AlreadyInProgressError,
    ChunkTimeoutError,
    DeviceRejectedError,
    DisconnectedError,
    IncompatibleVersionError,
    IntegrityMismatchError,
    InvalidImageError,
    LinkLostError,
    OpError,
    OpTimeoutError,
    StreamClosedError,
    TransferFailedError,
    UnsupportedServiceError,
    UpdateAbortedError,
    UpdateError,
)
from .models.enums import TransferState, UpdateKind
from .models.firmware import SemanticVersion
from .models.manifest import ResourceArchive
from .models.update import UpdateImage, UpdateProgress, UpdateTransfer
from .protocol.services import DEFAULT_CHUNK_SIZE, Service
from .protocol.update import (
    AbortCommand,
    AckFrame,
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
from .streams import Broadcaster, NotificationStream

if TYPE_CHECKING:
    from .config import SessionConfig
    from .transport.connection import GattClient

_LOGGER = logging.getLogger(__name__)

_UPDATE_SERVICES = (Service.UPDATE_CONTROL, Service.UPDATE_DATA, Service.UPDATE_ACK)


class _CancelReason(Enum):
    ABORT = "abort"
    LINK_LOST = "link_lost"


class UpdateEngine:
    """Drives one firmware or resource transfer at a time.

    Protocol:
        1. NEGOTIATING: verify the image locally, check it against the
           installed firmware version, send START and wait for acceptance
        2. TRANSFERRING: write each chunk and advance only on a chunk ack
           carrying the same index; timed-out or NAKed chunks are retried
        3. VERIFYING: send VERIFY and compare the device's checksum report
        4. COMPLETE

    If the link drops mid-transfer the transfer is SUSPENDED until the
    session attaches a new client, then resumed at the next unacknowledged
    chunk.

    Usage:
        engine.attach(client)
        transfer = engine.start(image)
        await engine.wait()
    """

    def __init__(
            self,
            chunk_size: int = DEFAULT_CHUNK_SIZE,
            ack_timeout: float = 5.0,
            max_chunk_retries: int = 3,
            control_timeout: float = 10.0,
            verify_timeout: float = 30.0,
            resume_timeout: float = 60.0,
    ):
        """Initialize update engine.

        Args:
            chunk_size: Image bytes per data packet
            ack_timeout: Seconds to wait for each chunk ack
            max_chunk_retries: Retries per chunk before ChunkTimeoutError
            control_timeout: Seconds to wait for START/RESUME responses
            verify_timeout: Seconds to wait for the checksum report
            resume_timeout: Seconds a suspended transfer waits for the link
        """
        self.chunk_size = chunk_size
        self.ack_timeout = ack_timeout
        self.max_chunk_retries = max_chunk_retries
        self.control_timeout = control_timeout
        self.verify_timeout = verify_timeout
        self.resume_timeout = resume_timeout

        self.progress: Broadcaster[UpdateProgress] = Broadcaster("update_progress", replay_last=True)

        self._client: GattClient | None = None
        self._link_up = asyncio.Event()
        self._transfer: UpdateTransfer | None = None
        self._task: asyncio.Task | None = None
        self._cancel_reason: _CancelReason | None = None

    @classmethod
    def from_config(cls, config: SessionConfig) -> UpdateEngine:
        return cls(
            chunk_size=config.chunk_size,
            ack_timeout=config.ack_timeout,
            max_chunk_retries=config.max_chunk_retries,
            control_timeout=config.control_timeout,
            verify_timeout=config.verify_timeout,
            resume_timeout=config.resume_timeout,
        )

    @property
    def transfer(self) -> UpdateTransfer | None:
        """Most recent transfer (active or finished)."""
        return self._transfer

    @property
    def is_busy(self) -> bool:
        """True while a transfer is in a non-terminal state."""
        return self._transfer is not None and not self._transfer.is_terminal

    # -- Session hooks --

    def attach(self, client: GattClient) -> None:
        """Hand the engine a connected client; resumes a suspended transfer."""
        self._client = client
        self._link_up.set()

    def suspend(self) -> None:
        """Link lost; an in-flight transfer pauses at its next chunk."""
        self._link_up.clear()

    async def detach(self) -> None:
        """Session is going away; fail any in-flight transfer with LinkLostError."""
        self._link_up.clear()
        if self.is_busy:
            await self._cancel(_CancelReason.LINK_LOST)
        self._client = None

    # -- Public API --

    def start(self, image: UpdateImage, *, force: bool = False) -> UpdateTransfer:
        """Begin a transfer in the background.

        Args:
            image: Firmware image or resource archive
            force: Allow installing firmware older than the installed version

        Returns:
            The new transfer record

        Raises:
            AlreadyInProgressError: If a transfer is still active
            LinkLostError: If no connected client is attached
            UnsupportedServiceError: If the device lacks the update services
        """
        if self.is_busy:
            raise AlreadyInProgressError(
                f"Update to {self._transfer.image.version} is {self._transfer.state.value}"
            )
        if self._client is None or not self._link_up.is_set():
            raise LinkLostError("No connected device")
        missing = [s.value for s in _UPDATE_SERVICES if not self._client.supports(s)]
        if missing:
            raise UnsupportedServiceError(f"Device lacks update services: {', '.join(missing)}")

        transfer = UpdateTransfer(image=image, chunk_size=self.chunk_size, force=force)
        self._transfer = transfer
        self._cancel_reason = None
        self._publish(transfer)

        _LOGGER.info(
            "Starting %s update to %s (%d bytes, %d chunks)",
            image.kind.name.lower(),
            image.version,
            image.size,
            transfer.total_chunks,
        )
        self._task = asyncio.get_running_loop().create_task(self._run(transfer))
        return transfer

    async def wait(self) -> UpdateTransfer | None:
        """Wait for the current transfer to reach a terminal state."""
        if self._task is not None:
            await asyncio.wait({self._task})
        return self._transfer

    async def run(self, image: UpdateImage, *, force: bool = False) -> UpdateTransfer:
        """Start a transfer and wait for it.

        Raises:
            UpdateError: The transfer's error if it did not complete
        """
        transfer = self.start(image, force=force)
        await self.wait()
        if transfer.state != TransferState.COMPLETE:
            raise transfer.error or TransferFailedError(f"Transfer ended {transfer.state.value}")
        return transfer

    async def abort(self) -> UpdateTransfer | None:
        """Abort the active transfer.

        The abort message is sent to the device before this returns.
        """
        if self.is_busy:
            await self._cancel(_CancelReason.ABORT)
        return self._transfer

    # -- Internals --

    async def _cancel(self, reason: _CancelReason) -> None:
        self._cancel_reason = reason
        transfer, task = self._transfer, self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if transfer is not None and not transfer.is_terminal:
            # Cancelled before the task ran its first step
            await self._finish_cancelled(transfer)

    def _publish(self, transfer: UpdateTransfer) -> None:
        self.progress.publish(transfer.snapshot())

    def _set_state(self, transfer: UpdateTransfer, state: TransferState) -> None:
        _LOGGER.debug("Transfer state: %s -> %s", transfer.state.value, state.value)
        transfer.state = state
        self._publish(transfer)

    def _fail(self, transfer: UpdateTransfer, error: UpdateError) -> None:
        _LOGGER.warning("Update to %s failed: %s", transfer.image.version, error)
        transfer.error = error
        self._set_state(transfer, TransferState.FAILED)

    async def _run(self, transfer: UpdateTransfer) -> None:
        stream: NotificationStream | None = None
        try:
            stream = await self._client.subscribe(Service.UPDATE_ACK)
            await self._negotiate(transfer, stream)
            await self._send_image(transfer, stream)
            await self._verify(transfer, stream)
            self._set_state(transfer, TransferState.COMPLETE)
            _LOGGER.info(
                "Update to %s complete (%d bytes, %d retries)",
                transfer.image.version,
                transfer.bytes_acked,
                transfer.retries,
            )
        except asyncio.CancelledError:
            await self._finish_cancelled(transfer)
            raise
        except UpdateError as e:
            self._fail(transfer, e)
        except DisconnectedError as e:
            error = LinkLostError(f"Link lost while {transfer.state.value}: {e}")
            error.__cause__ = e
            self._fail(transfer, error)
        except (OpError, StreamClosedError) as e:
            error = TransferFailedError(f"Transfer failed while {transfer.state.value}: {e}")
            error.__cause__ = e
            self._fail(transfer, error)
        except Exception as e:
            _LOGGER.exception("Unexpected error while %s", transfer.state.value)
            error = TransferFailedError(f"Transfer failed while {transfer.state.value}: {e!r}")
            error.__cause__ = e
            self._fail(transfer, error)
        finally:
            if stream is not None:
                await stream.close()

    async def _finish_cancelled(self, transfer: UpdateTransfer) -> None:
        if self._cancel_reason is _CancelReason.LINK_LOST:
            self._fail(transfer, LinkLostError("Session closed during transfer"))
            return

        client = self._client
        if transfer.state == TransferState.IDLE:
            pass  # Nothing sent yet
        elif client is not None and client.is_connected:
            try:
                await asyncio.wait_for(
                    client.write(Service.UPDATE_CONTROL, AbortCommand()),
                    timeout=self.control_timeout,
                )
            except (OpError, asyncio.TimeoutError) as e:
                _LOGGER.warning("Abort message not delivered: %s", e)
        else:
            _LOGGER.warning("Link down, abort message not delivered")

        transfer.error = UpdateAbortedError("Transfer aborted")
        self._set_state(transfer, TransferState.ABORTED)
        _LOGGER.info("Update to %s aborted", transfer.image.version)

    async def _next_frame(
            self,
            stream: NotificationStream,
            accept: Callable[[AckFrame], bool],
            timeout: float,
    ) -> AckFrame:
        """Wait for the first frame accepted by the predicate, ignoring others.

        Raises:
            asyncio.TimeoutError: If no accepted frame arrives in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError
            frame = await asyncio.wait_for(stream.get(), timeout=remaining)
            if accept(frame):
                return frame
            _LOGGER.debug("Ignoring update frame %s", frame)

    async def _control_response(
            self,
            stream: NotificationStream,
            opcode: UpdateOpcode,
    ) -> ControlResponse:
        try:
            return await self._next_frame(
                stream,
                lambda f: isinstance(f, ControlResponse) and f.opcode == opcode,
                self.control_timeout,
            )
        except asyncio.TimeoutError:
            raise TransferFailedError(
                f"No response to {opcode.name} within {self.control_timeout}s"
            ) from None

    async def _negotiate(self, transfer: UpdateTransfer, stream: NotificationStream) -> None:
        self._set_state(transfer, TransferState.NEGOTIATING)
        image = transfer.image
        image.verify()

        raw_version = await self._client.read(Service.FIRMWARE_VERSION)
        try:
            installed = SemanticVersion.parse(raw_version)
        except ValueError as e:
            raise IncompatibleVersionError(
                f"Cannot compare against installed firmware {raw_version!r}"
            ) from e

        if image.kind == UpdateKind.FIRMWARE:
            try:
                target = SemanticVersion.parse(image.version)
            except ValueError as e:
                raise InvalidImageError(f"Invalid image version {image.version!r}") from e
            if target < installed and not transfer.force:
                raise IncompatibleVersionError(
                    f"Refusing downgrade from {installed} to {target} (use force=True)"
                )
        else:
            # Validate before any byte is sent
            archive = ResourceArchive.from_image(image)
            archive.validate()
            archive.manifest.check_compatible(installed)

        await self._client.write(
            Service.UPDATE_CONTROL,
            StartCommand(
                kind=image.kind,
                size=image.size,
                checksum=image.checksum,
                chunk_size=transfer.chunk_size,
                version=image.version,
            ),
        )
        response = await self._control_response(stream, UpdateOpcode.START)
        if response.ok:
            _LOGGER.debug("Device accepted update (installed %s)", installed)
            return

        if response.status == ResponseStatus.NOT_SUPPORTED:
            raise IncompatibleVersionError(f"Device rejected version {image.version}")
        if response.status == ResponseStatus.DATA_SIZE_EXCEEDS_LIMIT:
            raise DeviceRejectedError(f"Insufficient storage for {image.size} bytes")
        raise DeviceRejectedError(f"Device rejected transfer: {response.status.name}")

    async def _send_image(self, transfer: UpdateTransfer, stream: NotificationStream) -> None:
        self._set_state(transfer, TransferState.TRANSFERRING)
        while transfer.next_index < transfer.total_chunks:
            try:
                if transfer.state == TransferState.SUSPENDED or not self._link_up.is_set():
                    await self._resume(transfer, stream)
                await self._send_chunk(transfer, stream, transfer.next_index)
            except DisconnectedError as e:
                _LOGGER.warning(
                    "Link lost at chunk %d/%d: %s",
                    transfer.next_index,
                    transfer.total_chunks,
                    e,
                )
                self._set_state(transfer, TransferState.SUSPENDED)

    async def _send_chunk(
            self,
            transfer: UpdateTransfer,
            stream: NotificationStream,
            index: int,
    ) -> None:
        payload = transfer.image.chunk(index, transfer.chunk_size)
        attempts = self.max_chunk_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                await self._client.write(Service.UPDATE_DATA, DataPacket(index, payload))
                ack = await self._next_frame(
                    stream,
                    lambda f: isinstance(f, ChunkAck) and f.index == index,
                    self.ack_timeout,
                )
            except (OpTimeoutError, asyncio.TimeoutError):
                if not self._link_up.is_set() or not self._client.is_connected:
                    raise DisconnectedError(f"Link lost waiting for chunk {index} ack") from None
                transfer.retries += 1
                _LOGGER.warning(
                    "Chunk %d not acknowledged (attempt %d/%d)", index, attempt, attempts
                )
                continue

            if ack.ok:
                transfer.acknowledge(index, len(payload))
                self._publish(transfer)
                return

            transfer.retries += 1
            _LOGGER.warning(
                "Chunk %d rejected with %s (attempt %d/%d)",
                index,
                ack.status.name,
                attempt,
                attempts,
            )

        raise ChunkTimeoutError(index, attempts)

    async def _resume(self, transfer: UpdateTransfer, stream: NotificationStream) -> None:
        if self._client is not None and not self._client.is_connected:
            self._link_up.clear()
        if transfer.state != TransferState.SUSPENDED:
            self._set_state(transfer, TransferState.SUSPENDED)

        _LOGGER.info(
            "Transfer suspended at chunk %d/%d, waiting up to %.0fs for link",
            transfer.next_index,
            transfer.total_chunks,
            self.resume_timeout,
        )
        try:
            await asyncio.wait_for(self._link_up.wait(), timeout=self.resume_timeout)
        except asyncio.TimeoutError:
            raise LinkLostError(
                f"Link not restored within {self.resume_timeout}s"
            ) from None

        try:
            await self._client.write(Service.UPDATE_CONTROL, ResumeCommand(transfer.next_index))
            response = await self._next_frame(
                stream,
                lambda f: isinstance(f, ControlResponse) and f.opcode == UpdateOpcode.RESUME,
                self.control_timeout,
            )
        except (OpTimeoutError, asyncio.TimeoutError) as e:
            raise LinkLostError("Device did not answer RESUME") from e

        if not response.ok:
            raise LinkLostError(f"Device cannot resume transfer: {response.status.name}")

        _LOGGER.info("Transfer resumed at chunk %d", transfer.next_index)
        self._set_state(transfer, TransferState.TRANSFERRING)

    async def _verify(self, transfer: UpdateTransfer, stream: NotificationStream) -> None:
        self._set_state(transfer, TransferState.VERIFYING)
        await self._client.write(Service.UPDATE_CONTROL, VerifyCommand())
        try:
            report = await self._next_frame(
                stream,
                lambda f: isinstance(f, ChecksumReport),
                self.verify_timeout,
            )
        except asyncio.TimeoutError:
            raise TransferFailedError(
                f"No checksum report within {self.verify_timeout}s"
            ) from None

        if report.checksum != transfer.image.checksum:
            raise IntegrityMismatchError(transfer.image.checksum, report.checksum)
        _LOGGER.debug("Device checksum 0x%08x verified", report.checksum)
