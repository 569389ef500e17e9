"""Test the over-the-air update engine against a scripted watch."""

from __future__ import annotations

import asyncio
import io
import json
import zipfile

import pytest

from conftest import FakeWatch, drain, wait_until

from watchlink.exceptions import (
    AlreadyInProgressError,
    ChunkTimeoutError,
    DecodeError,
    DeviceRejectedError,
    IncompatibleVersionError,
    IntegrityMismatchError,
    InvalidImageError,
    LinkLostError,
    TransferFailedError,
    UnsupportedServiceError,
    UpdateAbortedError,
)
from watchlink.models.enums import TransferState, UpdateKind
from watchlink.models.manifest import MANIFEST_NAME
from watchlink.models.update import UpdateImage, crc32
from watchlink.protocol.services import Service
from watchlink.protocol.update import (
    AbortCommand,
    ChunkAck,
    ResponseStatus,
    StartCommand,
    VerifyCommand,
)
from watchlink.update import UpdateEngine

OK = ResponseStatus.SUCCESS


def _firmware(version: str = "1.14.0", size: int = 4096) -> UpdateImage:
    return UpdateImage.from_bytes(bytes(i % 251 for i in range(size)), UpdateKind.FIRMWARE, version)


def _resources(minimum: str) -> UpdateImage:
    content = b"\x05" * 700
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as out:
        out.writestr(MANIFEST_NAME, json.dumps({
            "firmware": {"min": minimum},
            "resources": [{"filename": "font.bin", "path": "/fonts/font.bin",
                           "size": len(content), "checksum": crc32(content)}],
        }))
        out.writestr("font.bin", content)
    return UpdateImage.from_bytes(buffer.getvalue(), UpdateKind.RESOURCES, "1.14.0")


async def _engine(watch: FakeWatch, **kwargs) -> UpdateEngine:
    kwargs.setdefault("chunk_size", 256)
    await watch.connect()
    engine = UpdateEngine(**kwargs)
    engine.attach(watch)
    return engine


@pytest.mark.asyncio
async def test_transfer_16_chunks_then_verify(watch: FakeWatch) -> None:
    """4096 bytes at 256 per chunk: 16 chunk round trips and one verification."""
    engine = await _engine(watch)

    transfer = await engine.run(_firmware(size=4096))

    assert transfer.state == TransferState.COMPLETE
    assert watch.data_packets == list(range(16))
    assert len(watch.written(VerifyCommand)) == 1
    assert transfer.bytes_acked == 4096
    assert transfer.percent == 100.0
    assert transfer.retries == 0


@pytest.mark.asyncio
async def test_start_command_describes_image(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    image = _firmware(size=1000)

    await engine.run(image)

    (start,) = watch.written(StartCommand)
    assert start.kind == UpdateKind.FIRMWARE
    assert start.size == 1000
    assert start.checksum == image.checksum
    assert start.chunk_size == 256
    assert start.version == "1.14.0"


@pytest.mark.asyncio
async def test_progress_stream_states(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    progress = engine.progress.subscribe(maxsize=64)

    await engine.run(_firmware(size=1024))

    snapshots = drain(progress)
    states = [snapshot.state for snapshot in snapshots]
    assert states[0] == TransferState.IDLE
    assert states[-1] == TransferState.COMPLETE
    assert TransferState.NEGOTIATING in states
    assert TransferState.VERIFYING in states
    acked = [snapshot.bytes_acked for snapshot in snapshots]
    assert acked == sorted(acked)
    assert snapshots[-1].percent == 100.0


@pytest.mark.asyncio
async def test_ack_stream_released_after_transfer(watch: FakeWatch) -> None:
    engine = await _engine(watch)

    await engine.run(_firmware(size=512))

    assert watch.notify_stops[Service.UPDATE_ACK] == 1
    assert watch.multiplexer.consumer_count(Service.UPDATE_ACK) == 0


@pytest.mark.asyncio
async def test_downgrade_rejected_before_any_chunk() -> None:
    watch = FakeWatch(firmware="1.3.0")
    engine = await _engine(watch)

    with pytest.raises(IncompatibleVersionError, match="downgrade from 1.3.0 to 1.2.0"):
        await engine.run(_firmware(version="1.2.0"))

    assert engine.transfer.state == TransferState.FAILED
    assert watch.data_packets == []
    assert watch.written(StartCommand) == []


@pytest.mark.asyncio
async def test_forced_downgrade() -> None:
    watch = FakeWatch(firmware="1.3.0")
    engine = await _engine(watch)

    transfer = await engine.run(_firmware(version="1.2.0", size=512), force=True)

    assert transfer.state == TransferState.COMPLETE


@pytest.mark.asyncio
async def test_unparseable_installed_version() -> None:
    watch = FakeWatch(firmware="custom-build")
    engine = await _engine(watch)

    with pytest.raises(IncompatibleVersionError, match="custom-build"):
        await engine.run(_firmware())


@pytest.mark.asyncio
async def test_corrupt_image_rejected_locally(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    image = UpdateImage.from_bytes(b"\x00" * 512, UpdateKind.FIRMWARE, "1.14.0", checksum=0x1234)

    with pytest.raises(IntegrityMismatchError):
        await engine.run(image)

    assert watch.written(StartCommand) == []


@pytest.mark.asyncio
async def test_resources_outside_firmware_range(watch: FakeWatch) -> None:
    engine = await _engine(watch)

    with pytest.raises(IncompatibleVersionError, match="Resources require firmware"):
        await engine.run(_resources(minimum="1.14.0"))

    assert watch.written(StartCommand) == []


@pytest.mark.asyncio
async def test_resources_transfer(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    image = _resources(minimum="1.11.0")

    transfer = await engine.run(image)

    assert transfer.state == TransferState.COMPLETE
    assert watch.written(StartCommand)[0].kind == UpdateKind.RESOURCES


@pytest.mark.asyncio
async def test_second_start_rejected_while_active(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    first = engine.start(_firmware())

    with pytest.raises(AlreadyInProgressError):
        engine.start(_firmware(version="1.15.0"))

    assert engine.transfer is first
    await engine.wait()
    assert first.state == TransferState.COMPLETE
    assert watch.written(StartCommand)[0].version == "1.14.0"
    assert len(watch.written(StartCommand)) == 1


@pytest.mark.asyncio
async def test_start_requires_attached_client() -> None:
    engine = UpdateEngine()
    with pytest.raises(LinkLostError):
        engine.start(_firmware())


@pytest.mark.asyncio
async def test_start_requires_update_services(watch: FakeWatch) -> None:
    watch.available.discard(Service.UPDATE_DATA)
    engine = await _engine(watch)

    with pytest.raises(UnsupportedServiceError, match="update_data"):
        engine.start(_firmware())


@pytest.mark.asyncio
async def test_out_of_order_and_duplicate_acks_ignored(watch: FakeWatch) -> None:
    """Acks for other chunks never advance progress."""
    def script(index: int, attempt: int) -> list:
        frames = [ChunkAck(index + 1, OK)]
        if index > 0:
            frames.append(ChunkAck(index - 1, OK))
        frames.append(ChunkAck(index, OK))
        return frames

    watch.chunk_script = script
    engine = await _engine(watch)
    progress = engine.progress.subscribe(maxsize=64)

    transfer = await engine.run(_firmware(size=1024))

    assert transfer.state == TransferState.COMPLETE
    assert watch.data_packets == [0, 1, 2, 3]
    acked = [snapshot.bytes_acked for snapshot in drain(progress)]
    assert acked == sorted(acked)
    assert [value for value in acked if value][:4] == [256, 512, 768, 1024]


@pytest.mark.asyncio
async def test_wrong_index_ack_does_not_complete_chunk(watch: FakeWatch) -> None:
    """Chunk 1 only sees an ack for chunk 2, times out, and is resent."""
    def script(index: int, attempt: int) -> list:
        if index == 1 and attempt == 1:
            return [ChunkAck(2, OK)]
        return [ChunkAck(index, OK)]

    watch.chunk_script = script
    engine = await _engine(watch, ack_timeout=0.05)

    transfer = await engine.run(_firmware(size=1024))

    assert transfer.state == TransferState.COMPLETE
    assert watch.data_packets == [0, 1, 1, 2, 3]
    assert transfer.retries == 1


@pytest.mark.asyncio
async def test_nak_is_retried(watch: FakeWatch) -> None:
    def script(index: int, attempt: int) -> list:
        if index == 2 and attempt == 1:
            return [ChunkAck(index, ResponseStatus.CRC_ERROR)]
        return [ChunkAck(index, OK)]

    watch.chunk_script = script
    engine = await _engine(watch)

    transfer = await engine.run(_firmware(size=1024))

    assert transfer.state == TransferState.COMPLETE
    assert watch.data_packets.count(2) == 2
    assert transfer.retries == 1


@pytest.mark.asyncio
async def test_chunk_timeout_after_retries(watch: FakeWatch) -> None:
    watch.chunk_script = lambda index, attempt: [] if index == 2 else [ChunkAck(index, OK)]
    engine = await _engine(watch, ack_timeout=0.02, max_chunk_retries=2)

    with pytest.raises(ChunkTimeoutError) as exc_info:
        await engine.run(_firmware(size=1024))

    assert exc_info.value.index == 2
    assert exc_info.value.attempts == 3
    assert watch.data_packets.count(2) == 3
    assert engine.transfer.state == TransferState.FAILED
    assert engine.transfer.next_index == 2


@pytest.mark.asyncio
async def test_verify_mismatch_fails(watch: FakeWatch) -> None:
    watch.verify_checksum = 0xDEADBEEF
    engine = await _engine(watch)

    with pytest.raises(IntegrityMismatchError, match="0xdeadbeef"):
        await engine.run(_firmware(size=1024))

    assert engine.transfer.state == TransferState.FAILED
    assert isinstance(engine.transfer.error, IntegrityMismatchError)


@pytest.mark.asyncio
async def test_device_rejects_for_storage(watch: FakeWatch) -> None:
    watch.start_status = ResponseStatus.DATA_SIZE_EXCEEDS_LIMIT
    engine = await _engine(watch)

    with pytest.raises(DeviceRejectedError, match="Insufficient storage"):
        await engine.run(_firmware())

    assert watch.data_packets == []


@pytest.mark.asyncio
async def test_device_rejects_version(watch: FakeWatch) -> None:
    watch.start_status = ResponseStatus.NOT_SUPPORTED
    engine = await _engine(watch)

    with pytest.raises(IncompatibleVersionError, match="Device rejected version"):
        await engine.run(_firmware())


@pytest.mark.asyncio
async def test_malformed_ack_fails_transfer(watch: FakeWatch) -> None:
    """A malformed ack is surfaced, not skipped."""
    watch.chunk_script = lambda index, attempt: [DecodeError(Service.UPDATE_ACK, 5, "unknown status 0x99")]
    engine = await _engine(watch)

    with pytest.raises(TransferFailedError, match="malformed frame at byte 5"):
        await engine.run(_firmware())

    assert isinstance(engine.transfer.error.__cause__, DecodeError)


@pytest.mark.asyncio
async def test_abort_sends_abort_and_marks_aborted(watch: FakeWatch) -> None:
    watch.chunk_script = lambda index, attempt: [] if index == 1 else [ChunkAck(index, OK)]
    engine = await _engine(watch, ack_timeout=5.0)
    transfer = engine.start(_firmware())
    await wait_until(lambda: 1 in watch.data_packets)

    result = await engine.abort()

    assert result is transfer
    assert transfer.state == TransferState.ABORTED
    assert isinstance(transfer.error, UpdateAbortedError)
    assert len(watch.written(AbortCommand)) == 1
    assert not engine.is_busy


@pytest.mark.asyncio
async def test_new_transfer_after_abort(watch: FakeWatch) -> None:
    watch.chunk_script = lambda index, attempt: []
    engine = await _engine(watch, ack_timeout=5.0)
    engine.start(_firmware())
    await wait_until(lambda: 0 in watch.data_packets)
    await engine.abort()

    watch.chunk_script = None
    transfer = await engine.run(_firmware(size=512))

    assert transfer.state == TransferState.COMPLETE


@pytest.mark.asyncio
async def test_run_raises_aborted(watch: FakeWatch) -> None:
    watch.chunk_script = lambda index, attempt: []
    engine = await _engine(watch, ack_timeout=5.0)
    runner = asyncio.create_task(engine.run(_firmware()))
    await wait_until(lambda: 0 in watch.data_packets)

    await engine.abort()

    with pytest.raises(UpdateAbortedError):
        await runner


@pytest.mark.asyncio
async def test_link_loss_suspends_then_resumes(watch: FakeWatch) -> None:
    watch.drop_link_after_chunk = 3
    engine = await _engine(watch, resume_timeout=2.0)
    progress = engine.progress.subscribe(maxsize=64)
    runner = asyncio.create_task(engine.run(_firmware(size=4096)))

    await wait_until(lambda: engine.transfer.state == TransferState.SUSPENDED)
    assert engine.transfer.next_index == 4
    await watch.connect()
    engine.attach(watch)
    transfer = await runner

    assert transfer.state == TransferState.COMPLETE
    assert watch.resumed_at == [4]
    assert watch.data_packets == list(range(16))
    assert TransferState.SUSPENDED in [snapshot.state for snapshot in drain(progress)]


@pytest.mark.asyncio
async def test_resume_timeout_fails_with_link_lost(watch: FakeWatch) -> None:
    watch.drop_link_after_chunk = 1
    engine = await _engine(watch, resume_timeout=0.05)

    with pytest.raises(LinkLostError, match="not restored"):
        await engine.run(_firmware())

    assert engine.transfer.state == TransferState.FAILED


@pytest.mark.asyncio
async def test_resume_rejected_by_device(watch: FakeWatch) -> None:
    watch.drop_link_after_chunk = 1
    watch.resume_status = ResponseStatus.INVALID_STATE
    engine = await _engine(watch, resume_timeout=2.0)
    runner = asyncio.create_task(engine.run(_firmware()))

    await wait_until(lambda: engine.transfer.state == TransferState.SUSPENDED)
    await watch.connect()
    engine.attach(watch)

    with pytest.raises(LinkLostError, match="cannot resume"):
        await runner


@pytest.mark.asyncio
async def test_detach_fails_transfer_with_link_lost(watch: FakeWatch) -> None:
    watch.chunk_script = lambda index, attempt: []
    engine = await _engine(watch, ack_timeout=5.0)
    transfer = engine.start(_firmware())
    await wait_until(lambda: 0 in watch.data_packets)

    await engine.detach()

    assert transfer.state == TransferState.FAILED
    assert isinstance(transfer.error, LinkLostError)
    assert watch.written(AbortCommand) == []


@pytest.mark.asyncio
async def test_abort_before_transfer_starts(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    transfer = engine.start(_firmware())

    await engine.abort()

    assert transfer.state == TransferState.ABORTED
    assert isinstance(transfer.error, UpdateAbortedError)
    assert not engine.is_busy
    assert watch.written(StartCommand) == []
    assert watch.written(AbortCommand) == []

    second = await engine.run(_firmware(size=512))
    assert second.state == TransferState.COMPLETE


@pytest.mark.asyncio
async def test_detach_before_transfer_starts(watch: FakeWatch) -> None:
    engine = await _engine(watch)
    transfer = engine.start(_firmware())

    await engine.detach()

    assert transfer.state == TransferState.FAILED
    assert isinstance(transfer.error, LinkLostError)
    assert not engine.is_busy


@pytest.mark.asyncio
async def test_corrupt_archive_member_fails_transfer(watch: FakeWatch) -> None:
    image = _resources(minimum="1.0.0")
    data = bytearray(image.data)
    data[data.index(b"\x05" * 700)] ^= 0xFF
    corrupt = UpdateImage.from_bytes(bytes(data), UpdateKind.RESOURCES, "1.14.0")
    engine = await _engine(watch)

    with pytest.raises(InvalidImageError, match="font.bin"):
        await engine.run(corrupt)

    assert engine.transfer.state == TransferState.FAILED
    assert not engine.is_busy
    assert watch.written(StartCommand) == []


@pytest.mark.asyncio
async def test_unexpected_error_fails_transfer(watch: FakeWatch) -> None:
    engine = await _engine(watch)

    async def read(service: Service):
        raise RuntimeError("adapter reset")

    watch.read = read

    with pytest.raises(TransferFailedError, match="adapter reset"):
        await engine.run(_firmware())

    assert engine.transfer.state == TransferState.FAILED
    assert isinstance(engine.transfer.error.__cause__, RuntimeError)
    assert not engine.is_busy


@pytest.mark.asyncio
async def test_link_loss_while_waiting_for_ack_suspends(watch: FakeWatch) -> None:
    def script(index: int, attempt: int) -> list:
        if index == 2 and attempt == 1:
            asyncio.get_running_loop().call_soon(watch.drop_link)
            return []
        return [ChunkAck(index, OK)]

    watch.chunk_script = script
    engine = await _engine(watch, max_chunk_retries=0, ack_timeout=0.05, resume_timeout=2.0)
    runner = asyncio.create_task(engine.run(_firmware(size=1024)))

    await wait_until(lambda: engine.transfer.state == TransferState.SUSPENDED)
    assert engine.transfer.next_index == 2
    await watch.connect()
    engine.attach(watch)
    transfer = await runner

    assert transfer.state == TransferState.COMPLETE
    assert watch.resumed_at == [2]
    assert transfer.retries == 0
