"""Update images and transfer progress records."""

from __future__ import annotations

import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path

from ..exceptions import IntegrityMismatchError, UpdateError
from ..protocol.chunking import chunk_bounds, chunk_count
from .enums import TransferState, UpdateKind


def crc32(data: bytes) -> int:
    """CRC-32 checksum used for images and manifest entries."""
    return zlib.crc32(data) & 0xFFFFFFFF


@dataclass(frozen=True)
class UpdateImage:
    """Firmware image or resource archive ready for transfer.

    Attributes:
        data: Image bytes
        size: Declared size in bytes
        checksum: Declared CRC-32
        kind: Firmware or resource archive
        version: Target version carried by the image
    """

    data: bytes = field(repr=False)
    size: int
    checksum: int
    kind: UpdateKind
    version: str

    @classmethod
    def from_bytes(
            cls,
            data: bytes,
            kind: UpdateKind,
            version: str,
            checksum: int | None = None,
    ) -> UpdateImage:
        """Build an image, computing the checksum when not declared."""
        return cls(
            data=bytes(data),
            size=len(data),
            checksum=crc32(data) if checksum is None else checksum,
            kind=kind,
            version=version,
        )

    @classmethod
    def from_file(
            cls,
            path: str | Path,
            kind: UpdateKind,
            version: str,
            checksum: int | None = None,
    ) -> UpdateImage:
        """Load an image from a local file."""
        return cls.from_bytes(Path(path).read_bytes(), kind, version, checksum)

    def verify(self) -> None:
        """Check data against the declared size and checksum.

        Raises:
            IntegrityMismatchError: If size or checksum differ
        """
        if len(self.data) != self.size:
            raise IntegrityMismatchError(self.size, len(self.data), what="size")
        actual = crc32(self.data)
        if actual != self.checksum:
            raise IntegrityMismatchError(self.checksum, actual)

    def chunk_count(self, chunk_size: int) -> int:
        return chunk_count(self.size, chunk_size)

    def chunk(self, index: int, chunk_size: int) -> bytes:
        start, end = chunk_bounds(index, self.size, chunk_size)
        return self.data[start:end]


@dataclass(frozen=True)
class UpdateProgress:
    """Snapshot of a transfer published on the progress stream."""

    state: TransferState
    bytes_acked: int
    total_bytes: int
    kind: UpdateKind
    version: str
    error: UpdateError | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def percent(self) -> float:
        if self.total_bytes == 0:
            return 100.0 if self.state == TransferState.COMPLETE else 0.0
        return self.bytes_acked / self.total_bytes * 100


@dataclass
class UpdateTransfer:
    """Mutable progress record of one transfer.

    Only the update engine mutates it.
    """

    image: UpdateImage
    chunk_size: int
    force: bool = False
    state: TransferState = TransferState.IDLE
    bytes_acked: int = 0
    next_index: int = 0
    retries: int = 0
    error: UpdateError | None = None

    @property
    def total_bytes(self) -> int:
        return self.image.size

    @property
    def total_chunks(self) -> int:
        return self.image.chunk_count(self.chunk_size)

    @property
    def percent(self) -> float:
        if self.total_bytes == 0:
            return 100.0 if self.state == TransferState.COMPLETE else 0.0
        return self.bytes_acked / self.total_bytes * 100

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def acknowledge(self, index: int, length: int) -> bool:
        """Advance progress for an acknowledged chunk.

        Returns:
            True if index was the next expected chunk and progress advanced
        """
        if index != self.next_index:
            return False
        self.next_index += 1
        self.bytes_acked += length
        return True

    def snapshot(self) -> UpdateProgress:
        return UpdateProgress(
            state=self.state,
            bytes_acked=self.bytes_acked,
            total_bytes=self.total_bytes,
            kind=self.image.kind,
            version=self.image.version,
            error=self.error,
        )
