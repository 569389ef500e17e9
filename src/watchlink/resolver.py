"""Release sources for update images.

The session only consumes resolved images. Where they come from (a release
server, a local directory) is behind the ReleaseResolver protocol.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Protocol, runtime_checkable

from .exceptions import IntegrityMismatchError, SourceUnavailableError
from .models.enums import UpdateKind
from .models.firmware import SemanticVersion
from .models.update import UpdateImage

_LOGGER = logging.getLogger(__name__)

CHANNEL_STABLE = "stable"
CHANNEL_PRERELEASE = "prerelease"
CHANNELS = (CHANNEL_STABLE, CHANNEL_PRERELEASE)

_KIND_PREFIXES = {
    "firmware": UpdateKind.FIRMWARE,
    "resources": UpdateKind.RESOURCES,
}
_FILE_RE = re.compile(r"^(?P<kind>firmware|resources)-(?P<version>v?\d[0-9A-Za-z.+\-]*)\.(?:bin|zip)$")


@dataclass(frozen=True, slots=True)
class ReleaseMetadata:
    """One candidate image offered by a resolver.

    Attributes:
        kind: Firmware or resource archive
        version: Release version string
        name: Display name (asset or file name)
        location: Resolver-specific locator (URL, path)
        size: Declared size in bytes, if known
        checksum: Declared CRC-32, if known
    """

    kind: UpdateKind
    version: str
    name: str
    location: str
    size: int | None = None
    checksum: int | None = None

    @property
    def semver(self) -> SemanticVersion:
        return SemanticVersion.parse(self.version)


@runtime_checkable
class ReleaseResolver(Protocol):
    """Supplier of candidate update images."""

    def list_candidates(self, channel: str) -> Iterator[ReleaseMetadata]:
        """Lazily yield the candidates published on a channel."""
        ...

    async def fetch(self, metadata: ReleaseMetadata) -> UpdateImage:
        """Download one candidate."""
        ...


async def fetch_image(resolver: ReleaseResolver, metadata: ReleaseMetadata) -> UpdateImage:
    """Fetch an image, mapping any resolver failure to SourceUnavailableError.

    Failures are not retried.

    Raises:
        SourceUnavailableError: If the resolver fails
        IntegrityMismatchError: If the image contradicts the declared metadata
    """
    try:
        image = await resolver.fetch(metadata)
    except SourceUnavailableError:
        raise
    except Exception as e:
        raise SourceUnavailableError(f"Cannot fetch {metadata.name}: {e}") from e

    if metadata.size is not None and image.size != metadata.size:
        raise IntegrityMismatchError(metadata.size, image.size, what="size")
    if metadata.checksum is not None and image.checksum != metadata.checksum:
        raise IntegrityMismatchError(metadata.checksum, image.checksum)
    _LOGGER.debug("Fetched %s (%d bytes)", metadata.name, image.size)
    return image


def select_latest(
        candidates: Iterable[ReleaseMetadata],
        installed: SemanticVersion | str | None = None,
        kind: UpdateKind = UpdateKind.FIRMWARE,
) -> ReleaseMetadata | None:
    """Pick the newest candidate of a kind, newer than the installed version.

    Candidates with unparseable versions are skipped.
    """
    if isinstance(installed, str):
        installed = SemanticVersion.parse(installed)

    best: ReleaseMetadata | None = None
    best_version: SemanticVersion | None = None
    for candidate in candidates:
        if candidate.kind != kind:
            continue
        try:
            version = candidate.semver
        except ValueError:
            _LOGGER.debug("Skipping %s: unparseable version %r", candidate.name, candidate.version)
            continue
        if installed is not None and version <= installed:
            continue
        if best_version is None or version > best_version:
            best, best_version = candidate, version
    return best


def latest_release(
        resolver: ReleaseResolver,
        channel: str = CHANNEL_STABLE,
        installed: SemanticVersion | str | None = None,
        kind: UpdateKind = UpdateKind.FIRMWARE,
) -> ReleaseMetadata | None:
    """select_latest() over a resolver's channel.

    Raises:
        ValueError: If the resolver does not know the channel
        SourceUnavailableError: If listing candidates fails
    """
    if channel not in CHANNELS:
        raise ValueError(f"Unknown channel {channel!r} (expected one of {', '.join(CHANNELS)})")
    try:
        return select_latest(resolver.list_candidates(channel), installed, kind)
    except SourceUnavailableError:
        raise
    except Exception as e:
        raise SourceUnavailableError(f"Cannot list {channel} releases: {e}") from e


class LocalFileSource:
    """Resolver over a directory of ``<kind>-<version>.{bin,zip}`` files.

    The stable channel omits pre-release versions; the prerelease channel
    lists everything.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def list_candidates(self, channel: str = CHANNEL_STABLE) -> Iterator[ReleaseMetadata]:
        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel {channel!r} (expected one of {', '.join(CHANNELS)})")
        if not self.directory.is_dir():
            raise SourceUnavailableError(f"{self.directory} is not a directory")

        for path in sorted(self.directory.iterdir()):
            match = _FILE_RE.match(path.name)
            if match is None or not path.is_file():
                continue
            version = match.group("version")
            try:
                semver = SemanticVersion.parse(version)
            except ValueError:
                _LOGGER.debug("Ignoring %s: unparseable version", path.name)
                continue
            if channel == CHANNEL_STABLE and semver.prerelease:
                continue
            yield ReleaseMetadata(
                kind=_KIND_PREFIXES[match.group("kind")],
                version=version,
                name=path.name,
                location=str(path),
                size=path.stat().st_size,
            )

    async def fetch(self, metadata: ReleaseMetadata) -> UpdateImage:
        data = await asyncio.to_thread(Path(metadata.location).read_bytes)
        return UpdateImage.from_bytes(data, metadata.kind, metadata.version)
