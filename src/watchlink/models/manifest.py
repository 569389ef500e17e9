"""Resource archive manifests.

A resource archive is a zip file holding the resource payloads and a
``resources.json`` manifest describing where each payload goes on the
watch's filesystem, e.g.::

    {
      "firmware": {"min": "1.11.0", "max": "1.99.99"},
      "resources": [
        {"filename": "font.bin", "path": "/fonts/font.bin",
         "size": 8316, "checksum": "0x1a2b3c4d"}
      ],
      "obsolete_files": [{"path": "/fonts/old.bin", "since": "1.12.0"}]
    }
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass, field, replace
from typing import Mapping

from ..exceptions import IncompatibleVersionError, IntegrityMismatchError, InvalidImageError
from .enums import UpdateKind
from .firmware import SemanticVersion, VersionRange
from .update import UpdateImage, crc32

_LOGGER = logging.getLogger(__name__)

MANIFEST_NAME = "resources.json"
MAX_RESOURCE_SIZE = 4 * 1024 * 1024


def _parse_int(value: str | int) -> int:
    """Parse integer from string (handles "0x" hex or decimal)."""
    if isinstance(value, int):
        return value
    value = str(value).strip()
    if value.startswith("0x") or value.startswith("0X"):
        return int(value, 16)
    return int(value)


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    """One resource file: archive member, target path, expected size and CRC-32."""

    filename: str
    path: str
    size: int | None = None
    checksum: int | None = None


@dataclass(frozen=True, slots=True)
class ObsoleteFile:
    """File to delete from watches running firmware >= since."""

    path: str
    since: SemanticVersion


@dataclass(frozen=True)
class ResourceManifest:
    """Parsed ``resources.json``."""

    entries: tuple[ManifestEntry, ...]
    firmware_range: VersionRange = field(default_factory=VersionRange)
    obsolete_files: tuple[ObsoleteFile, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict) -> ResourceManifest:
        """Build a manifest from decoded JSON.

        Raises:
            InvalidImageError: If required keys are missing or malformed
        """
        try:
            entries = tuple(
                ManifestEntry(
                    filename=item["filename"],
                    path=item["path"],
                    size=_parse_int(item["size"]) if "size" in item else None,
                    checksum=_parse_int(item["checksum"]) if "checksum" in item else None,
                )
                for item in raw["resources"]
            )
            firmware = raw.get("firmware") or {}
            firmware_range = VersionRange.parse(firmware.get("min"), firmware.get("max"))
            obsolete = tuple(
                ObsoleteFile(path=item["path"], since=SemanticVersion.parse(item["since"]))
                for item in raw.get("obsolete_files", [])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidImageError(f"Invalid {MANIFEST_NAME}: {e}") from e

        return cls(entries=entries, firmware_range=firmware_range, obsolete_files=obsolete)

    def to_dict(self) -> dict:
        """Export to the JSON layout used inside archives."""
        resources = []
        for entry in self.entries:
            item: dict = {"filename": entry.filename, "path": entry.path}
            if entry.size is not None:
                item["size"] = entry.size
            if entry.checksum is not None:
                item["checksum"] = f"0x{entry.checksum:08x}"
            resources.append(item)

        raw: dict = {"resources": resources}
        if self.firmware_range.minimum or self.firmware_range.maximum:
            raw["firmware"] = {}
            if self.firmware_range.minimum:
                raw["firmware"]["min"] = str(self.firmware_range.minimum)
            if self.firmware_range.maximum:
                raw["firmware"]["max"] = str(self.firmware_range.maximum)
        if self.obsolete_files:
            raw["obsolete_files"] = [
                {"path": obsolete.path, "since": str(obsolete.since)}
                for obsolete in self.obsolete_files
            ]
        return raw

    def check_compatible(self, installed: SemanticVersion) -> None:
        """Raise IncompatibleVersionError if installed firmware is outside the range."""
        if installed not in self.firmware_range:
            raise IncompatibleVersionError(
                f"Resources require firmware {self.firmware_range}, watch runs {installed}"
            )

    def obsolete_for(self, installed: SemanticVersion) -> list[str]:
        """Paths that should be removed from a watch running installed firmware."""
        return [item.path for item in self.obsolete_files if installed >= item.since]

    def out_of_date(self, inventory: Mapping[str, tuple[int, int]]) -> list[ManifestEntry]:
        """Entries whose copy on the watch is missing or differs.

        Args:
            inventory: Watch file path -> (size, crc32) of the installed copy

        Returns:
            Entries that need to be retransmitted, in manifest order
        """
        stale = []
        for entry in self.entries:
            installed = inventory.get(entry.path)
            if installed is None or entry.size is None or entry.checksum is None:
                stale.append(entry)
            elif installed != (entry.size, entry.checksum):
                stale.append(entry)
        return stale


class ResourceArchive:
    """A resource zip archive with its parsed manifest."""

    def __init__(self, data: bytes):
        """Open and parse an archive.

        Raises:
            InvalidImageError: If data is not a zip or lacks a valid manifest
        """
        self.data = bytes(data)
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(self.data))
            raw = json.loads(self._zip.read(MANIFEST_NAME).decode("utf-8"))
        except (
            zipfile.BadZipFile,
            zlib.error,
            EOFError,
            NotImplementedError,
            KeyError,
            UnicodeDecodeError,
            json.JSONDecodeError,
        ) as e:
            raise InvalidImageError(f"Invalid resource archive: {e}") from e
        self.manifest = ResourceManifest.from_dict(raw)

    @classmethod
    def from_image(cls, image: UpdateImage) -> ResourceArchive:
        if image.kind != UpdateKind.RESOURCES:
            raise InvalidImageError(f"Expected a resource archive, got {image.kind.name}")
        return cls(image.data)

    def read(self, entry: ManifestEntry) -> bytes:
        try:
            info = self._zip.getinfo(entry.filename)
        except KeyError:
            raise InvalidImageError(f"Archive is missing {entry.filename}") from None
        if info.file_size > MAX_RESOURCE_SIZE:
            raise InvalidImageError(f"File too large: {entry.filename}")
        try:
            return self._zip.read(info)
        except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as e:
            raise InvalidImageError(f"Corrupt archive member {entry.filename}: {e}") from e

    def validate(self) -> None:
        """Check every entry exists and matches its declared size and checksum.

        Raises:
            InvalidImageError: If an entry is missing or too large
            IntegrityMismatchError: If an entry's size or checksum differs
        """
        for entry in self.manifest.entries:
            content = self.read(entry)
            if entry.size is not None and len(content) != entry.size:
                raise IntegrityMismatchError(entry.size, len(content), what=f"{entry.path} size")
            if entry.checksum is not None:
                actual = crc32(content)
                if actual != entry.checksum:
                    raise IntegrityMismatchError(entry.checksum, actual)
        _LOGGER.debug("Validated %d resource entries", len(self.manifest.entries))

    def partial(self, inventory: Mapping[str, tuple[int, int]], version: str) -> UpdateImage | None:
        """Rebuild an archive holding only out-of-date entries.

        Args:
            inventory: Watch file path -> (size, crc32) of the installed copy
            version: Version label for the resulting image

        Returns:
            Smaller resource image, or None if everything is current
        """
        stale = self.manifest.out_of_date(inventory)
        if not stale:
            return None

        manifest = replace(self.manifest, entries=tuple(stale))
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as out:
            out.writestr(MANIFEST_NAME, json.dumps(manifest.to_dict()))
            for entry in stale:
                out.writestr(entry.filename, self.read(entry))

        _LOGGER.info(
            "Partial resource sync: %d of %d entries out of date",
            len(stale),
            len(self.manifest.entries),
        )
        return UpdateImage.from_bytes(buffer.getvalue(), UpdateKind.RESOURCES, version)
