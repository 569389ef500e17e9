"""Semantic firmware versions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

_VERSION_RE = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


@total_ordering
@dataclass(frozen=True, slots=True)
class SemanticVersion:
    """MAJOR.MINOR.PATCH version with optional pre-release tag.

    Missing minor/patch components default to 0. A pre-release sorts
    before the matching release; build metadata is ignored.
    """

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: str | None = None

    @classmethod
    def parse(cls, text: str) -> SemanticVersion:
        """Parse a version string such as "1.13.0" or "v1.14.0-rc1".

        Raises:
            ValueError: If text is not a version
        """
        match = _VERSION_RE.match(text.strip())
        if match is None:
            raise ValueError(f"Invalid version: {text!r}")
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"] or 0),
            patch=int(match["patch"] or 0),
            prerelease=match["pre"],
        )

    def _key(self) -> tuple:
        # Releases sort after any pre-release of the same core version
        pre = (1,) if self.prerelease is None else (0, self.prerelease)
        return (self.major, self.minor, self.patch, pre)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core


@dataclass(frozen=True, slots=True)
class VersionRange:
    """Inclusive firmware version range; None bounds are open."""

    minimum: SemanticVersion | None = None
    maximum: SemanticVersion | None = None

    def __post_init__(self) -> None:
        if self.minimum and self.maximum and self.maximum < self.minimum:
            raise ValueError(f"Empty version range: {self.minimum} > {self.maximum}")

    @classmethod
    def parse(cls, minimum: str | None = None, maximum: str | None = None) -> VersionRange:
        return cls(
            minimum=SemanticVersion.parse(minimum) if minimum else None,
            maximum=SemanticVersion.parse(maximum) if maximum else None,
        )

    def __contains__(self, version: object) -> bool:
        if not isinstance(version, SemanticVersion):
            return False
        if self.minimum is not None and version < self.minimum:
            return False
        if self.maximum is not None and version > self.maximum:
            return False
        return True

    def __str__(self) -> str:
        low = str(self.minimum) if self.minimum else "*"
        high = str(self.maximum) if self.maximum else "*"
        return f"[{low}, {high}]"
