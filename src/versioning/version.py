"""Semantic versions with build-metadata-insensitive precedence."""

from __future__ import annotations

from enum import Enum
from functools import total_ordering
from typing import Tuple

import semantic_version

from .errors import MalformedVersion


class Precedence(Enum):
    """Outcome of comparing two versions by precedence."""
    GREATER = 1
    EQUAL = 0
    LESS = -1


def _prerelease_key(prerelease: Tuple[str, ...]) -> Tuple:
    # A release sorts after all of its prereleases; numeric identifiers sort
    # before alphanumeric ones and compare numerically.
    if not prerelease:
        return (1,)
    parts = tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in prerelease)
    return (0, parts)


@total_ordering
class Version:
    """A parsed semantic version.

    Ordering, equality and hashing follow SemVer precedence, so two versions
    that differ only in build metadata compare equal. ``str()`` keeps the
    original text, build metadata included.
    """

    __slots__ = ("_semver", "_raw", "_key")

    def __init__(self, raw: str):
        text = raw.strip() if isinstance(raw, str) else raw
        try:
            parsed = semantic_version.Version(text)
        except (ValueError, TypeError) as exc:
            raise MalformedVersion(f"invalid version {raw!r}: {exc}") from exc
        self._semver = parsed
        self._raw = text
        self._key = (
            parsed.major,
            parsed.minor,
            parsed.patch,
            _prerelease_key(tuple(parsed.prerelease or ())),
        )

    @classmethod
    def from_parts(cls, major: int, minor: int = 0, patch: int = 0, prerelease: Tuple[str, ...] = ()) -> "Version":
        text = f"{major}.{minor}.{patch}"
        if prerelease:
            text += "-" + ".".join(prerelease)
        return cls(text)

    @property
    def major(self) -> int:
        return self._semver.major

    @property
    def minor(self) -> int:
        return self._semver.minor

    @property
    def patch(self) -> int:
        return self._semver.patch

    @property
    def prerelease(self) -> Tuple[str, ...]:
        return tuple(self._semver.prerelease or ())

    @property
    def build(self) -> Tuple[str, ...]:
        return tuple(self._semver.build or ())

    @property
    def precedence_key(self) -> Tuple:
        return self._key

    def core(self) -> Tuple[int, int, int]:
        """The (major, minor, patch) triple."""
        return self._key[:3]

    def greater_than(self, other: "Version") -> bool:
        return self._key > other._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self._raw

    def __repr__(self) -> str:
        return f"Version({self._raw!r})"


def parse_version(raw: str) -> Version:
    """Parse ``raw`` into a Version, raising MalformedVersion when invalid."""
    return Version(raw)


def compare_precedence(a: Version, b: Version) -> Precedence:
    """Compare two versions by precedence, ignoring build metadata."""
    if a.greater_than(b):
        return Precedence.GREATER
    if b.greater_than(a):
        return Precedence.LESS
    return Precedence.EQUAL
