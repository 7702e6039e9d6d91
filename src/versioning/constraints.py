"""Version constraint sets for provider requirements.

A constraint string is a comma-separated list of ``<op> <version>`` items,
for example ``">= 1.2.0, < 2.0.0"`` or ``"~> 1.4"``. Every item in a set must
hold for a version to be allowed, and sets coming from different requirement
sources are combined with :meth:`VersionConstraints.merge`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import MalformedConstraint
from .version import Version

_ITEM_RE = re.compile(
    r"^\s*(?P<op>~>|>=|<=|!=|==|=|>|<)?\s*"
    r"v?(?P<major>\d+)(?:\.(?P<minor>\d+)(?:\.(?P<patch>\d+))?)?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?\s*$"
)


@dataclass(frozen=True)
class Constraint:
    """A single ``<op> <version>`` requirement."""

    op: str
    boundary: Version
    # How many of major/minor/patch were written; drives "~>" semantics.
    precision: int
    raw: str

    def upper_bound(self) -> Optional[Version]:
        """Exclusive upper bound implied by a pessimistic ``~>`` constraint."""
        if self.op != "~>":
            return None
        if self.precision <= 2:
            return Version.from_parts(self.boundary.major + 1)
        return Version.from_parts(self.boundary.major, self.boundary.minor + 1)

    def allows(self, version: Version) -> bool:
        op, b = self.op, self.boundary
        if op == "=":
            return version == b
        if op == "!=":
            return version != b
        if op == ">":
            return version > b
        if op == ">=":
            return version >= b
        if op == "<":
            return version < b
        if op == "<=":
            return version <= b
        return b <= version < self.upper_bound()

    def __str__(self) -> str:
        return f"{self.op} {self.boundary}"


def _parse_item(item: str) -> Constraint:
    m = _ITEM_RE.match(item)
    if not m:
        raise MalformedConstraint(f"invalid version constraint {item.strip()!r}")
    op = m.group("op") or "="
    if op == "==":
        op = "="
    parts = [m.group("major"), m.group("minor"), m.group("patch")]
    precision = sum(1 for p in parts if p is not None)
    if m.group("pre") and precision < 3:
        raise MalformedConstraint(f"prerelease requires a full version in {item.strip()!r}")
    if op == "~>" and precision == 1:
        precision = 2
    text = ".".join(p if p is not None else "0" for p in parts)
    if m.group("pre"):
        text += "-" + m.group("pre")
    return Constraint(op=op, boundary=Version(text), precision=precision, raw=item.strip())


@dataclass(frozen=True)
class VersionConstraints:
    """An AND-combined set of constraints over versions of one provider."""

    items: Tuple[Constraint, ...] = ()

    @classmethod
    def parse(cls, text: Optional[str]) -> "VersionConstraints":
        """Parse a comma-separated constraint string; empty means any version."""
        if text is None or not text.strip():
            return cls()
        return cls(tuple(_parse_item(item) for item in text.split(",")))

    @classmethod
    def merge(cls, *sets: "VersionConstraints") -> "VersionConstraints":
        """Combine sets from several requirement sources; all must hold."""
        items: List[Constraint] = []
        for constraint_set in sets:
            for item in constraint_set.items:
                if item not in items:
                    items.append(item)
        return cls(tuple(items))

    def allows(self, version: Version) -> bool:
        if version.prerelease and not self._names_prerelease_of(version):
            return False
        return all(item.allows(version) for item in self.items)

    def _names_prerelease_of(self, version: Version) -> bool:
        # Prereleases are opt-in: only a constraint that itself mentions a
        # prerelease of the same release can select one.
        return any(
            item.boundary.prerelease and item.boundary.core() == version.core()
            for item in self.items
        )

    def is_satisfiable(self) -> bool:
        """Report whether any version could meet every constraint.

        Answered from the constraints alone, without looking at candidates.
        """
        lower: Optional[Tuple[Version, bool]] = None
        upper: Optional[Tuple[Version, bool]] = None
        exact: Optional[Version] = None
        excluded = []

        def tighten_lower(v: Version, inclusive: bool) -> None:
            nonlocal lower
            if lower is None or v > lower[0] or (v == lower[0] and not inclusive):
                lower = (v, inclusive)

        def tighten_upper(v: Version, inclusive: bool) -> None:
            nonlocal upper
            if upper is None or v < upper[0] or (v == upper[0] and not inclusive):
                upper = (v, inclusive)

        for item in self.items:
            op, b = item.op, item.boundary
            if op == "=":
                if exact is not None and exact != b:
                    return False
                exact = b
            elif op == "!=":
                excluded.append(b)
            elif op in (">", ">="):
                tighten_lower(b, op == ">=")
            elif op in ("<", "<="):
                tighten_upper(b, op == "<=")
            else:
                tighten_lower(b, True)
                tighten_upper(item.upper_bound(), False)

        if exact is not None:
            return all(item.allows(exact) for item in self.items)
        if lower is not None and upper is not None:
            if lower[0] > upper[0]:
                return False
            if lower[0] == upper[0]:
                return lower[1] and upper[1] and lower[0] not in excluded
        return True

    def __bool__(self) -> bool:
        return bool(self.items)

    def __iter__(self):
        return iter(self.items)

    def __str__(self) -> str:
        return ", ".join(str(item) for item in self.items)


def satisfies(version: Version, constraints: VersionConstraints) -> bool:
    """Return True when ``version`` meets every constraint in the set."""
    return constraints.allows(version)


def parse_constraints(text: Optional[str]) -> VersionConstraints:
    return VersionConstraints.parse(text)
