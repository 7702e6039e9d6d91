"""Errors raised while parsing versions and resolving provider requirements."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence, Tuple

if TYPE_CHECKING:
    from .constraints import VersionConstraints
    from .models import PluginIdentity, TargetPlatform
    from .version import Version


class MalformedVersion(ValueError):
    """A version string is not a valid semantic version."""


class MalformedConstraint(ValueError):
    """A version constraint string cannot be parsed."""


class MalformedProviderAddress(ValueError):
    """A provider source address is not of the form [hostname/]namespace/type."""


class OperationCancelled(Exception):
    """The caller cancelled or timed out an in-flight resolution or install."""


class ResolutionError(Exception):
    """Terminal resolution failure for a single provider identity."""

    def __init__(self, identity: "PluginIdentity", constraints: "VersionConstraints", message: str):
        super().__init__(message)
        self.identity = identity
        self.constraints = constraints


class IncompatibleConstraints(ResolutionError):
    """The constraints for one identity cannot all hold for any version."""

    def __init__(self, identity: "PluginIdentity", constraints: "VersionConstraints"):
        super().__init__(
            identity,
            constraints,
            f"no version of {identity} can satisfy all of the given constraints: {constraints}",
        )


class NoSatisfyingVersion(ResolutionError):
    """No candidate from any installation source matched the constraints."""

    def __init__(
        self,
        identity: "PluginIdentity",
        constraints: "VersionConstraints",
        platform: "TargetPlatform",
        nearest: Sequence["Version"] = (),
        platform_mismatch: bool = False,
    ):
        self.platform = platform
        self.nearest: Tuple["Version", ...] = tuple(nearest)
        self.platform_mismatch = platform_mismatch
        if platform_mismatch:
            detail = f"available releases do not support {platform}"
        elif self.nearest:
            detail = "available versions include " + ", ".join(str(v) for v in self.nearest)
        else:
            detail = "no versions are available from any installation source"
        super().__init__(
            identity,
            constraints,
            f"no available version of {identity} matches the given constraints "
            f"({constraints or 'any version'}) for {platform}; {detail}",
        )
