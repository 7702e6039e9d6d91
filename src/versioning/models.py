"""Data models for provider identities, platforms and package resolution."""

from __future__ import annotations

import os
import platform as _platform
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from constants import Constants

from .constraints import VersionConstraints
from .version import Version

if TYPE_CHECKING:
    from registry.base import InstallationSource
    from registry.locations import PackageLocation


@dataclass(frozen=True)
class PluginIdentity:
    """The (hostname, namespace, type) triple naming a provider source."""
    hostname: str
    namespace: str
    type: str

    def for_display(self) -> str:
        """Compact form that omits the default registry hostname."""
        if self.hostname == Constants.DEFAULT_REGISTRY_HOST:
            return f"{self.namespace}/{self.type}"
        return str(self)

    def __str__(self) -> str:
        return f"{self.hostname}/{self.namespace}/{self.type}"


_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}


@dataclass(frozen=True)
class TargetPlatform:
    """An (os, arch) pair; packages are only usable on an exact match."""
    os: str
    arch: str

    @classmethod
    def parse(cls, text: str) -> "TargetPlatform":
        """Parse the ``os_arch`` form used in package names and directories."""
        os_name, sep, arch = text.partition("_")
        if not sep or not os_name or not arch or "_" in arch:
            raise ValueError(f"invalid platform {text!r}: must be of the form os_arch")
        return cls(os_name.lower(), arch.lower())

    @classmethod
    def current(cls) -> "TargetPlatform":
        """The platform of the running interpreter."""
        system = _platform.system().lower()
        machine = _platform.machine().lower()
        return cls(system, _ARCH_ALIASES.get(machine, machine))

    def __str__(self) -> str:
        return f"{self.os}_{self.arch}"


@dataclass(frozen=True)
class PackageMeta:
    """One candidate package offered by an installation source.

    ``location`` is None when the source defers locating the package until a
    version has been selected; ``source.locate(meta)`` then fills it in.
    """
    identity: PluginIdentity
    version: Version
    platform: TargetPlatform
    location: Optional["PackageLocation"] = None
    source: Optional["InstallationSource"] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CachedProvider:
    """One unpacked, executable package resident on disk."""
    identity: PluginIdentity
    version: Version
    package_dir: str

    def executable_file(self) -> str:
        """Path of the provider executable inside ``package_dir``.

        Raises:
            FileNotFoundError: when the directory holds no provider executable.
        """
        type_name = self.identity.type
        try:
            names = sorted(os.listdir(self.package_dir))
        except OSError as exc:
            raise FileNotFoundError(f"cannot read package directory {self.package_dir}: {exc}") from exc
        for name in names:
            if not any(name.startswith(prefix + type_name) for prefix in Constants.EXECUTABLE_PREFIXES):
                continue
            path = os.path.join(self.package_dir, name)
            if os.path.isfile(path):
                return path.replace(os.sep, "/")
        raise FileNotFoundError(
            f"package directory {self.package_dir} contains no executable for provider {self.identity}"
        )


@dataclass
class ResolutionResult:
    """Resolution outcome for one identity."""
    identity: PluginIdentity
    constraints: VersionConstraints
    selected: Optional[PackageMeta] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.selected is not None

