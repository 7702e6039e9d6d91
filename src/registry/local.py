"""Local directory layout shared by filesystem mirrors and the provider cache.

Packages live under a base directory in one of two forms:

* unpacked: ``BASE/HOSTNAME/NAMESPACE/TYPE/VERSION/OS_ARCH/``
* packed:   ``BASE/HOSTNAME/NAMESPACE/TYPE/terraform-provider-TYPE_VERSION_OS_ARCH.zip``

The layout is an external contract with the tools that populate these
directories, so the paths produced here are normalized to forward slashes.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Sequence

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from versioning.errors import MalformedProviderAddress, MalformedVersion
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.parser import parse_provider_source
from versioning.version import Version

from .base import InstallationSource, SourceError
from .locations import PackageLocalArchive, PackageLocalDir

logger = logging.getLogger(__name__)


def to_slash(path: str) -> str:
    return os.path.normpath(path).replace(os.sep, "/")


def unpacked_directory_path(base_dir: str, identity: PluginIdentity, version: Version, platform: TargetPlatform) -> str:
    """Path of the unpacked package directory for one provider release."""
    return to_slash(os.path.join(
        base_dir, identity.hostname, identity.namespace, identity.type, str(version), str(platform)
    ))


def packed_file_path(base_dir: str, identity: PluginIdentity, version: Version, platform: TargetPlatform) -> str:
    """Path of the packed zip archive for one provider release."""
    name = f"{Constants.PACKED_PREFIX}{identity.type}_{version}_{platform}{Constants.PACKED_SUFFIX}"
    return to_slash(os.path.join(base_dir, identity.hostname, identity.namespace, identity.type, name))


def _sorted_entries(path: str) -> List[os.DirEntry]:
    with os.scandir(path) as it:
        return sorted(it, key=lambda e: e.name)


def _trace_skip(path: str, reason: str) -> None:
    if is_debug_enabled(logger):
        logger.debug(
            "Ignoring %s: %s",
            path,
            reason,
            extra=extra_context(event="scan_skip", component="local_directory", target=path),
        )


def _parse_packed_name(name: str, type_name: str) -> Optional[tuple]:
    prefix = f"{Constants.PACKED_PREFIX}{type_name}_"
    if not name.startswith(prefix) or not name.endswith(Constants.PACKED_SUFFIX):
        return None
    rest = name[len(prefix):-len(Constants.PACKED_SUFFIX)]
    # VERSION_OS_ARCH; the version itself never contains underscores.
    pieces = rest.split("_")
    if len(pieces) != 3:
        return None
    try:
        return Version(pieces[0]), TargetPlatform.parse(f"{pieces[1]}_{pieces[2]}")
    except (MalformedVersion, ValueError):
        return None


def search_local_directory(base_dir: str) -> Dict[PluginIdentity, List[PackageMeta]]:
    """Find every provider package under ``base_dir``.

    Directories are visited in sorted name order so the result is
    deterministic for a given directory tree. A missing base directory yields
    an empty result; entries that do not fit the layout are skipped.

    Raises:
        OSError: if ``base_dir`` exists but cannot be read.
    """
    results: Dict[PluginIdentity, List[PackageMeta]] = {}
    if not os.path.isdir(base_dir):
        _trace_skip(base_dir, "base directory does not exist")
        return results

    for host_entry in _sorted_entries(base_dir):
        if not host_entry.is_dir() or host_entry.name.startswith("."):
            continue
        try:
            namespaces = _sorted_entries(host_entry.path)
        except OSError as exc:
            logger.warning("Failed to read %s: %s", host_entry.path, exc)
            continue
        for ns_entry in namespaces:
            if not ns_entry.is_dir():
                continue
            try:
                types = _sorted_entries(ns_entry.path)
            except OSError as exc:
                logger.warning("Failed to read %s: %s", ns_entry.path, exc)
                continue
            for type_entry in types:
                if not type_entry.is_dir():
                    continue
                try:
                    identity = parse_provider_source(f"{host_entry.name}/{ns_entry.name}/{type_entry.name}")
                except MalformedProviderAddress as exc:
                    _trace_skip(type_entry.path, str(exc))
                    continue
                found = _search_type_dir(type_entry.path, identity)
                if found:
                    results.setdefault(identity, []).extend(found)
    return results


def _search_type_dir(type_dir: str, identity: PluginIdentity) -> List[PackageMeta]:
    found: List[PackageMeta] = []
    try:
        entries = _sorted_entries(type_dir)
    except OSError as exc:
        logger.warning("Failed to read %s: %s", type_dir, exc)
        return found
    for entry in entries:
        if entry.is_file():
            parsed = _parse_packed_name(entry.name, identity.type)
            if parsed is None:
                _trace_skip(entry.path, "not a provider package archive")
                continue
            version, platform = parsed
            found.append(PackageMeta(identity, version, platform, PackageLocalArchive(to_slash(entry.path))))
            continue
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        try:
            version = Version(entry.name)
        except MalformedVersion:
            _trace_skip(entry.path, "not a version directory")
            continue
        try:
            platform_entries = _sorted_entries(entry.path)
        except OSError as exc:
            logger.warning("Failed to read %s: %s", entry.path, exc)
            continue
        for platform_entry in platform_entries:
            if not platform_entry.is_dir() or platform_entry.name.startswith("."):
                continue
            try:
                platform = TargetPlatform.parse(platform_entry.name)
            except ValueError:
                _trace_skip(platform_entry.path, "not a platform directory")
                continue
            found.append(PackageMeta(identity, version, platform, PackageLocalDir(to_slash(platform_entry.path))))
    return found


class LocalDirectorySource(InstallationSource):
    """Filesystem mirror: packages found by scanning a local directory.

    By default only unpacked packages are offered; ``include_archives`` also
    offers packed archives, which are unpacked when installed.
    """

    kind = "filesystem_mirror"

    def __init__(
        self,
        path: str,
        include_archives: bool = False,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
    ):
        super().__init__(include, exclude)
        self.path = path
        self.include_archives = include_archives

    def list_candidates(self, identity: PluginIdentity, platform: TargetPlatform) -> List[PackageMeta]:
        try:
            everything = search_local_directory(self.path)
        except OSError as exc:
            raise SourceError(f"failed to scan {self.path}: {exc}") from exc
        return [
            meta for meta in everything.get(identity, [])
            if meta.platform == platform
            and (self.include_archives or meta.location.is_executable_dir)
        ]

    def describe(self) -> str:
        return f"{self.kind} {self.path}"
