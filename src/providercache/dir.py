"""Directory-backed cache of unpacked provider packages."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from typing import Dict, List, Optional

from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from registry.local import search_local_directory, to_slash, unpacked_directory_path
from registry.locations import PackageMaterializationError
from versioning.models import CachedProvider, PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

logger = logging.getLogger(__name__)

CacheIndex = Dict[PluginIdentity, List[CachedProvider]]


def _sort_entries(entries: List[CachedProvider]) -> None:
    # Decreasing precedence. list.sort is stable even with reverse=True, so
    # versions differing only in build metadata keep their discovery order;
    # which of those wins is deterministic but carries no meaning.
    entries.sort(key=lambda entry: entry.version, reverse=True)


class Dir:
    """The provider packages available in one base directory for one platform.

    The index is built by a single directory walk on first use and memoized;
    ``invalidate`` forgets it so the next query walks again. An index that
    is None has never been built, while an empty dict means the walk finished
    and found nothing. All index reads and writes go through one lock, so
    concurrent callers share a single walk and observe complete results.
    """

    def __init__(self, base_dir: str, platform: TargetPlatform):
        self._base_dir = base_dir
        self._platform = platform
        self._index: Optional[CacheIndex] = None
        self._lock = threading.RLock()

    @property
    def base_dir(self) -> str:
        return self._base_dir

    @property
    def platform(self) -> TargetPlatform:
        return self._platform

    def is_scanned(self) -> bool:
        with self._lock:
            return self._index is not None

    def invalidate(self) -> None:
        """Forget the memoized index; the next query rescans the directory."""
        with self._lock:
            self._index = None

    def scan(self) -> CacheIndex:
        """Return the index, walking the directory only on first use.

        A directory read failure is logged as a warning and yields an empty
        result without marking the cache as scanned. The returned mapping is
        shared and must not be modified by callers.
        """
        with self._lock:
            if self._index is not None:
                if is_debug_enabled(logger):
                    logger.debug(
                        "Using cached result from previous scan of %s", self._base_dir,
                        extra=extra_context(event="cache_hit", component="providercache", target=self._base_dir),
                    )
                return self._index
            logger.debug("Scanning directory %s", self._base_dir)
            with Timer() as t:
                try:
                    found = search_local_directory(self._base_dir)
                except OSError as exc:
                    logger.warning("Failed to scan provider cache directory %s: %s", self._base_dir, exc)
                    return {}
            self._index = self._build_index(found)
            logger.debug(
                "Scanned %s",
                self._base_dir,
                extra=extra_context(
                    event="scan", component="providercache", outcome="success",
                    duration_ms=t.duration_ms(), target=self._base_dir,
                ),
            )
            return self._index

    def _build_index(self, found: Dict[PluginIdentity, List[PackageMeta]]) -> CacheIndex:
        # Always a dict, even when empty: that is what marks the scan as done.
        index: CacheIndex = {}
        for identity, metas in found.items():
            for meta in metas:
                if meta.platform != self._platform:
                    logger.debug("Ignoring %s because it is for %s, not %s", meta.location, meta.platform, self._platform)
                    continue
                if meta.location is None or not meta.location.is_executable_dir:
                    logger.debug("Ignoring %s because it is not an unpacked directory", meta.location)
                    continue
                logger.debug("Including %s as a candidate package for %s %s", meta.location, identity, meta.version)
                index.setdefault(identity, []).append(CachedProvider(
                    identity=identity,
                    version=meta.version,
                    package_dir=to_slash(meta.location.path),
                ))
        for entries in index.values():
            _sort_entries(entries)
        return index

    def all_available_packages(self) -> CacheIndex:
        return self.scan()

    def lookup(self, identity: PluginIdentity) -> List[CachedProvider]:
        """Entries for ``identity`` newest first; empty (never an error) if none."""
        with self._lock:
            return list(self.scan().get(identity, ()))

    def latest(self, identity: PluginIdentity) -> Optional[CachedProvider]:
        entries = self.lookup(identity)
        return entries[0] if entries else None

    def find(self, identity: PluginIdentity, version: Version) -> Optional[CachedProvider]:
        """The cached entry for an exact version, if present."""
        for entry in self.lookup(identity):
            if entry.version == version:
                return entry
        return None

    def insert(self, entry: CachedProvider) -> None:
        """Add a newly installed package and restore precedence order.

        An existing entry for the same package directory is replaced.
        """
        with self._lock:
            index = self.scan()
            if self._index is None:
                # The walk failed; the next scan picks the package up from disk.
                return
            entries = [e for e in index.get(entry.identity, []) if e.package_dir != entry.package_dir]
            entries.append(entry)
            _sort_entries(entries)
            index[entry.identity] = entries

    def package_dir(self, identity: PluginIdentity, version: Version) -> str:
        """Where the unpacked package for ``identity`` ``version`` belongs."""
        return unpacked_directory_path(self._base_dir, identity, version, self._platform)

    def install(self, meta: PackageMeta) -> CachedProvider:
        """Materialize ``meta`` into the cache and index it.

        The package is unpacked into a staging directory beside its final
        location and renamed into place, so an interrupted or failed install
        leaves either the complete package or nothing. If the final directory
        already exists it is reused.

        Raises:
            PackageMaterializationError: if the package cannot be obtained.
        """
        if meta.platform != self._platform:
            raise PackageMaterializationError(
                f"{meta.identity} {meta.version} is for {meta.platform}, not {self._platform}"
            )
        if meta.location is None:
            raise PackageMaterializationError(f"{meta.identity} {meta.version} has no package location")
        final_dir = self.package_dir(meta.identity, meta.version)
        final_native = os.path.normpath(final_dir)

        if not os.path.isdir(final_native):
            parent = os.path.dirname(final_native)
            os.makedirs(parent, exist_ok=True)
            staging = tempfile.mkdtemp(prefix=Constants.STAGING_PREFIX, dir=parent)
            try:
                meta.location.materialize(meta.identity, meta.version, staging)
                try:
                    os.rename(staging, final_native)
                except OSError:
                    # Another installer landed the same package first.
                    if not os.path.isdir(final_native):
                        raise
                    shutil.rmtree(staging, ignore_errors=True)
                    logger.debug("Package %s was installed concurrently; reusing it", final_dir)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            logger.info("Installed %s %s into %s", meta.identity, meta.version, final_dir)
        else:
            logger.debug("Package %s already present; reusing it", final_dir)

        entry = CachedProvider(meta.identity, meta.version, final_dir)
        self.insert(entry)
        return entry
