"""Brings a set of provider requirements into the local cache."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from registry.base import SourceError
from registry.chain import SourceChain
from registry.locations import PackageMaterializationError
from versioning.constraints import VersionConstraints
from versioning.errors import OperationCancelled, ResolutionError
from versioning.models import CachedProvider, PackageMeta, PluginIdentity, TargetPlatform
from versioning.resolver import ProviderResolver

from .dir import Dir

logger = logging.getLogger(__name__)


class InstallError(Exception):
    """A selected package could not be placed in the cache."""

    def __init__(self, identity: PluginIdentity, message: str):
        self.identity = identity
        super().__init__(f"failed to install {identity}: {message}")


@dataclass
class InstallResult:
    """Outcome of ensuring one identity is installed."""
    identity: PluginIdentity
    constraints: VersionConstraints
    provider: Optional[CachedProvider] = None
    reused: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.provider is not None


class Installer:
    """Resolves requirements through a source chain and installs into a cache.

    Each identity is handled on its own worker; a failure for one identity
    is recorded in its InstallResult and never affects the others.
    """

    def __init__(
        self,
        cache: Dir,
        chain: SourceChain,
        platform: Optional[TargetPlatform] = None,
        max_workers: int = Constants.MAX_WORKERS,
    ):
        self.cache = cache
        self.chain = chain
        self.platform = platform or cache.platform
        self.max_workers = max_workers
        self.resolver = ProviderResolver(chain, self.platform, max_workers=max_workers)

    def _materialize(self, selected: PackageMeta) -> CachedProvider:
        meta = selected
        if meta.location is None:
            if meta.source is None:
                raise InstallError(meta.identity, f"no source can locate version {meta.version}")
            try:
                meta = meta.source.locate(meta)
            except SourceError as exc:
                raise InstallError(meta.identity, str(exc)) from exc
        try:
            return self.cache.install(meta)
        except (PackageMaterializationError, OSError) as exc:
            raise InstallError(meta.identity, str(exc)) from exc

    def ensure_one(
        self,
        identity: PluginIdentity,
        constraints: VersionConstraints,
        cancel: Optional[threading.Event] = None,
    ) -> InstallResult:
        result = InstallResult(identity=identity, constraints=constraints)
        try:
            selected = self.resolver.resolve_one(identity, constraints, cancel=cancel)
            existing = self.cache.find(identity, selected.version)
            if existing is not None:
                result.provider, result.reused = existing, True
            else:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(f"installation of {identity} was cancelled")
                result.provider = self._materialize(selected)
        except (ResolutionError, OperationCancelled, InstallError) as exc:
            logger.warning("Could not install %s: %s", identity, exc)
            result.error = exc
            return result

        if is_debug_enabled(logger):
            logger.debug(
                "%s %s %s",
                "Reusing" if result.reused else "Installed",
                identity,
                result.provider.version,
                extra=extra_context(
                    event="install",
                    component="installer",
                    outcome="reused" if result.reused else "installed",
                    target=str(identity),
                ),
            )
        return result

    def ensure_providers(
        self,
        requirements: Mapping[PluginIdentity, VersionConstraints],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[PluginIdentity, InstallResult]:
        """Make sure every required provider has a matching package in the cache.

        Identities whose timeout expires are reported with OperationCancelled
        and ``cancel`` is set so workers still running stop at the next
        source boundary. The call returns at the deadline without waiting
        for those workers.
        """
        cancel = cancel or threading.Event()
        results: Dict[PluginIdentity, InstallResult] = {}
        with Timer() as t:
            pool = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers)
            pending = set()
            try:
                futures = {
                    pool.submit(self.ensure_one, identity, constraints, cancel): identity
                    for identity, constraints in requirements.items()
                }
                done, pending = concurrent.futures.wait(futures, timeout=timeout)
                if pending:
                    cancel.set()
                for future, identity in futures.items():
                    if future in done:
                        results[identity] = future.result()
                    else:
                        results[identity] = InstallResult(
                            identity=identity,
                            constraints=requirements[identity],
                            error=OperationCancelled(f"installation of {identity} timed out"),
                        )
            finally:
                pool.shutdown(wait=not pending, cancel_futures=True)
        failed = sum(1 for r in results.values() if not r.ok)
        logger.info(
            "Ensured %d providers (%d failed)",
            len(results),
            failed,
            extra=extra_context(event="install", component="installer", duration_ms=t.duration_ms()),
        )
        return results
