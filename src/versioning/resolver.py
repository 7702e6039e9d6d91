"""Selects one provider version per identity from the installation sources."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Dict, List, Mapping, Optional

from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from registry.chain import SourceChain

from .constraints import VersionConstraints
from .errors import IncompatibleConstraints, NoSatisfyingVersion, OperationCancelled, ResolutionError
from .models import PackageMeta, PluginIdentity, ResolutionResult, TargetPlatform
from .version import Version

logger = logging.getLogger(__name__)


def select_best(candidates: List[PackageMeta]) -> PackageMeta:
    """Highest-precedence candidate; among equals the earliest one wins.

    Relies on the stability of ``sorted`` (also with ``reverse=True``) so
    versions equal under precedence keep their chain order.
    """
    return sorted(candidates, key=lambda meta: meta.version, reverse=True)[0]


def nearest_versions(candidates: List[PackageMeta], limit: int) -> List[Version]:
    """Distinct candidate versions, newest first, for diagnostics."""
    seen: List[Version] = []
    for meta in sorted(candidates, key=lambda meta: meta.version, reverse=True):
        if meta.version not in seen:
            seen.append(meta.version)
        if len(seen) >= limit:
            break
    return seen


class ProviderResolver:
    """Resolves requirements for many identities independently of each other."""

    def __init__(
        self,
        chain: SourceChain,
        platform: TargetPlatform,
        max_workers: int = Constants.MAX_WORKERS,
    ):
        self.chain = chain
        self.platform = platform
        self.max_workers = max_workers

    def resolve_one(
        self,
        identity: PluginIdentity,
        constraints: VersionConstraints,
        cancel: Optional[threading.Event] = None,
    ) -> PackageMeta:
        """Select the best candidate for one identity.

        Raises:
            IncompatibleConstraints: if no version could satisfy the constraints;
                no source is queried in that case.
            NoSatisfyingVersion: if no candidate matches.
            OperationCancelled: if ``cancel`` is set while querying sources.
        """
        if not constraints.is_satisfiable():
            raise IncompatibleConstraints(identity, constraints)

        candidates = self.chain.list_candidates(identity, self.platform, cancel=cancel)
        on_platform = [meta for meta in candidates if meta.platform == self.platform]
        matching = [meta for meta in on_platform if constraints.allows(meta.version)]
        if not matching:
            allowed_elsewhere = any(constraints.allows(meta.version) for meta in candidates)
            raise NoSatisfyingVersion(
                identity,
                constraints,
                self.platform,
                nearest=nearest_versions(on_platform or candidates, Constants.NEAREST_MISS_LIMIT),
                platform_mismatch=bool(candidates) and not on_platform and allowed_elsewhere,
            )

        selected = select_best(matching)
        if is_debug_enabled(logger):
            logger.debug(
                "Selected %s %s from %d candidates",
                identity,
                selected.version,
                len(candidates),
                extra=extra_context(event="resolution", component="resolver", outcome="selected", target=str(identity)),
            )
        return selected

    def _resolve_result(
        self,
        identity: PluginIdentity,
        constraints: VersionConstraints,
        cancel: Optional[threading.Event],
    ) -> ResolutionResult:
        result = ResolutionResult(identity=identity, constraints=constraints)
        try:
            result.selected = self.resolve_one(identity, constraints, cancel=cancel)
        except (ResolutionError, OperationCancelled) as exc:
            logger.info("Could not resolve %s: %s", identity, exc)
            result.error = exc
        return result

    def resolve(
        self,
        requirements: Mapping[PluginIdentity, VersionConstraints],
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[PluginIdentity, ResolutionResult]:
        """Resolve every identity in parallel.

        Each identity gets its own ResolutionResult; a failure, cancellation
        or timeout for one identity is recorded there and does not affect the
        others. When ``timeout`` expires the remaining identities are marked
        OperationCancelled and ``cancel`` (or an internal event) is set so
        in-flight source walks stop at their next source boundary. The call
        returns at the deadline without waiting for those walks.
        """
        cancel = cancel or threading.Event()
        results: Dict[PluginIdentity, ResolutionResult] = {}
        with Timer() as t:
            pool = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers)
            pending = set()
            try:
                futures = {
                    pool.submit(self._resolve_result, identity, constraints, cancel): identity
                    for identity, constraints in requirements.items()
                }
                done, pending = concurrent.futures.wait(futures, timeout=timeout)
                if pending:
                    cancel.set()
                for future, identity in futures.items():
                    if future in done:
                        results[identity] = future.result()
                    else:
                        results[identity] = ResolutionResult(
                            identity=identity,
                            constraints=requirements[identity],
                            error=OperationCancelled(f"resolution of {identity} timed out"),
                        )
            finally:
                pool.shutdown(wait=not pending, cancel_futures=True)
        logger.debug(
            "Resolved %d providers",
            len(results),
            extra=extra_context(event="resolution", component="resolver", duration_ms=t.duration_ms()),
        )
        return results
