"""Ordered chain of installation sources."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import List, Optional, Sequence

from common.logging_utils import extra_context, is_debug_enabled
from versioning.errors import OperationCancelled
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform

from .base import InstallationSource, SourceError
from .template import TemplateEvaluationError

logger = logging.getLogger(__name__)


class ChainPolicy(Enum):
    """How candidates from several sources are combined."""
    # Stop at the first source offering a package for the requested platform.
    FIRST_MATCH = "first_match"
    # Query every source and concatenate their candidates in chain order.
    UNION = "union"


class SourceChain:
    """Queries installation sources in configured order.

    A source failing for one identity (I/O error, template with no value for
    that identity) is logged and contributes no candidates; it never aborts
    the chain or affects other identities.
    """

    def __init__(self, sources: Sequence[InstallationSource], policy: ChainPolicy = ChainPolicy.FIRST_MATCH):
        self.sources = tuple(sources)
        self.policy = policy

    def list_candidates(
        self,
        identity: PluginIdentity,
        platform: TargetPlatform,
        cancel: Optional[threading.Event] = None,
    ) -> List[PackageMeta]:
        """Collect candidates for ``identity`` in chain order.

        With FIRST_MATCH, if no source offers the requested platform the
        candidates of every source are returned so callers can explain the
        mismatch.

        Raises:
            OperationCancelled: if ``cancel`` is set before the walk finishes.
        """
        collected: List[PackageMeta] = []
        for source in self.sources:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"listing candidates for {identity} was cancelled")
            if not source.handles(identity):
                continue
            try:
                candidates = source.list_candidates(identity, platform)
            except (SourceError, TemplateEvaluationError) as exc:
                logger.warning(
                    "Installation source %s failed for %s: %s",
                    source.describe(),
                    identity,
                    exc,
                    extra=extra_context(
                        event="source_error",
                        component="source_chain",
                        outcome="transient" if getattr(exc, "transient", False) else "skipped",
                        target=str(identity),
                    ),
                )
                continue
            if is_debug_enabled(logger):
                logger.debug(
                    "Source %s offered %d candidates for %s",
                    source.describe(),
                    len(candidates),
                    identity,
                    extra=extra_context(event="source_result", component="source_chain", target=str(identity)),
                )
            collected.extend(candidates)
            if self.policy is ChainPolicy.FIRST_MATCH and any(c.platform == platform for c in candidates):
                return [c for c in candidates if c.platform == platform]
        return collected

    def __len__(self) -> int:
        return len(self.sources)
