"""Base interface for provider installation sources."""

from __future__ import annotations

import fnmatch
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from versioning.models import PackageMeta, PluginIdentity, TargetPlatform


class SourceError(Exception):
    """A single installation source failed to answer one query.

    ``transient`` marks failures worth retrying later (timeouts, connection
    errors, 5xx responses) as opposed to permanent ones (malformed responses,
    client errors).
    """

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class InstallationSource(ABC):
    """One strategy for locating packages for a provider identity.

    ``include`` and ``exclude`` are glob patterns over
    ``hostname/namespace/type``; a source only answers for identities that
    match an include pattern (or any identity when there are none) and no
    exclude pattern.
    """

    kind = "abstract"

    def __init__(self, include: Optional[Sequence[str]] = None, exclude: Optional[Sequence[str]] = None):
        self.include = tuple(p.lower() for p in include or ())
        self.exclude = tuple(p.lower() for p in exclude or ())

    def handles(self, identity: PluginIdentity) -> bool:
        """Whether this source is configured to answer for ``identity``."""
        target = str(identity)
        if self.include and not any(fnmatch.fnmatchcase(target, p) for p in self.include):
            return False
        return not any(fnmatch.fnmatchcase(target, p) for p in self.exclude)

    @abstractmethod
    def list_candidates(self, identity: PluginIdentity, platform: TargetPlatform) -> List[PackageMeta]:
        """List candidate packages for ``identity``, possibly empty.

        Raises:
            SourceError: if the source could not be queried.
            registry.template.TemplateEvaluationError: for templated sources
                whose template has no value for ``identity``.
        """

    def locate(self, meta: PackageMeta) -> PackageMeta:
        """Return ``meta`` with its location filled in.

        Sources whose candidates already carry a location return them
        unchanged.

        Raises:
            SourceError: if the package location could not be determined.
        """
        return meta

    def describe(self) -> str:
        return self.kind

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"
