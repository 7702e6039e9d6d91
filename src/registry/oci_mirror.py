"""Templated mirror source backed by an OCI distribution registry.

The repository for each provider is computed from an address template (see
:mod:`registry.template`), e.g. ``ghcr.io/example/${namespace}-${type}``.
Versions are the repository's tags, and each tag's image index names the
platforms it carries.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from typing import Dict, List, Optional, Sequence, Tuple

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from versioning.errors import MalformedVersion
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

from .base import InstallationSource, SourceError
from .locations import PackageOCIReference
from .network_mirror import fetch_json_document, fetch_json_response
from .template import CompiledTemplate, TemplateEvaluationError, compile_template

logger = logging.getLogger(__name__)

_LINK_NEXT_RE = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')
_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$")
_MAX_TAG_PAGES = 50


def split_repository_address(address: str) -> Tuple[str, str]:
    """Split ``registry/repo/path`` into (registry, repository)."""
    registry, sep, repository = address.strip().partition("/")
    if not sep or not registry or not _REPOSITORY_RE.match(repository):
        raise ValueError(f"invalid OCI repository address {address!r}")
    return registry.lower(), repository


def tag_to_version(tag: str) -> Version:
    # OCI tags cannot contain "+", so build metadata is written with "_".
    return Version(tag.replace("_", "+"))


def version_to_tag(version: Version) -> str:
    return str(version).replace("+", "_")


class OCIMirrorSource(InstallationSource):
    """Mirror whose repository address is computed per provider from a template."""

    kind = "oci_mirror"

    def __init__(
        self,
        repository_template: str,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
    ):
        super().__init__(include, exclude)
        # Compiled up front so syntax errors surface at configuration load.
        self.template: CompiledTemplate = compile_template(repository_template)

    def repository_for(self, identity: PluginIdentity) -> Tuple[str, str]:
        """Evaluate the template for ``identity``.

        Raises:
            TemplateEvaluationError: if the template has no value for ``identity``
                or evaluates to something that is not a repository address.
        """
        address = self.template.evaluate(identity)
        try:
            return split_repository_address(address)
        except ValueError as exc:
            raise TemplateEvaluationError(str(exc), identity) from exc

    def list_candidates(self, identity: PluginIdentity, platform: TargetPlatform) -> List[PackageMeta]:
        """One candidate per (tag, platform manifest) in the mirror repository."""
        registry, repository = self.repository_for(identity)
        found = []
        for tag in self._list_tags(registry, repository):
            try:
                version = tag_to_version(tag)
            except MalformedVersion:
                if is_debug_enabled(logger):
                    logger.debug(
                        "Ignoring non-version tag %s", tag,
                        extra=extra_context(event="scan_skip", component="oci_mirror", target=f"{registry}/{repository}"),
                    )
                continue
            for manifest_platform, digest in self._platform_manifests(registry, repository, tag).items():
                location = PackageOCIReference(registry, repository, digest)
                found.append(PackageMeta(identity, version, manifest_platform, location, source=self))
        return found

    def _platform_manifests(self, registry: str, repository: str, tag: str) -> Dict[TargetPlatform, str]:
        """Map each platform in the tag's image index to its manifest digest."""
        url = f"https://{registry}/v2/{repository}/manifests/{tag}"
        index = fetch_json_document(url, self.kind, headers={"Accept": ", ".join(Constants.OCI_INDEX_MEDIA_TYPES)})
        if index is None:
            return {}
        manifests = index.get("manifests") if isinstance(index, dict) else None
        if not isinstance(manifests, list):
            raise SourceError(f"{self.kind}: {registry}/{repository}:{tag} is not an image index")
        platforms: Dict[TargetPlatform, str] = {}
        for entry in manifests:
            if not isinstance(entry, dict) or not isinstance(entry.get("digest"), str):
                continue
            plat = entry.get("platform")
            if not isinstance(plat, dict):
                continue
            os_name, arch = plat.get("os"), plat.get("architecture")
            if isinstance(os_name, str) and isinstance(arch, str) and os_name and arch:
                platforms.setdefault(TargetPlatform(os_name, arch), entry["digest"])
        return platforms

    def _list_tags(self, registry: str, repository: str) -> List[str]:
        url = f"https://{registry}/v2/{repository}/tags/list"
        tags: List[str] = []
        for _ in range(_MAX_TAG_PAGES):
            data, headers = fetch_json_response(url, self.kind)
            if data is None:
                return tags
            page = data.get("tags") if isinstance(data, dict) else None
            if page is None:
                return tags
            if not isinstance(page, list):
                raise SourceError(f"{self.kind}: malformed tag list from {registry}/{repository}")
            tags.extend(t for t in page if isinstance(t, str))
            next_url = self._next_page(url, headers)
            if next_url is None:
                return tags
            url = next_url
        logger.warning("Stopped listing tags of %s/%s after %d pages", registry, repository, _MAX_TAG_PAGES)
        return tags

    @staticmethod
    def _next_page(url: str, headers: Dict[str, str]) -> Optional[str]:
        link = next((v for k, v in headers.items() if k.lower() == "link"), None)
        if isinstance(link, str):
            m = _LINK_NEXT_RE.search(link)
            if m:
                return urllib.parse.urljoin(url, m.group(1))
        return None

    def locate(self, meta: PackageMeta) -> PackageMeta:
        if meta.location is not None:
            return meta
        try:
            registry, repository = self.repository_for(meta.identity)
        except TemplateEvaluationError as exc:
            raise SourceError(str(exc)) from exc
        digest = self._platform_manifests(registry, repository, version_to_tag(meta.version)).get(meta.platform)
        if digest is None:
            raise SourceError(
                f"{self.kind}: {meta.identity} {meta.version} is not available for {meta.platform} in {registry}/{repository}"
            )
        location = PackageOCIReference(registry, repository, digest)
        return PackageMeta(meta.identity, meta.version, meta.platform, location, source=self)

    def describe(self) -> str:
        return f"{self.kind} {self.template}"
