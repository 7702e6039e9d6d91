"""Static-path network mirror source.

Implements the provider network mirror protocol: the mirror serves
``{base}{hostname}/{namespace}/{type}/index.json`` listing available
versions and ``.../{version}.json`` listing one archive per platform.
Version documents are read while listing, so candidates always carry a
platform the mirror really serves.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Any, Dict, List, Optional, Sequence, Tuple

from common.http_client import get_json
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from versioning.errors import MalformedVersion
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

from .base import InstallationSource, SourceError
from .locations import PackageHTTPURL

logger = logging.getLogger(__name__)


def fetch_json_response(
    url: str, context: str, headers: Optional[Dict[str, str]] = None
) -> Tuple[Optional[Any], Dict[str, str]]:
    """GET a JSON document, mapping failures onto SourceError.

    Returns (None, headers) for 404 so callers can treat "not found" as "no
    candidates".
    """
    status_code, response_headers, data = get_json(url, headers=headers)
    if status_code == 404:
        if is_debug_enabled(logger):
            logger.debug(
                "Document not found",
                extra=extra_context(event="http_response", component=context, outcome="not_found", target=safe_url(url)),
            )
        return None, response_headers
    if status_code == 0 or status_code >= 500:
        raise SourceError(f"{context}: request to {safe_url(url)} failed (status {status_code})", transient=True)
    if status_code != 200:
        raise SourceError(f"{context}: unexpected status {status_code} from {safe_url(url)}")
    if data is None:
        raise SourceError(f"{context}: invalid JSON response from {safe_url(url)}")
    return data, response_headers


def fetch_json_document(url: str, context: str, headers: Optional[Dict[str, str]] = None) -> Optional[Any]:
    return fetch_json_response(url, context, headers)[0]


def pick_sha256(hashes: Sequence[Any]) -> Optional[str]:
    """Choose the ``zh:`` (SHA-256 of the zip archive) entry from a hash list."""
    for value in hashes or ():
        if isinstance(value, str) and value.startswith("zh:"):
            return value
    return None


class StaticMirrorSource(InstallationSource):
    """Network mirror at a fixed base URL; no templates involved."""

    kind = "network_mirror"

    def __init__(self, url: str, include: Optional[Sequence[str]] = None, exclude: Optional[Sequence[str]] = None):
        super().__init__(include, exclude)
        parsed = urllib.parse.urlsplit(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"network mirror URL must be http(s), got {url!r}")
        self.url = url if url.endswith("/") else url + "/"

    def _provider_url(self, identity: PluginIdentity) -> str:
        path = "/".join(urllib.parse.quote(p, safe="") for p in (identity.hostname, identity.namespace, identity.type))
        return urllib.parse.urljoin(self.url, path + "/")

    def list_candidates(self, identity: PluginIdentity, platform: TargetPlatform) -> List[PackageMeta]:
        """One candidate per (version, platform) archive the mirror lists.

        Each version document is read here so that a mirror only reports the
        platforms it actually serves.
        """
        data = fetch_json_document(self._provider_url(identity) + "index.json", self.kind)
        if data is None:
            return []
        versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(versions, dict):
            raise SourceError(f"{self.kind}: index for {identity} has no versions object")
        found = []
        for raw in versions:
            try:
                version = Version(raw)
            except MalformedVersion:
                logger.debug("Ignoring invalid version %r from %s for %s", raw, self.url, identity)
                continue
            version_url, archives = self._version_archives(identity, version)
            for key, archive in archives.items():
                try:
                    archive_platform = TargetPlatform.parse(key)
                except ValueError:
                    logger.debug("Ignoring archive for invalid platform %r of %s %s", key, identity, version)
                    continue
                location = self._archive_location(version_url, archive)
                if location is None:
                    continue
                found.append(PackageMeta(identity, version, archive_platform, location, source=self))
        return found

    def _version_archives(self, identity: PluginIdentity, version: Version) -> Tuple[str, Dict[str, Any]]:
        version_url = self._provider_url(identity) + f"{version}.json"
        data = fetch_json_document(version_url, self.kind)
        if data is None:
            return version_url, {}
        archives = data.get("archives") if isinstance(data, dict) else None
        if not isinstance(archives, dict):
            raise SourceError(f"{self.kind}: no archives listed for {identity} {version}")
        return version_url, archives

    @staticmethod
    def _archive_location(version_url: str, archive: Any) -> Optional[PackageHTTPURL]:
        if not isinstance(archive, dict) or not isinstance(archive.get("url"), str):
            return None
        return PackageHTTPURL(
            url=urllib.parse.urljoin(version_url, archive["url"]),
            sha256=pick_sha256(archive.get("hashes") or ()),
        )

    def locate(self, meta: PackageMeta) -> PackageMeta:
        if meta.location is not None:
            return meta
        version_url, archives = self._version_archives(meta.identity, meta.version)
        location = self._archive_location(version_url, archives.get(str(meta.platform)))
        if location is None:
            raise SourceError(f"{self.kind}: {meta.identity} {meta.version} is not available for {meta.platform}")
        return PackageMeta(meta.identity, meta.version, meta.platform, location, source=self)

    def describe(self) -> str:
        return f"{self.kind} {self.url}"
