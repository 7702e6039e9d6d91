"""Direct installation from a provider's origin registry.

The registry host is taken from the provider identity. Its provider API base
URL is found through service discovery (``/.well-known/terraform.json``),
then versions and per-platform download details come from the provider
registry protocol.
"""
from __future__ import annotations

import logging
import threading
import urllib.parse
from typing import Dict, List, Optional, Sequence

from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from versioning.errors import MalformedVersion
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

from .base import InstallationSource, SourceError
from .locations import PackageHTTPURL, normalize_sha256
from .network_mirror import fetch_json_document

logger = logging.getLogger(__name__)


class RegistrySource(InstallationSource):
    """Installs providers from the registry named by their hostname.

    ``services`` may pre-seed discovery results (hostname -> provider API
    base URL), for hosts that do not serve a discovery document.
    """

    kind = "direct"

    def __init__(
        self,
        services: Optional[Dict[str, str]] = None,
        include: Optional[Sequence[str]] = None,
        exclude: Optional[Sequence[str]] = None,
    ):
        super().__init__(include, exclude)
        # Per-source discovery cache keyed by hostname. Guarded by
        # _discovery_lock because identities resolve on worker threads.
        self._discovered: Dict[str, Optional[str]] = {
            host.lower(): url for host, url in (services or {}).items()
        }
        self._discovery_lock = threading.Lock()

    def _providers_base_url(self, hostname: str) -> str:
        with self._discovery_lock:
            if hostname in self._discovered:
                cached = self._discovered[hostname]
                if cached is None:
                    raise SourceError(f"host {hostname} does not offer a provider registry")
                return cached

        discovery_url = f"https://{hostname}{Constants.DISCOVERY_PATH}"
        if is_debug_enabled(logger):
            logger.debug(
                "Discovering services",
                extra=extra_context(event="function_entry", component="direct", action="discover", target=hostname),
            )
        data = fetch_json_document(discovery_url, self.kind)
        service = data.get(Constants.PROVIDERS_SERVICE_ID) if isinstance(data, dict) else None
        base_url = urllib.parse.urljoin(discovery_url, service) if isinstance(service, str) else None
        if base_url is not None and not base_url.endswith("/"):
            base_url += "/"
        with self._discovery_lock:
            self._discovered[hostname] = base_url
        if base_url is None:
            raise SourceError(f"host {hostname} does not offer a provider registry")
        return base_url

    def list_candidates(self, identity: PluginIdentity, platform: TargetPlatform) -> List[PackageMeta]:
        base_url = self._providers_base_url(identity.hostname)
        url = urllib.parse.urljoin(base_url, f"{identity.namespace}/{identity.type}/versions")
        data = fetch_json_document(url, self.kind)
        if data is None:
            logger.debug("Registry %s does not know provider %s", identity.hostname, identity)
            return []
        for warning in (data.get("warnings") or []) if isinstance(data, dict) else []:
            logger.warning("Registry warning for %s: %s", identity, warning)
        versions = data.get("versions") if isinstance(data, dict) else None
        if not isinstance(versions, list):
            raise SourceError(f"{self.kind}: malformed versions response for {identity}")

        found = []
        for entry in versions:
            if not isinstance(entry, dict):
                continue
            try:
                version = Version(str(entry.get("version")))
            except MalformedVersion:
                logger.debug("Ignoring invalid version %r for %s", entry.get("version"), identity)
                continue
            for plat in entry.get("platforms") or []:
                if not isinstance(plat, dict) or not plat.get("os") or not plat.get("arch"):
                    continue
                found.append(PackageMeta(
                    identity, version, TargetPlatform(plat["os"], plat["arch"]), None, source=self
                ))
        return found

    def locate(self, meta: PackageMeta) -> PackageMeta:
        base_url = self._providers_base_url(meta.identity.hostname)
        identity, plat = meta.identity, meta.platform
        url = urllib.parse.urljoin(
            base_url, f"{identity.namespace}/{identity.type}/{meta.version}/download/{plat.os}/{plat.arch}"
        )
        data = fetch_json_document(url, self.kind)
        if not isinstance(data, dict) or not isinstance(data.get("download_url"), str):
            raise SourceError(f"{self.kind}: no download available for {identity} {meta.version} on {plat}")
        try:
            sha256 = normalize_sha256(data.get("shasum"))
        except ValueError as exc:
            raise SourceError(f"{self.kind}: {exc}") from exc
        location = PackageHTTPURL(url=urllib.parse.urljoin(url, data["download_url"]), sha256=sha256)
        return PackageMeta(identity, meta.version, plat, location, source=self)

    def describe(self) -> str:
        return self.kind
