"""Package locations: where a candidate provider package can be obtained.

The set of location kinds is closed: an unpacked local directory (the only
directly executable form), a local zip archive, a remote zip archive and an
OCI registry artifact. Every kind exposes the same ``materialize`` operation,
which produces an unpacked package in a target directory.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from common.http_client import download_to_file, get_json
from common.logging_utils import extra_context, is_debug_enabled, safe_url
from constants import Constants
from versioning.models import CachedProvider, PluginIdentity
from versioning.version import Version

logger = logging.getLogger(__name__)


class PackageMaterializationError(Exception):
    """A package could not be fetched, verified or unpacked."""


class ChecksumMismatch(PackageMaterializationError):
    """A downloaded or local archive does not match its expected checksum."""


def normalize_sha256(value: Optional[str]) -> Optional[str]:
    """Accept a bare hex digest or a ``zh:``/``sha256:`` prefixed one."""
    if not value:
        return None
    for prefix in ("zh:", "sha256:"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    value = value.strip().lower()
    if len(value) != 64 or any(c not in "0123456789abcdef" for c in value):
        raise ValueError(f"invalid SHA-256 checksum {value!r}")
    return value


def file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(Constants.DOWNLOAD_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _expected_digest(value: Optional[str]) -> Optional[str]:
    try:
        return normalize_sha256(value)
    except ValueError as exc:
        raise PackageMaterializationError(str(exc)) from exc


def _verify(actual: str, expected: Optional[str], what: str) -> None:
    if expected is None:
        logger.debug("No checksum recorded for %s; skipping verification", what)
        return
    if actual != expected:
        raise ChecksumMismatch(f"checksum mismatch for {what}: expected {expected}, got {actual}")


def unpack_zip(archive_path: str, target_dir: str) -> None:
    """Extract ``archive_path`` into ``target_dir``, keeping POSIX mode bits.

    Members whose paths would land outside ``target_dir`` are rejected.
    """
    root = os.path.realpath(target_dir)
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                dest = os.path.realpath(os.path.join(root, info.filename))
                if dest != root and not dest.startswith(root + os.sep):
                    raise PackageMaterializationError(
                        f"archive {archive_path} contains unsafe path {info.filename!r}"
                    )
                archive.extract(info, root)
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(dest, mode | stat.S_IRUSR)
    except zipfile.BadZipFile as exc:
        raise PackageMaterializationError(f"{archive_path} is not a valid zip archive: {exc}") from exc
    except (RuntimeError, NotImplementedError) as exc:
        # Encrypted members or unsupported compression methods.
        raise PackageMaterializationError(f"cannot extract {archive_path}: {exc}") from exc


class PackageLocation(ABC):
    """Where one candidate package can be obtained."""

    # Only an unpacked local directory can be executed in place.
    is_executable_dir = False

    @abstractmethod
    def materialize(self, identity: PluginIdentity, version: Version, target_dir: Optional[str]) -> CachedProvider:
        """Produce an unpacked package in ``target_dir``.

        ``target_dir`` must already exist and be empty.

        Raises:
            PackageMaterializationError: if the package cannot be obtained.
        """


@dataclass(frozen=True)
class PackageLocalDir(PackageLocation):
    """An unpacked provider package directory on local disk."""
    path: str

    is_executable_dir = True

    def materialize(self, identity: PluginIdentity, version: Version, target_dir: Optional[str]) -> CachedProvider:
        source = os.path.normpath(self.path)
        if target_dir is None or os.path.normpath(target_dir) == source:
            return CachedProvider(identity, version, source.replace(os.sep, "/"))
        try:
            shutil.copytree(source, target_dir, symlinks=False, dirs_exist_ok=True)
        except (OSError, shutil.Error) as exc:
            raise PackageMaterializationError(f"failed to copy {source}: {exc}") from exc
        return CachedProvider(identity, version, os.path.normpath(target_dir).replace(os.sep, "/"))

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class PackageLocalArchive(PackageLocation):
    """A zip archive on local disk, optionally with an expected SHA-256."""
    path: str
    sha256: Optional[str] = None

    def materialize(self, identity: PluginIdentity, version: Version, target_dir: Optional[str]) -> CachedProvider:
        if target_dir is None:
            raise PackageMaterializationError(f"{self.path} must be unpacked into a target directory")
        try:
            _verify(file_sha256(self.path), _expected_digest(self.sha256), self.path)
        except OSError as exc:
            raise PackageMaterializationError(f"failed to read {self.path}: {exc}") from exc
        unpack_zip(self.path, target_dir)
        return CachedProvider(identity, version, os.path.normpath(target_dir).replace(os.sep, "/"))

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class PackageHTTPURL(PackageLocation):
    """A zip archive downloadable over HTTP(S)."""
    url: str
    sha256: Optional[str] = None

    def materialize(self, identity: PluginIdentity, version: Version, target_dir: Optional[str]) -> CachedProvider:
        if target_dir is None:
            raise PackageMaterializationError(f"{safe_url(self.url)} must be unpacked into a target directory")
        expected = _expected_digest(self.sha256)
        fd, archive_path = tempfile.mkstemp(prefix="provgate-", suffix=".zip")
        os.close(fd)
        try:
            try:
                actual = download_to_file(self.url, archive_path)
            except (requests.RequestException, OSError) as exc:
                raise PackageMaterializationError(f"failed to download {safe_url(self.url)}: {exc}") from exc
            _verify(actual, expected, safe_url(self.url))
            unpack_zip(archive_path, target_dir)
        finally:
            os.unlink(archive_path)
        return CachedProvider(identity, version, os.path.normpath(target_dir).replace(os.sep, "/"))

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class PackageOCIReference(PackageLocation):
    """A provider artifact stored in an OCI distribution registry.

    ``digest`` names the platform-specific image manifest whose single
    ``archive/zip`` layer holds the package.
    """
    registry: str
    repository: str
    digest: str

    def _url(self, kind: str, ref: str) -> str:
        return f"https://{self.registry}/v2/{self.repository}/{kind}/{ref}"

    def materialize(self, identity: PluginIdentity, version: Version, target_dir: Optional[str]) -> CachedProvider:
        if target_dir is None:
            raise PackageMaterializationError(f"{self} must be unpacked into a target directory")
        manifest = self._fetch_manifest()
        layer = self._archive_layer(manifest)
        expected = _expected_digest(layer["digest"])
        fd, archive_path = tempfile.mkstemp(prefix="provgate-", suffix=".zip")
        os.close(fd)
        try:
            try:
                actual = download_to_file(self._url("blobs", layer["digest"]), archive_path)
            except (requests.RequestException, OSError) as exc:
                raise PackageMaterializationError(f"failed to fetch layer of {self}: {exc}") from exc
            _verify(actual, expected, str(self))
            unpack_zip(archive_path, target_dir)
        finally:
            os.unlink(archive_path)
        return CachedProvider(identity, version, os.path.normpath(target_dir).replace(os.sep, "/"))

    def _fetch_manifest(self) -> Dict[str, Any]:
        url = self._url("manifests", self.digest)
        status, _, manifest = get_json(url, headers={"Accept": Constants.OCI_MANIFEST_MEDIA_TYPE})
        if status != 200 or not isinstance(manifest, dict):
            raise PackageMaterializationError(f"failed to fetch manifest {self} (status {status})")
        if is_debug_enabled(logger):
            logger.debug(
                "Fetched OCI manifest",
                extra=extra_context(event="oci_manifest", component="locations", target=str(self)),
            )
        return manifest

    def _archive_layer(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        layers = [
            layer for layer in manifest.get("layers") or []
            if isinstance(layer, dict) and layer.get("mediaType") == Constants.OCI_ARCHIVE_MEDIA_TYPE
        ]
        if len(layers) != 1 or not isinstance(layers[0].get("digest"), str):
            raise PackageMaterializationError(
                f"manifest {self} must have exactly one {Constants.OCI_ARCHIVE_MEDIA_TYPE} layer"
            )
        if not layers[0]["digest"].startswith("sha256:"):
            raise PackageMaterializationError(f"unsupported digest algorithm in {layers[0]['digest']}")
        return layers[0]

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}@{self.digest}"
