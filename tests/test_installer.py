"""Tests for ensuring providers are installed in the cache."""

import threading
import time
import zipfile
from unittest.mock import patch

import pytest

from providercache.dir import Dir
from providercache.installer import InstallError, Installer
from registry.base import InstallationSource, SourceError
from registry.chain import SourceChain
from registry.locations import PackageLocalArchive
from versioning.constraints import VersionConstraints, parse_constraints
from versioning.errors import NoSatisfyingVersion, OperationCancelled
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

AWS = PluginIdentity("registry.opentofu.org", "hashicorp", "aws")
TLS = PluginIdentity("registry.opentofu.org", "hashicorp", "tls")
LINUX = TargetPlatform("linux", "amd64")


def make_archive(path, type_name):
    """Create a provider zip archive."""
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(f"terraform-provider-{type_name}", "#!/bin/sh\n")
    return str(path)


class DeferredSource(InstallationSource):
    """Source that lists versions and locates archives only when asked."""

    kind = "deferred"

    def __init__(self, archives, fail_locate=False, gate=None):
        super().__init__()
        self.archives = archives
        self.fail_locate = fail_locate
        self.gate = gate
        self.located = []

    def list_candidates(self, identity, platform):
        if identity == TLS and self.gate is not None:
            self.gate.wait(5)
        return [
            PackageMeta(identity, Version(v), platform, None, source=self)
            for (ident, v) in self.archives if ident == identity
        ]

    def locate(self, meta):
        self.located.append((meta.identity, str(meta.version)))
        if self.fail_locate:
            raise SourceError("mirror unavailable", transient=True)
        path = self.archives[(meta.identity, str(meta.version))]
        return PackageMeta(meta.identity, meta.version, meta.platform, PackageLocalArchive(path), source=self)


@pytest.fixture
def archives(tmp_path):
    """Archives for two providers."""
    return {
        (AWS, "5.0.0"): make_archive(tmp_path / "aws-5.0.0.zip", "aws"),
        (AWS, "5.1.0"): make_archive(tmp_path / "aws-5.1.0.zip", "aws"),
        (TLS, "4.0.0"): make_archive(tmp_path / "tls-4.0.0.zip", "tls"),
    }


class TestInstaller:
    """Tests for Installer.ensure_providers."""

    def test_installs_selected_versions(self, tmp_path, archives):
        """Test each identity is resolved, located and unpacked into the cache."""
        cache = Dir(str(tmp_path / "cache"), LINUX)
        source = DeferredSource(archives)
        installer = Installer(cache, SourceChain([source]))

        results = installer.ensure_providers({AWS: parse_constraints("~> 5.0"), TLS: VersionConstraints()})

        assert all(r.ok for r in results.values())
        assert results[AWS].provider.version == Version("5.1.0")
        assert not results[AWS].reused
        assert results[TLS].provider.executable_file().endswith("/terraform-provider-tls")
        assert set(source.located) == {(AWS, "5.1.0"), (TLS, "4.0.0")}
        assert cache.latest(AWS).version == Version("5.1.0")

    def test_second_run_reuses_cache(self, tmp_path, archives):
        """Test an already cached version is reused without locating again."""
        cache = Dir(str(tmp_path / "cache"), LINUX)
        source = DeferredSource(archives)
        installer = Installer(cache, SourceChain([source]))
        installer.ensure_providers({AWS: VersionConstraints()})
        source.located.clear()

        results = Installer(Dir(cache.base_dir, LINUX), SourceChain([source])).ensure_providers({AWS: VersionConstraints()})

        assert results[AWS].reused
        assert source.located == []

    def test_failures_are_per_identity(self, tmp_path, archives):
        """Test a resolution failure does not stop other installs."""
        cache = Dir(str(tmp_path / "cache"), LINUX)
        installer = Installer(cache, SourceChain([DeferredSource(archives)]))

        results = installer.ensure_providers({AWS: parse_constraints(">= 9.0.0"), TLS: VersionConstraints()})

        assert isinstance(results[AWS].error, NoSatisfyingVersion)
        assert results[TLS].ok

    def test_locate_failure_is_install_error(self, tmp_path, archives):
        """Test a source failing to locate the package yields InstallError."""
        cache = Dir(str(tmp_path / "cache"), LINUX)
        installer = Installer(cache, SourceChain([DeferredSource(archives, fail_locate=True)]))

        results = installer.ensure_providers({TLS: VersionConstraints()})

        assert isinstance(results[TLS].error, InstallError)
        assert "mirror unavailable" in str(results[TLS].error)
        assert cache.lookup(TLS) == []

    def test_timeout_returns_without_waiting(self, tmp_path, archives):
        """Test a blocked source does not hold the call past its deadline."""
        gate = threading.Event()
        cache = Dir(str(tmp_path / "cache"), LINUX)
        installer = Installer(cache, SourceChain([DeferredSource(archives, gate=gate)]), max_workers=2)

        try:
            started = time.monotonic()
            results = installer.ensure_providers({AWS: VersionConstraints(), TLS: VersionConstraints()}, timeout=0.5)
            elapsed = time.monotonic() - started
        finally:
            gate.set()

        assert elapsed < 3
        assert results[AWS].ok
        assert isinstance(results[TLS].error, OperationCancelled)

    def test_unextractable_archive_is_install_error(self, tmp_path, archives):
        """Test an archive that cannot be extracted fails only its own identity."""
        cache = Dir(str(tmp_path / "cache"), LINUX)
        installer = Installer(cache, SourceChain([DeferredSource(archives)]))

        with patch("zipfile.ZipFile.extract", side_effect=NotImplementedError("compression type 99")):
            results = installer.ensure_providers({AWS: VersionConstraints(), TLS: VersionConstraints()})

        assert isinstance(results[AWS].error, InstallError)
        assert isinstance(results[TLS].error, InstallError)
        assert "compression type 99" in str(results[AWS].error)
