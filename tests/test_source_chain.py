"""Tests for the installation source chain."""

import threading
from unittest.mock import patch

import pytest

from registry.base import InstallationSource, SourceError
from registry.chain import ChainPolicy, SourceChain
from registry.network_mirror import StaticMirrorSource
from registry.template import TemplateEvaluationError
from versioning.constraints import VersionConstraints
from versioning.errors import NoSatisfyingVersion, OperationCancelled
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.resolver import ProviderResolver
from versioning.version import Version

IDENTITY = PluginIdentity("example.com", "ns", "typ")
LINUX = TargetPlatform("linux", "amd64")
DARWIN = TargetPlatform("darwin", "arm64")


class StaticSource(InstallationSource):
    """Source answering from a fixed list, recording every query."""

    kind = "static"

    def __init__(self, versions=(), platform=LINUX, error=None, **kwargs):
        super().__init__(**kwargs)
        self.versions = versions
        self.platform = platform
        self.error = error
        self.calls = []

    def list_candidates(self, identity, platform):
        self.calls.append(identity)
        if self.error is not None:
            raise self.error
        return [PackageMeta(identity, Version(v), self.platform, None, source=self) for v in self.versions]


class TestChainPolicies:
    """Tests for first-match and union policies."""

    def test_first_match_stops_at_first_answer(self):
        """Test later sources are not queried once one answers for the platform."""
        first = StaticSource(["1.0.0"])
        second = StaticSource(["2.0.0"])
        chain = SourceChain([first, second], ChainPolicy.FIRST_MATCH)

        candidates = chain.list_candidates(IDENTITY, LINUX)

        assert [str(c.version) for c in candidates] == ["1.0.0"]
        assert second.calls == []

    def test_first_match_skips_empty_and_wrong_platform(self):
        """Test sources without packages for the platform do not end the walk."""
        empty = StaticSource([])
        darwin_only = StaticSource(["3.0.0"], platform=DARWIN)
        linux = StaticSource(["1.0.0"])
        chain = SourceChain([empty, darwin_only, linux])

        candidates = chain.list_candidates(IDENTITY, LINUX)

        assert [str(c.version) for c in candidates] == ["1.0.0"]

    def test_first_match_without_platform_match_returns_everything(self):
        """Test all candidates are returned when none fits the platform."""
        chain = SourceChain([StaticSource(["3.0.0"], platform=DARWIN)])
        candidates = chain.list_candidates(IDENTITY, LINUX)
        assert [str(c.platform) for c in candidates] == ["darwin_arm64"]

    def test_union_concatenates_in_order(self):
        """Test union queries every source and keeps chain order."""
        chain = SourceChain([StaticSource(["1.0.0"]), StaticSource(["2.0.0", "1.0.0+b"])], ChainPolicy.UNION)
        candidates = chain.list_candidates(IDENTITY, LINUX)
        assert [str(c.version) for c in candidates] == ["1.0.0", "2.0.0", "1.0.0+b"]

    def test_policy_values(self):
        """Test policies round-trip from their configuration names."""
        assert ChainPolicy("first_match") is ChainPolicy.FIRST_MATCH
        assert ChainPolicy("union") is ChainPolicy.UNION


class TestChainErrorIsolation:
    """Tests for absorbing per-source failures."""

    @pytest.mark.parametrize(
        "error",
        [SourceError("connection refused", transient=True), TemplateEvaluationError("no key", IDENTITY)],
    )
    def test_failing_source_is_skipped(self, error, caplog):
        """Test a failing source is logged and the next one answers."""
        failing = StaticSource(error=error)
        fallback = StaticSource(["1.0.0"])
        chain = SourceChain([failing, fallback])

        with caplog.at_level("WARNING"):
            candidates = chain.list_candidates(IDENTITY, LINUX)

        assert [str(c.version) for c in candidates] == ["1.0.0"]
        assert "failed for example.com/ns/typ" in caplog.text

    def test_unexpected_errors_propagate(self):
        """Test programming errors are not swallowed by the chain."""
        chain = SourceChain([StaticSource(error=KeyError("bug"))])
        with pytest.raises(KeyError):
            chain.list_candidates(IDENTITY, LINUX)

    def test_excluded_identity_not_queried(self):
        """Test a source whose patterns exclude the identity is skipped."""
        excluded = StaticSource(["9.0.0"], exclude=["example.com/*/*"])
        chain = SourceChain([excluded, StaticSource(["1.0.0"])])
        assert [str(c.version) for c in chain.list_candidates(IDENTITY, LINUX)] == ["1.0.0"]
        assert excluded.calls == []

    def test_cancelled_before_query(self):
        """Test a set cancel event stops the walk before any source is queried."""
        source = StaticSource(["1.0.0"])
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            SourceChain([source]).list_candidates(IDENTITY, LINUX, cancel=cancel)
        assert source.calls == []


class TestMirrorPlatforms:
    """Tests for mirrors that only serve some platforms."""

    @patch("registry.network_mirror.get_json")
    def test_darwin_only_mirror_does_not_shadow_linux_source(self, mock_get_json):
        """Test a mirror without the platform lets a later source answer."""
        base = "https://mirror.example.net/example.com/ns/typ/"
        documents = {
            base + "index.json": (200, {}, {"versions": {"2.0.0": {}}}),
            base + "2.0.0.json": (200, {}, {"archives": {"darwin_arm64": {"url": "typ_2.0.0_darwin_arm64.zip"}}}),
        }
        mock_get_json.side_effect = lambda url, headers=None, **kwargs: documents.get(url, (404, {}, None))
        linux = StaticSource(["1.0.0"])
        chain = SourceChain([StaticMirrorSource("https://mirror.example.net/"), linux], ChainPolicy.FIRST_MATCH)

        selected = ProviderResolver(chain, LINUX).resolve_one(IDENTITY, VersionConstraints())

        assert selected.version == Version("1.0.0")
        assert selected.source is linux

    @patch("registry.network_mirror.get_json")
    def test_only_other_platforms_reports_mismatch(self, mock_get_json):
        """Test a mirror offering other platforms only yields a platform mismatch."""
        base = "https://mirror.example.net/example.com/ns/typ/"
        documents = {
            base + "index.json": (200, {}, {"versions": {"2.0.0": {}}}),
            base + "2.0.0.json": (200, {}, {"archives": {"darwin_arm64": {"url": "typ_2.0.0_darwin_arm64.zip"}}}),
        }
        mock_get_json.side_effect = lambda url, headers=None, **kwargs: documents.get(url, (404, {}, None))
        chain = SourceChain([StaticMirrorSource("https://mirror.example.net/")])

        with pytest.raises(NoSatisfyingVersion) as excinfo:
            ProviderResolver(chain, LINUX).resolve_one(IDENTITY, VersionConstraints())

        assert excinfo.value.platform_mismatch
