"""Tests for the network mirror, OCI mirror and direct registry sources."""

from unittest.mock import patch

import pytest

from registry.base import SourceError
from registry.direct import RegistrySource
from registry.locations import PackageHTTPURL, PackageOCIReference
from registry.network_mirror import StaticMirrorSource, pick_sha256
from registry.oci_mirror import OCIMirrorSource, tag_to_version, version_to_tag
from registry.template import TemplateEvaluationError, TemplateSyntaxError
from versioning.models import PackageMeta, PluginIdentity, TargetPlatform
from versioning.version import Version

IDENTITY = PluginIdentity("example.com", "ns", "typ")
LINUX = TargetPlatform("linux", "amd64")
DARWIN = TargetPlatform("darwin", "arm64")
DIGEST = "ab" * 32
MIRROR = "https://mirror.example.net/providers/example.com/ns/typ/"
OCI = "https://registry.example.net/v2/ns/typ/"


def routes(responses):
    """get_json stand-in answering by URL; unknown URLs are 404."""
    def fake_get_json(url, headers=None, **kwargs):
        return responses.get(url, (404, {}, None))
    return fake_get_json


def image_index(*entries):
    """An OCI image index with one manifest per (os, arch, digest)."""
    return {
        "manifests": [
            {"digest": digest, "platform": {"os": os_name, "architecture": arch}}
            for os_name, arch, digest in entries
        ]
    }


class TestStaticMirrorSource:
    """Tests for the static-path network mirror."""

    @patch("registry.network_mirror.get_json")
    def test_list_candidates(self, mock_get_json):
        """Test each archive in a version document becomes a located candidate."""
        mock_get_json.side_effect = routes({
            MIRROR + "index.json": (200, {}, {"versions": {"1.0.0": {}, "2.0.0": {}, "bogus": {}}}),
            MIRROR + "1.0.0.json": (200, {}, {"archives": {
                "linux_amd64": {"url": "typ_1.0.0_linux_amd64.zip", "hashes": [f"zh:{DIGEST}"]},
                "darwin_arm64": {"url": "typ_1.0.0_darwin_arm64.zip"},
                "not-a-platform": {"url": "x.zip"},
            }}),
        })
        source = StaticMirrorSource("https://mirror.example.net/providers")

        candidates = source.list_candidates(IDENTITY, LINUX)

        assert [(str(c.version), c.platform) for c in candidates] == [("1.0.0", LINUX), ("1.0.0", DARWIN)]
        assert candidates[0].location == PackageHTTPURL(url=MIRROR + "typ_1.0.0_linux_amd64.zip", sha256=f"zh:{DIGEST}")
        assert all(c.source is source for c in candidates)

    @patch("registry.network_mirror.get_json")
    def test_unlisted_platform_is_not_offered(self, mock_get_json):
        """Test a version without an archive for the platform yields no candidate for it."""
        mock_get_json.side_effect = routes({
            MIRROR + "index.json": (200, {}, {"versions": {"2.0.0": {}}}),
            MIRROR + "2.0.0.json": (200, {}, {"archives": {"darwin_arm64": {"url": "x.zip"}}}),
        })
        candidates = StaticMirrorSource("https://mirror.example.net/providers/").list_candidates(IDENTITY, LINUX)
        assert [c.platform for c in candidates] == [DARWIN]

    @patch("registry.network_mirror.get_json")
    def test_locate(self, mock_get_json):
        """Test the per-version document yields an HTTP location with its zh: hash."""
        mock_get_json.return_value = (200, {}, {
            "archives": {
                "linux_amd64": {
                    "url": "typ_1.0.0_linux_amd64.zip",
                    "hashes": ["h1:abc=", f"zh:{DIGEST}"],
                }
            }
        })
        source = StaticMirrorSource("https://mirror.example.net/providers/")
        meta = PackageMeta(IDENTITY, Version("1.0.0"), LINUX, None, source=source)

        located = source.locate(meta)

        assert mock_get_json.call_args[0][0] == MIRROR + "1.0.0.json"
        assert located.location == PackageHTTPURL(url=MIRROR + "typ_1.0.0_linux_amd64.zip", sha256=f"zh:{DIGEST}")

    @patch("registry.network_mirror.get_json")
    def test_locate_keeps_known_location(self, mock_get_json):
        """Test a candidate that already has a location is not fetched again."""
        source = StaticMirrorSource("https://mirror.example.net/")
        meta = PackageMeta(IDENTITY, Version("1.0.0"), LINUX, PackageHTTPURL(url="https://x/y.zip"), source=source)
        assert source.locate(meta) is meta
        mock_get_json.assert_not_called()

    @patch("registry.network_mirror.get_json")
    def test_locate_missing_platform(self, mock_get_json):
        """Test a version without an archive for the platform fails to locate."""
        mock_get_json.return_value = (200, {}, {"archives": {"darwin_arm64": {"url": "x.zip"}}})
        source = StaticMirrorSource("https://mirror.example.net/")
        with pytest.raises(SourceError):
            source.locate(PackageMeta(IDENTITY, Version("1.0.0"), LINUX, None, source=source))

    @patch("registry.network_mirror.get_json")
    def test_not_found_means_no_candidates(self, mock_get_json):
        """Test a 404 from the mirror is an empty answer, not an error."""
        mock_get_json.return_value = (404, {}, None)
        assert StaticMirrorSource("https://mirror.example.net/").list_candidates(IDENTITY, LINUX) == []

    @pytest.mark.parametrize("status,transient", [(0, True), (503, True), (403, False)])
    @patch("registry.network_mirror.get_json")
    def test_failures(self, mock_get_json, status, transient):
        """Test transport and server failures are classified as transient."""
        mock_get_json.return_value = (status, {}, None)
        with pytest.raises(SourceError) as excinfo:
            StaticMirrorSource("https://mirror.example.net/").list_candidates(IDENTITY, LINUX)
        assert excinfo.value.transient is transient

    def test_rejects_non_http_url(self):
        """Test only http(s) mirrors are accepted."""
        with pytest.raises(ValueError):
            StaticMirrorSource("ftp://mirror.example.net/")

    def test_pick_sha256(self):
        """Test the zh: hash is chosen over h1:."""
        assert pick_sha256(["h1:xyz", "zh:abc"]) == "zh:abc"
        assert pick_sha256(["h1:xyz"]) is None


class TestOCIMirrorSource:
    """Tests for the templated OCI mirror."""

    def test_tag_conversion(self):
        """Test build metadata is spelled with '_' in tags."""
        assert tag_to_version("1.0.0_build5") == Version("1.0.0+build5")
        assert str(tag_to_version("1.0.0_build5")) == "1.0.0+build5"
        assert version_to_tag(Version("1.0.0+build5")) == "1.0.0_build5"

    def test_invalid_template_rejected_at_construction(self):
        """Test template syntax errors surface when the source is built."""
        with pytest.raises(TemplateSyntaxError):
            OCIMirrorSource("registry.example.net/${bogus}")

    @patch("registry.network_mirror.get_json")
    def test_list_tags_follows_pagination(self, mock_get_json):
        """Test tag listing follows Link headers and skips non-version tags."""
        linux_digest = "sha256:" + "2" * 64
        mock_get_json.side_effect = routes({
            OCI + "tags/list": (
                200, {"Link": '</v2/ns/typ/tags/list?last=latest&n=2>; rel="next"'}, {"tags": ["1.0.0", "latest"]}
            ),
            OCI + "tags/list?last=latest&n=2": (200, {}, {"tags": ["1.1.0_build1"]}),
            OCI + "manifests/1.0.0": (200, {}, image_index(("linux", "amd64", linux_digest))),
            OCI + "manifests/1.1.0_build1": (200, {}, image_index(("linux", "amd64", linux_digest))),
        })
        source = OCIMirrorSource("registry.example.net/${namespace}/${type}")

        candidates = source.list_candidates(IDENTITY, LINUX)

        urls = [call[0][0] for call in mock_get_json.call_args_list]
        assert urls[:2] == [OCI + "tags/list", OCI + "tags/list?last=latest&n=2"]
        assert [str(c.version) for c in candidates] == ["1.0.0", "1.1.0+build1"]

    @patch("registry.network_mirror.get_json")
    def test_list_candidates_reads_platforms_from_index(self, mock_get_json):
        """Test each platform manifest of a tag becomes a located candidate."""
        mock_get_json.side_effect = routes({
            OCI + "tags/list": (200, {}, {"tags": ["1.0.0", "2.0.0"]}),
            OCI + "manifests/1.0.0": (200, {}, image_index(
                ("darwin", "arm64", "sha256:" + "1" * 64),
                ("linux", "amd64", "sha256:" + "2" * 64),
            )),
            OCI + "manifests/2.0.0": (200, {}, image_index(("darwin", "arm64", "sha256:" + "3" * 64))),
        })
        source = OCIMirrorSource("registry.example.net/${namespace}/${type}")

        candidates = source.list_candidates(IDENTITY, LINUX)

        assert [(str(c.version), c.platform) for c in candidates] == [
            ("1.0.0", DARWIN), ("1.0.0", LINUX), ("2.0.0", DARWIN),
        ]
        assert candidates[1].location == PackageOCIReference("registry.example.net", "ns/typ", "sha256:" + "2" * 64)

    @patch("registry.network_mirror.get_json")
    def test_template_failure_is_per_identity(self, mock_get_json):
        """Test an identity the template cannot map raises without affecting others."""
        mock_get_json.side_effect = routes({
            "https://mirror.example.net/v2/ns/typ/tags/list": (200, {}, {"tags": ["1.0.0"]}),
            "https://mirror.example.net/v2/ns/typ/manifests/1.0.0": (
                200, {}, image_index(("linux", "amd64", "sha256:" + "2" * 64))
            ),
        })
        source = OCIMirrorSource('${ {"example.com":"mirror.example.net"}[hostname] }/${namespace}/${type}')

        with pytest.raises(TemplateEvaluationError):
            source.list_candidates(PluginIdentity("other.com", "ns", "typ"), LINUX)
        assert [str(c.version) for c in source.list_candidates(IDENTITY, LINUX)] == ["1.0.0"]

    @patch("registry.network_mirror.get_json")
    def test_locate_picks_platform_manifest(self, mock_get_json):
        """Test the image index entry for the platform becomes the location."""
        mock_get_json.return_value = (200, {}, {
            "manifests": [
                {"digest": "sha256:" + "1" * 64, "platform": {"os": "darwin", "architecture": "arm64"}},
                {"digest": "sha256:" + "2" * 64, "platform": {"os": "linux", "architecture": "amd64"}},
            ]
        })
        source = OCIMirrorSource("registry.example.net/${namespace}/${type}")

        located = source.locate(PackageMeta(IDENTITY, Version("1.0.0+b1"), LINUX, None, source=source))

        assert mock_get_json.call_args[0][0] == "https://registry.example.net/v2/ns/typ/manifests/1.0.0_b1"
        assert "application/vnd.oci.image.index.v1+json" in mock_get_json.call_args[1]["headers"]["Accept"]
        assert located.location == PackageOCIReference("registry.example.net", "ns/typ", "sha256:" + "2" * 64)

    def test_invalid_repository_address(self):
        """Test a template rendering to an unusable address fails for that identity."""
        source = OCIMirrorSource("${namespace}")
        with pytest.raises(TemplateEvaluationError):
            source.repository_for(IDENTITY)


class TestRegistrySource:
    """Tests for direct installation from the origin registry."""

    @patch("registry.network_mirror.get_json")
    def test_discovery_and_versions(self, mock_get_json):
        """Test service discovery is done once per host and versions are listed per platform."""
        versions = {
            "versions": [
                {"version": "1.0.0", "platforms": [{"os": "linux", "arch": "amd64"}, {"os": "darwin", "arch": "arm64"}]},
                {"version": "not-semver", "platforms": [{"os": "linux", "arch": "amd64"}]},
            ],
            "warnings": ["this provider is deprecated"],
        }
        mock_get_json.side_effect = [
            (200, {}, {"providers.v1": "/v1/providers/"}),
            (200, {}, versions),
            (200, {}, {"versions": []}),
        ]
        source = RegistrySource()

        candidates = source.list_candidates(IDENTITY, LINUX)
        source.list_candidates(PluginIdentity("example.com", "ns", "other"), LINUX)

        urls = [call[0][0] for call in mock_get_json.call_args_list]
        assert urls == [
            "https://example.com/.well-known/terraform.json",
            "https://example.com/v1/providers/ns/typ/versions",
            "https://example.com/v1/providers/ns/other/versions",
        ]
        assert sorted(str(c.platform) for c in candidates) == ["darwin_arm64", "linux_amd64"]
        assert all(c.location is None for c in candidates)

    @patch("registry.network_mirror.get_json")
    def test_host_without_registry(self, mock_get_json):
        """Test a host that does not offer the providers service is remembered."""
        mock_get_json.return_value = (200, {}, {"modules.v1": "/v1/modules/"})
        source = RegistrySource()
        for _ in range(2):
            with pytest.raises(SourceError):
                source.list_candidates(IDENTITY, LINUX)
        assert mock_get_json.call_count == 1

    @patch("registry.network_mirror.get_json")
    def test_locate(self, mock_get_json):
        """Test the download endpoint yields an HTTP location."""
        mock_get_json.return_value = (200, {}, {
            "download_url": "https://releases.example.com/typ_1.0.0_linux_amd64.zip",
            "shasum": DIGEST,
        })
        source = RegistrySource(services={"example.com": "https://example.com/v1/providers/"})

        located = source.locate(PackageMeta(IDENTITY, Version("1.0.0"), LINUX, None, source=source))

        assert mock_get_json.call_args[0][0] == "https://example.com/v1/providers/ns/typ/1.0.0/download/linux/amd64"
        assert located.location == PackageHTTPURL(
            url="https://releases.example.com/typ_1.0.0_linux_amd64.zip", sha256=DIGEST
        )

    @patch("registry.network_mirror.get_json")
    def test_locate_bad_checksum(self, mock_get_json):
        """Test an invalid shasum from the registry is a source error."""
        mock_get_json.return_value = (200, {}, {"download_url": "https://x/y.zip", "shasum": "nope"})
        source = RegistrySource(services={"example.com": "https://example.com/v1/providers/"})
        with pytest.raises(SourceError):
            source.locate(PackageMeta(IDENTITY, Version("1.0.0"), LINUX, None, source=source))
