"""Tests for the shared HTTP helpers."""

import hashlib
from unittest.mock import MagicMock, patch

import pytest
import requests

from common import http_client
from common.http_client import download_to_file, get_json, robust_get


def fake_response(status, text="", headers=None):
    """Build a stand-in for requests.Response."""
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.headers = headers or {}
    return response


@pytest.fixture(autouse=True)
def fresh_cache():
    """Each test starts with an empty response cache and no retry delay."""
    http_client.clear_cache()
    with patch("common.http_client.time.sleep"):
        yield
    http_client.clear_cache()


class TestRobustGet:
    """Tests for robust_get."""

    @patch("common.http_client.requests.get")
    def test_success_is_cached(self, mock_get):
        """Test a successful response is served from cache the second time."""
        mock_get.return_value = fake_response(200, '{"ok": true}', {"Link": "<next>"})
        first = robust_get("https://example.com/a")
        second = robust_get("https://example.com/a")
        assert first == second == (200, {"Link": "<next>"}, '{"ok": true}')
        assert mock_get.call_count == 1

    @patch("common.http_client.requests.get")
    def test_retries_server_errors(self, mock_get):
        """Test 5xx responses are retried and not cached."""
        mock_get.side_effect = [fake_response(503), fake_response(200, "ok")]
        status, _, text = robust_get("https://example.com/b")
        assert (status, text) == (200, "ok")
        assert mock_get.call_count == 2

    @patch("common.http_client.requests.get")
    def test_gives_up_with_status_zero(self, mock_get):
        """Test repeated failures are reported as status 0."""
        mock_get.side_effect = requests.ConnectionError("refused")
        status, headers, text = robust_get("https://example.com/c")
        assert status == 0
        assert headers == {}
        assert "refused" in text


class TestGetJson:
    """Tests for get_json."""

    @patch("common.http_client.requests.get")
    def test_parses_json(self, mock_get):
        """Test a JSON body is decoded."""
        mock_get.return_value = fake_response(200, '{"versions": {}}')
        assert get_json("https://example.com/index.json") == (200, {}, {"versions": {}})

    @patch("common.http_client.requests.get")
    def test_invalid_json(self, mock_get):
        """Test an undecodable body yields None data."""
        mock_get.return_value = fake_response(200, "<html>")
        assert get_json("https://example.com/index.json")[2] is None


class TestDownload:
    """Tests for download_to_file."""

    @patch("common.http_client.requests.get")
    def test_streams_and_hashes(self, mock_get, tmp_path):
        """Test the body is written to disk and its SHA-256 returned."""
        response = MagicMock()
        response.iter_content.return_value = [b"abc", b"", b"def"]
        mock_get.return_value.__enter__.return_value = response
        dest = tmp_path / "out.zip"

        digest = download_to_file("https://example.com/p.zip", str(dest))

        assert dest.read_bytes() == b"abcdef"
        assert digest == hashlib.sha256(b"abcdef").hexdigest()
        response.raise_for_status.assert_called_once()
