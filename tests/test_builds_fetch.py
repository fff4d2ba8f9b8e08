"""Tests for builds/fetch.py module.

These tests use mocked HTTP responses to test release discovery,
downloading and checksum helpers.
"""

import hashlib
import threading

import httpx
import pytest
import respx

from ubuntu_autoinstaller.builds.fetch import (
    UBUNTU_RELEASES_BASE,
    DownloadCancelledError,
    DownloadError,
    DownloadResult,
    compute_file_sha256,
    digest_listed,
    download_file,
    fetch_text,
    find_release_iso,
    parse_sha256sums,
    release_base_url,
)

JAMMY_INDEX = """<html><body>
<a href="ubuntu-22.04.5-desktop-amd64.iso">ubuntu-22.04.5-desktop-amd64.iso</a>
<a href="ubuntu-22.04.5-live-server-amd64.iso">ubuntu-22.04.5-live-server-amd64.iso</a>
<a href="SHA256SUMS">SHA256SUMS</a>
</body></html>
"""


class TestReleaseBaseUrl:
    """Tests for release_base_url function."""

    def test_default_base(self):
        assert release_base_url("jammy") == f"{UBUNTU_RELEASES_BASE}/jammy"

    def test_custom_base_trailing_slash(self):
        """Should not produce a double slash."""
        assert (
            release_base_url("noble", "https://mirror.example.com/ubuntu/")
            == "https://mirror.example.com/ubuntu/noble"
        )


class TestParseSha256sums:
    """Tests for parse_sha256sums function."""

    def test_binary_mode_format(self):
        content = "ABC123 *ubuntu-22.04.5-live-server-amd64.iso\n"
        result = parse_sha256sums(content, "ubuntu-22.04.5-live-server-amd64.iso")
        assert result == "abc123"

    def test_not_listed(self):
        content = "# comment\nabc123  other.iso\n"
        assert parse_sha256sums(content, "missing.iso") is None


class TestDigestListed:
    """Tests for digest_listed function."""

    def test_listed_case_insensitive(self):
        content = "ABC123 *ubuntu.iso\ndef456 *other.iso\n"
        assert digest_listed(content, "abc123") is True
        assert digest_listed(content, "DEF456") is True

    def test_not_listed(self):
        assert digest_listed("abc123 *ubuntu.iso\n", "ubuntu.iso") is False
        assert digest_listed("", "abc123") is False


class TestComputeFileSha256:
    """Tests for compute_file_sha256 function."""

    def test_chunked(self, tmp_path):
        test_file = tmp_path / "large.bin"
        content = b"A" * (128 * 1024)
        test_file.write_bytes(content)

        result = compute_file_sha256(test_file, chunk_size=16 * 1024)

        assert result == hashlib.sha256(content).hexdigest()


class TestFetchText:
    """Tests for fetch_text function."""

    @respx.mock
    def test_success(self):
        respx.get("https://example.com/index").mock(
            return_value=httpx.Response(200, text="hello")
        )
        with httpx.Client() as client:
            assert fetch_text(client, "https://example.com/index") == "hello"

    @respx.mock
    def test_http_error(self):
        respx.get("https://example.com/index").mock(return_value=httpx.Response(404))
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            fetch_text(client, "https://example.com/index")
        assert exc_info.value.code == "http_error"
        assert "404" in str(exc_info.value)

    @respx.mock
    def test_timeout(self):
        respx.get("https://example.com/index").mock(
            side_effect=httpx.ConnectTimeout("timed out")
        )
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            fetch_text(client, "https://example.com/index")
        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self):
        respx.get("https://example.com/index").mock(
            side_effect=httpx.ConnectError("refused")
        )
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            fetch_text(client, "https://example.com/index")
        assert exc_info.value.code == "network_error"


class TestFindReleaseIso:
    """Tests for find_release_iso function."""

    @respx.mock
    def test_finds_live_server_iso(self):
        respx.get(f"{UBUNTU_RELEASES_BASE}/jammy/").mock(
            return_value=httpx.Response(200, text=JAMMY_INDEX)
        )
        with httpx.Client() as client:
            name = find_release_iso(client, "jammy")
        assert name == "ubuntu-22.04.5-live-server-amd64.iso"

    @respx.mock
    def test_custom_mirror(self):
        route = respx.get("https://mirror.example.com/focal/").mock(
            return_value=httpx.Response(
                200, text="ubuntu-20.04.6-live-server-amd64.iso"
            )
        )
        with httpx.Client() as client:
            name = find_release_iso(client, "focal", "https://mirror.example.com")
        assert route.called
        assert name == "ubuntu-20.04.6-live-server-amd64.iso"

    @respx.mock
    def test_no_iso_listed(self):
        respx.get(f"{UBUNTU_RELEASES_BASE}/jammy/").mock(
            return_value=httpx.Response(200, text="<html></html>")
        )
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            find_release_iso(client, "jammy")
        assert exc_info.value.code == "iso_not_found"


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        content = b"ISO image content"
        respx.get("https://example.com/image.iso").mock(
            return_value=httpx.Response(200, content=content)
        )

        dest_path = tmp_path / "cache" / "image.iso"
        with httpx.Client() as client:
            result = download_file(client, "https://example.com/image.iso", dest_path)

        assert isinstance(result, DownloadResult)
        assert dest_path.read_bytes() == content
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)
        assert not (tmp_path / "cache" / "image.iso.part").exists()

    @respx.mock
    def test_http_error_leaves_nothing(self, tmp_path):
        respx.get("https://example.com/image.iso").mock(
            return_value=httpx.Response(500)
        )

        dest_path = tmp_path / "image.iso"
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, "https://example.com/image.iso", dest_path)

        assert exc_info.value.code == "http_error"
        assert not dest_path.exists()
        assert not (tmp_path / "image.iso.part").exists()

    @respx.mock
    def test_cancelled(self, tmp_path):
        respx.get("https://example.com/image.iso").mock(
            return_value=httpx.Response(200, content=b"partial")
        )
        cancel_event = threading.Event()
        cancel_event.set()

        dest_path = tmp_path / "image.iso"
        with httpx.Client() as client, pytest.raises(DownloadCancelledError) as exc_info:
            download_file(
                client,
                "https://example.com/image.iso",
                dest_path,
                cancel_event=cancel_event,
            )

        assert exc_info.value.code == "cancelled"
        assert not dest_path.exists()
        assert not (tmp_path / "image.iso.part").exists()
