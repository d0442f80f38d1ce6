"""Unit tests for the conditional download client."""

import logging
import os
import socket
import time

import pytest

from portafs.download import DownloadClient, DownloadOptions, FetchResult, LoopGuard, SidecarCache
from portafs.errors import ConfigurationError, ErrorKind

# Served by the http_server fixture
LAST_MODIFIED = "Wed, 21 Oct 2015 07:28:00 GMT"
ROCK_BODY = b"package = 'lpeg'\nversion = '1.1.0-1'\n"


def _read(path):
    with open(path, "rb") as f:
        return f.read()


def _write_sidecar(dest, suffix, value):
    with open(f"{dest}.{suffix}", "w") as f:
        f.write(str(value))


class TestPlainDownload:
    """Tests for downloads without caching."""

    def test_get_writes_destination(self, fs, http_server, tmp_path):
        dest = str(tmp_path / "rock.tar.gz")
        ok, detail, from_cache = DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), dest)

        assert ok
        assert detail == dest
        assert not from_cache
        assert _read(dest) == ROCK_BODY

    def test_default_filename_is_url_basename(self, fs, http_server, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"))

        assert result.ok
        assert result.filename == os.path.join(os.getcwd(), "rock.tar.gz")
        assert (tmp_path / "rock.tar.gz").read_bytes() == ROCK_BODY

    def test_user_agent_names_backend(self, fs, http_server, tmp_path):
        DownloadClient(fs).fetch(http_server.url("/plain"), str(tmp_path / "plain"), user_agent="luarocks/3.9")
        assert http_server.agents == ["luarocks/3.9 via urllib"]

    def test_download_capability(self, fs, http_server, tmp_path):
        result = fs.download(http_server.url("/plain"), str(tmp_path / "plain"))
        assert isinstance(result, FetchResult)
        assert result.ok
        assert (tmp_path / "plain").read_bytes() == b"plain body"

    def test_no_sidecars_without_cache(self, fs, http_server, tmp_path):
        dest = tmp_path / "rock.tar.gz"
        DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), str(dest))
        assert sorted(os.listdir(tmp_path)) == ["rock.tar.gz"]


class TestFailures:
    """Tests for failed downloads."""

    def test_not_found(self, fs, http_server, tmp_path):
        result = DownloadClient(fs).fetch(http_server.url("/missing"), str(tmp_path / "missing"))

        assert not result.ok
        assert result.error.kind is ErrorKind.TRANSPORT
        assert result.error.status == 404
        assert not (tmp_path / "missing").exists()

    def test_server_error(self, fs, http_server, tmp_path):
        result = DownloadClient(fs).fetch(http_server.url("/error"), str(tmp_path / "error"))
        assert result.error.kind is ErrorKind.TRANSPORT
        assert result.error.status == 500

    def test_connection_refused(self, fs, tmp_path):
        result = DownloadClient(fs).fetch("http://127.0.0.1:1/rock.tar.gz", str(tmp_path / "x"))
        assert result.error.kind is ErrorKind.TRANSPORT
        assert result.error.status is not None

    def test_connection_timeout_bounds_attempt(self, fs, tmp_path):
        # Accepted by the kernel backlog, never answered
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as silent:
            silent.bind(("127.0.0.1", 0))
            silent.listen(1)
            port = silent.getsockname()[1]

            start = time.monotonic()
            result = DownloadClient(fs).fetch(
                f"http://127.0.0.1:{port}/rock.tar.gz", str(tmp_path / "x"), connection_timeout=1
            )
            elapsed = time.monotonic() - start

        assert result.error.kind is ErrorKind.TRANSPORT
        assert "timed out" in str(result.error.status)
        assert elapsed < 10
        assert not (tmp_path / "x").exists()

    def test_ftp_connection_refused(self, fs, tmp_path):
        result = DownloadClient(fs).fetch("ftp://127.0.0.1:1/rock.tar.gz", str(tmp_path / "rock"))

        assert result.error.kind is ErrorKind.TRANSPORT
        assert "FTP ftp://127.0.0.1:1/rock.tar.gz failed" in result.error.message
        assert not (tmp_path / "rock").exists()

    def test_unsupported_protocol(self, fs, tmp_path):
        result = DownloadClient(fs).fetch("gopher://example.com/rock", str(tmp_path / "rock"))
        assert result.error.kind is ErrorKind.UNSUPPORTED_PROTOCOL
        assert "gopher" in result.error.message

    def test_unwritable_destination(self, fs, http_server, tmp_path):
        dest = str(tmp_path / "no-such-dir" / "rock.tar.gz")
        result = DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), dest)

        assert result.error.kind is ErrorKind.PERSISTENCE
        assert dest in result.error.message

    def test_bad_arguments_raise(self, fs):
        client = DownloadClient(fs)
        with pytest.raises(ConfigurationError):
            client.fetch(None)
        with pytest.raises(ConfigurationError):
            client.fetch("http://example.com/x", 42)
        with pytest.raises(ConfigurationError):
            client.fetch("http://example.com/x", "x", retries=3)


class TestRedirects:
    """Tests for manual redirect handling."""

    def test_follows_relative_redirect(self, fs, http_server, tmp_path):
        dest = str(tmp_path / "rock.tar.gz")
        result = DownloadClient(fs).fetch(http_server.url("/moved"), dest)

        assert result.ok
        assert _read(dest) == ROCK_BODY
        assert http_server.hits("GET", "/moved") == 1
        assert http_server.hits("GET", "/rock.tar.gz") == 1

    def test_redirect_loop_detected(self, fs, http_server, tmp_path):
        result = DownloadClient(fs).fetch(http_server.url("/a"), str(tmp_path / "a"))

        assert result.error.kind is ErrorKind.REDIRECT_LOOP
        assert http_server.hits("GET", "/a") == 1
        assert http_server.hits("GET", "/b") == 1

    def test_redirect_to_unsupported_scheme(self, fs, http_server, tmp_path):
        result = DownloadClient(fs).fetch(http_server.url("/gopher"), str(tmp_path / "g"))
        assert result.error.kind is ErrorKind.UNSUPPORTED_REDIRECT


class TestLoopGuard:
    """Tests for the redirect loop guard."""

    def test_initial_url_counts_as_visited(self):
        guard = LoopGuard("http://a/x")
        assert not guard.visit("http://a/x")

    def test_new_targets_are_recorded(self):
        guard = LoopGuard("http://a/x")
        assert guard.visit("http://b/x")
        assert not guard.visit("http://b/x")
        assert guard.visited == {"http://a/x", "http://b/x"}


class TestCaching:
    """Tests for sidecar-file caching."""

    def test_success_writes_sidecars(self, fs, http_server, tmp_path):
        dest = str(tmp_path / "rock.tar.gz")
        before = int(time.time())
        DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), dest, cache=True)

        cache = SidecarCache(dest)
        assert cache.last_modified == LAST_MODIFIED
        assert cache.unixtime >= before
        assert cache.status is None

    def test_fresh_cache_skips_network(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/rock.tar.gz")
        dest = str(tmp_path / "rock.tar.gz")

        client.fetch(url, dest, cache=True)
        result = client.fetch(url, dest, cache=True)

        assert result == FetchResult(True, dest, True)
        assert http_server.total_hits == 1

    def test_stale_cache_revalidates_with_head(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/rock.tar.gz")
        dest = str(tmp_path / "rock.tar.gz")

        client.fetch(url, dest, cache=True)
        stale = int(time.time()) - 3600
        _write_sidecar(dest, "unixtime", stale)

        result = client.fetch(url, dest, cache=True)

        assert result.ok and result.from_cache
        assert http_server.hits("HEAD", "/rock.tar.gz") == 1
        assert http_server.hits("GET", "/rock.tar.gz") == 1
        assert SidecarCache(dest).unixtime > stale

    def test_changed_resource_is_downloaded_again(self, fs, http_server, tmp_path):
        dest = tmp_path / "rock.tar.gz"
        dest.write_bytes(b"old contents")
        _write_sidecar(dest, "timestamp", "Mon, 01 Jan 2001 00:00:00 GMT")
        _write_sidecar(dest, "unixtime", int(time.time()) - 3600)

        result = DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), str(dest), cache=True)

        assert result.ok and not result.from_cache
        assert dest.read_bytes() == ROCK_BODY
        assert SidecarCache(str(dest)).last_modified == LAST_MODIFIED
        assert http_server.hits("HEAD", "/rock.tar.gz") == 1
        assert http_server.hits("GET", "/rock.tar.gz") == 1

    def test_missing_destination_is_downloaded_again(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/rock.tar.gz")
        dest = tmp_path / "rock.tar.gz"

        client.fetch(url, str(dest), cache=True)
        dest.unlink()
        result = client.fetch(url, str(dest), cache=True)

        assert result.ok and not result.from_cache
        assert dest.read_bytes() == ROCK_BODY

    def test_response_without_last_modified(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/plain")
        dest = str(tmp_path / "plain")

        client.fetch(url, dest, cache=True)
        client.fetch(url, dest, cache=True)

        assert SidecarCache(dest).last_modified is None
        assert http_server.hits("GET", "/plain") == 2

    def test_failure_is_recorded_and_replayed(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/missing")
        dest = str(tmp_path / "missing")

        first = client.fetch(url, dest, cache=True)
        assert first.error.status == 404
        assert SidecarCache(dest).status == "404"

        second = client.fetch(url, dest, cache=True)
        assert second.error.kind is ErrorKind.TRANSPORT
        assert second.error.status == 404
        assert http_server.total_hits == 1

    def test_server_errors_are_cached_too(self, fs, http_server, tmp_path):
        client = DownloadClient(fs)
        url = http_server.url("/error")
        dest = str(tmp_path / "error")

        client.fetch(url, dest, cache=True)
        result = client.fetch(url, dest, cache=True)

        assert result.error.status == 500
        assert http_server.total_hits == 1

    def test_expired_failure_probes_again(self, fs, http_server, tmp_path):
        dest = tmp_path / "rock.tar.gz"
        _write_sidecar(dest, "status", 500)
        _write_sidecar(dest, "unixtime", int(time.time()) - 100)

        result = DownloadClient(fs).fetch(
            http_server.url("/rock.tar.gz"), str(dest), cache=True, cache_fail_timeout=10
        )

        assert result.ok and not result.from_cache
        assert http_server.hits("HEAD", "/rock.tar.gz") == 1
        assert SidecarCache(str(dest)).status is None
        assert dest.read_bytes() == ROCK_BODY

    def test_failure_within_window_without_network(self, fs, http_server, tmp_path):
        dest = tmp_path / "rock.tar.gz"
        _write_sidecar(dest, "status", "timeout")
        _write_sidecar(dest, "unixtime", int(time.time()))

        result = DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), str(dest), cache=True)

        assert result.error.status == "timeout"
        assert http_server.total_hits == 0

    def test_cache_timeout_from_configuration(self, http_server, tmp_path):
        from portafs import Registry
        from portafs.fs import detect_platforms

        registry = Registry()
        registry.resolve(detect_platforms(), {"cache_timeout": 0})
        client = DownloadClient(registry)
        url = http_server.url("/rock.tar.gz")
        dest = str(tmp_path / "rock.tar.gz")

        client.fetch(url, dest, cache=True)
        result = client.fetch(url, dest, cache=True)

        assert result.from_cache
        assert http_server.hits("HEAD", "/rock.tar.gz") == 1


class TestSidecarCache:
    """Tests for the sidecar file record."""

    def test_empty_record(self, tmp_path):
        cache = SidecarCache(str(tmp_path / "f"))
        assert cache.status is None
        assert cache.last_modified is None
        assert cache.unixtime is None

    def test_non_numeric_unixtime(self, tmp_path):
        dest = tmp_path / "f"
        _write_sidecar(dest, "unixtime", "yesterday")
        assert SidecarCache(str(dest)).unixtime is None

    def test_success_clears_status(self, tmp_path):
        cache = SidecarCache(str(tmp_path / "f"))
        cache.record_failure(404, now=100)
        cache.record_success(LAST_MODIFIED, now=200)

        assert cache.status is None
        assert cache.last_modified == LAST_MODIFIED
        assert cache.unixtime == 200

    def test_concurrent_writers_last_one_wins(self, tmp_path):
        # Two processes sharing a destination are not coordinated; whichever
        # writes the sidecars last decides what the next fetch sees.
        dest = str(tmp_path / "f")
        first = SidecarCache(dest)
        second = SidecarCache(dest)

        first.record_success(LAST_MODIFIED, now=100)
        second.record_failure(503, now=101)

        assert first.status == "503"
        assert first.unixtime == 101
        assert first.last_modified == LAST_MODIFIED


class TestEscapeHatch:
    """Tests for handing requests over to wget/curl."""

    @pytest.fixture
    def downloader(self, fs, monkeypatch):
        calls = []

        def fake_use_downloader(url, filename=None, **options):
            calls.append((url, filename, options))
            return FetchResult(True, filename, False)

        monkeypatch.setattr(fs.ops, "which_tool", lambda tool_type: ("curl", None))
        monkeypatch.setattr(fs.ops, "use_downloader", fake_use_downloader)
        return calls

    def test_https_without_secure_transport(self, fs, downloader, tmp_path):
        dest = str(tmp_path / "rock.tar.gz")
        result = DownloadClient(fs, secure_transport=False).fetch("https://example.invalid/rock.tar.gz", dest)

        assert result.ok
        assert downloader == [("https://example.invalid/rock.tar.gz", dest, {})]

    def test_https_proxy_forces_external_tool(self, fs, downloader, tmp_path, monkeypatch):
        monkeypatch.setenv("https_proxy", "http://proxy.example:3128")
        result = DownloadClient(fs).fetch("https://example.invalid/rock.tar.gz", str(tmp_path / "r"))

        assert result.ok
        assert len(downloader) == 1

    def test_redirect_to_https_without_secure_transport(self, fs, downloader, http_server, tmp_path):
        url = http_server.url("/to-https")
        result = DownloadClient(fs, secure_transport=False).fetch(url, str(tmp_path / "r"), cache=True)

        assert result.ok
        assert downloader[0][0] == url
        assert downloader[0][2] == {"cache": True}
        assert SidecarCache(str(tmp_path / "r")).status is None

    def test_no_proxy_delegates_everything(self, fs, downloader, http_server, tmp_path, monkeypatch):
        monkeypatch.setenv("no_proxy", "localhost")
        result = DownloadClient(fs).fetch(http_server.url("/plain"), str(tmp_path / "plain"))

        assert result.ok
        assert len(downloader) == 1
        assert http_server.total_hits == 0

    def test_no_tool_available(self, fs, downloader, monkeypatch, tmp_path):
        monkeypatch.setattr(fs.ops, "which_tool", lambda tool_type: (None, "no downloader tool available"))
        result = DownloadClient(fs, secure_transport=False).fetch("https://example.invalid/r", str(tmp_path / "r"))

        assert result.error.kind is ErrorKind.SECURE_TRANSPORT_UNAVAILABLE
        assert "no downloader tool available" in result.error.message
        assert downloader == []


class TestProgressAndAudit:
    """Tests for progress output and verbose logging."""

    def test_show_downloads(self, fs, http_server, tmp_path, capsys):
        url = http_server.url("/rock.tar.gz")
        DownloadClient(fs).fetch(url, str(tmp_path / "r"), show_downloads=True)

        err = capsys.readouterr().err
        assert f"GET {url} ..." in err
        assert "." in err.splitlines()[-1]

    def test_quiet_by_default(self, fs, http_server, tmp_path, capsys):
        DownloadClient(fs).fetch(http_server.url("/rock.tar.gz"), str(tmp_path / "r"))
        assert capsys.readouterr().err == ""

    def test_verbose_logs_requests(self, fs, http_server, tmp_path, caplog):
        fs.verbose()
        url = http_server.url("/moved")
        with caplog.at_level(logging.INFO, logger="portafs.audit"):
            DownloadClient(fs).fetch(url, str(tmp_path / "r"))

        messages = [r.getMessage() for r in caplog.records if r.name == "portafs.audit"]
        assert f"GET {url}" in messages
        assert f"GET {http_server.url('/rock.tar.gz')}" in messages


class TestDownloadOptions:
    """Tests for request option handling."""

    def test_from_config_with_overrides(self):
        opts = DownloadOptions.from_config({"cache_timeout": 5, "verbose": True}, cache=True)
        assert opts.cache_timeout == 5
        assert opts.cache is True
        assert opts.cache_fail_timeout == 86400

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError, match="bogus"):
            DownloadOptions.from_config({}, bogus=1)

    def test_proxy_from_environment(self, monkeypatch):
        monkeypatch.setenv("http_proxy", "proxy.example:8080")
        assert DownloadOptions().http_proxy() == "http://proxy.example:8080"

    def test_proxy_option_wins(self, monkeypatch):
        monkeypatch.setenv("http_proxy", "http://env.example:8080")
        assert DownloadOptions(proxy="http://opt.example:3128").http_proxy() == "http://opt.example:3128"
