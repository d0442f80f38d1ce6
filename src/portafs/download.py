"""
Portafs download client

Fetches remote artifacts over HTTP, HTTPS and FTP with urllib, following
redirects by hand so loops and scheme changes can be detected, and caching
HTTP results in three sidecar files next to the destination:

    <file>.timestamp   Last-Modified header of the last successful transfer
    <file>.status      status of the last failed attempt (absent on success)
    <file>.unixtime    epoch seconds of the last recorded attempt

When HTTPS cannot be served natively (no ssl module, or an https proxy is
configured) the request is handed to the external downloader (wget/curl)
through the ``use_downloader`` capability.

Sidecar files are not locked: concurrent downloads to the same destination
race, and the last writer wins.
"""

import logging
import os
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, fields
from email.message import Message
from typing import Any, Dict, Mapping, NamedTuple, Optional, Set, Union

try:
    import ssl
except ImportError:  # interpreter built without OpenSSL
    ssl = None

from portafs import paths
from portafs.errors import ConfigurationError, ErrorKind, FetchError
from portafs.log import get_audit_logger

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302)
REDIRECT_SCHEMES = ("http", "https")
CHUNK_SIZE = 8192
DOTS_PER_LINE = 70


class FetchResult(NamedTuple):
    """
    Outcome of a download: ``ok, detail, from_cache = result``.

    ``detail`` is the absolute destination filename on success and a
    FetchError on failure.
    """

    ok: bool
    detail: Union[str, FetchError]
    from_cache: bool = False

    @property
    def filename(self) -> Optional[str]:
        return self.detail if self.ok else None

    @property
    def error(self) -> Optional[FetchError]:
        return None if self.ok else self.detail


@dataclass
class DownloadOptions:
    """
    Per-request settings. Unset fields come from the registry configuration.

    Attributes:
        cache: Use the sidecar files to avoid needless transfers
        cache_timeout: Seconds a successful result is reused without asking
            the server
        cache_fail_timeout: Seconds a recorded failure is replayed without
            asking the server
        connection_timeout: Per-attempt timeout in seconds (0 = default)
        user_agent: User-Agent prefix
        proxy: HTTP proxy (default: the http_proxy environment variable)
        https_proxy: HTTPS proxy (default: https_proxy); when set, HTTPS
            goes through the external downloader
        show_downloads: Print progress to stderr
        check_certificates: Verify TLS certificates
    """

    cache: bool = False
    cache_timeout: float = 60
    cache_fail_timeout: float = 86400
    connection_timeout: float = 30
    user_agent: str = "portafs"
    proxy: Optional[str] = None
    https_proxy: Optional[str] = None
    show_downloads: bool = False
    check_certificates: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **overrides: Any) -> "DownloadOptions":
        """
        Build options from configuration, then apply keyword overrides.

        Raises:
            ConfigurationError: For an unknown option name
        """
        names = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - names)
        if unknown:
            raise ConfigurationError(f"unknown download option(s): {', '.join(unknown)}", argument="options")

        values: Dict[str, Any] = {name: config[name] for name in names if name in config}
        values.update(overrides)
        return cls(**values)

    def http_proxy(self) -> Optional[str]:
        proxy = self.proxy or os.environ.get("http_proxy")
        if proxy and "://" not in proxy:
            proxy = "http://" + proxy
        return proxy or None

    def secure_proxy(self) -> Optional[str]:
        return self.https_proxy or os.environ.get("https_proxy") or None


class SidecarCache:
    """Reads and writes the sidecar files of one destination."""

    def __init__(self, filename: str):
        self.filename = filename

    def path(self, suffix: str) -> str:
        return f"{self.filename}.{suffix}"

    def _read(self, suffix: str) -> Optional[str]:
        try:
            with open(self.path(suffix), "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def _write(self, suffix: str, data: str) -> None:
        with open(self.path(suffix), "w", encoding="utf-8") as f:
            f.write(data)

    def _remove(self, suffix: str) -> None:
        try:
            os.remove(self.path(suffix))
        except FileNotFoundError:
            pass

    @property
    def status(self) -> Optional[str]:
        return self._read("status")

    @property
    def last_modified(self) -> Optional[str]:
        return self._read("timestamp")

    @property
    def unixtime(self) -> Optional[float]:
        raw = self._read("unixtime")
        if raw is None:
            return None
        try:
            return float(raw.strip())
        except ValueError:
            return None

    def record_success(self, last_modified: Optional[str], now: Optional[float] = None) -> None:
        """Remember a successful transfer. Without Last-Modified there is nothing to compare later."""
        self._remove("status")
        if last_modified:
            self._write("timestamp", last_modified)
            self._write("unixtime", str(int(now if now is not None else time.time())))

    def record_failure(self, status: Union[int, str], now: Optional[float] = None) -> None:
        self._write("unixtime", str(int(now if now is not None else time.time())))
        self._write("status", str(status))

    def touch(self, now: Optional[float] = None) -> None:
        """Mark the cached copy as confirmed fresh."""
        self._remove("status")
        self._write("unixtime", str(int(now if now is not None else time.time())))


class LoopGuard:
    """URLs visited by one redirect chain."""

    def __init__(self, url: str):
        self.visited: Set[str] = {url}

    def visit(self, url: str) -> bool:
        """Record ``url``; False if the chain has been there before."""
        if url in self.visited:
            return False
        self.visited.add(url)
        return True


class _Response(NamedTuple):
    url: str
    status: int
    headers: Message
    body: Optional[bytes]


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Surface 3xx responses as HTTPError so redirects are followed by hand."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


def _parse_status(raw: str) -> Union[int, str]:
    raw = raw.strip()
    return int(raw) if raw.isdigit() else raw


class DownloadClient:
    """
    Conditional downloader bound to a resolved registry.

    Uses the registry for absolute_name, exists, which_tool and
    use_downloader, and for the verbose flag.
    """

    def __init__(self, fs, secure_transport: Optional[bool] = None):
        self.fs = fs
        if secure_transport is None:
            secure_transport = ssl is not None
        self.secure_transport = bool(secure_transport) and ssl is not None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def fetch(self, url: str, filename: Optional[str] = None, **options: Any) -> FetchResult:
        """
        Download ``url`` to ``filename``.

        Args:
            url: http://, https:// or ftp:// URL
            filename: Destination (default: URL basename in the current
                directory); made absolute
            **options: DownloadOptions fields overriding the configuration

        Returns:
            FetchResult(ok, filename or FetchError, from_cache)

        Raises:
            ConfigurationError: If url or filename is not a string, or an
                option is unknown
        """
        if not isinstance(url, str) or not url:
            raise ConfigurationError("expected a non-empty URL string", argument="url")
        if filename is not None and not isinstance(filename, str):
            raise ConfigurationError("expected a path string", argument="filename")

        opts = DownloadOptions.from_config(self.fs.config, **options)
        filename = self.fs.absolute_name(filename or paths.basename(url))

        # Let the external tool deal with proxy whitelists
        if os.environ.get("no_proxy"):
            return self.fs.use_downloader(url, filename, **options)

        protocol, _ = paths.split_url(url)
        if protocol in ("http", "https"):
            result = self._http_fetch(url, filename, opts)
        elif protocol == "ftp":
            result = self._ftp_fetch(url, filename, opts)
        else:
            return FetchResult(
                False,
                FetchError(ErrorKind.UNSUPPORTED_PROTOCOL, f"Unsupported protocol {protocol}"),
                False,
            )

        if not result.ok and result.error.kind is ErrorKind.SECURE_TRANSPORT_UNAVAILABLE:
            return self._escape_hatch(url, filename, result.error, options)
        return result

    def _secure_usable(self, opts: DownloadOptions) -> bool:
        # The native HTTPS backend cannot go through a proxy
        return self.secure_transport and not opts.secure_proxy()

    def _escape_hatch(
        self,
        url: str,
        filename: str,
        reason: FetchError,
        options: Mapping[str, Any],
    ) -> FetchResult:
        downloader, err = self.fs.which_tool("downloader")
        if not downloader:
            return FetchResult(
                False,
                FetchError(ErrorKind.SECURE_TRANSPORT_UNAVAILABLE, f"{reason.message}; {err}"),
                False,
            )
        logger.info("%s; using %s for %s", reason.message, downloader, url)
        return self.fs.use_downloader(url, filename, **options)

    # ------------------------------------------------------------------
    # HTTP(S)
    # ------------------------------------------------------------------

    def _http_fetch(self, url: str, filename: str, opts: DownloadOptions) -> FetchResult:
        cache = SidecarCache(filename) if opts.cache else None
        try:
            if cache is not None:
                cached = self._check_cache(url, cache, opts)
                if cached is not None:
                    return cached

            response = self._request(url, "GET", opts)
            if isinstance(response, FetchError):
                return self._fail(cache, response)

            stored = self._store(filename, response.body or b"")
            if not stored.ok:
                return stored
            if cache is not None:
                cache.record_success(response.headers.get("Last-Modified"))
            return stored
        except OSError as e:
            return FetchResult(
                False,
                FetchError(ErrorKind.PERSISTENCE, f"Cannot access cache file {e.filename or filename}: {e.strerror}"),
                False,
            )

    def _check_cache(self, url: str, cache: SidecarCache, opts: DownloadOptions) -> Optional[FetchResult]:
        """A FetchResult answered from the sidecars, or None to do a full GET."""
        status = cache.status
        last_modified = cache.last_modified
        if status is None and last_modified is None:
            return None

        unixtime = cache.unixtime
        if unixtime is not None:
            age = time.time() - unixtime
            if status is not None:
                if age < opts.cache_fail_timeout:
                    logger.debug("Replaying cached failure %s for %s", status.strip(), url)
                    return FetchResult(
                        False,
                        FetchError(
                            ErrorKind.TRANSPORT,
                            f"Failed downloading {url} (cached)",
                            status=_parse_status(status),
                        ),
                        False,
                    )
            elif age < opts.cache_timeout and self.fs.exists(cache.filename):
                return FetchResult(True, cache.filename, True)

        response = self._request(url, "HEAD", opts)
        if isinstance(response, FetchError):
            return self._fail(cache, response)

        if (
            last_modified is not None
            and response.headers.get("Last-Modified") == last_modified
            and self.fs.exists(cache.filename)
        ):
            cache.touch()
            return FetchResult(True, cache.filename, True)
        return None

    def _fail(self, cache: Optional[SidecarCache], error: FetchError) -> FetchResult:
        # Any failed probe is cached for the whole fail window, transient or not
        if cache is not None and error.kind is not ErrorKind.SECURE_TRANSPORT_UNAVAILABLE:
            cache.record_failure(error.status if error.status is not None else error.message)
        return FetchResult(False, error, False)

    def _request(self, url: str, method: str, opts: DownloadOptions) -> Union[_Response, FetchError]:
        """Issue ``method`` against ``url``, following 301/302 redirects."""
        guard = LoopGuard(url)
        while True:
            scheme, _ = paths.split_url(url)
            if scheme == "https" and not self._secure_usable(opts):
                return FetchError(
                    ErrorKind.SECURE_TRANSPORT_UNAVAILABLE,
                    f"No native HTTPS support available for {url}",
                )

            if self.fs.is_verbose:
                get_audit_logger().info("%s %s", method, url)
            if opts.show_downloads:
                sys.stderr.write(f"{method} {url} ...\n")

            request = urllib.request.Request(
                url,
                method=method,
                headers={"User-Agent": f"{opts.user_agent} via urllib"},
            )
            try:
                with self._opener(scheme, opts).open(request, **self._timeout(opts)) as response:
                    status = response.getcode()
                    headers = response.headers
                    body = None if method == "HEAD" else self._read_body(response, opts)
            except urllib.error.HTTPError as e:
                location = e.headers.get("Location") if e.headers else None
                e.close()
                if e.code not in REDIRECT_STATUSES or not location:
                    return FetchError(ErrorKind.TRANSPORT, f"{method} {url} failed: {e.code} {e.reason}", status=e.code)

                target = urllib.parse.urljoin(url, location)
                target_scheme, _ = paths.split_url(target)
                if target_scheme not in REDIRECT_SCHEMES:
                    return FetchError(
                        ErrorKind.UNSUPPORTED_REDIRECT,
                        f"URL redirected to unsupported protocol: {target}",
                        status=e.code,
                    )
                if not guard.visit(target):
                    return FetchError(
                        ErrorKind.REDIRECT_LOOP,
                        f"Redirection loop at {target} -- broken URL?",
                        status=e.code,
                    )
                logger.debug("%s redirected to %s", url, target)
                url = target
                continue
            except urllib.error.URLError as e:
                return FetchError(ErrorKind.TRANSPORT, f"{method} {url} failed: {e.reason}", status=str(e.reason))
            except OSError as e:
                return FetchError(ErrorKind.TRANSPORT, f"{method} {url} failed: {e}", status=str(e))

            if status != 200:
                return FetchError(ErrorKind.TRANSPORT, f"{method} {url} returned {status}", status=status)
            return _Response(url, status, headers, body)

    def _opener(self, scheme: str, opts: DownloadOptions) -> urllib.request.OpenerDirector:
        proxy = opts.http_proxy() if scheme == "http" else None
        handlers = [
            _NoRedirect(),
            urllib.request.ProxyHandler({"http": proxy} if proxy else {}),
        ]
        if scheme == "https":
            handlers.append(urllib.request.HTTPSHandler(context=self._ssl_context(opts)))
        return urllib.request.build_opener(*handlers)

    def _ssl_context(self, opts: DownloadOptions):
        context = ssl.create_default_context()
        if not opts.check_certificates:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _timeout(self, opts: DownloadOptions) -> Dict[str, float]:
        if opts.connection_timeout and opts.connection_timeout > 0:
            return {"timeout": opts.connection_timeout}
        return {}

    def _read_body(self, response, opts: DownloadOptions) -> bytes:
        chunks = []
        dots = 0
        while True:
            block = response.read(CHUNK_SIZE)
            if not block:
                break
            chunks.append(block)
            if opts.show_downloads:
                sys.stderr.write(".")
                sys.stderr.flush()
                dots += 1
                if dots == DOTS_PER_LINE:
                    sys.stderr.write("\n")
                    dots = 0
        if opts.show_downloads:
            sys.stderr.write("\n")
        return b"".join(chunks)

    # ------------------------------------------------------------------
    # FTP
    # ------------------------------------------------------------------

    def _ftp_fetch(self, url: str, filename: str, opts: DownloadOptions) -> FetchResult:
        opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))
        if self.fs.is_verbose:
            get_audit_logger().info("RETR %s", url)
        try:
            with opener.open(url, **self._timeout(opts)) as response:
                body = self._read_body(response, opts)
        except urllib.error.URLError as e:
            return FetchResult(False, FetchError(ErrorKind.TRANSPORT, f"FTP {url} failed: {e.reason}", status=str(e.reason)), False)
        except OSError as e:
            return FetchResult(False, FetchError(ErrorKind.TRANSPORT, f"FTP {url} failed: {e}", status=str(e)), False)
        return self._store(filename, body)

    # ------------------------------------------------------------------
    # Local persistence
    # ------------------------------------------------------------------

    def _store(self, filename: str, body: bytes) -> FetchResult:
        try:
            with open(filename, "wb") as f:
                f.write(body)
        except OSError as e:
            return FetchResult(
                False,
                FetchError(ErrorKind.PERSISTENCE, f"Cannot open {filename} for writing: {e.strerror}"),
                False,
            )
        return FetchResult(True, filename, False)
