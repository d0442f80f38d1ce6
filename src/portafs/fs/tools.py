"""
Cross-platform fallbacks implemented with external commands.

Provides the external downloader used as the download client's escape
hatch, tool selection, and an MD5 fallback.
"""

import logging
import re
from typing import Dict, Optional, Tuple

from portafs import paths
from portafs.download import FetchResult
from portafs.errors import ErrorKind, FetchError, FileSystemError
from portafs.registry import Layer

logger = logging.getLogger(__name__)

# Tool type -> candidates as (name, probe argument), in preference order.
# Each name's command comes from the variable of the same name upper-cased.
TOOL_OPTIONS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "downloader": (("wget", "--version"), ("curl", "--version")),
    "md5checker": (("md5sum", "--version"), ("openssl", "version"), ("md5", "-x")),
}

_MD5_PATTERN = re.compile(r"\b([0-9a-fA-F]{32})\b")


class ToolsLayer(Layer):
    """Generic wrappers around wget/curl and md5 tools."""

    name = "tools"

    def init(self) -> None:
        """Turn off certificate checks in wget/curl when configured to."""
        if self.config.get("check_certificates"):
            return
        if not self.variables.get("WGETNOCERTFLAG"):
            self.variables["WGETNOCERTFLAG"] = "--no-check-certificate"
        if not self.variables.get("CURLNOCERTFLAG"):
            self.variables["CURLNOCERTFLAG"] = "-k"

    def which_tool(self, tool_type: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Pick the tool to use for ``tool_type`` ("downloader" or "md5checker").

        A tool named in the configuration under ``tool_type`` wins;
        otherwise the first available candidate is used.

        Returns:
            (tool name, None) or (None, error message)
        """
        options = TOOL_OPTIONS.get(tool_type)
        if options is None:
            return None, f"unknown tool type {tool_type}"

        configured = self.config.get(tool_type)
        candidates = [(name, arg) for name, arg in options if not configured or name == configured]
        if configured and not candidates:
            return None, f"invalid {tool_type} '{configured}', use one of: " + ", ".join(n for n, _ in options)

        for name, arg in candidates:
            if self.fs.is_tool_available(self.variables[name.upper()], name, arg):
                return name, None

        names = ", ".join(n for n, _ in candidates)
        return None, f"no {tool_type} tool available, please install one of: {names}"

    def use_downloader(
        self,
        url: str,
        filename: Optional[str] = None,
        cache: bool = False,
        **options,
    ) -> FetchResult:
        """
        Download with wget or curl.

        Accepts the same options as DownloadClient.fetch; cache relies on
        the tool's own timestamping.
        """
        downloader, err = self.fs.which_tool("downloader")
        if not downloader:
            return FetchResult(False, FetchError(ErrorKind.SECURE_TRANSPORT_UNAVAILABLE, err), False)

        filename = self.fs.absolute_name(filename or paths.basename(url))
        logger.debug("Downloading %s with %s", url, downloader)
        user_agent = options.get("user_agent") or self.config["user_agent"]
        timeout = options.get("connection_timeout", self.config["connection_timeout"])
        show = options.get("show_downloads", self.config["show_downloads"])
        quote = self.fs.quote

        if downloader == "wget":
            cmd = " ".join(filter(None, [
                self.variables["WGET"],
                self.variables["WGETNOCERTFLAG"],
                "--no-cache",
                "--user-agent=" + quote(f"{user_agent} via wget"),
                "" if show else "--quiet",
            ]))
            if timeout and timeout > 0:
                cmd += f" --timeout={int(timeout)} --tries=1"
            if cache:
                # --timestamping cannot be combined with --output-document
                self.fs.delete(filename + ".unixtime")
                cmd = self.fs.command_at(paths.dirname(filename) or ".", cmd + " --timestamping " + quote(url))
            else:
                cmd += " --output-document " + quote(filename) + " " + quote(url)
        else:
            cmd = " ".join(filter(None, [
                self.variables["CURL"],
                self.variables["CURLNOCERTFLAG"],
                "-f -L",
                "--user-agent " + quote(f"{user_agent} via curl"),
                "" if show else "-s -S",
            ]))
            if timeout and timeout > 0:
                cmd += f" --connect-timeout {int(timeout)}"
            if cache and self.fs.exists(filename):
                cmd += " -R -z " + quote(filename)
            cmd += " -o " + quote(filename) + " " + quote(url)

        if self.fs.execute_string(cmd):
            return FetchResult(True, filename, False)

        self.fs.delete(filename)
        return FetchResult(
            False,
            FetchError(ErrorKind.TRANSPORT, f"failed downloading {url} with {downloader}"),
            False,
        )

    def get_md5(self, file: str) -> Tuple[Optional[str], Optional[str]]:
        """MD5 digest using md5sum, openssl or md5."""
        checker, err = self.fs.which_tool("md5checker")
        if not checker:
            return None, err

        file = self.fs.absolute_name(file)
        if checker == "openssl":
            cmd = self.variables["OPENSSL"] + " md5 " + self.fs.quote(file)
        else:
            cmd = self.variables[checker.upper()] + " " + self.fs.quote(file)

        result = self.fs.spawn(cmd)
        match = _MD5_PATTERN.search(result.stdout) if result.success else None
        if not match:
            return None, str(FileSystemError(file, "Failed to compute MD5 hash for file"))
        return match.group(1).lower(), None


LAYER = ToolsLayer
