"""
Path and URL string helpers.

All helpers work on forward-slash strings and understand
``protocol://path`` URLs; plain local paths report the "file" protocol.
"""

import os
import re
from typing import Tuple, Union


PathLike = Union[str, "os.PathLike[str]"]

_URL_PATTERN = re.compile(r"^([^:]*)://(.*)$")
_DRIVE_PATTERN = re.compile(r"^(.:)(.*)$")

BASIC_PROTOCOLS = frozenset({"http", "https", "ftp", "file"})


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def join(*parts: PathLike) -> str:
    """
    Join path components with "/", collapsing repeated separators.

    Leading empty components are dropped; separators after a ":" are kept
    so ``join("http://host", "file")`` stays a URL.
    """
    items = [_unquote(str(p)) for p in parts]
    while items and items[0] == "":
        items.pop(0)
    joined = "/".join(items)
    joined = re.sub(r"([^:])/+", r"\1/", joined)
    joined = re.sub(r"^/+", "/", joined)
    return joined.rstrip("/") if joined != "/" else joined


def split_url(url: str) -> Tuple[str, str]:
    """
    Split a URL into (protocol, rest).

    Local pathnames return ("file", pathname).
    """
    url = _unquote(url)
    match = _URL_PATTERN.match(url)
    if not match:
        return "file", url
    return match.group(1), match.group(2)


def normalize(name: PathLike) -> str:
    """
    Normalize a URL or local path.

    Uses forward slashes, removes trailing and doubled slashes, and
    resolves "." and ".." components (leading ".." are kept).
    """
    protocol, pathname = split_url(str(name))
    pathname = pathname.replace("\\", "/")
    if len(pathname) > 1:
        pathname = pathname.rstrip("/") or "/"
    pathname = re.sub(r"/{2,}", "/", pathname)

    drive = ""
    match = _DRIVE_PATTERN.match(pathname)
    if match:
        drive, pathname = match.group(1), match.group(2)

    absolute = pathname.startswith("/")
    pieces = []
    for piece in pathname.split("/"):
        if piece == "..":
            if not pieces or pieces[-1] == "..":
                if not absolute:
                    pieces.append("..")
            else:
                pieces.pop()
        elif piece not in ("", "."):
            pieces.append(piece)

    result = drive + ("/" if absolute else "") + "/".join(pieces)
    if protocol != "file":
        result = f"{protocol}://{result}"
    return result


def basename(pathname: str) -> str:
    """Final component of a path or URL ("/a/b/c" -> "c")."""
    stripped = re.sub(r"[/\\]*$", "", pathname)
    match = re.match(r".*[/\\]([^/\\]*)$", stripped)
    return match.group(1) if match else pathname


def dirname(pathname: str) -> str:
    """
    Path with its final component removed ("/a/b/c" -> "/a/b").

    Returns "" when there is no separator.
    """
    stripped = pathname.rstrip("/")
    match = re.match(r"^(.*)/+[^/]*$", stripped)
    return match.group(1) if match else ""


def is_basic_protocol(protocol: str) -> bool:
    """True if the protocol needs no extra tools to fetch."""
    return protocol in BASIC_PROTOCOLS
