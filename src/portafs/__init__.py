# Copyright (c) 2024 Portafs Contributors
# MIT License

"""
Portafs: platform abstraction for package management tools.

Gives a package manager one stable set of filesystem, permission and
download operations, picking per platform between native Python
implementations and fallbacks that shell out to command-line tools.

Features:
    - Layered capability resolution (platform native, cross-platform native,
      platform tool fallbacks, generic tool fallbacks)
    - Umask-aware permission moderation shared by every layer
    - HTTP/HTTPS/FTP downloads with redirect loop detection and
      Last-Modified based sidecar caching

Typical use::

    from portafs import Registry

    fs = Registry()
    fs.resolve(["linux", "unix"], {"cache_timeout": 120})
    fs.make_dir("/tmp/rocks/build")
    ok, filename, from_cache = fs.download(url, "/tmp/rocks/manifest", cache=True)
"""

from __future__ import annotations

from portafs.release import __version__, __author__, __codename__
from portafs.registry import Registry, CapabilitySet, Layer
from portafs.fs import detect_platforms, init

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
    "Registry",
    "CapabilitySet",
    "Layer",
    "detect_platforms",
    "init",
]
