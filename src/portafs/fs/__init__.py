"""
Capability layers.

Each module in this package is one layer the registry may load:

    <platform>          native implementations for one platform (unix, windows)
    native              cross-platform native implementations
    <platform>.tools    platform fallbacks that shell out to external tools
    tools               cross-platform fallbacks that shell out to external tools

A layer module exposes its Layer subclass as ``LAYER``.
"""

import platform as _platform
from typing import Any, List, Mapping, Optional

# Detect current platform
IS_WINDOWS = _platform.system() == "Windows"
IS_LINUX = _platform.system() == "Linux"
IS_MACOS = _platform.system() == "Darwin"
IS_POSIX = not IS_WINDOWS

PLATFORM_NAME = _platform.system().lower()


def detect_platforms() -> List[str]:
    """
    Platform identifiers for the running system, most specific first.

    E.g. ``["linux", "unix"]`` or ``["windows", "win32"]``.
    """
    if IS_WINDOWS:
        return ["windows", "win32"]
    if IS_MACOS:
        return ["macosx", "bsd", "unix"]
    if PLATFORM_NAME.endswith("bsd"):
        return [PLATFORM_NAME, "bsd", "unix"]
    return [PLATFORM_NAME or "unix", "unix"]


def init(
    platforms: Optional[List[str]] = None,
    config: Optional[Mapping[str, Any]] = None,
):
    """Create a Registry and resolve it for the running platform."""
    from portafs.registry import Registry

    fs = Registry()
    fs.resolve(platforms if platforms is not None else detect_platforms(), config)
    return fs
