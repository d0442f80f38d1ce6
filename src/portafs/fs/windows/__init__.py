"""
Windows native layer.

Windows has no Unix permission bits; set_permissions can only toggle the
read-only flag, and umask moderation does not apply.
"""

import os
import re
import stat
import tempfile
from typing import Optional, Tuple

from portafs import paths, permissions, proc
from portafs.errors import FileSystemError
from portafs.registry import Layer

Outcome = Tuple[bool, Optional[str]]

_DRIVE_ROOT = re.compile(r"^([A-Za-z]:)")


class WindowsLayer(Layer):
    """Windows implementations of the platform-dependent capabilities."""

    name = "windows"

    def quiet(self, cmd: str) -> str:
        return cmd + " 2> NUL 1> NUL"

    def quiet_stderr(self, cmd: str) -> str:
        return cmd + " 2> NUL"

    def quote(self, arg: str) -> str:
        return proc.quote_windows(arg)

    def export_cmd(self, var: str, val: str) -> str:
        return f'SET "{var}={val}"'

    def absolute_name(self, pathname: str, relative_to: Optional[str] = None) -> str:
        """Make a pathname absolute; drive-letter and UNC paths are kept."""
        if len(pathname) >= 2 and pathname[0] == pathname[-1] and pathname[0] in "\"'":
            pathname = pathname[1:-1]
        pathname = pathname.replace("\\", "/")
        if _DRIVE_ROOT.match(pathname) or pathname.startswith("/"):
            return pathname
        base = (relative_to or self.fs.current_dir()).replace("\\", "/").rstrip("/")
        return base + "/" + pathname

    def root_of(self, pathname: str) -> str:
        """Drive of the given path ("C:"), or of the current directory."""
        match = _DRIVE_ROOT.match(pathname) or _DRIVE_ROOT.match(self.fs.current_dir())
        return match.group(1) if match else ""

    def tmpname(self) -> str:
        fd, name = tempfile.mkstemp(prefix="portafs_")
        os.close(fd)
        return name

    def current_user(self) -> str:
        return os.environ.get("USERNAME", os.environ.get("USER", "unknown"))

    def is_superuser(self) -> bool:
        return False

    def system_cache_dir(self) -> str:
        return paths.join(self.fs.system_temp_dir(), "cache")

    def moderate_permissions(self, mode: str, scope: str) -> str:
        # No umask on Windows; validation still applies
        return permissions.base_permissions(mode, scope)

    def set_permissions(self, filename: str, mode: str, scope: str) -> Outcome:
        """
        Best-effort permissions: writable for the owner whenever the
        requested permissions grant owner write.
        """
        perms = self.fs.moderate_permissions(mode, scope)
        writable = int(perms[0], 8) & 2
        try:
            os.chmod(filename, stat.S_IWRITE | stat.S_IREAD if writable else stat.S_IREAD)
        except OSError as e:
            return False, str(FileSystemError(filename, e.strerror or "Failed setting permissions"))
        return True, None


LAYER = WindowsLayer
