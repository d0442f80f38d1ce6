"""
Unix native layer.

Requires the pwd module, so importing it fails (and the registry skips it)
on platforms without one.
"""

import os
import pwd
import stat
import tempfile
from typing import Optional, Tuple

from portafs import paths, permissions, proc
from portafs.errors import FileSystemError
from portafs.registry import Layer

Outcome = Tuple[bool, Optional[str]]


class UnixLayer(Layer):
    """Unix implementations of the platform-dependent capabilities."""

    name = "unix"

    def quiet(self, cmd: str) -> str:
        """Annotate a command line to discard stdout and stderr."""
        return cmd + " 1> /dev/null 2> /dev/null"

    def quiet_stderr(self, cmd: str) -> str:
        """Annotate a command line to discard stderr."""
        return cmd + " 2> /dev/null"

    def quote(self, arg: str) -> str:
        """Single-quote an argument for /bin/sh."""
        return proc.quote_posix(arg)

    def export_cmd(self, var: str, val: str) -> str:
        return f"export {var}={proc.quote_posix(val)}"

    def absolute_name(self, pathname: str, relative_to: Optional[str] = None) -> str:
        """
        Make a pathname absolute.

        Args:
            pathname: Path to convert; surrounding quotes are stripped
            relative_to: Base directory (default: the current directory)
        """
        if len(pathname) >= 2 and pathname[0] == pathname[-1] and pathname[0] in "\"'":
            pathname = pathname[1:-1]
        if pathname.startswith("/"):
            return pathname
        base = (relative_to or self.fs.current_dir()).rstrip("/")
        return base + "/" + pathname

    def root_of(self, pathname: str) -> str:
        return "/"

    def is_actual_binary(self, filename: str) -> bool:
        """
        False for Lua/shell wrapper scripts, True for real binaries or
        anything that cannot be read.
        """
        if filename.endswith(".lua"):
            return False
        try:
            with open(filename, "rb") as f:
                first = f.read(2)
        except OSError:
            return True
        return first != b"#!"

    def copy_binary(self, filename: str, dest: str) -> Outcome:
        return self.fs.copy(filename, dest, "exec")

    def replace_file(self, old_file: str, new_file: str) -> Outcome:
        """Move new_file on top of old_file with a single rename."""
        try:
            os.rename(new_file, old_file)
        except OSError as e:
            return False, str(FileSystemError(new_file, e.strerror or "Failed renaming"))
        return True, None

    def tmpname(self) -> str:
        fd, name = tempfile.mkstemp(prefix="portafs_")
        os.close(fd)
        return name

    def is_superuser(self) -> bool:
        return os.geteuid() == 0

    def current_user(self) -> str:
        return pwd.getpwuid(os.geteuid()).pw_name

    def system_cache_dir(self) -> str:
        if self.fs.is_dir("/var/cache"):
            return "/var/cache"
        return paths.join(self.fs.system_temp_dir(), "cache")

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def umask(self) -> str:
        """Process umask as three octal digits, queried once per registry."""
        if self.fs.umask_cache is None:
            # os.umask can only be read by setting it
            current = os.umask(0o022)
            os.umask(current)
            self.fs.umask_cache = permissions.umask_from_int(current)
        return self.fs.umask_cache

    def moderate_permissions(self, mode: str, scope: str) -> str:
        """Octal permissions for (mode, scope) narrowed by the umask."""
        return permissions.moderate_request(mode, scope, self.fs.umask())

    def set_permissions(self, filename: str, mode: str, scope: str) -> Outcome:
        """
        Set "read" or "exec" permissions for "user" or "all".

        Raises:
            ConfigurationError: For an unknown mode or scope
        """
        perms = self.fs.moderate_permissions(mode, scope)
        try:
            os.chmod(filename, permissions.to_mode(perms))
        except OSError as e:
            return False, str(FileSystemError(filename, e.strerror or "Failed setting permissions"))
        return True, None

    def copy_permissions(self, src: str, dest: str, perms: Optional[str] = None) -> Outcome:
        """Apply ``perms`` to dest, or copy the source mode bits when None."""
        if perms:
            return self.fs.set_permissions(dest, perms, "all")
        try:
            os.chmod(dest, stat.S_IMODE(os.stat(src).st_mode))
        except OSError as e:
            return False, str(FileSystemError(e.filename or dest, e.strerror or "Failed copying permissions"))
        return True, None

    def are_the_same_file(self, f1: str, f2: str) -> bool:
        """True for equal paths or paths sharing an inode."""
        if f1 == f2:
            return True
        try:
            return os.path.samefile(f1, f2)
        except OSError:
            return False

    def make_temp_dir(self, name_pattern: str) -> Tuple[Optional[str], Optional[str]]:
        """Create a private temporary directory with mkdtemp."""
        name_pattern = paths.normalize(name_pattern).replace("/", "_")
        try:
            path = tempfile.mkdtemp(
                prefix=f"portafs_{name_pattern}-", dir=self.fs.system_temp_dir()
            )
        except OSError as e:
            return None, str(FileSystemError(self.fs.system_temp_dir(), e.strerror or "Failed to create temporary directory"))
        return path, None


LAYER = UnixLayer
