"""
Cross-platform native layer.

Implements the filesystem operations with os, shutil and hashlib. Platform
layers override the pieces that differ (quoting, permissions, users), and
the tool layers only fill in what is still missing after this one.
"""

import hashlib
import logging
import os
import random
import shutil
import time
from typing import Iterator, List, Mapping, Optional, Tuple, Union

from portafs import paths, proc
from portafs.download import DownloadClient, FetchResult
from portafs.errors import FileSystemError
from portafs.registry import Layer

logger = logging.getLogger(__name__)

Outcome = Tuple[bool, Optional[str]]


class NativeLayer(Layer):
    """Pure-Python implementations shared by every platform."""

    name = "native"

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def quote(self, arg: str) -> str:
        """Quote an argument for the platform shell."""
        return proc.quote_arg(arg)

    def _command(self, command: str, args) -> str:
        out = [command]
        out.extend(self.fs.quote(arg) for arg in args)
        return " ".join(out)

    def execute_string(self, cmd: str) -> bool:
        """Run a command line as-is; True if it exited with status 0."""
        return self.fs.spawn(cmd).success

    def execute(self, command: str, *args: str) -> bool:
        """
        Run ``command`` with each of ``args`` quoted.

        No quoting is applied to ``command`` itself, so it may carry flags.
        """
        return self.fs.execute_string(self._command(command, args))

    def execute_quiet(self, command: str, *args: str) -> bool:
        """Like execute(), discarding output unless verbose mode is on."""
        cmd = self._command(command, args)
        if self.fs.is_verbose:
            return self.fs.execute_string(cmd)
        return self.fs.execute_string(self.fs.quiet(cmd))

    def execute_env(self, env: Mapping[str, str], command: str, *args: str) -> bool:
        """Run a command after exporting the variables in ``env``."""
        lines = [self.fs.export_cmd(var, val) for var, val in env.items()]
        lines.append(self._command(command, args))
        return self.fs.execute_string("\n".join(lines))

    def set_tool_available(self, tool_name: str, value: bool) -> None:
        """Override the memoized availability of a tool."""
        if not isinstance(value, bool):
            raise TypeError("value must be a bool")
        self.fs.tool_available_cache[tool_name] = value

    def is_tool_available(self, tool_cmd: str, tool_name: str, arg: str = "--version") -> bool:
        """
        Check whether an external tool runs.

        The tool is probed once with ``arg`` (usually asking its version);
        the answer is memoized on the registry and a missing tool is logged
        once.
        """
        cache = self.fs.tool_available_cache
        if tool_name not in cache:
            ok = self.fs.execute_quiet(tool_cmd, arg)
            cache[tool_name] = ok is True
            if not cache[tool_name]:
                logger.warning("%s is not available (tried '%s %s')", tool_name, tool_cmd, arg)
        return cache[tool_name]

    # ------------------------------------------------------------------
    # Checksums
    # ------------------------------------------------------------------

    def get_md5(self, file: str) -> Tuple[Optional[str], Optional[str]]:
        """
        MD5 hex digest of a file.

        Returns:
            (digest, None) or (None, error message)
        """
        file = self.fs.absolute_name(file)
        digest = hashlib.md5()
        try:
            with open(file, "rb") as f:
                for block in iter(lambda: f.read(65536), b""):
                    digest.update(block)
        except OSError:
            return None, str(FileSystemError(file, "Failed to open file for reading"))
        return digest.hexdigest(), None

    def check_md5(self, file: str, md5sum: str) -> Outcome:
        """Compare a file's MD5 against an expected (possibly prefix) digest."""
        file = paths.normalize(file)
        computed, err = self.fs.get_md5(file)
        if not computed:
            return False, err
        if computed.startswith(md5sum.lower()):
            return True, None
        return False, str(FileSystemError(file, "Mismatch MD5 hash for file"))

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def system_temp_dir(self) -> str:
        return os.environ.get("TMPDIR") or os.environ.get("TEMP") or "/tmp"

    def current_dir(self) -> str:
        return os.getcwd()

    def change_dir(self, d: str) -> bool:
        """Change directory, remembering the previous one for pop_dir()."""
        previous = os.getcwd()
        try:
            os.chdir(paths.normalize(d))
        except OSError:
            return False
        self.fs.dir_stack.append(previous)
        return True

    def change_dir_to_root(self) -> bool:
        """Leave the current directory (e.g. to delete it)."""
        try:
            current = os.getcwd()
        except OSError:
            return False
        self.fs.dir_stack.append(current)
        os.chdir(os.path.abspath(os.sep))
        return True

    def pop_dir(self) -> bool:
        """Return to the previous directory; False if the stack is empty."""
        if not self.fs.dir_stack:
            return False
        os.chdir(self.fs.dir_stack.pop())
        return True

    def dir(self, at: Optional[str] = None) -> Iterator[str]:
        """
        Lazily yield the entry names of a directory.

        Yields nothing when ``at`` is not a readable directory. The
        iterator is exhausted after one pass.
        """
        at = paths.normalize(at or self.fs.current_dir())
        if not self.fs.is_dir(at):
            return
        try:
            entries = os.scandir(at)
        except OSError:
            return
        with entries:
            for entry in entries:
                yield entry.name

    def list_dir(self, at: Optional[str] = None) -> List[str]:
        """Entry names of a directory as a list."""
        return list(self.fs.dir(at))

    def make_dir(self, directory: str) -> Outcome:
        """
        Create a directory and any missing parents.

        Each created level gets exec permissions for everyone, moderated
        by the umask.
        """
        directory = paths.normalize(directory)
        drive = ""
        if len(directory) > 1 and directory[1] == ":":
            drive, directory = directory[:2], directory[2:]
        root = drive + ("/" if directory.startswith("/") else "")

        built: List[str] = []
        for part in (p for p in directory.split("/") if p):
            built.append(part)
            current = root + "/".join(built)
            if os.path.isdir(current):
                continue
            if os.path.exists(current):
                return False, str(FileSystemError(current, "Not a directory"))
            try:
                os.mkdir(current)
            except OSError as e:
                return False, str(FileSystemError(current, e.strerror or "Failed making directory"))
            ok, err = self.fs.set_permissions(current, "exec", "all")
            if not ok:
                return False, err
        return True, None

    def remove_dir_if_empty(self, d: str) -> None:
        """Remove a directory if it is empty; errors are ignored."""
        try:
            os.rmdir(paths.normalize(d))
        except OSError:
            pass

    def remove_dir_tree_if_empty(self, d: str) -> None:
        """Remove a directory and then its parents while they are empty."""
        d = paths.normalize(d)
        for _ in range(10):
            if not d:
                break
            try:
                os.rmdir(d)
            except OSError:
                break
            d = paths.dirname(d)

    def make_temp_dir(self, name_pattern: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Create a fresh directory under the system temp dir.

        Returns:
            (path, None) or (None, error message)
        """
        name_pattern = paths.normalize(name_pattern).replace("/", "_")
        prefix = paths.join(self.fs.system_temp_dir(), f"portafs_{name_pattern}-")
        for _ in range(100):
            candidate = prefix + str(random.randint(0, 9999999))
            try:
                os.mkdir(candidate, 0o700)
            except FileExistsError:
                continue
            except OSError as e:
                return None, str(FileSystemError(candidate, e.strerror or "Failed to create temporary directory"))
            return candidate, None
        return None, str(FileSystemError(prefix, "Failed to create temporary directory"))

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def exists(self, file: str) -> bool:
        return os.path.lexists(paths.normalize(file))

    def is_dir(self, file: str) -> bool:
        return os.path.isdir(paths.normalize(file))

    def is_file(self, file: str) -> bool:
        return os.path.isfile(paths.normalize(file))

    def is_writable(self, file: str) -> bool:
        """
        Check whether a file or directory can be written.

        Does not guarantee the next write succeeds.
        """
        file = paths.normalize(file)
        if self.fs.is_dir(file):
            probe = paths.join(file, ".tmpportafstestwritable")
            try:
                with open(probe, "wb"):
                    pass
            except OSError:
                return False
            os.remove(probe)
            return True
        try:
            with open(file, "r+b"):
                pass
        except OSError:
            return False
        return True

    def is_superuser(self) -> bool:
        return False

    def are_the_same_file(self, f1: str, f2: str) -> bool:
        return f1 == f2

    def copy_permissions(self, src: str, dest: str, perms: Optional[str] = None) -> Outcome:
        """Apply ``perms`` to dest; without perms there is nothing to do."""
        if perms:
            return self.fs.set_permissions(dest, perms, "all")
        return True, None

    def copy(self, src: str, dest: str, perms: Optional[str] = None) -> Outcome:
        """
        Copy a file.

        Args:
            src: Source pathname
            dest: Destination pathname or directory
            perms: "read" or "exec" to set permissions on the copy, or None
                to keep the source permissions where the platform can
        """
        src = paths.normalize(src)
        dest = paths.normalize(dest)
        if self.fs.is_dir(dest):
            dest = paths.join(dest, paths.basename(src))
        if self.fs.are_the_same_file(src, dest):
            return False, "The source and destination are the same files"
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            failed = e.filename or src
            return False, str(FileSystemError(failed, e.strerror or "Failed copying"))
        return self.fs.copy_permissions(src, dest, perms)

    def delete(self, name: str) -> Outcome:
        """Delete a file, or a directory and all its contents."""
        name = paths.normalize(name)
        try:
            if os.path.isdir(name) and not os.path.islink(name):
                shutil.rmtree(name)
            elif os.path.lexists(name):
                os.remove(name)
        except OSError as e:
            return False, str(FileSystemError(e.filename or name, e.strerror or "Failed deleting"))
        return True, None

    def move(self, src: str, dest: str, perms: Optional[str] = None) -> Outcome:
        """Move a file by copying it and deleting the source."""
        if self.fs.exists(dest) and not self.fs.is_dir(dest):
            return False, str(FileSystemError(dest, "File already exists"))
        ok, err = self.fs.copy(src, dest, perms)
        if not ok:
            return False, err
        self.fs.delete(src)
        if self.fs.exists(src):
            return False, str(FileSystemError(src, "Failed move: could not delete source after copy"))
        return True, None

    def find(self, at: Optional[str] = None) -> List[str]:
        """Recursively list a directory, as paths relative to it."""
        at = paths.normalize(at or self.fs.current_dir())
        result: List[str] = []
        self._find(at, "", result)
        return result

    def _find(self, cwd: str, prefix: str, result: List[str]) -> None:
        try:
            entries = sorted(os.listdir(cwd))
        except OSError:
            return
        for entry in entries:
            item = prefix + entry
            result.append(item)
            pathname = paths.join(cwd, entry)
            if os.path.isdir(pathname) and not os.path.islink(pathname):
                self._find(pathname, item + "/", result)

    def set_time(self, file: str, when: Union[None, int, float, time.struct_time] = None) -> bool:
        """Set access and modification times (default: now)."""
        if isinstance(when, time.struct_time):
            when = time.mktime(when)
        times = None if when is None else (when, when)
        try:
            os.utime(paths.normalize(file), times)
        except OSError:
            return False
        return True

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def download(self, url: str, filename: Optional[str] = None, **options) -> FetchResult:
        """
        Download ``url`` to ``filename`` (default: URL basename in the
        current directory). See DownloadClient.fetch for options.
        """
        return DownloadClient(self.fs).fetch(url, filename, **options)


LAYER = NativeLayer
