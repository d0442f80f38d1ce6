"""
Unix fallbacks implemented with external commands.

Only consulted for capabilities that no native layer provided. Command
names come from the ``variables`` section of the configuration.
"""

import os
import time
from typing import List, Optional, Tuple, Union

from portafs import paths, permissions
from portafs.errors import ConfigurationError, FileSystemError
from portafs.registry import Layer

Outcome = Tuple[bool, Optional[str]]


class UnixToolsLayer(Layer):
    """mkdir, cp, rm, find, chmod, touch, mktemp and test wrappers."""

    name = "unix.tools"

    def command_at(self, directory: str, cmd: str) -> str:
        """Prefix a command line so it runs inside ``directory``."""
        return "cd " + self.fs.quote(self.fs.absolute_name(directory)) + " && " + cmd

    def make_dir(self, directory: str) -> Outcome:
        if self.fs.execute(self.variables["MKDIR"] + " -p", directory):
            return True, None
        return False, str(FileSystemError(directory, "Failed making directory"))

    def remove_dir_if_empty(self, directory: str) -> None:
        self.fs.execute_quiet(self.variables["RMDIR"], directory)

    def remove_dir_tree_if_empty(self, directory: str) -> None:
        self.fs.execute_quiet(self.variables["RMDIR"], "-p", directory)

    def copy(self, src: str, dest: str, perms: Optional[str] = None) -> Outcome:
        """Copy with cp, then apply ``perms`` ("read"/"exec") if given."""
        if not self.fs.execute(self.variables["CP"], src, dest):
            return False, f"Failed copying {src} to {dest}"
        if perms:
            if self.fs.is_dir(dest):
                dest = paths.join(dest, paths.basename(src))
            ok, err = self.fs.set_permissions(dest, perms, "all")
            if not ok:
                return False, err or str(FileSystemError(dest, "Failed setting permissions"))
        return True, None

    def delete(self, arg: str) -> Outcome:
        """
        rm -rf a path. Only absolute paths are accepted.

        Raises:
            ConfigurationError: If ``arg`` is not absolute
        """
        if not arg.startswith("/"):
            raise ConfigurationError(f"{arg!r} is not an absolute path", argument="arg")
        self.fs.execute_quiet(self.variables["RM"], "-rf", arg)
        return True, None

    def find(self, at: Optional[str] = None) -> List[str]:
        """Recursively list a directory using find."""
        at = at or self.fs.current_dir()
        if not self.fs.is_dir(at):
            return []
        cmd = self.fs.command_at(at, self.fs.quiet_stderr(self.variables["FIND"] + " *"))
        result = self.fs.spawn(cmd)
        return [line for line in result.stdout.splitlines() if line]

    def umask(self) -> str:
        """Umask parsed from ``umask -S``, queried once per registry."""
        if self.fs.umask_cache is None:
            result = self.fs.spawn("umask -S")
            self.fs.umask_cache = permissions.umask_from_symbolic(result.stdout)
        return self.fs.umask_cache

    def moderate_permissions(self, mode: str, scope: str) -> str:
        return permissions.moderate_request(mode, scope, self.fs.umask())

    def set_permissions(self, filename: str, mode: str, scope: str) -> Outcome:
        """
        chmod a file to "read"/"exec" for "user"/"all", umask-moderated.

        Raises:
            ConfigurationError: For an unknown mode or scope
        """
        perms = self.fs.moderate_permissions(mode, scope)
        if self.fs.execute(self.variables["CHMOD"], perms, filename):
            return True, None
        return False, str(FileSystemError(filename, "Failed setting permissions"))

    def set_time(self, file: str, when: Union[None, int, float, time.struct_time] = None) -> bool:
        """touch a file, with ``-t`` when a time is given."""
        file = paths.normalize(file)
        flag = ""
        if isinstance(when, (int, float)):
            when = time.localtime(when)
        if isinstance(when, time.struct_time):
            flag = time.strftime(" -t %Y%m%d%H%M.%S", when)
        return self.fs.execute(self.variables["TOUCH"] + flag, file)

    def make_temp_dir(self, name_pattern: str) -> Tuple[Optional[str], Optional[str]]:
        name_pattern = paths.normalize(name_pattern).replace("/", "_")
        tmpdir = os.environ.get("TMPDIR") or "/tmp"
        template = f"{tmpdir}/portafs_{name_pattern}-XXXXXX"
        result = self.fs.spawn(self.variables["MKTEMP"] + " -d " + self.fs.quote(template))
        dirname = result.stdout.strip()
        if result.success and dirname.startswith("/"):
            return dirname, None
        return None, f"Failed to create temporary directory {dirname}"

    def exists(self, file: str) -> bool:
        return self.fs.execute(self.variables["TEST"], "-e", file)

    def is_dir(self, file: str) -> bool:
        return self.fs.execute(self.variables["TEST"], "-d", file)

    def is_file(self, file: str) -> bool:
        return self.fs.execute(self.variables["TEST"], "-f", file)


LAYER = UnixToolsLayer
