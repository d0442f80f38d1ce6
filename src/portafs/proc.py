"""
Process execution for the tool fallback layers.

Every external command portafs spawns goes through run(); the registry
wraps it so verbose mode can audit the command line and its raw result.
"""

import os
import re
import shlex
import shutil
import subprocess
from typing import Optional, Mapping, Sequence, Tuple

from portafs.fs import IS_WINDOWS


# Credential-bearing URL segments such as /api/1/<apikey>/
_API_KEY_PATTERN = re.compile(r"(/api/[^/]+/)([^/]+)/")


class ProcessResult:
    """Result of a process execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str,
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command

    @property
    def success(self) -> bool:
        """Check if process exited successfully."""
        return self.returncode == 0

    @property
    def failed(self) -> bool:
        """Check if process failed."""
        return self.returncode != 0

    def as_tuple(self) -> Tuple[int, str, str]:
        """Raw result as (returncode, stdout, stderr)."""
        return (self.returncode, self.stdout, self.stderr)

    def __repr__(self) -> str:
        return f"ProcessResult(returncode={self.returncode}, stdout={len(self.stdout)} chars)"


def quote_arg(arg: str) -> str:
    """
    Quote a single argument for shell use.

    Uses appropriate quoting for the current platform.
    """
    if IS_WINDOWS:
        return quote_windows(arg)
    return shlex.quote(arg)


def quote_command(args: Sequence[str]) -> str:
    """Quote a command sequence for shell execution."""
    return " ".join(quote_arg(arg) for arg in args)


def quote_posix(arg: str) -> str:
    """Always single-quote, escaping embedded single quotes."""
    return "'" + arg.replace("'", "'\\''") + "'"


def quote_windows(arg: str) -> str:
    """
    Quote an argument for Windows cmd.exe.

    This is more complex than Unix quoting due to cmd.exe quirks.
    """
    if not arg:
        return '""'

    if not any(c in arg for c in ' \t\n\r"^&|<>()'):
        return arg

    result = []
    num_backslashes = 0

    for char in arg:
        if char == '\\':
            num_backslashes += 1
        elif char == '"':
            # Backslashes before a quote are doubled, plus one for the quote
            result.extend(['\\'] * (num_backslashes * 2 + 1))
            result.append('"')
            num_backslashes = 0
        else:
            result.extend(['\\'] * num_backslashes)
            result.append(char)
            num_backslashes = 0

    result.extend(['\\'] * (num_backslashes * 2))

    return '"' + ''.join(result) + '"'


def redact(command: str) -> str:
    """Mask API keys embedded in URL paths of a command line."""
    return _API_KEY_PATTERN.sub(r"\1<redacted>/", command)


def run(
    command: str,
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
    encoding: str = "utf-8",
) -> ProcessResult:
    """
    Run a shell command line and capture its output.

    Args:
        command: Command line, already quoted
        cwd: Working directory
        env: Environment variables (merged with current env)
        timeout: Timeout in seconds

    Returns:
        ProcessResult with returncode, stdout, stderr. A command that cannot
        be started at all is reported with returncode 127.

    Raises:
        subprocess.TimeoutExpired: If timeout exceeded
    """
    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            env=run_env,
            timeout=timeout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        return ProcessResult(returncode=127, stdout="", stderr=str(e), command=command)

    stdout = result.stdout.decode(encoding, errors="replace") if result.stdout else ""
    stderr = result.stderr.decode(encoding, errors="replace") if result.stderr else ""

    return ProcessResult(
        returncode=result.returncode,
        stdout=stdout,
        stderr=stderr,
        command=command,
    )


def which(program: str) -> Optional[str]:
    """
    Find the full path to an executable.

    Returns None if not found.
    """
    return shutil.which(program)
