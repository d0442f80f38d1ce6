"""
Permission moderation.

A permission request is a (mode, scope) pair mapping to a base octal triple.
Before it is applied, the triple is narrowed by the process umask: per
principal (owner, group, other) and per bit (read, write, execute), a bit is
granted iff the base sets it and the umask does not.

Every layer that sets permissions (os.chmod in the native layer, the chmod
binary in the tool fallback) goes through moderate_request(), so the
resulting mode never depends on which primitive performed the write.
"""

import enum
import re
from typing import Dict, Tuple, Union

from portafs.errors import ConfigurationError


class Mode(str, enum.Enum):
    """What the file is for."""

    READ = "read"
    EXEC = "exec"


class Scope(str, enum.Enum):
    """Who the permission applies to."""

    USER = "user"
    ALL = "all"


BASE_PERMISSIONS: Dict[Tuple[Mode, Scope], str] = {
    (Mode.READ, Scope.USER): "600",
    (Mode.EXEC, Scope.USER): "700",
    (Mode.READ, Scope.ALL): "644",
    (Mode.EXEC, Scope.ALL): "755",
}

_OCTAL_TRIPLE = re.compile(r"^[0-7]{3}$")
_SYMBOLIC_UMASK = re.compile(r"u=([rwx]*),g=([rwx]*),o=([rwx]*)")


def _coerce(enum_cls, value, argument: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"{value!r} is not one of {choices}", argument=argument) from None


def base_permissions(mode: Union[Mode, str], scope: Union[Scope, str]) -> str:
    """
    Unmoderated octal triple for a request.

    Raises:
        ConfigurationError: For an unknown mode or scope
    """
    key = (_coerce(Mode, mode, "mode"), _coerce(Scope, scope, "scope"))
    return BASE_PERMISSIONS[key]


def _check_triple(value: str, argument: str) -> None:
    if not isinstance(value, str) or not _OCTAL_TRIPLE.match(value):
        raise ConfigurationError(f"{value!r} is not three octal digits", argument=argument)


def moderate(perms: str, umask: str) -> str:
    """
    Narrow an octal permission triple by an octal umask triple.

    >>> moderate("644", "077")
    '600'
    >>> moderate("755", "022")
    '755'
    """
    _check_triple(perms, "perms")
    _check_triple(umask, "umask")

    digits = []
    for p_digit, u_digit in zip(perms, umask):
        base = int(p_digit, 8)
        mask = int(u_digit, 8)
        moderated = 0
        for bit in (4, 2, 1):  # read, write, execute
            if base & bit and not mask & bit:
                moderated |= bit
        digits.append(str(moderated))
    return "".join(digits)


def moderate_request(mode: Union[Mode, str], scope: Union[Scope, str], umask: str) -> str:
    """Base permissions for (mode, scope), moderated by umask."""
    return moderate(base_permissions(mode, scope), umask)


def umask_from_int(mask: int) -> str:
    """Format a numeric umask (as returned by os.umask) as three octal digits."""
    return "%03o" % (mask & 0o777)


def umask_from_symbolic(text: str) -> str:
    """
    Convert the output of ``umask -S`` to three octal digits.

    ``umask -S`` lists the permissions that are *kept*, so each digit is
    7 minus the granted bits.

    Raises:
        ValueError: If the text is not in ``u=...,g=...,o=...`` form
    """
    match = _SYMBOLIC_UMASK.search(text)
    if not match:
        raise ValueError(f"invalid umask result: {text.strip()!r}")

    digits = []
    for granted in match.groups():
        value = (4 if "r" in granted else 0) + (2 if "w" in granted else 0) + (1 if "x" in granted else 0)
        digits.append(str(7 - value))
    return "".join(digits)


def to_mode(perms: str) -> int:
    """Octal triple as an integer suitable for os.chmod."""
    _check_triple(perms, "perms")
    return int(perms, 8)
