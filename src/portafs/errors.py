# Copyright (c) 2024 Portafs Contributors
# MIT License

"""
Portafs Error Classes.

Only contract violations at public entry points are raised as exceptions
(ConfigurationError). Everything else is reported to callers as a plain
return value: filesystem operations return ``(ok, message)`` pairs and the
download client returns a FetchError describing what went wrong.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union


class PortafsError(Exception):
    """Base exception for all Portafs errors."""

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ConfigurationError(PortafsError):
    """Malformed argument or configuration given to a public entry point."""

    def __init__(
        self,
        message: str,
        argument: str | None = None,
        details: str | None = None,
    ) -> None:
        self.argument = argument
        prefix = f"Invalid argument '{argument}'" if argument else "Invalid configuration"
        super().__init__(f"{prefix}: {message}", details)


class FileSystemError(PortafsError):
    """
    A storage operation failed.

    Layers do not raise this; they use it to format the message half of an
    ``(ok, message)`` result so the offending path is always included.
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{message}: {path}")


class ErrorKind(enum.Enum):
    """Categories of download failures."""

    TRANSPORT = "transport"
    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    REDIRECT_LOOP = "redirect_loop"
    UNSUPPORTED_REDIRECT = "unsupported_redirect"
    SECURE_TRANSPORT_UNAVAILABLE = "secure_transport_unavailable"
    PERSISTENCE = "persistence"


@dataclass(frozen=True)
class FetchError:
    """
    Description of a failed download.

    Attributes:
        kind: Failure category
        message: Human readable description
        status: HTTP status code, or the raw status recorded in the
            ``.status`` sidecar file, when one is known
    """

    kind: ErrorKind
    message: str
    status: Optional[Union[int, str]] = None

    def __str__(self) -> str:
        if self.status is not None and str(self.status) not in self.message:
            return f"{self.message} (status {self.status})"
        return self.message
