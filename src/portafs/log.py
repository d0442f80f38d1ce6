"""
Logging setup for portafs.

All modules log through ``logging.getLogger(__name__)``. Verbose audit
records (capability calls and spawned commands) go to the
``portafs.audit`` logger so hosts can route them separately.
"""

import logging
import sys
from typing import Optional, TextIO, Union

ROOT_LOGGER = "portafs"
AUDIT_LOGGER = "portafs.audit"

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_audit_logger() -> logging.Logger:
    """Logger receiving verbose-mode call and command records."""
    return logging.getLogger(AUDIT_LOGGER)


def _ensure_handler(logger: logging.Logger, stream: Optional[TextIO] = None) -> None:
    has_handler = any(
        getattr(h, "_portafs_handler", False) for h in logger.handlers
    )
    if not has_handler:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
        handler._portafs_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)


def configure_logging(
    level: Union[int, str] = logging.WARNING,
    verbose: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Attach a stream handler to the ``portafs`` logger.

    Calling this more than once replaces the level but never stacks
    handlers.

    Args:
        level: Level for the portafs logger
        verbose: Also emit audit records (forces INFO for portafs.audit)
        stream: Destination stream (default: stderr)

    Returns:
        The configured ``portafs`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)
    _ensure_handler(logger, stream)

    if verbose:
        get_audit_logger().setLevel(logging.INFO)
    return logger


def enable_audit() -> logging.Logger:
    """
    Make audit records visible without touching the ``portafs`` level.

    The audit logger is set to INFO and the ``portafs`` stream handler is
    attached if no earlier configure_logging() call did so.
    """
    audit = get_audit_logger()
    audit.setLevel(logging.INFO)
    _ensure_handler(logging.getLogger(ROOT_LOGGER))
    return audit
