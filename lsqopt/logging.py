"""Logging for lsqopt.

Every module logger is a child of the ``lsqopt`` package logger, which owns
the only handler and does not propagate to the root logger. The optimization
loop reports one INFO line per iteration and one for the stop reason, so
``configure_logging("INFO")`` is all it takes to follow a run; failed builds
and solves are reported at WARNING.
"""

from __future__ import annotations

import logging
import sys
from typing import IO, Optional, Union

PACKAGE = "lsqopt"

_DEFAULT_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def _package_logger() -> logging.Logger:
    logger = logging.getLogger(PACKAGE)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.WARNING)
        logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the logger of a module of this package.

    Args:
        name: Module name, typically ``__name__``. Names outside the package
            are nested under it. If None, returns the package logger.

    Example:
        >>> from lsqopt.logging import get_logger
        >>> get_logger("lsqopt.optimizer").parent.name
        'lsqopt'
    """
    package = _package_logger()
    if name is None or name == PACKAGE:
        return package
    if not name.startswith(PACKAGE + "."):
        name = f"{PACKAGE}.{name}"
    return logging.getLogger(name)


def configure_logging(
    level: Union[int, str] = logging.WARNING,
    format_string: Optional[str] = None,
    stream: Optional[IO[str]] = None,
) -> None:
    """Set the level, format and destination of every lsqopt log record.

    Args:
        level: Logging level, as an int or a name such as ``"INFO"``.
        format_string: Record format. If None, uses the default.
        stream: Output stream (default: sys.stderr).

    Raises:
        ValueError: If ``level`` is an unknown level name.
    """
    if isinstance(level, str):
        value = logging.getLevelName(level.upper())
        if not isinstance(value, int):
            raise ValueError(f"Unknown log level {level!r}")
        level = value

    logger = _package_logger()
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(format_string or _DEFAULT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)


__all__ = ["PACKAGE", "configure_logging", "get_logger"]
