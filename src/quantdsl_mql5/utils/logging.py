# src/quantdsl_mql5/utils/logging.py

from __future__ import annotations

import logging
import sys
from typing import Optional


_DEFAULT_LOG_FORMAT = (
    "[%(asctime)s] [%(levelname)s] [%(name)s] "
    "%(message)s"
)
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_PACKAGE = "quantdsl_mql5"


def _configure_root_logger(level: int = logging.INFO) -> None:
    """
    Attach a handler to the root logger unless the host application (or
    pytest's log capture) already installed one.

    Records go to stderr: the CLI writes the generated source to stdout.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_DEFAULT_LOG_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)


def get_logger(name: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """
    Logger used by every compiler pass.

    Usage:
        from quantdsl_mql5.utils.logging import get_logger

        log = get_logger(__name__)
        log.info("Compiling %s", project_name)
    """
    _configure_root_logger(level=level)
    return logging.getLogger(name)


def set_verbosity(verbose: bool) -> None:
    """Switch the package loggers between INFO and DEBUG (used by the CLI)."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger(_PACKAGE).setLevel(level)
    # the root handler filters by the root level too
    if verbose and logging.getLogger().level > level:
        logging.getLogger().setLevel(level)
