"""
Logging configuration for pluqqy.

Quiet by default; --verbose or PLUQQY_VERBOSE=1 switches on debug output.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to keep the CLI output clean.

    Args:
        quiet: If True, only warnings and errors from pluqqy reach stderr.
            If False, leave logging untouched.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        logging.getLogger("pluqqy").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("pluqqy").setLevel(logging.DEBUG)


def configure_ops_log(library_path):
    """Configure a persistent operations log for a library.

    Writes to {library_path}/pluqqy-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so the caller can remove it again.
    """
    log_path = Path(library_path) / "pluqqy-ops.log"
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    pluqqy_logger = logging.getLogger("pluqqy")
    pluqqy_logger.addHandler(handler)
    # INFO must get through even in quiet mode
    if pluqqy_logger.level == logging.NOTSET or pluqqy_logger.level > logging.INFO:
        pluqqy_logger.setLevel(logging.INFO)

    return handler
