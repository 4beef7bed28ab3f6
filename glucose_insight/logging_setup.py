"""
Logging configuration for the command-line entry point.
"""

import logging
import sys

LOGGER_NAME = "glucose_insight"


def setup_logging(verbosity: int = 0) -> logging.Logger:
    """Configure the package logger from a -v count.

    0 shows warnings only, 1 adds info, 2 or more adds debug output.

    Args:
        verbosity: Number of -v flags given

    Returns:
        The configured package logger
    """
    logger = logging.getLogger(LOGGER_NAME)

    if verbosity >= 2:
        level = logging.DEBUG
        fmt = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    elif verbosity == 1:
        level = logging.INFO
        fmt = "%(levelname)s: %(message)s"
    else:
        level = logging.WARNING
        fmt = "%(levelname)s: %(message)s"

    logger.setLevel(level)
    # Replace handlers so repeated calls don't duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)
    return logger
