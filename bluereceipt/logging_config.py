"""
Logging setup for the print server.

Modules log through ``logging.getLogger(__name__)``; everything lives under
the ``bluereceipt`` namespace so one call configures the whole package:

    2026-10-19 10:15:30 [INFO    ] bluereceipt.jobs - Job text added, 1 queued
"""

import logging
import sys
from typing import Union


LOGGER_NAME = "bluereceipt"
LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a console handler to the package logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(handler)

    logger.debug("Logging configured at level %s", logging.getLevelName(logger.level))
    return logger
