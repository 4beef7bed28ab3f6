"""
Shared pytest fixtures.
"""

import logging

import pytest

from glucose_insight.logging_setup import LOGGER_NAME


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers the CLI installs so later tests log through caplog only."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
