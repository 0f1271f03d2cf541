"""Process-wide logging set-up for the API."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_HANDLER_NAME = "minilend"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the ``minilend`` logger.

    Safe to call more than once; tests create several apps per process.
    """

    logger = logging.getLogger("minilend")
    logger.setLevel(level)
    if any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
