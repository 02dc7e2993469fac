"""Logging setup for SafeSandbox.

SafeSandbox loggers follow ``settings.log_level``. The HTTP client stack
is held at WARNING so every mediated fetch does not show up twice.
"""

import logging
import sys
from typing import Literal

from safesandbox.settings import get_settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

# httpx and httpcore log each forwarded request on their own
NOISY_LOGGERS = ("httpcore", "httpx", "asyncio")


def configure_logging(level: LogLevel | None = None) -> None:
    """Send logs to stderr at ``level`` (defaults to ``settings.log_level``)."""
    log_level = getattr(logging, level or get_settings().log_level)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(levelname)s | %(name)s | %(message)s"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("safesandbox").setLevel(log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


configure_logging()
