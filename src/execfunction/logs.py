"""Structured logging helpers for execfunction.

Loggers are ``structlog`` bound loggers wrapping stdlib ``logging`` loggers,
so the host application's logging configuration decides where records go.
Nothing here touches the root logger; :func:`configure_logging` only
attaches a handler to the ``execfunction`` logger tree.

Configuration is read from environment variables:

- ``EXECFUNCTION_LOG_LEVEL``: DEBUG | INFO | WARNING | ERROR (default: WARNING)
"""

import logging
import os
import sys

import structlog

LOG_LEVEL_ENV: str = "EXECFUNCTION_LOG_LEVEL"
ROOT_LOGGER_NAME: str = "execfunction"
_HANDLER_NAME: str = "execfunction-stderr"


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger backed by the stdlib logger ``name``.

    :param name: Stdlib logger name, usually ``__name__``.
    :returns: Bound structured logger.
    """
    return structlog.wrap_logger(
        logging.getLogger(name),
        wrapper_class=structlog.stdlib.BoundLogger,
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event", "level"]),
        ],
    )


def configure_logging(level: str | None = None) -> None:
    """Send ``execfunction`` log records to standard error.

    Subsequent calls only adjust the level.

    :param level: Log level name; overrides ``EXECFUNCTION_LOG_LEVEL``.
    """
    log_level: str = (level or os.environ.get(LOG_LEVEL_ENV, "WARNING")).upper()
    package_logger: logging.Logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(getattr(logging, log_level, logging.WARNING))

    for handler in package_logger.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s: %(message)s"))
    package_logger.addHandler(handler)
    package_logger.propagate = False
