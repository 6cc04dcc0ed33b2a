"""Logging configuration for code-recall.

The library only emits events through ``structlog.get_logger()``; the
embedding application decides whether and how they are rendered by calling
:func:`configure_logging` once at startup.
"""

import logging
import sys
from typing import TextIO

import structlog

_configured = False


def configure_logging(
    debug: bool = False,
    stream: TextIO | None = None,
    force: bool = False,
) -> None:
    """Configure structlog for code-recall events.

    Args:
        debug: If True, enable debug level and console output.
               If False, use info level and JSON output.
        stream: Where rendered events go. Defaults to stderr.
        force: Reconfigure even if logging was already configured.
    """
    global _configured
    if _configured and not force:
        return

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )

    _configured = True
