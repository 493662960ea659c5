"""
ArcVault - Logging

structlog on top of stdlib logging. Events are dotted names with key/value
context (e.g. "scheduler.sweep.done", pruned=3). Record payloads are never
logged.
"""

from typing import Optional
import logging
import sys

import structlog

_HANDLER_NAME = "arcvault"


def configure_logging(
    debug: bool = False,
    logfile: Optional[str] = None,
    json_output: bool = True
) -> None:
    """
    Configure structured logging for the whole process.

    Args:
        debug: Emit DEBUG events (default level is INFO)
        logfile: Write to this file instead of standard error
        json_output: Render JSON lines; False renders a console format
    """
    level = logging.DEBUG if debug else logging.INFO

    if logfile:
        handler: logging.Handler = logging.FileHandler(logfile, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.set_name(_HANDLER_NAME)

    # Replace only the handler installed by an earlier call
    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)
            existing.close()
    root.addHandler(handler)
    root.setLevel(level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
