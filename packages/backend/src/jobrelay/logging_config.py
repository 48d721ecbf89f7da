"""structlog configuration shared by the API server and the relay process.

Learn: Modules only ever call structlog.get_logger() and log dotted event
names with keyword context (message_id, job_id, session_id...). How those
entries are rendered — colored console in development, one JSON object
per line in production — is decided once, here.
"""

import logging
import sys

import structlog

from jobrelay.config import settings


def configure_logging(json_output: bool | None = None, level: int | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Safe to call more than once; the last call wins.
    """
    if json_output is None:
        json_output = settings.log_json
    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )

    # Third-party libraries (uvicorn, redis, sqlalchemy) log through stdlib.
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
