"""structlog configuration."""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", pretty: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Logs go to stderr so stdout stays free for command output.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        pretty: Human-readable console output instead of JSON lines
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stderr,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if pretty:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
