'''
Structured logging configuration for Ledgerline.

structlog events and stdlib records from the core modules share one
processor chain and one handler: orjson-rendered JSON lines with the
logger name, bound context variables, and ISO 8601 UTC timestamps.
Call configure_logging() once at process startup before any other
initialization.
'''

import logging
import sys
from typing import Any, TextIO

import orjson
import structlog

__all__ = ['bind_context', 'clear_context', 'configure_logging', 'get_logger']


def _orjson_dumps_str(*args: Any, **kwargs: Any) -> str:

    '''
    Serialize to JSON string via orjson for stdlib ProcessorFormatter.

    Returns:
        str: JSON-encoded string
    '''

    return orjson.dumps(*args, **kwargs).decode()


def configure_logging(log_level: str = 'INFO', *, stream: TextIO | None = None) -> None:

    '''
    Route structlog and stdlib logging through a single JSON handler.

    Args:
        log_level (str): Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream (TextIO | None): Destination of the JSON lines, stdout when None
    '''

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso', utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(serializer=_orjson_dumps_str),
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)


def bind_context(**values: Any) -> None:

    '''
    Bind key-value pairs to every log line emitted from the current context.

    Args:
        **values (Any): Context fields, e.g. portfolio_id or op_id
    '''

    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:

    structlog.contextvars.clear_contextvars()


def get_logger(name: str | None = None) -> Any:

    '''
    Return a structlog logger backed by the stdlib logger called name.

    Args:
        name (str | None): Logger name recorded in the logger field

    Returns:
        Any: Bound structlog logger
    '''

    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)
