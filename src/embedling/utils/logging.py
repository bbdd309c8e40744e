import logging
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from embedling.config import resolve_log_level


def setup_logging(level: int | str | None = None) -> None:
    """Configure structlog; the level defaults to EMBEDLING_LOG_LEVEL, then DEBUG."""
    logging.getLogger("embedling").setLevel(resolve_log_level(level=level))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # picks up logging_context bindings
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context) -> Iterator[None]:
    """Bind context vars for the duration of the block, keeping outer bindings."""
    current = structlog.contextvars.get_contextvars()
    to_bind = {k: v for k, v in required_context.items() if k not in current}

    if to_bind:
        with structlog.contextvars.bound_contextvars(**to_bind):
            yield
    else:
        yield
