"""Logging config for tenant database routing

## Setup

Logging is configured when this module is imported. It uses structlog for structured logging. Logs are
pretty-printed in the local env (APP_ENVIRONMENT='local') and are JSON-formatted in other envs.

```
from tenancy.utils.logging import get_logger

logger = get_logger(__name__)
logger.info("Resolved tenant database", organization_id="org_123", dedicated=True)
```

## Log context

Use LogContext to add context to every log message inside a block of the current async context. The provisioner
binds `organization_id` this way for the duration of a provisioning run:

```
from tenancy.utils.logging import LogContext, get_logger

logger = get_logger(__name__)
with LogContext(organization_id="org_123"):
    logger.info("Creating Railway project")  # Includes organization_id
```

### Standard logging integration

Python's standard `logging` module is routed through structlog, so library loggers (asyncpg, httpx) are formatted
the same way.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import structlog
import structlog.contextvars

from tenancy.utils.config import get_environment
from tenancy.utils.newrelic_logging import newrelic_error_processor


def _is_local_environment() -> bool:
    return get_environment() == "local"


def _get_log_renderer() -> structlog.types.Processor:
    """Get the appropriate renderer based on environment.

    Can be overridden with LOG_RENDERER environment variable:
    - 'console': Force ConsoleRenderer (human-readable with colors)
    - 'json': Force JSONRenderer (structured JSON output)
    """
    log_renderer = os.getenv("LOG_RENDERER", "").lower()
    if log_renderer == "console":
        use_console = True
    elif log_renderer == "json":
        use_console = False
    else:
        use_console = _is_local_environment()

    if use_console:
        return structlog.dev.ConsoleRenderer(
            colors=True,
            pad_event_to=0,
            force_colors=False,
            repr_native_str=False,
            exception_formatter=structlog.dev.plain_traceback,
            sort_keys=True,
            event_key="message",
        )
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Configure structlog with environment-appropriate settings using built-in contextvars.

    Local development: Human-readable console output with colors
    Elsewhere: JSON format for log aggregation
    """
    common_processors: list[structlog.types.Processor] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.contextvars.merge_contextvars,
        structlog.processors.EventRenamer("message"),
        newrelic_error_processor,
        structlog.stdlib.filter_by_level,  # Must come after add_log_level
    ]

    structlog.configure(
        processors=common_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib loggers do their own level filtering, and filter_by_level expects a structlog logger
    foreign_processors = [p for p in common_processors if p != structlog.stdlib.filter_by_level]
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(),
            foreign_pre_chain=foreign_processors,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(stream_handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))


configure_logging()


LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    """Get a logger instance. Wrapper around structlog.get_logger for convenience.

    Args:
        name: Logger name (usually __name__ from the calling module)
    """
    return structlog.get_logger(name, **kwargs)
