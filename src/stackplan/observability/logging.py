"""structlog setup for the CLI."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from stackplan.config.models import LogFormat, LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Route structlog through stdlib logging on stderr.

    Rich console output owns stdout, so log lines never interleave with
    plan tables or outputs.
    """
    config = config or LoggingConfig()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=config.level,
        force=True,
    )

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if config.format == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
