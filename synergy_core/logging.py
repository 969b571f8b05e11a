"""Structured logging for Synergy Core.

Events are key/value pairs. ``run_context`` binds the id of an
orchestration run so that catalog, provider and normalizer events emitted
while the run is live can be correlated.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, TextIO

import structlog

from synergy_core.config import get_config
from synergy_core.exceptions import ConfigurationError

LOG_FORMATS = ("console", "json", "logfmt")


def _renderer(fmt: str, stream: TextIO) -> structlog.types.Processor:
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=stream.isatty())
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    if fmt == "logfmt":
        return structlog.processors.LogfmtRenderer(sort_keys=True)
    raise ConfigurationError(f"Unknown log format '{fmt}', expected one of {', '.join(LOG_FORMATS)}")


def configure_logging(level: str | None = None, stream: TextIO | None = None) -> None:
    """Configure structlog from the ``logging`` config section.

    Output goes to stderr unless ``stream`` is given, so it never mixes
    with assistant replies printed on stdout.
    """
    config = get_config().logging
    stream = stream or sys.stderr

    level_name = (level or config.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _renderer(config.format.lower(), stream),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


@contextmanager
def run_context(run_id: str, **extra: object) -> Iterator[None]:
    """Bind ``run_id`` (and any extra keys) to every event logged inside."""
    with structlog.contextvars.bound_contextvars(run_id=run_id, **extra):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
