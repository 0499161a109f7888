"""
data-handler — structured logging.

File: src/data_handler/observability/logging.py

Purpose
- Render every ``structlog`` event and every standard-library record under the
  ``data_handler`` logger as one JSON object per line.
- Bind correlation fields (``handler_id``, ``operation``, ...) for the duration
  of a scope so that each line emitted inside it carries them.

Functional requirements
- Correlation fields live in ``structlog.contextvars`` and follow work handed to
  ``asyncio.to_thread``, which copies the current context.
- Reconfiguring replaces the previously installed handler.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Final

import structlog

DEFAULT_LOGGER_NAME: Final[str] = "data_handler"

_installed: dict[str, logging.Handler] = {}


@contextmanager
def correlation_scope(**fields: str) -> Iterator[None]:
    """Bind correlation fields for log events emitted inside the scope."""

    cleaned: dict[str, str] = {}
    for key, value in fields.items():
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"correlation field {key!r} must not be empty")
        cleaned[key] = value.strip()
    with structlog.contextvars.bound_contextvars(**cleaned):
        yield


def get_correlation_context() -> dict[str, object]:
    return dict(structlog.contextvars.get_contextvars())


def configure_structlog(
    *,
    level: int | str = "INFO",
    stream: IO[str] | None = None,
    log_file: str | Path | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> logging.Handler:
    """Install a JSON-lines handler on ``logger_name`` and route structlog through it.

    Output goes to ``log_file`` when given, otherwise to ``stream`` (stderr by
    default). Returns the installed handler.
    """

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*shared, structlog.stdlib.ExtraAdder()],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )

    logger = logging.getLogger(logger_name)
    previous = _installed.pop(logger_name, None)
    if previous is not None:
        logger.removeHandler(previous)
        previous.close()
    logger.addHandler(handler)
    logger.setLevel(_parse_level(level))
    logger.propagate = False
    _installed[logger_name] = handler
    return handler


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelNamesMapping().get(value.strip().upper())
    if resolved is None:
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


__all__ = [
    "DEFAULT_LOGGER_NAME",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
]
