"""Logging setup and secret masking helpers.

Application code logs through the standard :mod:`logging` module.  At startup
:func:`setup_logging` routes every record through a ``structlog``
``ProcessorFormatter`` so stdlib records pick up context bound with
``structlog.contextvars`` (the correlation middleware binds
``correlation_id``) and render either as console lines or JSON.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

from atlasweb_auth.utils.environment import env_flag


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Return *value* with everything but the first *keep_chars* replaced.

    >>> mask_sensitive("4/0AbCdEfGh", 4)
    '4/0A*******'
    """
    if not value:
        return ""
    if len(value) <= keep_chars:
        return "*" * len(value)
    return value[:keep_chars] + "*" * (len(value) - keep_chars)


def setup_logging(level: str | int | None = None, *, json_output: bool | None = None) -> None:
    """Configure the root logger with a structlog formatter.

    Parameters
    ----------
    level:
        Log level name or number; defaults to ``ATLASWEB_LOG_LEVEL`` or INFO.
    json_output:
        Render JSON lines instead of console output; defaults to
        ``ATLASWEB_LOG_JSON``.
    """
    if level is None:
        level = os.getenv("ATLASWEB_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if json_output is None:
        json_output = env_flag("ATLASWEB_LOG_JSON")

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.ExtraAdder(),
            structlog.processors.TimeStamper(fmt="iso"),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
