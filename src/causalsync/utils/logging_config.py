"""Structured logging configuration for causalsync processes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import structlog


def setup_logging(
    level: str = "INFO",
    node_id: Optional[str] = None,
    component: Optional[str] = None,
    log_path: Optional[str | Path] = None,
    json_logs: Optional[bool] = None,
) -> structlog.BoundLogger:
    """Configure structured logging and return a bound logger.

    With ``log_path`` set, records (including the clock audit trail) go to
    that file instead of stderr, leaving the console to the command loop.
    Output is JSON for files and plain key=value text for stderr unless
    ``json_logs`` says otherwise.
    """

    handlers: list[logging.Handler] = []
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )

    if json_logs is None:
        json_logs = bool(log_path)
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    logger = structlog.get_logger()
    if node_id:
        logger = logger.bind(node_id=node_id)
    if component:
        logger = logger.bind(component=component)
    return logger
