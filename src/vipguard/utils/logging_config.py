"""Structured logging for vipguard nodes.

Every line is one JSON object. Loggers handed out by `get_logger` carry the
node id and the component that emitted the line, so the output of several
nodes (or the failover demo, which runs them all in one process) can be
interleaved and still filtered per node:

    {"event": "transition", "node_id": "lb1", "component": "election", ...}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import structlog

from vipguard.config.settings import settings
from vipguard.utils.errors import ConfigurationError

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Third-party loggers that are noisy at INFO on every status poll
_QUIET = ("uvicorn.access", "httpx", "urllib3")


def resolve_level(level: str) -> int:
    name = str(level).strip().upper()
    if name not in LEVELS:
        raise ConfigurationError(f"Unknown log level {level!r} (expected one of {', '.join(LEVELS)})")
    return getattr(logging, name)


def setup_logging(
    level: Optional[str] = None,
    node_id: Optional[str] = None,
    component: str = "vipguard",
    log_path: Optional[str | Path] = None,
) -> structlog.BoundLogger:
    """Configure stdlib + structlog and return a logger bound to node/component.

    `level` and `log_path` fall back to VIPGUARD_LOG_LEVEL / VIPGUARD_LOG_FILE.
    An unknown level name raises ConfigurationError before anything changes.
    """
    numeric = resolve_level(level or settings.LOG_LEVEL)
    log_path = log_path or settings.LOG_FILE

    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    logging.basicConfig(level=numeric, format="%(message)s", handlers=[handler], force=True)
    for name in _QUIET:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="ISO", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return get_logger("vipguard", node_id=node_id, component=component)


def get_logger(name: str, node_id: Optional[str] = None, component: Optional[str] = None) -> structlog.BoundLogger:
    """Fresh logger per call; bind happens against the current configuration."""
    context = {}
    if node_id:
        context["node_id"] = node_id
    if component:
        context["component"] = component
    logger = structlog.get_logger(name)
    return logger.bind(**context) if context else logger
