"""
Relive Logging

structlog setup shared by hosts that embed the engine.
"""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from relive.core.config import get_config


def setup_logging(log_level: Optional[str] = None, json: bool = True) -> None:
    """Configure structured logging."""
    level = log_level or get_config().log_level.value
    logging.basicConfig(format="%(message)s", level=getattr(logging, level))

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
