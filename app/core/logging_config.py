"""
structlog setup for the ingestion pipeline.

JSON lines when ENVIRONMENT is "production" (or on Railway), console output
otherwise. Level comes from LOG_LEVEL.

Per-symbol context is carried through contextvars, so everything logged
inside one bulk refresh unit is tagged with its symbol:

    with structlog.contextvars.bound_contextvars(symbol="AAPL"):
        logger.info("market data stored", close=Decimal("189.25"))

Output in production (JSON):
    {"symbol": "AAPL", "close": "189.25", "event": "market data stored",
     "level": "info", "timestamp": "2024-03-04T15:30:00.000000Z"}
"""

import logging
import os
import sys
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

import structlog

from app.core.config import settings

IS_TEST = "pytest" in sys.modules


def _is_production() -> bool:
    return settings.ENVIRONMENT == "production" or os.getenv("RAILWAY_ENVIRONMENT") is not None


def stringify_values(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Render prices and dates as plain strings so every renderer agrees on them."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = format(value, "f")
        elif isinstance(value, (date, datetime)):
            event_dict[key] = value.isoformat()
    return event_dict


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Configure structlog and stdlib logging. Safe to call more than once."""
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    if json_logs is None:
        json_logs = _is_production()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        stringify_values,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.ConsoleRenderer(colors=not IS_TEST)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=not IS_TEST,
    )

    # SQLAlchemy and httpx log through stdlib
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for noisy in ("httpx", "httpcore", "asyncio", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


configure_logging()
