"""
Error taxonomy and unified error handling for the market data pipeline.

Provides:
- Typed exceptions for the failure classes the pipeline distinguishes
  (invalid data, provider failure, unresolvable symbol)
- Structured logging of captured exceptions with context enrichment
- A context manager for best-effort operations whose failures are logged
  and swallowed

Usage:
    # Capture an exception
    capture_exception(exc, context={"symbol": "AAPL"})

    # Best-effort work: failure is logged, not raised
    with ErrorHandler("update_sector", context={"symbol": "AAPL"}):
        registry.update_security_sector(security)
"""

from typing import Optional, Any, Dict
from datetime import datetime, timezone

import structlog

logger = structlog.get_logger(__name__)

__all__ = [
    "MarketDataError",
    "InvalidMarketDataError",
    "ProviderError",
    "SecurityResolutionError",
    "capture_exception",
    "ErrorHandler",
]


class MarketDataError(Exception):
    """Base class for every failure raised by the ingestion pipeline."""


class InvalidMarketDataError(MarketDataError):
    """A quote, candle or record failed validation and must not be persisted."""

    def __init__(self, reason: str, symbol: Optional[str] = None):
        self.reason = reason
        self.symbol = symbol
        prefix = f"{symbol}: " if symbol else ""
        super().__init__(f"{prefix}invalid market data: {reason}")


class ProviderError(MarketDataError):
    """The upstream provider call failed after its retry budget was spent."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")


class SecurityResolutionError(MarketDataError):
    """A symbol could not be mapped to a security and could not be created."""

    def __init__(self, symbol: str, detail: Optional[str] = None):
        self.symbol = symbol
        message = f"Unable to find or create security for symbol: {symbol}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
) -> None:
    """
    Log an exception with structured context.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"symbol": "AAPL"})
        level: Severity level (debug, info, warning, error)
    """
    enriched_context = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        "error": str(exc),
        **(context or {}),
    }

    log_func = getattr(logger, level, logger.error)
    log_func("Exception captured", **enriched_context)


class ErrorHandler:
    """
    Context manager that logs and suppresses errors from best-effort work.

    Usage:
        with ErrorHandler("update_sector", context={"symbol": "AAPL"}):
            enrich(...)

    Args:
        operation: Name of the operation (for grouping in logs)
        context: Additional context dict
        level: Log level used for the captured exception
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        level: str = "warning",
    ):
        self.operation = operation
        self.context = context or {}
        self.level = level

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None or not isinstance(exc_val, Exception):
            return False

        capture_exception(
            exc_val,
            context={"operation": self.operation, **self.context},
            level=self.level,
        )
        return True
