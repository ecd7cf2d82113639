"""
Observability Module.

Structured logging with JSON or console output and pipeline log context.
"""

from src.observability.logging import (
    LogContext,
    configure_logging,
    current_log_context,
    get_logger,
)

__all__ = [
    "configure_logging",
    "current_log_context",
    "get_logger",
    "LogContext",
]
