"""
Retry Executor with Exponential Backoff.

Provides retry mechanisms for external pipeline calls:
- Configurable attempts and delays
- Exponential backoff with optional jitter
- Pluggable retryable vs non-retryable classification
- Optional per-attempt timeout
"""

import asyncio
import inspect
import random
from dataclasses import dataclass, field, replace
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from neo4j.exceptions import (
    ClientError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from src.ingestion.errors import (
    IngestionError,
    PermanentRequestError,
    TransactionError,
    TransientIOError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


NON_RETRYABLE_PATTERNS = ("validation", "syntax", "invalid")

RETRYABLE_PATTERNS = (
    "timeout", "timed out",
    "connection", "network",
    "econnreset", "econnrefused", "etimedout",
    "rate limit", "too many requests", "429",
    "500", "502", "503", "504",
    "unavailable",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Default classifier separating transient from permanent failures.

    Taxonomy types decide first, then driver/transport exception types,
    then message patterns.
    """
    if isinstance(error, (PermanentRequestError, ValidationError)):
        return False
    if isinstance(error, TransientIOError):
        return True
    if isinstance(error, TransactionError):
        return error.retryable
    if isinstance(error, IngestionError):
        return error.cause is not None and is_retryable_error(error.cause)

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True

    # Neo4j: transient errors and lost connections are worth another attempt
    if isinstance(error, (TransientError, ServiceUnavailable, SessionExpired)):
        return True
    if isinstance(error, ClientError):
        return False

    if isinstance(error, (httpx.TimeoutException, httpx.ConnectError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500

    error_str = str(error).lower()

    if any(pattern in error_str for pattern in NON_RETRYABLE_PATTERNS):
        return False

    if "transaction" in error_str and any(
        word in error_str for word in ("rollback", "deadlock", "timeout")
    ):
        return True

    return any(pattern in error_str for pattern in RETRYABLE_PATTERNS)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 1.0      # seconds
    max_delay: float = 30.0         # seconds
    backoff_factor: float = 2.0
    jitter: float = 0.0             # fraction of the delay
    timeout: float | None = None    # per attempt, seconds
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable_error)

    def get_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def with_overrides(self, **changes: Any) -> "RetryPolicy":
        return replace(self, **changes)


class RetryExecutor:
    """
    Runs an operation under a RetryPolicy.

    Usage:
        executor = RetryExecutor(RetryPolicy(max_attempts=3))
        result = await executor.execute(call_model, prompt)

        @executor.wrap
        async def flaky():
            ...
    """

    def __init__(self, policy: RetryPolicy | None = None):
        self.policy = policy or RetryPolicy()
        self._total_retries = 0
        self._total_failures = 0

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_retries": self._total_retries,
            "total_failures": self._total_failures,
        }

    async def _attempt(
        self,
        operation: Callable[..., T | Awaitable[T]],
        policy: RetryPolicy,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> T:
        result = operation(*args, **kwargs)
        if inspect.isawaitable(result):
            if policy.timeout is not None:
                return await asyncio.wait_for(result, timeout=policy.timeout)
            return await result
        return result

    async def execute(
        self,
        operation: Callable[..., T | Awaitable[T]],
        *args: Any,
        policy: RetryPolicy | None = None,
        on_retry: Callable[[int, BaseException], None] | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Execute an operation with retry logic.

        Args:
            operation: Callable to execute (sync or async)
            *args: Positional arguments for the operation
            policy: Overrides the executor's policy for this call
            on_retry: Optional callback invoked as (attempt, error) before sleeping
            **kwargs: Keyword arguments for the operation

        Returns:
            Result of the operation

        Raises:
            The first non-retryable error, or the last error once attempts run out
        """
        policy = policy or self.policy
        max_attempts = max(1, policy.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._attempt(operation, policy, args, kwargs)

            except Exception as e:
                if not policy.is_retryable(e):
                    logger.warning(
                        "Non-retryable error, failing immediately",
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    self._total_failures += 1
                    raise

                if attempt >= max_attempts:
                    logger.error(
                        "All retries exhausted",
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    self._total_failures += 1
                    raise

                delay = policy.get_delay(attempt)
                self._total_retries += 1

                logger.warning(
                    "Retry scheduled",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=f"{delay:.2f}",
                    error_type=type(e).__name__,
                    error=str(e)[:100],
                )

                if on_retry:
                    on_retry(attempt, e)

                await asyncio.sleep(delay)

        raise RuntimeError("Retry loop completed without result or error")

    def wrap(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Decorator running ``func`` through :meth:`execute`."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.execute(func, *args, **kwargs)

        return wrapper


# Pre-configured policies for the pipeline's external calls
GENERATION_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=30.0)

SCHEMA_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=10.0)

GRAPH_RETRY_POLICY = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=30.0)
