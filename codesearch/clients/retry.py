"""Retry with exponential backoff for collaborator calls."""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import structlog

from ..common.errors import CircuitBreakerError

logger = structlog.get_logger("retry")


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    operation_name: str,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> Any:
    """Await ``func()`` until it succeeds or ``max_attempts`` is reached.

    An open circuit breaker aborts immediately; retrying it only burns budget.
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except CircuitBreakerError as cb_error:
            logger.error(
                "Circuit breaker open, aborting retries",
                operation=operation_name,
                error=str(cb_error)
            )
            raise
        except retryable_exceptions as exc:
            last_exception = exc

            if attempt == max_attempts:
                logger.error(
                    "Operation failed after retries",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(exc)
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                "Operation failed, retrying",
                operation=operation_name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay_seconds=delay,
                error=str(exc)
            )
            await asyncio.sleep(delay)

    if last_exception:
        raise last_exception
    raise RuntimeError(f"Retry logic failed for {operation_name}")
