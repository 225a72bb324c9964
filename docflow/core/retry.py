"""Retry with exponential backoff for transient collaborator failures."""

import asyncio
import random
from typing import Awaitable, Callable, Any, Optional, List, Type

from .exceptions import WorkflowEngineError, TransientSourceError
from .logging import get_logger, RetryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientSourceError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False
        return any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    config: RetryConfig,
    *args,
    operation: Optional[str] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying retryable failures.

    Non-retryable exceptions propagate on the first occurrence. When the
    attempt ceiling is reached the last exception is re-raised.
    """
    operation = operation or getattr(func, "__name__", "operation")
    retry_logger = RetryLogger(operation)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(*args, **kwargs)
            if attempt > 1:
                retry_logger.log_retry_success(operation, attempt)
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if isinstance(e, WorkflowEngineError) and e.recoverable:
                    e.add_details(attempts=attempt)
                retry_logger.log_retry_failure(operation, e, attempt)
                raise

            delay = config.get_delay(attempt)
            retry_logger.log_retry_attempt(operation, e, attempt, config.max_attempts, delay)
            await sleep(delay)
