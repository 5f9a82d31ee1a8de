"""Retry wrapper for step executor calls."""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .exceptions import WorkflowEngineError
from .logging import RetryLogger


retry_logger = RetryLogger("executor")


class RetryPolicy:
    """Fixed-delay retry configuration for a single node."""

    def __init__(self, max_retries: int = 0, retry_delay: float = 1.0):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, exception: BaseException, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        # Engine errors declare themselves; anything else an executor raises is retried
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return True

    def get_delay(self, attempt: int) -> float:
        return self.retry_delay

    def __repr__(self) -> str:
        return f"RetryPolicy(max_retries={self.max_retries}, retry_delay={self.retry_delay})"


@dataclass
class ExecutionOutcome:
    """Result of running a call under a retry policy."""
    ok: bool
    attempts: int
    result: Any = None
    error: Optional[BaseException] = None


FailureCallback = Callable[[int, BaseException], Awaitable[None]]


async def execute_with_retry(
    func: Callable[..., Any],
    policy: RetryPolicy,
    *args,
    operation: Optional[str] = None,
    on_failure: Optional[FailureCallback] = None,
    **kwargs
) -> ExecutionOutcome:
    """
    Run ``func`` until it succeeds or the policy gives up.

    ``func`` may be a coroutine function or a plain callable. Exceptions are
    never propagated; the caller inspects the returned outcome instead.

    Args:
        func: Callable to execute
        policy: Retry policy to apply
        operation: Name used in retry log messages
        on_failure: Awaited with (attempt, exception) after every failed attempt

    Returns:
        ExecutionOutcome: ok with the result, or the last error and attempt count
    """
    operation = operation or getattr(func, "__name__", "operation")

    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            if attempt > 1:
                retry_logger.recovered(operation, attempt)
            return ExecutionOutcome(ok=True, attempts=attempt, result=result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if on_failure is not None:
                await on_failure(attempt, e)

            if not policy.should_retry(e, attempt):
                retry_logger.gave_up(operation, e, attempt)
                return ExecutionOutcome(ok=False, attempts=attempt, error=e)

            retry_logger.retrying(operation, e, attempt, policy.max_attempts)
            delay = policy.get_delay(attempt)
            if delay > 0:
                await asyncio.sleep(delay)
