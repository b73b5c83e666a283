"""Retry helpers for transient storage failures and component health checks."""

import asyncio
import random
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type

from ..models.core import BackoffPolicy, utcnow
from .exceptions import StorageError, TransientError, WorkflowEngineError
from .logging import ErrorRecoveryLogger, get_logger


logger = get_logger(__name__)


class RetryConfig:
    """
    How often and how long to wait when a store call fails.

    Delays follow the same BackoffPolicy the job queue uses for job attempts,
    optionally scaled by a random jitter factor in [0.5, 1.0).
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (TransientError, StorageError)
    ):
        self.max_attempts = max_attempts
        self.backoff = backoff or BackoffPolicy(delay=0.5, max_delay=10.0)
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not isinstance(error, self.retryable_exceptions):
            return False
        # An engine error can opt out even when its type is listed
        return not isinstance(error, WorkflowEngineError) or error.recoverable

    def get_delay(self, attempt: int) -> float:
        delay = self.backoff.compute_delay(attempt)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


STORAGE_RETRY = RetryConfig(max_attempts=3, backoff=BackoffPolicy(delay=0.1, max_delay=2.0))


def with_retry(config: Optional[RetryConfig] = None):
    """Retry the decorated call according to ``config``."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        retry_logger = ErrorRecoveryLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        if attempt > 1:
                            retry_logger.gave_up(e, attempt)
                        raise
                    retry_logger.attempt_failed(e, attempt, config.max_attempts)
                    time.sleep(config.get_delay(attempt))
                    attempt += 1
                    continue

                if attempt > 1:
                    retry_logger.recovered(attempt)
                return result

        return wrapper

    return decorator


class HealthChecker:
    """Runs named component checks with a per-check timeout."""

    def __init__(self):
        self.checks: Dict[str, Tuple[Callable[[], Any], float]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable[[], Any], timeout: float = 5.0):
        """
        Register a check. It may be a plain function or a coroutine function;
        returning a string sets the message, returning a dict merges into the
        result, raising marks the component unhealthy.
        """
        self.checks[name] = (check_func, timeout)
        logger.debug(f"Registered health check: {name}")

    def unregister_check(self, name: str):
        self.checks.pop(name, None)
        self.last_results.pop(name, None)

    async def run_check(self, name: str) -> Dict[str, Any]:
        if name not in self.checks:
            return {"status": "error", "message": f"Health check '{name}' not found",
                    "timestamp": utcnow().isoformat()}

        check_func, timeout = self.checks[name]
        started = time.monotonic()
        try:
            if asyncio.iscoroutinefunction(check_func):
                outcome = await asyncio.wait_for(check_func(), timeout=timeout)
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(check_func), timeout=timeout)
            result = {"status": "healthy", "message": outcome if isinstance(outcome, str) else "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {timeout}s"}
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {str(e)}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        result["timestamp"] = utcnow().isoformat()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in list(self.checks)}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": utcnow().isoformat()
        }
