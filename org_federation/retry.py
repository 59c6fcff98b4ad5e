"""
Retry policy for provider transports.

HTTP and LDAP providers build a RetryPolicy from their target's
``error_handling`` settings and run transport calls through it. Only
idempotent requests are repeated; a POST that failed after the server may
already have acted on it is reported, not resent. The federation core itself
never retries.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

IDEMPOTENT_METHODS = frozenset({'GET', 'HEAD', 'PUT', 'PATCH', 'DELETE'})


class RetryableError(Exception):
    """Base exception for errors that should trigger retries."""
    pass


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(func: Callable, args: tuple = (), max_attempts: int = 3, delay: float = 1.0,
               backoff: float = 1.0, exceptions: Tuple[Type[Exception], ...] = (RetryableError,),
               operation: str = 'operation') -> Any:
    """
    Call func(*args), retrying on the given exception types.

    Args:
        func: Function to call
        args: Positional arguments for func
        max_attempts: Attempts including the first; values below 1 mean 1
        delay: Seconds to wait before the first retry
        backoff: Delay multiplier applied after each retry
        exceptions: Exception types that trigger a retry
        operation: Name used in retry log messages

    Raises:
        MaxRetriesExceeded: If every attempt failed with a retryable error
    """
    attempts = max(1, max_attempts)
    wait = delay

    for attempt in range(1, attempts + 1):
        try:
            result = func(*args)
        except exceptions as e:
            if attempt == attempts:
                raise MaxRetriesExceeded(attempts, e)
            logger.warning(f"{operation} failed on attempt {attempt}/{attempts}, "
                           f"retrying in {wait:.1f}s due to {type(e).__name__}: {e}")
            time.sleep(wait)
            wait *= backoff
        else:
            if attempt > 1:
                logger.info(f"{operation} succeeded on attempt {attempt}")
            return result


@dataclass
class RetryPolicy:
    """How often and how patiently a provider repeats a failed transport call."""

    max_retries: int = 3
    wait_seconds: float = 1.0
    backoff: float = 2.0

    @classmethod
    def from_config(cls, error_config: Optional[Dict[str, Any]], **defaults) -> 'RetryPolicy':
        settings = dict(defaults)
        error_config = error_config or {}
        for key, attribute in (('max_retries', 'max_retries'),
                               ('retry_wait_seconds', 'wait_seconds'),
                               ('retry_backoff', 'backoff')):
            if key in error_config:
                settings[attribute] = error_config[key]
        return cls(**settings)

    def attempts_for(self, method: Optional[str] = None) -> int:
        """Total attempts for an HTTP method; None means a non-HTTP call such as an LDAP bind."""
        if method is not None and method.upper() not in IDEMPOTENT_METHODS:
            return 1
        return self.max_retries + 1

    def run(self, func: Callable, *args, operation: str, method: Optional[str] = None,
            exceptions: Tuple[Type[Exception], ...] = (RetryableError,)) -> Any:
        """
        Run func(*args) under this policy.

        The last failure is re-raised as-is once the attempts run out, so
        callers see the provider's own exception rather than a wrapper.
        """
        try:
            return retry_call(
                func, args,
                max_attempts=self.attempts_for(method),
                delay=self.wait_seconds,
                backoff=self.backoff,
                exceptions=exceptions,
                operation=operation,
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception
