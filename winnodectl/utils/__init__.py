"""Utility functions and helpers for winnodectl."""
import logging
import time
from typing import Any, Callable, Optional, TypeVar

from winnodectl.errors import RetryError

T = TypeVar('T')

REDACT_KEYS = ("key", "password", "secret", "token", "userdata")

logger = logging.getLogger("winnodectl.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key in str(k).lower().replace("_", "").replace("-", "")
                for redact_key in REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def poll(
    check: Callable[[], Optional[T]],
    interval: float,
    attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    immediate: bool = True,
) -> T:
    """Call ``check`` until it returns a truthy value.

    The budget is bounded by ``attempts``, by ``timeout`` seconds, or both.
    Exceptions raised by ``check`` propagate unchanged.

    Args:
        check: Callable returning a truthy value once the condition holds
        interval: Seconds to sleep between attempts
        attempts: Maximum number of calls to ``check``
        timeout: Maximum wall-clock seconds spent polling
        description: What is being waited for, used in the error message
        sleep: Sleep function, injectable for tests
        immediate: Run the first check before sleeping

    Returns:
        The first truthy value returned by ``check``

    Raises:
        RetryError: If the budget is exhausted
    """
    if attempts is None and timeout is None:
        raise ValueError("poll requires attempts, timeout or both")

    deadline = time.monotonic() + timeout if timeout is not None else None
    attempt = 0
    while True:
        if attempt > 0 or not immediate:
            sleep(interval)
        attempt += 1
        result = check()
        if result:
            return result
        if attempts is not None and attempt >= attempts:
            break
        if deadline is not None and time.monotonic() + interval > deadline:
            break
        logger.debug(f"Waiting for {description} (attempt {attempt})")

    raise RetryError(f"timeout waiting for {description}")
