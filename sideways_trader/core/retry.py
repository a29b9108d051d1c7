"""
Bounded retry with exponential backoff for blocking Binance REST calls.

Only transient failures are retried (rate limits, exchange-side internal
errors, 5xx). Everything else is re-raised on the first attempt so the
gateway can translate it into an ExchangeError. The decision engine itself
never retries; the next scheduled cycle is its retry.
"""

import logging
import time
from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple, Type

from binance.error import ClientError, ServerError

# Binance error codes worth retrying
RETRYABLE_ERROR_CODES = {
    -1003,  # Too many requests
    -1001,  # Internal error; unable to process your request
}

RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}


def describe_error(exc: Exception) -> Dict[str, Any]:
    """Flatten a connector exception into loggable fields."""
    if isinstance(exc, ClientError):
        return {
            "status_code": exc.status_code,
            "error_code": exc.error_code,
            "error_message": exc.error_message,
        }
    if isinstance(exc, ServerError):
        return {"status_code": exc.status_code, "message": exc.message}
    return {"type": type(exc).__name__, "message": str(exc)}


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return exc.error_code in RETRYABLE_ERROR_CODES or exc.status_code in RETRYABLE_HTTP_STATUS
    return False


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (ClientError, ServerError),
    on_retry: Optional[Callable[[str, int, Exception, float], None]] = None,
):
    """
    Retry a blocking call on transient exchange errors.

    Args:
        max_retries: Retries after the first attempt (default: 3)
        initial_delay: Seconds before the first retry (default: 1.0)
        backoff_factor: Delay multiplier per retry (default: 2.0)
        retryable_exceptions: Exception types inspected for retry
        on_retry: Optional hook ``(func_name, attempt, exc, delay)`` called
            before each sleep, e.g. to write an audit record

    With the defaults the delays are 1s, 2s, 4s.

    Usage:
        @retry_with_backoff(max_retries=2, initial_delay=0.5)
        def _call(self, method, **params):
            return method(**params)
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__)
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except retryable_exceptions as e:
                    info = describe_error(e)
                    if attempt == max_retries or not is_retryable(e):
                        logger.error(
                            f"{func.__name__} failed after {attempt + 1} attempts: {info}"
                        )
                        raise

                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{max_retries} failed: "
                        f"{info}. Retrying in {delay}s..."
                    )
                    if on_retry is not None:
                        on_retry(func.__name__, attempt + 1, e, delay)

                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper

    return decorator
