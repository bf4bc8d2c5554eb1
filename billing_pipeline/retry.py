import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when every attempt failed. ``last_error`` holds the final failure."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def linear_backoff(unit: float = 1.0) -> Callable[[int], float]:
    """Delay after failed attempt ``n`` (1-based) is ``n * unit`` seconds."""

    def delay(attempt: int) -> float:
        return attempt * unit

    return delay


def retry_with_backoff(
    fn: Callable[[], T],
    attempts: int,
    delay: Callable[[int], float],
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or ``attempts`` calls have failed.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    immediately. There is no sleep after the last failed attempt.

    Raises:
        RetryExhausted: every attempt failed with a retryable error
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: BaseException = RuntimeError("no attempt made")
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last_error = e
            logger.warning(f"{description} attempt {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                sleep(delay(attempt))

    raise RetryExhausted(attempts, last_error)
