"""Bounded retry with exponential backoff."""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    retry_on: Tuple[Type[BaseException], ...],
    max_retries: int = 3,
    retry_delay_base: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "operation",
) -> T:
    """Call ``fn`` up to ``max_retries + 1`` times.

    Delay before retry n (0-based) is ``retry_delay_base * 2 ** n``.
    The last exception is re-raised once retries are exhausted; exceptions
    outside ``retry_on`` propagate immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(
                    f"{operation} failed after {max_retries + 1} attempts: {e}",
                    extra={"attempt": attempt + 1}
                )
                raise
            delay = retry_delay_base * (2 ** attempt)
            logger.warning(
                f"{operation} failed on attempt {attempt + 1}: {e}; retrying in {delay}s",
                extra={"attempt": attempt + 1}
            )
            sleep(delay)
    raise AssertionError("unreachable")
