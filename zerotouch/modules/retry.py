"""Bounded retry with a fixed delay between attempts."""
import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import TransientError

logger = logging.getLogger("zerotouch.retry")

T = TypeVar('T')


class RetryExecutor:
    """Call a function up to ``max_attempts`` times.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates on the first occurrence. After the last attempt the final
    error is re-raised unchanged.
    """

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    ):
        self._sleep = sleep
        self.retry_on = retry_on

    def run(
        self,
        fn: Callable[[], T],
        max_attempts: int = 3,
        delay: float = 5.0,
        description: Optional[str] = None,
    ) -> T:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        label = description or getattr(fn, "__name__", "operation")
        for attempt in range(1, max_attempts + 1):
            try:
                return fn()
            except self.retry_on as e:
                if attempt >= max_attempts:
                    if max_attempts > 1:
                        logger.error(f"{label} failed after {max_attempts} attempts: {e}")
                    raise
                logger.warning(
                    f"{label} failed (attempt {attempt}/{max_attempts}): {e}. "
                    f"Retrying in {delay:.0f}s..."
                )
                self._sleep(delay)

        raise AssertionError("unreachable")
