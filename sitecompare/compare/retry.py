"""
Throttling retry policy for remote catalog calls.
"""

import threading
import time
from typing import Callable, Optional, TypeVar

from sitecompare.api.base import ThrottledError
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ThrottleRetryPolicy:
    """
    Retries an operation when the remote side throttles it.

    Delays double from ``base_delay`` up to ``max_delay`` (2, 4, 8, 16, 32, 64,
    120 seconds with the defaults). A Retry-After hint from the server replaces
    the computed delay but is still capped. Once ``max_retries`` is exhausted
    the ThrottledError is re-raised to the caller.

    ``retry_count`` is shared by every call made through the policy, so one
    policy instance is used per run.
    """

    def __init__(
        self,
        max_retries: int = 7,
        base_delay: float = 2.0,
        max_delay: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._lock = threading.Lock()
        self._retry_count = 0

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retry_count

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Compute the delay before retry number ``attempt`` (0-based).

        Args:
            attempt: How many retries this call already made
            retry_after: Server supplied delay in seconds, if any

        Returns:
            Delay in seconds
        """
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def execute(self, operation: Callable[[], T], description: str = "remote call") -> T:
        """
        Run ``operation``, retrying while it raises ThrottledError.

        Args:
            operation: Zero-argument callable performing the remote call
            description: Label used in log messages

        Returns:
            Whatever ``operation`` returns

        Raises:
            ThrottledError: If the call is still throttled after max_retries
        """
        attempt = 0
        while True:
            try:
                return operation()
            except ThrottledError as e:
                if attempt >= self.max_retries:
                    logger.warning(
                        "Giving up after repeated throttling",
                        operation=description,
                        retries=attempt
                    )
                    raise

                delay = self.delay_for(attempt, e.retry_after)
                attempt += 1
                with self._lock:
                    self._retry_count += 1

                logger.info(
                    "Throttled, retrying",
                    operation=description,
                    status_code=e.status_code,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    delay_seconds=delay
                )
                self._sleep(delay)
