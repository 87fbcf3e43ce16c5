"""
Session-lifetime average bitrate limiter.
"""
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateThrottle:
    """Keeps the average send rate since the session start below a maximum.

    Only the cumulative average is limited: a burst after an idle period is
    allowed until the average catches up with the configured rate.
    """

    def __init__(self, max_rate: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the throttle.

        Args:
            max_rate: Maximum average rate in bits per second; None or a
                non-positive value disables throttling
            clock: Monotonic clock returning seconds
        """
        self.max_rate = max_rate if max_rate and max_rate > 0 else None
        self._clock = clock
        self._start: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.max_rate is not None

    def start(self) -> None:
        self._start = self._clock()

    def delay_for(self, total_bytes: int) -> float:
        """Compute how long to wait before the send that brings the session
        total to ``total_bytes``.

        Args:
            total_bytes: Session byte total including the record about to be sent

        Returns:
            Seconds to sleep, 0.0 if the average rate is within the limit
        """
        if not self.enabled:
            return 0.0
        if self._start is None:
            self.start()

        elapsed = self._clock() - self._start
        required = (total_bytes * 8) / self.max_rate
        return max(0.0, required - elapsed)

    def wait(self, total_bytes: int, sleep: Callable[[float], bool]) -> bool:
        """Sleep until sending ``total_bytes`` keeps the average at the limit.

        Args:
            total_bytes: Session byte total including the record about to be sent
            sleep: Interruptible sleep returning False when interrupted

        Returns:
            True if the send may proceed, False if the sleep was interrupted
        """
        delay = self.delay_for(total_bytes)
        if delay <= 0:
            return True
        logger.debug(f"Throttling for {delay:.3f} seconds")
        return sleep(delay)
