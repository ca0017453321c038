"""
Callback Freshness Checker

Rejects callbacks whose timestamp is too old (replay of a captured request)
or too far in the future (clock skew beyond tolerance).
"""

import time
from typing import Callable

from pnm_callbacks.utils.logging_config import get_logger

logger = get_logger(__name__)


class FreshnessChecker:
    """Validates a Unix timestamp against the current time"""

    def __init__(
        self,
        max_age_seconds: int = 300,
        max_future_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_age_seconds = max_age_seconds
        self.max_future_seconds = max_future_seconds
        self._clock = clock

    def is_fresh(self, timestamp: int) -> bool:
        """
        Check whether a callback timestamp lies inside the skew window.

        Args:
            timestamp: Unix timestamp (seconds) sent with the callback

        Returns:
            True if the timestamp is neither stale nor implausibly in the future
        """
        age_seconds = int(self._clock()) - timestamp

        if age_seconds > self.max_age_seconds:
            logger.warning(
                f"Callback timestamp too old: {age_seconds}s",
                extra={"timestamp": timestamp, "max_age_seconds": self.max_age_seconds},
            )
            return False

        if age_seconds < -self.max_future_seconds:
            logger.warning(
                f"Callback timestamp in the future: {-age_seconds}s ahead",
                extra={"timestamp": timestamp, "max_future_seconds": self.max_future_seconds},
            )
            return False

        return True
