"""
Request Timer

Measures how long each request takes to handle and warns when the
processor's latency budget is at risk.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from fastapi import Request, Response

from pnm_callbacks.utils.logging_config import get_logger

# The processor abandons callbacks that are not answered within 6 seconds
DEFAULT_SLOW_REQUEST_THRESHOLD_MS = 6000.0


@dataclass
class Timing:
    """Elapsed wall-clock time of one measured block"""

    started_at: float
    elapsed_ms: float = 0.0


class RequestTimer:
    """
    Observes request latency.

    Usable as a context manager around any block (``with timer.measure()``)
    or installed as FastAPI HTTP middleware (``app.middleware("http")(timer)``).
    Purely observational: the wrapped response is returned untouched apart
    from an ``X-Response-Time-Ms`` header.
    """

    def __init__(
        self,
        threshold_ms: float = DEFAULT_SLOW_REQUEST_THRESHOLD_MS,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.threshold_ms = threshold_ms
        self.logger = logger or get_logger(__name__)
        self._clock = clock

    @contextmanager
    def measure(self, label: str = "Request") -> Iterator[Timing]:
        timing = Timing(started_at=self._clock())
        try:
            yield timing
        finally:
            timing.elapsed_ms = (self._clock() - timing.started_at) * 1000.0
            self._report(label, timing.elapsed_ms)

    def _report(self, label: str, elapsed_ms: float) -> None:
        self.logger.info(
            f"{label} handled in {elapsed_ms:.2f}ms",
            extra={"elapsed_ms": round(elapsed_ms, 2)},
        )
        if elapsed_ms >= self.threshold_ms:
            self.logger.warning(
                f"{label} took longer than {self.threshold_ms / 1000.0:g} seconds!",
                extra={
                    "elapsed_ms": round(elapsed_ms, 2),
                    "threshold_ms": self.threshold_ms,
                },
            )

    async def __call__(self, request: Request, call_next) -> Response:
        with self.measure() as timing:
            response = await call_next(request)
        response.headers["X-Response-Time-Ms"] = f"{timing.elapsed_ms:.2f}"
        return response
