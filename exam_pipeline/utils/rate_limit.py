from __future__ import annotations

import time
from typing import Callable, Optional

from exam_pipeline.utils.logging_config import get_logger

logger = get_logger(__name__)


class FixedIntervalGate:
    """Keeps consecutive generation calls at least ``min_interval`` seconds apart.

    The first ``wait()`` returns immediately. Clock and sleep are injectable so
    the policy can be exercised without real delays.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        """Block until the interval has elapsed; returns the seconds slept."""
        slept = 0.0
        if self._last_call is not None and self.min_interval > 0:
            remaining = self.min_interval - (self._clock() - self._last_call)
            if remaining > 0:
                logger.debug("Rate gate sleeping | seconds=%.3f", remaining)
                self._sleep(remaining)
                slept = remaining
        self._last_call = self._clock()
        return slept

    def reset(self) -> None:
        self._last_call = None


__all__ = ["FixedIntervalGate"]
