"""Rolling window of rate-limit events and the advisory inter-request delay."""

import logging
import time
from collections import deque
from collections.abc import Callable

from config.config_loader import IntervalConfig

logger = logging.getLogger(__name__)


class RateLimitTracker:
    """Remembers recent 429s and suggests how long to wait between requests.

    Never talks to the network. Callers decide whether to sleep.
    """

    def __init__(
        self,
        history_size: int = 10,
        window_sec: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._events: deque[float] = deque(maxlen=history_size)
        self._window_sec = window_sec
        self._clock = clock

    @classmethod
    def from_config(cls, config: IntervalConfig) -> "RateLimitTracker":
        return cls(history_size=config.history_size, window_sec=config.window_sec)

    def record_rate_limit_event(self) -> None:
        self._events.append(self._clock())
        logger.info("Recorded rate-limit event. Recent events: %d", self.recent_count())

    def recent_count(self) -> int:
        cutoff = self._clock() - self._window_sec
        return sum(1 for ts in self._events if ts > cutoff)

    def suggested_delay(self, mode: str, config: IntervalConfig) -> float:
        """Seconds to wait before the next logical request in this mode."""
        delay = config.base_delay_sec * config.mode_multipliers.get(mode, 1.0)

        if config.dynamic_adjustment:
            recent = self.recent_count()
            if recent >= config.error_threshold:
                delay *= config.error_multiplier
                logger.info("Increased delay due to %d recent rate-limit events", recent)

        if delay > config.max_delay_sec:
            logger.info(
                "Delay capped at %.1fs (was %.1fs) for mode %s",
                config.max_delay_sec, delay, mode,
            )
            return config.max_delay_sec

        logger.debug("Suggested delay %.1fs for mode %s", delay, mode)
        return delay

    def stats(self) -> dict[str, int]:
        return {"total": len(self._events), "recent": self.recent_count()}

    def clear(self) -> None:
        self._events.clear()
