"""
Rate limiting for the reference directory API.

Enforces a minimum delay between requests and optional per-minute/per-hour
ceilings, and backs off exponentially after 429 (Too Many Requests)
responses. Clock and sleep are injectable so tests never actually wait.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    """Limits for one upstream API."""
    requests_per_hour: Optional[int] = Field(None, gt=0)
    requests_per_minute: Optional[int] = Field(None, gt=0)
    min_delay: float = Field(0.0, ge=0, description="Seconds between two requests")
    max_retries_on_429: int = Field(3, ge=0, description="Retries allowed after a 429")
    backoff_base: float = Field(2.0, gt=0, description="Delay after the first 429")
    backoff_factor: float = Field(2.0, ge=1, description="Growth per further consecutive 429")
    max_backoff: float = Field(60.0, gt=0, description="Cap on any single backoff delay")

    def backoff_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), capped at max_backoff."""
        return min(self.backoff_base * self.backoff_factor ** (attempt - 1), self.max_backoff)


class RateLimiter:
    """
    Delays callers so a shared upstream stays within its limits.

    One instance is shared by every request to the same API; all state
    changes happen under a lock, sleeping happens outside it.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        source_name: str = "unknown",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            config: Limits to enforce
            source_name: Label for log messages
            clock: Time source in seconds
            sleep: Blocking wait function
        """
        self.config = config
        self.source_name = source_name
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()

        self.request_times: deque = deque()
        self.last_request_at: Optional[float] = None
        self.consecutive_429s = 0
        self.backoff_delay = 0.0

        logger.info(f"Rate limiter for '{source_name}': {config.model_dump(exclude_none=True)}")

    def wait_if_needed(self) -> float:
        """
        Block until the next request is allowed.

        Returns:
            float: Seconds waited
        """
        with self._lock:
            delay = self._next_delay(self._clock())

        if delay > 0:
            logger.info(f"[{self.source_name}] waiting {delay:.2f}s before next request")
            self._sleep(delay)
        return delay

    def _next_delay(self, now: float) -> float:
        delays = [self.backoff_delay]

        if self.last_request_at is not None:
            delays.append(self.config.min_delay - (now - self.last_request_at))

        windows = ((60, self.config.requests_per_minute), (3600, self.config.requests_per_hour))
        for window, limit in windows:
            if limit:
                delays.append(self._window_delay(now, window, limit))

        return max(0.0, *delays)

    def _window_delay(self, now: float, window: int, limit: int) -> float:
        """Seconds until a slot frees up in a full window, 0 when there is room."""
        horizon = now - 3600
        while self.request_times and self.request_times[0] < horizon:
            self.request_times.popleft()

        in_window = [t for t in self.request_times if t >= now - window]
        if len(in_window) < limit:
            return 0.0
        logger.warning(f"[{self.source_name}] {limit} requests per {window}s reached")
        return in_window[0] + window - now

    def record_request(self):
        with self._lock:
            now = self._clock()
            self.request_times.append(now)
            self.last_request_at = now

    def record_success(self):
        """A request succeeded: clear any 429 backoff."""
        if self.consecutive_429s:
            logger.info(f"[{self.source_name}] recovered after {self.consecutive_429s} rate-limited responses")
        self.reset_backoff()

    def reset_backoff(self):
        """Forget consecutive 429s, so the next request starts a fresh retry budget."""
        with self._lock:
            self.consecutive_429s = 0
            self.backoff_delay = 0.0

    def record_429_response(self, retry_after: Optional[float] = None) -> bool:
        """
        Register a 429 response and set the backoff for the next attempt.

        Args:
            retry_after: Retry-After header value in seconds, if the server sent one

        Returns:
            bool: True if the caller may retry, False once retries are exhausted
        """
        with self._lock:
            self.consecutive_429s += 1
            if retry_after:
                self.backoff_delay = min(float(retry_after), self.config.max_backoff)
            else:
                self.backoff_delay = self.config.backoff_for(self.consecutive_429s)
            can_retry = self.consecutive_429s <= self.config.max_retries_on_429

        logger.warning(
            f"[{self.source_name}] 429 #{self.consecutive_429s}, backing off {self.backoff_delay:.1f}s"
            + ("" if can_retry else ", giving up")
        )
        return can_retry


PRESET_CONFIGS: Dict[str, RateLimitConfig] = {
    'directory_default': RateLimitConfig(requests_per_minute=120, min_delay=0.05),
    'directory_strict': RateLimitConfig(
        requests_per_minute=30, requests_per_hour=600, min_delay=0.5, backoff_base=4.0
    ),
    'unlimited': RateLimitConfig(),
}


def get_preset_config(preset_name: str) -> RateLimitConfig:
    try:
        return PRESET_CONFIGS[preset_name]
    except KeyError:
        raise ValueError(
            f"Unknown rate limit preset '{preset_name}', expected one of {sorted(PRESET_CONFIGS)}"
        ) from None
