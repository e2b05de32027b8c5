"""
Cooldown tracker for external model providers.

After a failure the provider is considered down until the cooldown expires,
so callers skip straight to their fallback instead of waiting on the network.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional

from core.config import PROVIDER_COOLDOWN_SECONDS

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ProviderHealth:
    """
    Tracks availability of one provider (e.g. Ollama embeddings).

    Args:
        name: Label used in log messages
        cooldown_seconds: How long the provider stays down after a failure
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        name: str,
        cooldown_seconds: float = PROVIDER_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._down_until: Optional[float] = None
        self._failures = 0
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        with self._lock:
            if self._down_until is None:
                return True
            if self._clock() >= self._down_until:
                self._down_until = None
                logger.info(f"Provider '{self.name}' cooldown expired, retrying remote calls")
                return True
            return False

    def mark_failure(self, reason: str = None):
        with self._lock:
            self._failures += 1
            self._down_until = self._clock() + self.cooldown_seconds
        logger.warning(
            f"Provider '{self.name}' marked down for {self.cooldown_seconds}s"
            + (f": {reason}" if reason else "")
        )

    def mark_success(self):
        with self._lock:
            self._down_until = None
            self._failures = 0

    def get_stats(self) -> Dict:
        with self._lock:
            remaining = 0.0
            if self._down_until is not None:
                remaining = max(0.0, self._down_until - self._clock())
            return {
                'name': self.name,
                'available': remaining == 0.0,
                'consecutive_failures': self._failures,
                'cooldown_remaining_seconds': round(remaining, 1),
            }
