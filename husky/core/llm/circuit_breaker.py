"""
Circuit breaker for the language-model provider.

closed    → calls flow; consecutive transient failures are counted
open      → calls fail fast until the cool-down elapses
half_open → one trial call; success closes, failure re-opens
"""

import logging
import threading
import time
from typing import Callable

from husky.core.errors import ProviderCircuitOpenError

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "llm",
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and self._cooldown_remaining() <= 0:
                return HALF_OPEN
            return self._state

    def _cooldown_remaining(self) -> float:
        return self.cooldown_seconds - (self._clock() - self._opened_at)

    def before_call(self) -> None:
        """Raise ProviderCircuitOpenError unless a call may proceed."""
        with self._lock:
            if self._state == CLOSED:
                return
            remaining = self._cooldown_remaining()
            if self._state == OPEN and remaining > 0:
                raise ProviderCircuitOpenError(
                    f"Circuit '{self.name}' open; retry in {remaining:.1f}s",
                    retry_after=remaining,
                )
            if self._trial_in_flight:
                raise ProviderCircuitOpenError(
                    f"Circuit '{self.name}' half-open; trial call in flight",
                    retry_after=max(remaining, 0.0),
                )
            self._state = HALF_OPEN
            self._trial_in_flight = True
            logger.info(f"Circuit '{self.name}' half-open, allowing trial call")

    def record_success(self) -> None:
        with self._lock:
            if self._state != CLOSED:
                logger.info(f"Circuit '{self.name}' closed")
            self._state = CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state != OPEN:
                    logger.warning(
                        f"Circuit '{self.name}' opened after {self._failures} "
                        f"consecutive failures"
                    )
                self._state = OPEN
                self._opened_at = self._clock()
                self._trial_in_flight = False

    def release(self) -> None:
        """Release a half-open trial slot without judging the provider."""
        with self._lock:
            if self._state == HALF_OPEN:
                self._trial_in_flight = False
