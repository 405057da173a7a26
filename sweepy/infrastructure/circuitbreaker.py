"""
Consecutive-failure circuit breaker for the LLM tier.

After ``fail_max`` failed batches in a row the circuit opens and batches are
degraded without a call for ``reset_timeout`` seconds. The first request after
that runs as a half-open trial call: success closes the circuit, failure reopens it.
Shared by concurrent batch workers, so state changes are locked.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sweepy.config import CIRCUIT_FAIL_MAX, CIRCUIT_RESET_SECONDS
from sweepy.observability.telemetry import counter, log_event


@dataclass
class CircuitBreaker:
    stage: str
    fail_max: int = CIRCUIT_FAIL_MAX
    reset_timeout: float = CIRCUIT_RESET_SECONDS
    clock: Callable[[], float] = time.monotonic
    _failures: int = field(default=0, init=False)
    _state: str = field(default="closed", init=False)
    _opened_at: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """
        Whether a call may go out now.

        Side Effects:
            - Moves open -> half_open once reset_timeout has elapsed
            - Increments circuit.rejected when refusing
        """
        with self._lock:
            if self._state != "open":
                return True
            if self.clock() - self._opened_at >= self.reset_timeout:
                self._state = "half_open"
                log_event("circuit.half_open", stage=self.stage)
                return True
        counter(f"{self.stage}.circuit.rejected")
        return False

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self) -> None:
        """
        Count a failed call; open the circuit at the threshold.

        Side Effects:
            - Increments circuit.opened and logs when the circuit opens
        """
        with self._lock:
            self._failures += 1
            should_open = self._state == "half_open" or self._failures >= self.fail_max
            if not should_open:
                return
            self._state = "open"
            self._opened_at = self.clock()
            failures = self._failures
        counter(f"{self.stage}.circuit.opened")
        log_event("circuit.opened", stage=self.stage, failures=failures)

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._opened_at = 0.0
