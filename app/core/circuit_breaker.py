from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Provider calls allowed
    OPEN = "open"  # Bulk refresh refused
    HALF_OPEN = "half_open"  # Cooldown elapsed, next bulk run is a probe


@dataclass
class CircuitBreaker:
    """
    Failure-counting gate over bulk price refreshes.

    The counter only moves through ``record_batch_result``: a run whose
    failures exceed its successes adds its failure count, a run with zero
    failures resets it, anything in between leaves it untouched. The gate is
    open while the counter is at or above ``failure_threshold``.

    With ``recovery_timeout`` unset the only way back to CLOSED is a clean
    bulk run (or an explicit ``reset``). With a positive timeout the breaker
    reports HALF_OPEN once that many seconds have passed since the last
    failing run, letting one bulk run through as a probe. A probe with any
    failures re-opens the breaker for another cooldown.
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: Optional[float] = None  # seconds

    _consecutive_failures: int = field(default=0, init=False)
    _last_failure_time: Optional[datetime] = field(default=None, init=False)
    _lock: Lock = field(default_factory=Lock, init=False)

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def last_failure_time(self) -> Optional[datetime]:
        return self._last_failure_time

    def _state_locked(self) -> CircuitState:
        """Must be called while holding self._lock."""
        if self._consecutive_failures < self.failure_threshold:
            return CircuitState.CLOSED
        if self.recovery_timeout and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state_locked()

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def record_batch_result(self, successes: int, failures: int) -> None:
        """Fold one bulk run's counts into the counter."""
        if successes < 0 or failures < 0:
            raise ValueError("counts must be non-negative")

        with self._lock:
            old_state = self._state_locked()
            if failures > successes:
                self._consecutive_failures += failures
                self._last_failure_time = datetime.now(timezone.utc)
            elif failures == 0:
                self._consecutive_failures = 0
                self._last_failure_time = None
            elif old_state == CircuitState.HALF_OPEN:
                # Probe with some failures: start another cooldown
                self._last_failure_time = datetime.now(timezone.utc)
            new_state = self._state_locked()
            count = self._consecutive_failures

        if new_state == CircuitState.OPEN and old_state != CircuitState.OPEN:
            logger.error(
                "circuit breaker opened",
                circuit=self.name,
                consecutive_failures=count,
                threshold=self.failure_threshold,
            )
        elif new_state == CircuitState.CLOSED and old_state != CircuitState.CLOSED:
            logger.info("circuit breaker reset after clean bulk run", circuit=self.name)

    def reset(self) -> None:
        with self._lock:
            had_failures = self._consecutive_failures > 0
            self._consecutive_failures = 0
            self._last_failure_time = None
        if had_failures:
            logger.info("circuit breaker reset", circuit=self.name)


class CircuitBreakerRegistry:
    _breakers: Dict[str, CircuitBreaker] = {}
    _lock = Lock()

    @classmethod
    def get(cls, name: str, **kwargs) -> CircuitBreaker:
        with cls._lock:
            if name not in cls._breakers:
                cls._breakers[name] = CircuitBreaker(name=name, **kwargs)
            return cls._breakers[name]

    @classmethod
    def get_all_states(cls) -> Dict[str, str]:
        return {name: cb.state.value for name, cb in cls._breakers.items()}

    @classmethod
    def clear(cls) -> None:
        with cls._lock:
            cls._breakers.clear()
