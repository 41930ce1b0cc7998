"""Per-endpoint circuit breaker for collaborator calls.

When an LLM model endpoint or a REST host keeps failing, the analysis
pool would otherwise queue one slow failure per screen. The breaker
counts consecutive failures and short-circuits further calls until a
cooldown has passed.

States:
  CLOSED    -- normal operation, calls pass through
  OPEN      -- endpoint considered down, calls fail immediately
  HALF_OPEN -- cooldown expired, one probe call allowed
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, TypeVar

from .exceptions import TransientCollaboratorError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3    # consecutive failures before opening
DEFAULT_COOLDOWN_SECONDS = 60    # seconds before the half-open probe

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(TransientCollaboratorError):
    """Raised instead of calling an endpoint whose circuit is open."""

    def __init__(self, endpoint: str, retry_after: float):
        super().__init__(
            endpoint,
            f"circuit open after repeated failures; retry after {retry_after:.0f}s",
        )
        self.endpoint = endpoint
        self.retry_after = retry_after


class CircuitBreaker:
    """Thread-safe breaker shared by all workers calling one endpoint."""

    def __init__(
        self,
        endpoint: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
    ) -> None:
        self.endpoint = endpoint
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def check(self) -> None:
        """Raise CircuitBreakerOpen unless a call may go through."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.OPEN:
                elapsed = time.monotonic() - self._opened_at
                if elapsed < self._cooldown_seconds:
                    raise CircuitBreakerOpen(self.endpoint, self._cooldown_seconds - elapsed)
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit %s: OPEN -> HALF_OPEN (cooldown expired)", self.endpoint)
            # HALF_OPEN: only one probe at a time
            if self._probe_in_flight:
                raise CircuitBreakerOpen(self.endpoint, 0)
            self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s: HALF_OPEN -> CLOSED", self.endpoint)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                logger.warning("Circuit %s: HALF_OPEN -> OPEN (probe failed)", self.endpoint)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = time.monotonic()
                logger.warning(
                    "Circuit %s: CLOSED -> OPEN (%d consecutive failures)",
                    self.endpoint, self._failure_count,
                )

    def call(self, fn: Callable[[], T]) -> T:
        """Run *fn* with breaker bookkeeping."""
        self.check()
        try:
            result = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


# ---------------------------------------------------------------------------
# Global registry: one breaker per endpoint
# ---------------------------------------------------------------------------

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(endpoint: str) -> CircuitBreaker:
    """Get or create the breaker for *endpoint*."""
    with _registry_lock:
        if endpoint not in _breakers:
            _breakers[endpoint] = CircuitBreaker(endpoint=endpoint)
        return _breakers[endpoint]


def reset_all() -> None:
    """Reset all circuit breakers (for testing)."""
    with _registry_lock:
        _breakers.clear()
