# ╔══════════════════════════════════════════════════════════════════════╗
# ║ RESILIENCE UTILS : circuit breaker + sync retry for remote calls     ║
# ╠══════════════════════════════════════════════════════════════════════╣
# ║ Module Name:  avif_backend/services/resilience_utils.py              ║
# ║ Used by:      orchestrator (opt-in CDN retry policy, CDN_RETRIES>0)  ║
# ║ Test Suite:   avif_backend/tests/test_resilience_utils.py            ║
# ╚══════════════════════════════════════════════════════════════════════╝
#  Breakers are process-wide and keyed by name ("cdn_publish", ...), so
#  every worker thread of a batch shares one view of the remote's health.

from __future__ import annotations

import logging
import random
import socket
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from avif_backend.services import observability_utils as obs

_logger = logging.getLogger(__name__)

_TRANSIENT_HINTS = (
    "timeout", "timed out", "temporar", "unavailable", "throttl",
    "reset", "refused", "rate limit", "too many requests",
)


class CircuitBreakerOpen(Exception):
    """A call was attempted while its breaker was open."""


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def is_transient(exc: BaseException) -> bool:
    """Connection-level errors and messages that look like a busy remote."""
    if isinstance(exc, (TimeoutError, ConnectionError, socket.timeout)):
        return True
    text = f"{type(exc).__name__} {exc}".lower()
    return any(hint in text for hint in _TRANSIENT_HINTS)


class CircuitBreaker:
    """
    CLOSED counts consecutive failures and trips to OPEN at ``failure_threshold``.
    OPEN refuses calls until ``recovery_timeout`` seconds have passed, then lets
    ``half_open_max_calls`` probes through (HALF_OPEN). A probe success closes
    the breaker; a probe failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 30.0,
        half_open_max_calls: int = 1,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.recovery_timeout = float(recovery_timeout)
        self.half_open_max_calls = max(1, int(half_open_max_calls))
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probes = 0

    @property
    def state(self) -> str:
        return self._state.value

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failures,
                "opened_at": self._opened_at,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
            }

    def reset(self) -> None:
        with self._lock:
            self._clear()

    def allow_request(self) -> bool:
        with self._lock:
            if self._state is BreakerState.CLOSED:
                return True
            if self._state is BreakerState.OPEN:
                if self._opened_at is None or time.monotonic() - self._opened_at < self.recovery_timeout:
                    return False
                self._state = BreakerState.HALF_OPEN
                self._probes = 0
                _logger.info("breaker '%s' half-open after %.1fs", self.name, self.recovery_timeout)
            if self._probes < self.half_open_max_calls:
                self._probes += 1
                return True
            return False

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failures += 1
            tripped = self._state is BreakerState.HALF_OPEN or (
                self._state is BreakerState.CLOSED and self._failures >= self.failure_threshold
            )
            if tripped:
                self._state = BreakerState.OPEN
                self._opened_at = time.monotonic()
                _logger.warning("breaker '%s' open (failures=%d)", self.name, self._failures)
            elif self._state is BreakerState.OPEN:
                self._opened_at = time.monotonic()
        obs.metrics_inc(f"circuit.{self.name}.failure")
        if tripped:
            obs.audit_log("circuit.open", self.name, "open", {"exc": str(exc) if exc else None})

    def record_success(self) -> None:
        with self._lock:
            recovered = self._state is not BreakerState.CLOSED
            self._clear()
        if recovered:
            _logger.info("breaker '%s' closed (recovered)", self.name)


_BREAKERS: Dict[str, CircuitBreaker] = {}
_BREAKERS_LOCK = threading.Lock()


def get_circuit_breaker(name: str, failure_threshold: int = 3, recovery_timeout: float = 30.0) -> CircuitBreaker:
    with _BREAKERS_LOCK:
        breaker = _BREAKERS.get(name)
        if breaker is None:
            breaker = _BREAKERS[name] = CircuitBreaker(name, failure_threshold, recovery_timeout)
        return breaker


def list_circuit_breakers() -> Dict[str, Dict[str, Any]]:
    with _BREAKERS_LOCK:
        breakers = list(_BREAKERS.values())
    return {b.name: b.status() for b in breakers}


def reset_all_circuit_breakers() -> None:
    """Close every registered breaker (names are kept)."""
    with _BREAKERS_LOCK:
        for breaker in _BREAKERS.values():
            breaker.reset()


def _delay(attempt: int, backoff: float, max_backoff: Optional[float], jitter: bool) -> float:
    ceiling = backoff * (2 ** attempt)
    if max_backoff is not None:
        ceiling = min(ceiling, max_backoff)
    return random.uniform(min(backoff, ceiling), ceiling) if jitter else ceiling


def retry_sync(
    fn: Callable[[], Any],
    retries: int = 2,
    backoff: float = 1.0,
    max_backoff: Optional[float] = None,
    adaptive_backoff: bool = True,
    breaker: Optional[CircuitBreaker] = None,
    raise_on_non_transient: bool = True,
) -> Any:
    """
    Call ``fn`` up to ``retries + 1`` times, sleeping with exponential backoff
    between transient failures. Non-transient errors propagate immediately
    unless ``raise_on_non_transient`` is False. When ``breaker`` is given it
    gates every attempt and records each outcome.
    """
    if not isinstance(retries, int) or retries < 0:
        raise ValueError("retries must be a non-negative integer")
    if not isinstance(backoff, (int, float)) or backoff < 0:
        raise ValueError("backoff must be a non-negative number")
    if max_backoff is not None and (not isinstance(max_backoff, (int, float)) or max_backoff < 0):
        raise ValueError("max_backoff must be a non-negative number or None")

    for attempt in range(retries + 1):
        if breaker is not None and not breaker.allow_request():
            raise CircuitBreakerOpen(f"Circuit '{breaker.name}' is OPEN")
        try:
            result = fn()
        except Exception as exc:
            if breaker is not None:
                breaker.record_failure(exc)
            if raise_on_non_transient and not is_transient(exc):
                _logger.error("retry_sync: non-transient error, not retrying: %s", exc)
                raise
            obs.metrics_inc("resilience.retry.attempt")
            if attempt == retries:
                _logger.error("retry_sync: giving up after %d attempts: %s", attempt + 1, exc)
                obs.metrics_inc("resilience.retry.failure")
                raise
            _logger.warning("retry_sync: attempt %d/%d failed: %s", attempt + 1, retries + 1, exc)
            time.sleep(_delay(attempt, backoff, max_backoff, adaptive_backoff))
        else:
            if breaker is not None:
                breaker.record_success()
            return result
    raise RuntimeError("retry_sync: unreachable")


__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "get_circuit_breaker",
    "is_transient",
    "list_circuit_breakers",
    "reset_all_circuit_breakers",
    "retry_sync",
]
