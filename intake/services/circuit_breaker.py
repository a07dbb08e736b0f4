from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from typing import Any, Literal

logger = logging.getLogger(__name__)

CircuitState = Literal["closed", "open", "half_open"]


@dataclass(slots=True, frozen=True)
class CircuitBreakerState:
    failures: int = 0
    last_failure_at: float | None = None
    state: CircuitState = "closed"


def allow_request(
    current: CircuitBreakerState,
    *,
    now: float,
    cooldown_seconds: float,
) -> tuple[bool, CircuitBreakerState]:
    """Decide whether a request may proceed and return the resulting state.

    An open circuit whose cooldown has elapsed moves to half-open and admits
    exactly this request as the probe. While half-open, every other request
    is rejected until the probe reports back.
    """
    if current.state == "closed":
        return True, current
    if current.state == "half_open":
        return False, current
    last_failure_at = current.last_failure_at if current.last_failure_at is not None else now
    if now - last_failure_at >= cooldown_seconds:
        return True, replace(current, state="half_open")
    return False, current


def record_success(current: CircuitBreakerState) -> CircuitBreakerState:
    return CircuitBreakerState(failures=0, last_failure_at=current.last_failure_at, state="closed")


def record_failure(
    current: CircuitBreakerState,
    *,
    now: float,
    failure_threshold: int,
) -> CircuitBreakerState:
    failures = current.failures + 1
    if current.state == "half_open" or failures >= failure_threshold:
        return CircuitBreakerState(failures=failures, last_failure_at=now, state="open")
    return CircuitBreakerState(failures=failures, last_failure_at=now, state=current.state)


def abandon_probe(current: CircuitBreakerState) -> CircuitBreakerState:
    if current.state != "half_open":
        return current
    return replace(current, state="open")


class CircuitBreakerRegistry:
    """Per-origin breaker states shared by every in-flight fetch."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def acquire(self, origin: str) -> bool:
        with self._lock:
            current = self._states.get(origin, CircuitBreakerState())
            allowed, updated = allow_request(current, now=self._clock(), cooldown_seconds=self.cooldown_seconds)
            self._states[origin] = updated
        if allowed and updated.state == "half_open" and current.state == "open":
            logger.info("circuit half-open for origin=%s; probing", origin)
        return allowed

    def on_success(self, origin: str) -> None:
        with self._lock:
            current = self._states.get(origin, CircuitBreakerState())
            self._states[origin] = record_success(current)
        if current.state != "closed":
            logger.info("circuit closed for origin=%s", origin)

    def on_failure(self, origin: str) -> None:
        with self._lock:
            current = self._states.get(origin, CircuitBreakerState())
            updated = record_failure(current, now=self._clock(), failure_threshold=self.failure_threshold)
            self._states[origin] = updated
        if updated.state == "open" and current.state != "open":
            logger.warning("circuit opened for origin=%s after %s failures", origin, updated.failures)

    def release_probe(self, origin: str) -> None:
        with self._lock:
            current = self._states.get(origin)
            if current is not None:
                self._states[origin] = abandon_probe(current)

    def state(self, origin: str) -> CircuitBreakerState:
        with self._lock:
            return self._states.get(origin, CircuitBreakerState())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {origin: asdict(state) for origin, state in self._states.items()}

    def reset(self, origin: str | None = None) -> None:
        with self._lock:
            if origin is None:
                self._states.clear()
            else:
                self._states.pop(origin, None)
