# chatsales/utils/circuit_breaker.py
"""
Circuit breaker for the auxiliary model calls (extraction, validation,
escalation, summaries).

Those calls are fail-soft, so when the provider keeps failing there is no
point paying a full timeout on every one of them each turn. After
`failure_threshold` consecutive failures the circuit opens and calls fail
fast with CircuitBreakerError until `timeout` seconds pass; the next call
then runs as a single half-open trial call.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from chatsales.utils.logger import logger


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """The circuit is open; the call was not attempted."""


class CircuitBreaker:

    def __init__(self, name: str = "default", failure_threshold: int = 5, timeout: float = 30.0):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.timeout = timeout

        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await func(*args, **kwargs) under breaker protection.

        Raises CircuitBreakerError without calling func while open (or while a
        half-open trial call is running); anything func raises is counted and re-raised.
        """
        async with self._lock:
            self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            async with self._lock:
                self._record_failure(e)
            raise

        async with self._lock:
            self._record_success()
        return result

    def _admit(self) -> None:
        if self.state == CircuitState.OPEN:
            remaining = self._seconds_until_trial()
            if remaining > 0:
                raise CircuitBreakerError(f"Circuit '{self.name}' is OPEN; retry in {remaining:.0f}s")
            self._move_to(CircuitState.HALF_OPEN)

        if self.state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitBreakerError(f"Circuit '{self.name}' is HALF_OPEN; trial call in flight")
            self._trial_in_flight = True

    def _record_failure(self, exc: Exception) -> None:
        self.consecutive_failures += 1
        logger.warning(f"[CircuitBreaker:{self.name}] {type(exc).__name__} in {self.state.value} state")

        if self.state == CircuitState.HALF_OPEN or self.consecutive_failures >= self.failure_threshold:
            self._move_to(CircuitState.OPEN)

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self._move_to(CircuitState.CLOSED)

    def _seconds_until_trial(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.timeout - (time.monotonic() - self.opened_at))

    def _move_to(self, state: CircuitState) -> None:
        log = logger.error if state == CircuitState.OPEN else logger.info
        log(f"[CircuitBreaker:{self.name}] {self.state.value} -> {state.value}")
        self.state = state
        self._trial_in_flight = False
        self.opened_at = time.monotonic() if state == CircuitState.OPEN else None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "retry_in": round(self._seconds_until_trial(), 1) if self.state == CircuitState.OPEN else 0.0,
        }
