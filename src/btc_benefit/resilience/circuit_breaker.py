"""Circuit breaker for calls to volatile external APIs.

State machine:

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(cooldown elapsed, next call)-------------> HALF_OPEN
    HALF_OPEN --(success_threshold consecutive successes)--> CLOSED
    HALF_OPEN --(any failure)--------------------------> OPEN (longer cooldown)

The cooldown doubles on every re-opening from HALF_OPEN and is capped at
max_timeout. Closing the circuit restores the base timeout.

Only one trial call is admitted at a time while HALF_OPEN; concurrent
callers are rejected as if the circuit were still open.
"""

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from btc_benefit.exceptions import CircuitOpenError
from btc_benefit.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerEvent:
    """Observability snapshot emitted on every state transition."""

    service: str
    state: CircuitState
    message: str
    timestamp: datetime
    failure_count: int
    success_count: int
    error: str | None = None


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds and cooldowns for a single breaker.

    excluded_exceptions are raised through without counting as failures
    (e.g. a 404 from an explorer means the service is healthy).
    """

    failure_threshold: int = 3
    success_threshold: int = 2
    timeout: float = 30.0
    max_timeout: float = 300.0
    monitor: Callable[[CircuitBreakerEvent], None] | None = None
    excluded_exceptions: tuple[type[BaseException], ...] = field(default=())


class CircuitBreaker:
    """Guards an async operation against a failing dependency.

    Args:
        service: Name used in errors, events, and logs (e.g. "coingecko").
        config: Thresholds and cooldown configuration.
        clock: Monotonic seconds source; injectable for tests.
    """

    def __init__(
        self,
        service: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self._config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: float | None = None
        self._last_failure_time: float | None = None
        self._reset_attempts = 0
        self._current_timeout = self._config.timeout
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def current_timeout(self) -> float:
        return self._current_timeout

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation under breaker protection.

        Raises:
            CircuitOpenError: The circuit is open (operation not invoked).
        """
        is_trial = self._admit()
        try:
            result = await operation()
        except self._config.excluded_exceptions:
            raise
        except Exception as e:
            self._on_failure(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    # ──────────────────────────────────────────────
    # State transitions
    # ──────────────────────────────────────────────

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True for a HALF_OPEN trial."""
        if self._state is CircuitState.OPEN:
            remaining = self._remaining_cooldown()
            if remaining > 0:
                raise CircuitOpenError(self.service, remaining)
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            self._emit("moved to HALF_OPEN for recovery test")

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.service, 0)
            self._trial_in_flight = True
            return True

        return False

    def _on_success(self) -> None:
        self._failure_count = 0

        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self._state = CircuitState.CLOSED
                self._success_count = 0
                self._reset_attempts = 0
                self._current_timeout = self._config.timeout
                self._opened_at = None
                self._emit("CLOSED, service recovered")

    def _on_failure(self, error: Exception) -> None:
        now = self._clock()
        self._failure_count += 1
        self._last_failure_time = now

        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._opened_at = now
            self._reset_attempts += 1
            self._current_timeout = min(
                self._config.timeout * (2**self._reset_attempts),
                self._config.max_timeout,
            )
            self._emit(
                f"returned to OPEN (attempt {self._reset_attempts})", error=error
            )
        elif (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self._config.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._opened_at = now
            self._reset_attempts = 0
            self._current_timeout = self._config.timeout
            self._emit("OPENED due to failures", error=error)

    def _remaining_cooldown(self) -> float:
        if self._opened_at is None:
            return 0.0
        return self._current_timeout - (self._clock() - self._opened_at)

    def _emit(self, message: str, error: Exception | None = None) -> None:
        event = CircuitBreakerEvent(
            service=self.service,
            state=self._state,
            message=message,
            timestamp=datetime.now(timezone.utc),
            failure_count=self._failure_count,
            success_count=self._success_count,
            error=str(error) if error is not None else None,
        )

        log = logger.warning if self._state is CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            service=self.service,
            state=self._state.value,
            detail=message,
            failures=self._failure_count,
            successes=self._success_count,
            timeout_seconds=round(self._current_timeout, 1),
            error=event.error,
        )

        if self._config.monitor is not None:
            self._config.monitor(event)

    # ──────────────────────────────────────────────
    # Operator controls
    # ──────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        """Snapshot of breaker counters for health endpoints."""
        next_retry_in = (
            max(0.0, self._remaining_cooldown())
            if self._state is CircuitState.OPEN
            else None
        )
        return {
            "service": self.service,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "is_healthy": self._state is CircuitState.CLOSED,
            "current_timeout": self._current_timeout,
            "reset_attempts": self._reset_attempts,
            "open_for": (
                self._clock() - self._opened_at
                if self._opened_at is not None
                else None
            ),
            "next_retry_in": next_retry_in,
        }

    def reset(self) -> None:
        """Force the breaker back to a fresh CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None
        self._last_failure_time = None
        self._reset_attempts = 0
        self._current_timeout = self._config.timeout
        self._trial_in_flight = False
        self._emit("manually reset")

    def force_open(self) -> None:
        """Open the circuit for one cooldown period (maintenance)."""
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._emit("forced OPEN")


class CircuitBreakerRegistry:
    """One lazily constructed breaker per named external service.

    Args:
        default_config: Config used when get_breaker() is called without one.
        clock: Passed through to every breaker the registry builds.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(
        self, service: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """Return the breaker for service, creating it on first use.

        A config passed after the breaker exists is ignored.
        """
        breaker = self._breakers.get(service)
        if breaker is None:
            cfg = config or self._default_config
            if cfg.monitor is None and self._default_config.monitor is not None:
                cfg = replace(cfg, monitor=self._default_config.monitor)
            breaker = CircuitBreaker(service, cfg, clock=self._clock)
            self._breakers[service] = breaker
        return breaker

    async def execute(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        return await self.get_breaker(service, config).execute(operation)

    def all_status(self) -> dict[str, dict[str, Any]]:
        return {name: b.status() for name, b in self._breakers.items()}

    def health_summary(self) -> dict[str, Any]:
        statuses = self.all_status()
        healthy = [n for n, s in statuses.items() if s["is_healthy"]]
        unhealthy = [n for n, s in statuses.items() if not s["is_healthy"]]
        return {
            "total_services": len(statuses),
            "healthy_services": len(healthy),
            "unhealthy_services": len(unhealthy),
            "healthy_service_names": healthy,
            "unhealthy_service_names": unhealthy,
            "overall_healthy": not unhealthy,
            "details": [
                {
                    "service": name,
                    "state": statuses[name]["state"],
                    "next_retry_in": statuses[name]["next_retry_in"],
                    "failure_count": statuses[name]["failure_count"],
                }
                for name in unhealthy
            ],
        }

    def reset(self, service: str) -> bool:
        breaker = self._breakers.get(service)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def reset_stale(self, max_open_seconds: float) -> list[str]:
        """Reset breakers that have been unhealthy longer than max_open_seconds.

        Intended to be called periodically by the host application.
        """
        stale = [
            name
            for name, breaker in self._breakers.items()
            if breaker.state is not CircuitState.CLOSED
            and (breaker.status()["open_for"] or 0) > max_open_seconds
        ]
        for name in stale:
            logger.info("resetting_stale_circuit", service=name)
            self._breakers[name].reset()
        return stale
