"""
Resilience patterns for flaky I/O and remote git operations.

Provides an exponential-backoff retry policy and a circuit breaker, plus
`with_retry` / `with_circuit_breaker` combinators that compose them around a
zero-argument coroutine function:

    push = with_retry(policy, with_circuit_breaker(breaker, client.push), "push")
    await push()
"""

import asyncio
import enum
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .constants import APP_NAME
from .errors import (
    CircuitOpenError,
    ConfigError,
    ContentError,
    DisposedError,
    GitCommandError,
    RepositoryBusyError,
    RepositoryError,
    RetryExhaustedError,
)

logger = logging.getLogger(APP_NAME)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
RetryPredicate = Callable[[BaseException, int], bool]

JITTER_RATIO = 0.1


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass(frozen=True)
class RetryOptions:
    """Backoff parameters.

    Attributes:
        max_attempts (int): Total attempts including the first one.
        base_delay (float): Seconds before the second attempt.
        max_delay (float): Upper bound for any single delay.
        exponential_base (float): Growth factor between delays.
        jitter (bool): Whether to perturb delays by up to +/-10%.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ConfigError("retry.base_delay must be non-negative")
        if self.base_delay > self.max_delay:
            raise ConfigError("retry.base_delay must not exceed retry.max_delay")
        if self.exponential_base <= 1:
            raise ConfigError("retry.exponential_base must be greater than 1")


@dataclass(frozen=True)
class RetryStats:
    total_executions: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_retries: int = 0
    average_attempts: float = 0.0
    average_execution_time: float = 0.0


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay: float
    error: BaseException


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of `RetryPolicy.execute_with_retry_result`."""

    success: bool
    result: T | None = None
    error: BaseException | None = None
    attempts: tuple[RetryAttempt, ...] = ()
    total_time: float = 0.0


class RetryPolicy:
    """Retries a failing coroutine with exponential backoff and jitter.

    Attributes:
        options (RetryOptions): The backoff parameters.
    """

    def __init__(
        self,
        options: RetryOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or RetryOptions()
        self._sleep = sleep
        self._rng = rng
        self._clock = clock
        self._disposed = False
        self.reset_stats()

    def compute_delay(self, attempt: int) -> float:
        """Returns the pause after a failed attempt `attempt` (1-based)."""
        opts = self.options
        delay = min(
            opts.base_delay * opts.exponential_base ** (attempt - 1), opts.max_delay
        )
        if opts.jitter:
            delay += (self._rng() - 0.5) * 2 * delay * JITTER_RATIO
        return max(0.0, delay)

    async def execute_with_retry(self, operation: Operation[T], context: str = "operation") -> T:
        """Runs `operation`, retrying on any exception.

        Raises:
            RetryExhaustedError: When the final attempt fails.
        """
        return await self._run(operation, lambda _e, _n: True, context)

    async def execute_with_custom_retry(
        self,
        operation: Operation[T],
        should_retry: RetryPredicate,
        context: str = "operation",
    ) -> T:
        """Runs `operation`, retrying only errors accepted by `should_retry`.

        A rejected error propagates unchanged after the first failure.

        Raises:
            RetryExhaustedError: When the final attempt fails with a retryable error.
        """
        return await self._run(operation, should_retry, context)

    async def execute_with_retry_result(
        self, operation: Operation[T], context: str = "operation"
    ) -> RetryResult[T]:
        """Like `execute_with_retry`, but reports the outcome instead of raising."""
        attempts: list[RetryAttempt] = []
        start = self._clock()
        try:
            result = await self._run(operation, lambda _e, _n: True, context, attempts)
        except RetryExhaustedError as e:
            return RetryResult(
                success=False,
                error=e.last_error,
                attempts=tuple(attempts),
                total_time=self._clock() - start,
            )
        return RetryResult(
            success=True,
            result=result,
            attempts=tuple(attempts),
            total_time=self._clock() - start,
        )

    def wrap(self, operation: Operation[T], context: str = "operation") -> Operation[T]:
        """Returns a coroutine function that runs `operation` under this policy."""
        return lambda: self.execute_with_retry(operation, context)

    def stats(self) -> RetryStats:
        return RetryStats(
            total_executions=self._executions,
            total_successes=self._successes,
            total_failures=self._failures,
            total_retries=self._retries,
            average_attempts=self._avg_attempts,
            average_execution_time=self._avg_time,
        )

    def reset_stats(self) -> None:
        self._executions = 0
        self._successes = 0
        self._failures = 0
        self._retries = 0
        self._avg_attempts = 0.0
        self._avg_time = 0.0

    def dispose(self) -> None:
        self._disposed = True

    async def _run(
        self,
        operation: Operation[T],
        should_retry: RetryPredicate,
        context: str,
        attempts: list[RetryAttempt] | None = None,
    ) -> T:
        if self._disposed:
            raise DisposedError("RetryPolicy")

        start = self._clock()
        self._executions += 1
        max_attempts = self.options.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                retryable = should_retry(e, attempt)
                if attempt == max_attempts or not retryable:
                    self._record(attempt, start, success=False)
                    if attempts is not None:
                        attempts.append(RetryAttempt(attempt, 0.0, e))
                    if not retryable:
                        logger.debug(f"RETRY {context}: not retryable ({e})")
                        raise
                    logger.error(
                        f"RETRY {context}: giving up after {attempt} attempts: {e}"
                    )
                    raise RetryExhaustedError(context, attempt, e) from e

                delay = self.compute_delay(attempt)
                if attempts is not None:
                    attempts.append(RetryAttempt(attempt, delay, e))
                logger.warning(
                    f"RETRY {context}: attempt {attempt}/{max_attempts} failed "
                    f"({e}); retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
            else:
                self._record(attempt, start, success=True)
                return result

        # The loop always returns or raises.
        raise AssertionError("unreachable")

    def _record(self, attempts: int, start: float, success: bool) -> None:
        if success:
            self._successes += 1
        else:
            self._failures += 1
        self._retries += attempts - 1
        n = self._executions
        self._avg_attempts = (self._avg_attempts * (n - 1) + attempts) / n
        self._avg_time = (self._avg_time * (n - 1) + (self._clock() - start)) / n


# --- Retry conditions ---

_NETWORK_MARKERS = ("network", "timeout", "timed out", "connection", "econnrefused", "enotfound")
_TEMPORARY_MARKERS = ("temporary", "temporarily", "busy", "locked", "unavailable")


def network_errors(error: BaseException, _attempt: int = 0) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _NETWORK_MARKERS)


def temporary_failures(error: BaseException, _attempt: int = 0) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TEMPORARY_MARKERS)


def never(_error: BaseException, _attempt: int = 0) -> bool:
    return False


def always(_error: BaseException, _attempt: int = 0) -> bool:
    return True


def is_transient(error: BaseException, _attempt: int = 0) -> bool:
    """Classifies an error as worth retrying.

    Content, repository-state, validation and open-circuit errors are final.
    Lock contention, network trouble and ordinary I/O failures are transient.
    """
    if isinstance(
        error, (ContentError, RepositoryError, CircuitOpenError, DisposedError, ValueError)
    ):
        return False
    if isinstance(error, RepositoryBusyError):
        return True
    if isinstance(error, GitCommandError):
        return error.transient
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, (FileNotFoundError, IsADirectoryError, PermissionError)):
        return False
    if isinstance(error, OSError):
        return True
    return network_errors(error) or temporary_failures(error)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker thresholds.

    Attributes:
        failure_threshold (int): Consecutive failures that open the circuit.
        recovery_time (float): Seconds after the last failure before probing.
        half_open_max_calls (int): Probe calls allowed, and successes required
            to close again.
        monitoring_window (float): Interval of the failure-count decay tick.
    """

    failure_threshold: int = 5
    recovery_time: float = 60.0
    half_open_max_calls: int = 3
    monitoring_window: float = 300.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigError("circuit.failure_threshold must be at least 1")
        if self.half_open_max_calls < 1:
            raise ConfigError("circuit.half_open_max_calls must be at least 1")
        if self.recovery_time < 0:
            raise ConfigError("circuit.recovery_time must be non-negative")
        if self.monitoring_window <= 0:
            raise ConfigError("circuit.monitoring_window must be positive")


@dataclass(frozen=True)
class CircuitBreakerStats:
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float
    total_executions: int
    total_failures: int
    total_successes: int
    total_rejections: int

    @property
    def failure_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.total_failures / self.total_executions


@dataclass
class CircuitBreaker:
    """
    Circuit breaker shedding load from a failing dependency.

    Implements three states:
    - CLOSED: Normal operation, calls allowed
    - OPEN: After `failure_threshold` consecutive failures, calls rejected
    - HALF-OPEN: After `recovery_time`, up to `half_open_max_calls` probes allowed

    One failed probe re-opens the circuit; `half_open_max_calls` successful
    probes close it.

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
        result = await breaker.execute(client.push)
    """

    config: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    name: str = "git"
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _state: CircuitState = field(default=CircuitState.CLOSED, repr=False)
    _failure_count: int = field(default=0, repr=False)
    _success_count: int = field(default=0, repr=False)
    _half_open_calls: int = field(default=0, repr=False)
    _last_failure_time: float = field(default=0.0, repr=False)
    _total_executions: int = field(default=0, repr=False)
    _total_failures: int = field(default=0, repr=False)
    _total_successes: int = field(default=0, repr=False)
    _total_rejections: int = field(default=0, repr=False)
    _monitor: asyncio.Task | None = field(default=None, repr=False)
    _disposed: bool = field(default=False, repr=False)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_healthy(self) -> bool:
        return self._state is not CircuitState.OPEN

    @property
    def failure_rate(self) -> float:
        """Fraction of admitted calls that failed (0.0 when nothing ran)."""
        if self._total_executions == 0:
            return 0.0
        return self._total_failures / self._total_executions

    async def execute(self, operation: Operation[T]) -> T:
        """Runs `operation` if the circuit admits it.

        Raises:
            CircuitOpenError: If the circuit is open or the half-open probe
                budget is spent. `operation` is not invoked.
            DisposedError: If the breaker has been disposed.
        """
        if self._disposed:
            raise DisposedError(f"CircuitBreaker '{self.name}'")

        self._admit()
        self._total_executions += 1
        try:
            result = await operation()
        except asyncio.CancelledError:
            # Cancellation is not a dependency failure.
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
            raise
        except Exception as e:
            logger.debug(f"CIRCUIT {self.name}: recorded failure {type(e).__name__}: {e}")
            self._on_failure()
            raise
        self._on_success()
        return result

    def wrap(self, operation: Operation[T]) -> Operation[T]:
        return lambda: self.execute(operation)

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            total_executions=self._total_executions,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            total_rejections=self._total_rejections,
        )

    def reset(self) -> None:
        """Returns to CLOSED and forgets the failure history."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0

    def force_open(self) -> None:
        self._state = CircuitState.OPEN
        self._last_failure_time = self.clock()
        self._half_open_calls = 0
        logger.warning(f"CIRCUIT {self.name}: forced OPEN")

    def force_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        logger.info(f"CIRCUIT {self.name}: forced CLOSED")

    def maintenance_tick(self) -> None:
        """Decays the failure count by one after a quiet monitoring window.

        Never changes the state.
        """
        if (
            self._state is CircuitState.CLOSED
            and self._failure_count > 0
            and self.clock() - self._last_failure_time > self.config.monitoring_window
        ):
            self._failure_count -= 1

    def start_monitoring(self) -> None:
        """Starts the periodic maintenance task on the running loop."""
        if self._disposed or (self._monitor and not self._monitor.done()):
            return
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop())

    async def stop_monitoring(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    async def dispose(self) -> None:
        """Stops monitoring and rejects every later call."""
        if self._disposed:
            return
        self._disposed = True
        await self.stop_monitoring()

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.monitoring_window)
            self.maintenance_tick()

    def _admit(self) -> None:
        if self._state is CircuitState.OPEN:
            elapsed = self.clock() - self._last_failure_time
            if elapsed > self.config.recovery_time:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self._success_count = 0
                logger.info(
                    f"CIRCUIT {self.name}: HALF-OPEN after {elapsed:.1f}s cooldown"
                )
            else:
                self._total_rejections += 1
                raise CircuitOpenError(
                    self.name, max(0.0, self.config.recovery_time - elapsed)
                )

        if self._state is CircuitState.HALF_OPEN:
            if self._half_open_calls >= self.config.half_open_max_calls:
                self._total_rejections += 1
                raise CircuitOpenError(self.name, 0.0)
            self._half_open_calls += 1

    def _on_success(self) -> None:
        self._failure_count = 0
        self._total_successes += 1

        if self._state is CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.half_open_max_calls:
                self._state = CircuitState.CLOSED
                self._success_count = 0
                self._half_open_calls = 0
                logger.info(f"CIRCUIT {self.name}: CLOSED")

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._total_failures += 1
        self._last_failure_time = self.clock()

        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._half_open_calls = 0
            self._success_count = 0
            logger.warning(f"CIRCUIT {self.name}: probe failed, OPEN again")
        elif (
            self._state is CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.warning(
                f"CIRCUIT {self.name}: OPEN after {self._failure_count} failures"
            )


# =============================================================================
# Combinators
# =============================================================================


def with_circuit_breaker(breaker: CircuitBreaker, operation: Operation[T]) -> Operation[T]:
    """Wraps `operation` so every call goes through `breaker`."""
    return breaker.wrap(operation)


def with_retry(
    policy: RetryPolicy,
    operation: Operation[T],
    context: str = "operation",
    should_retry: RetryPredicate | None = None,
) -> Operation[T]:
    """Wraps `operation` so every call is retried under `policy`.

    Args:
        policy (RetryPolicy): The retry policy.
        operation (Operation): A zero-argument coroutine function.
        context (str): Label for logs and errors.
        should_retry (RetryPredicate | None): Error classifier; None retries everything.
    """
    if should_retry is None:
        return lambda: policy.execute_with_retry(operation, context)
    return lambda: policy.execute_with_custom_retry(operation, should_retry, context)


def resilient(
    policy: RetryPolicy,
    breaker: CircuitBreaker,
    operation: Operation[T],
    context: str = "operation",
) -> Operation[T]:
    """Composes `with_retry(with_circuit_breaker(operation))` retrying transient errors."""
    return with_retry(
        policy, with_circuit_breaker(breaker, operation), context, is_transient
    )
