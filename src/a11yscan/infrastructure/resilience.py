"""
Error Resilience Layer.

Wraps fallible async operations (page creation, navigation, rule execution,
metadata extraction, screenshots) in a uniform discipline:

- Timeout race with per-operation-type, adaptively tuned timeouts
- Retries with fixed, linear or exponential backoff and jitter
- One circuit breaker per operation type
- A global ceiling on in-flight resilient operations

Breakers and metrics belong to an ErrorResilienceManager instance; they are
not reset between crawl sessions unless reset() is called.
"""

import asyncio
import json
import logging
import random
import time
import traceback
import uuid
from dataclasses import dataclass, field, asdict, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from a11yscan.config import normalize_keys
from a11yscan.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_MAX_RETRY_DELAY_MS,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_CIRCUIT_BREAKER_THRESHOLD,
    DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS,
    DEFAULT_MAX_CONCURRENT_OPERATIONS,
    DEFAULT_OPERATION_TIMEOUTS_MS,
    FALLBACK_OPERATION_TIMEOUT_MS,
    ADAPTIVE_MIN_SAMPLES,
    ADAPTIVE_SLOW_SUCCESS_RATE,
    ADAPTIVE_SLOW_TIMEOUT_RATE,
    ADAPTIVE_FAST_SUCCESS_RATE,
    ADAPTIVE_FAST_TIMEOUT_RATE,
    ADAPTIVE_INCREASE_FACTOR,
    ADAPTIVE_DECREASE_FACTOR,
    ADAPTIVE_MIN_FACTOR,
    ADAPTIVE_MAX_FACTOR,
    RETRY_JITTER_MIN,
    RETRY_JITTER_MAX,
    DEFAULT_RETRYABLE_ERRORS,
    MAX_STACK_LINES,
)
from a11yscan.exceptions import (
    CircuitOpenError,
    ConcurrencyLimitError,
    OperationTimeoutError,
    RetryExhaustedError,
)
from a11yscan.models import ScanError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResilienceConfig:
    """Configuration for retries, circuit breakers and timeouts."""
    max_retries: int = DEFAULT_MAX_RETRIES
    base_retry_delay_ms: float = DEFAULT_BASE_RETRY_DELAY_MS
    max_retry_delay_ms: float = DEFAULT_MAX_RETRY_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    # Consecutive failures before a breaker opens
    circuit_breaker_threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD

    # How long an open breaker rejects calls
    circuit_breaker_timeout_ms: float = DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS

    # Base timeout per operation type
    operation_timeouts: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_OPERATION_TIMEOUTS_MS)
    )

    adaptive_timeouts: bool = True
    max_concurrent_operations: int = DEFAULT_MAX_CONCURRENT_OPERATIONS

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ResilienceConfig":
        """Build a config; operation timeouts are merged over the defaults."""
        allowed = {f.name for f in fields(cls)}
        values = normalize_keys(data or {}, allowed)
        if "operation_timeouts" in values:
            timeouts = dict(DEFAULT_OPERATION_TIMEOUTS_MS)
            timeouts.update(values["operation_timeouts"] or {})
            values["operation_timeouts"] = timeouts
        return cls(**values)


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class OperationMetrics:
    """Execution history for one operation type."""
    success_count: int = 0
    failure_count: int = 0
    average_execution_time: float = 0.0  # ms
    last_execution_time: float = 0.0  # ms
    timeouts: int = 0

    @property
    def total_operations(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.success_count / self.total_operations

    @property
    def timeout_rate(self) -> float:
        if self.total_operations == 0:
            return 0.0
        return self.timeouts / self.total_operations


@dataclass
class RetryStrategy:
    """Per-call retry settings. ``None`` fields fall back to ResilienceConfig."""
    max_attempts: Optional[int] = None
    delay: Optional[float] = None  # ms
    backoff_type: str = "exponential"  # fixed/linear/exponential
    multiplier: Optional[float] = None
    jitter: bool = True
    retryable_errors: Sequence[str] = DEFAULT_RETRYABLE_ERRORS


class CircuitBreaker:
    """
    Circuit breaker guarding one operation type.

    CLOSED runs calls normally. After ``threshold`` consecutive failures the
    breaker OPENs and rejects every call until ``timeout_ms`` has elapsed.
    The next call then runs as a single HALF_OPEN trial: success closes the
    breaker, failure re-opens it. Calls arriving while the trial is still
    running are rejected.
    """

    def __init__(
        self,
        threshold: int,
        timeout_ms: float,
        name: str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.timeout_ms = timeout_ms
        self.name = name
        self._clock = clock

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time = 0.0
        self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run an operation through the breaker.

        Raises:
            CircuitOpenError: If the breaker is open (or a trial is running)
        """
        is_trial = False

        if self._state == CircuitBreakerState.OPEN:
            now = self._clock()
            if now >= self._next_attempt_time:
                logger.info(f"Circuit breaker {self.name}: cool-down elapsed, allowing trial call")
                self._state = CircuitBreakerState.HALF_OPEN
            else:
                raise CircuitOpenError(self.name, (self._next_attempt_time - now) * 1000)

        if self._state == CircuitBreakerState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0)
            self._trial_in_flight = True
            is_trial = True

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _on_success(self) -> None:
        if self._state != CircuitBreakerState.CLOSED:
            logger.info(f"Circuit breaker {self.name} closed")
        self._failure_count = 0
        self._state = CircuitBreakerState.CLOSED

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if (
            self._state == CircuitBreakerState.HALF_OPEN
            or self._failure_count >= self.threshold
        ):
            self._state = CircuitBreakerState.OPEN
            self._next_attempt_time = self._clock() + self.timeout_ms / 1000
            logger.warning(
                f"Circuit breaker {self.name} OPEN after {self._failure_count} failures "
                f"(cool-down {self.timeout_ms:.0f}ms)"
            )

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_time(self) -> float:
        """Clock value after which an open breaker allows a trial call."""
        return self._next_attempt_time

    def reset(self) -> None:
        """Close the breaker and forget its failures."""
        self._failure_count = 0
        self._state = CircuitBreakerState.CLOSED
        self._next_attempt_time = 0.0
        self._trial_in_flight = False


class TimeoutManager:
    """
    Adaptive timeout manager.

    Keeps OperationMetrics per operation type and scales the base timeout
    once at least ADAPTIVE_MIN_SAMPLES executions have been recorded.
    """

    def __init__(self, config: ResilienceConfig):
        self.config = config
        self._metrics: dict[str, OperationMetrics] = {}

    def get_timeout(self, operation_type: str) -> float:
        """
        Get the timeout (ms) for an operation type.

        Args:
            operation_type: Operation type name (e.g. "navigation")

        Returns:
            Timeout in milliseconds
        """
        base_timeout = self.config.operation_timeouts.get(
            operation_type, FALLBACK_OPERATION_TIMEOUT_MS
        )

        if not self.config.adaptive_timeouts:
            return base_timeout

        metrics = self._metrics.get(operation_type)
        if metrics is None:
            return base_timeout

        factor = self._calculate_adaptive_factor(metrics)
        factor = max(ADAPTIVE_MIN_FACTOR, min(ADAPTIVE_MAX_FACTOR, factor))
        return base_timeout * factor

    def record_execution(
        self,
        operation_type: str,
        execution_time: float,
        success: bool,
        timed_out: bool = False,
    ) -> None:
        """
        Record one execution of an operation type.

        Args:
            operation_type: Operation type name
            execution_time: Time taken (ms)
            success: Whether the operation succeeded
            timed_out: Whether it failed by timing out
        """
        metrics = self._metrics.setdefault(operation_type, OperationMetrics())
        previous_total = metrics.total_operations

        if success:
            metrics.success_count += 1
        else:
            metrics.failure_count += 1

        if timed_out:
            metrics.timeouts += 1

        metrics.average_execution_time = (
            metrics.average_execution_time * previous_total + execution_time
        ) / (previous_total + 1)
        metrics.last_execution_time = execution_time

    def _calculate_adaptive_factor(self, metrics: OperationMetrics) -> float:
        if metrics.total_operations < ADAPTIVE_MIN_SAMPLES:
            return 1.0

        success_rate = metrics.success_rate
        timeout_rate = metrics.timeout_rate

        if success_rate < ADAPTIVE_SLOW_SUCCESS_RATE or timeout_rate > ADAPTIVE_SLOW_TIMEOUT_RATE:
            return ADAPTIVE_INCREASE_FACTOR

        if success_rate > ADAPTIVE_FAST_SUCCESS_RATE and timeout_rate < ADAPTIVE_FAST_TIMEOUT_RATE:
            return ADAPTIVE_DECREASE_FACTOR

        return 1.0

    def get_metrics(self) -> dict[str, OperationMetrics]:
        """Copy of the per-type metrics."""
        return {name: replace(m) for name, m in self._metrics.items()}

    def reset(self) -> None:
        self._metrics.clear()


class RetryManager:
    """Retry manager with fixed, linear and exponential backoff."""

    def __init__(
        self,
        config: ResilienceConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self._sleep = sleep

    def resolve_strategy(self, strategy: Optional[RetryStrategy]) -> RetryStrategy:
        """Fill unset strategy fields from the resilience config."""
        strategy = strategy or RetryStrategy()
        return replace(
            strategy,
            max_attempts=strategy.max_attempts if strategy.max_attempts is not None else self.config.max_retries,
            delay=strategy.delay if strategy.delay is not None else self.config.base_retry_delay_ms,
            multiplier=strategy.multiplier if strategy.multiplier is not None else self.config.backoff_multiplier,
        )

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        strategy: Optional[RetryStrategy],
        operation_type: str,
    ) -> T:
        """
        Execute an operation, retrying retryable failures.

        Raises:
            RetryExhaustedError: When every attempt failed
            Exception: The original error when it is not retryable
        """
        strategy = self.resolve_strategy(strategy)
        last_error: Optional[Exception] = None
        attempt = 0

        while attempt < strategy.max_attempts:
            try:
                return await operation()
            except Exception as e:
                last_error = e
                attempt += 1

                if attempt >= strategy.max_attempts:
                    break

                if not self.is_retryable_error(e, strategy.retryable_errors):
                    raise

                delay = self.calculate_delay(attempt, strategy)
                logger.debug(
                    f"{operation_type} attempt {attempt}/{strategy.max_attempts} failed ({e}); "
                    f"retrying in {delay:.0f}ms"
                )
                await self._sleep(delay / 1000)

        raise RetryExhaustedError(operation_type, attempt, last_error) from last_error

    @staticmethod
    def is_retryable_error(error: BaseException, retryable_errors: Sequence[str]) -> bool:
        """An error is retryable when its message or class name contains a retryable substring."""
        message = str(error).lower()
        name = type(error).__name__.lower()
        return any(
            kind.lower() in message or kind.lower() in name
            for kind in retryable_errors
        )

    def base_delay(self, attempt: int, strategy: RetryStrategy) -> float:
        """Delay (ms) before retry ``attempt`` without jitter or cap."""
        strategy = self.resolve_strategy(strategy)
        if strategy.backoff_type == "linear":
            return strategy.delay * attempt
        if strategy.backoff_type == "exponential":
            return strategy.delay * strategy.multiplier ** (attempt - 1)
        return strategy.delay

    def calculate_delay(self, attempt: int, strategy: RetryStrategy) -> float:
        """Delay (ms) before retry ``attempt``: backoff, optional jitter, capped."""
        delay = self.base_delay(attempt, strategy)

        if strategy.jitter:
            delay *= random.uniform(RETRY_JITTER_MIN, RETRY_JITTER_MAX)

        return min(delay, self.config.max_retry_delay_ms)


def _is_timeout(error: BaseException) -> bool:
    if isinstance(error, (OperationTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return True
    message = str(error).lower()
    return "timeout" in message or "timed out" in message


def categorize_error(error: BaseException, context: str) -> ScanError:
    """
    Categorize an error by sniffing its message.

    Args:
        error: The exception to categorize
        context: Where it happened (e.g. "Rule execution")

    Returns:
        ScanError with type timeout/network/parsing/runtime
    """
    message = str(error) or type(error).__name__
    lowered = message.lower()

    if "timeout" in lowered or "time out" in lowered or "timed out" in lowered:
        error_type = "timeout"
    elif any(token in lowered for token in ("network", "connection", "dns", "unreachable")):
        error_type = "network"
    elif any(token in lowered for token in ("parse", "syntax", "invalid html", "malformed")):
        error_type = "parsing"
    else:
        error_type = "runtime"

    stack_lines = [
        line
        for chunk in traceback.format_exception(type(error), error, error.__traceback__)
        for line in chunk.rstrip().splitlines()
        if line.strip()
    ]

    return ScanError(
        type=error_type,
        message=message,
        details=json.dumps({
            "context": context,
            "original_error": type(error).__name__,
            "stack": "\n".join(stack_lines[-MAX_STACK_LINES:]),
            "timestamp": datetime.now().isoformat(),
        }),
    )


class ErrorResilienceManager:
    """
    Runs operations with timeout, retry and circuit breaker protection.

    Usage:
        manager = ErrorResilienceManager(ResilienceConfig(max_retries=2))
        page = await manager.execute_resilient(
            browser.create_page, "pageCreation",
            retry_strategy=RetryStrategy(max_attempts=2, backoff_type="linear"),
        )
    """

    def __init__(self, config: ResilienceConfig | dict | None = None):
        if isinstance(config, dict):
            config = ResilienceConfig.from_dict(config)
        self.config = config or ResilienceConfig()

        self._circuit_breakers: dict[str, CircuitBreaker] = {}
        self._active_operations: set[str] = set()
        self.timeout_manager = TimeoutManager(self.config)
        self.retry_manager = RetryManager(self.config)

    async def execute_resilient(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_type: str,
        *,
        use_circuit_breaker: bool = True,
        use_retry: bool = True,
        use_timeout: bool = True,
        retry_strategy: Optional[RetryStrategy] = None,
    ) -> T:
        """
        Execute an operation with the selected resilience wrappers.

        The operation is raced against its timeout, the timed call is retried
        per strategy, and the retried call runs through the operation type's
        circuit breaker.

        Args:
            operation: Zero-argument coroutine factory
            operation_type: Operation type (selects timeout, breaker, metrics)
            use_circuit_breaker: Route through the type's circuit breaker
            use_retry: Retry per ``retry_strategy``
            use_timeout: Race against the (adaptive) timeout
            retry_strategy: Overrides for the retry behaviour

        Raises:
            ConcurrencyLimitError: Too many resilient operations in flight
            CircuitOpenError: The type's breaker is open
            RetryExhaustedError: Every retry attempt failed
        """
        if len(self._active_operations) >= self.config.max_concurrent_operations:
            raise ConcurrencyLimitError(self.config.max_concurrent_operations)

        operation_id = f"{operation_type}-{uuid.uuid4().hex}"
        self._active_operations.add(operation_id)

        try:
            async def timed_operation() -> T:
                start = time.perf_counter()
                try:
                    if use_timeout:
                        timeout_ms = self.timeout_manager.get_timeout(operation_type)
                        try:
                            result = await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
                        except asyncio.TimeoutError as e:
                            raise OperationTimeoutError(operation_type, timeout_ms) from e
                    else:
                        result = await operation()
                except Exception as e:
                    elapsed = (time.perf_counter() - start) * 1000
                    self.timeout_manager.record_execution(
                        operation_type, elapsed, success=False, timed_out=_is_timeout(e)
                    )
                    raise

                elapsed = (time.perf_counter() - start) * 1000
                self.timeout_manager.record_execution(operation_type, elapsed, success=True)
                return result

            call: Callable[[], Awaitable[T]] = timed_operation

            if use_retry:
                async def retried_operation() -> T:
                    return await self.retry_manager.execute_with_retry(
                        timed_operation, retry_strategy, operation_type
                    )
                call = retried_operation

            if use_circuit_breaker:
                breaker = self.get_circuit_breaker(operation_type)
                return await breaker.execute(call)

            return await call()
        finally:
            self._active_operations.discard(operation_id)

    def get_circuit_breaker(self, operation_type: str) -> CircuitBreaker:
        """Get (creating on first use) the breaker for an operation type."""
        if operation_type not in self._circuit_breakers:
            self._circuit_breakers[operation_type] = CircuitBreaker(
                self.config.circuit_breaker_threshold,
                self.config.circuit_breaker_timeout_ms,
                operation_type,
            )
        return self._circuit_breakers[operation_type]

    @property
    def active_operations(self) -> int:
        return len(self._active_operations)

    def categorize_error(self, error: BaseException, context: str) -> ScanError:
        return categorize_error(error, context)

    def get_status(self) -> dict:
        """Config, in-flight count, breaker states and per-type metrics."""
        return {
            "config": asdict(self.config),
            "active_operations": len(self._active_operations),
            "circuit_breakers": [
                {
                    "name": name,
                    "state": breaker.state.value,
                    "failure_count": breaker.failure_count,
                }
                for name, breaker in self._circuit_breakers.items()
            ],
            "operation_metrics": {
                name: asdict(metrics)
                for name, metrics in self.timeout_manager.get_metrics().items()
            },
        }

    def reset(self) -> None:
        """Clear breakers, metrics and in-flight tracking."""
        for breaker in self._circuit_breakers.values():
            breaker.reset()
        self._circuit_breakers.clear()
        self.timeout_manager.reset()
        self._active_operations.clear()

    def update_config(self, **changes: Any) -> None:
        """Replace config values; breakers created afterwards use the new values."""
        self.config = replace(self.config, **changes)
        self.timeout_manager.config = self.config
        self.retry_manager.config = self.config
