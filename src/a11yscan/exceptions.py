"""Exception hierarchy for the accessibility scanner."""

from typing import Optional


class A11yScanError(Exception):
    """Base class for all scanner errors."""


class InvalidURLError(A11yScanError):
    """Raised when a URL is malformed or uses an unsupported scheme."""

    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)


class CrawlerBusyError(A11yScanError):
    """Raised when a crawl is started while another session is running."""


class CrawlerStateError(A11yScanError):
    """Raised when pause/resume is requested in the wrong session state."""


class BrowserError(A11yScanError):
    """Raised by the browser manager (not initialized, page creation failed)."""


class RuleExecutionError(A11yScanError):
    """Raised when the in-page rule evaluation fails."""


class ResilienceError(A11yScanError):
    """Base class for errors produced by the resilience layer."""

    def __init__(self, message: str, operation_type: Optional[str] = None):
        self.message = message
        self.operation_type = operation_type
        super().__init__(message)


class OperationTimeoutError(ResilienceError):
    """Raised when a resilient operation exceeds its timeout."""

    def __init__(self, operation_type: str, timeout_ms: float):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Operation {operation_type} timed out after {timeout_ms:.0f}ms",
            operation_type,
        )


class RetryExhaustedError(ResilienceError):
    """Raised when all retry attempts of an operation failed."""

    def __init__(self, operation_type: str, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        last_message = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(
            f"Operation {operation_type} failed after {attempts} attempts. "
            f"Last error: {last_message or type(last_error).__name__}",
            operation_type,
        )


class CircuitOpenError(ResilienceError):
    """Raised when a circuit breaker rejects a call."""

    def __init__(self, operation_type: str, next_attempt_in_ms: float):
        self.next_attempt_in_ms = next_attempt_in_ms
        super().__init__(
            f"Circuit breaker {operation_type} is OPEN. "
            f"Next attempt in {max(0.0, next_attempt_in_ms):.0f}ms",
            operation_type,
        )


class ConcurrencyLimitError(ResilienceError):
    """Raised when too many resilient operations are in flight."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Maximum concurrent operations ({limit}) exceeded")
