"""
Infrastructure Package.

Browser lifecycle, the error resilience layer and request spacing used by
the page scanner and the site crawler.
"""

from .browser_manager import (
    BrowserManager,
    NavigationOptions,
    PageLoadResult,
    PageError,
    ResourceInfo,
)
from .resilience import (
    ErrorResilienceManager,
    ResilienceConfig,
    RetryStrategy,
    RetryManager,
    TimeoutManager,
    CircuitBreaker,
    CircuitBreakerState,
    OperationMetrics,
    categorize_error,
)
from .rate_limiter import (
    RateLimiter,
    RateLimitMetrics,
)

__all__ = [
    # Browser
    "BrowserManager",
    "NavigationOptions",
    "PageLoadResult",
    "PageError",
    "ResourceInfo",
    # Resilience
    "ErrorResilienceManager",
    "ResilienceConfig",
    "RetryStrategy",
    "RetryManager",
    "TimeoutManager",
    "CircuitBreaker",
    "CircuitBreakerState",
    "OperationMetrics",
    "categorize_error",
    # Rate Limiter
    "RateLimiter",
    "RateLimitMetrics",
]
