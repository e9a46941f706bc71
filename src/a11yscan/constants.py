# src/a11yscan/constants.py
"""Centralized constants for the accessibility scanner.

This module contains magic numbers and default values that are used
across multiple modules. For user-configurable settings, see config.py.
All durations are in milliseconds unless the name says otherwise.
"""

# =============================================================================
# WCAG Constants
# =============================================================================

WCAG_LEVELS = ("A", "AA", "AAA", "ARIA")

SEVERITIES = ("critical", "serious", "moderate", "minor", "warning")

# Impact values reported by axe-core
IMPACTS = ("critical", "serious", "moderate", "minor")

# Tag used by axe-core for non-WCAG recommendations
BEST_PRACTICE_TAG = "best-practice"

# Level assumed when a rule carries no wcag2a/wcag2aa/wcag2aaa tag
DEFAULT_RULE_LEVEL = "AA"


# =============================================================================
# Scoring Constants
# =============================================================================

# Weight of a single issue per severity
SEVERITY_WEIGHTS = {
    "critical": 10.0,
    "serious": 5.0,
    "moderate": 2.0,
    "minor": 1.0,
    "warning": 0.5,
}

# Points deducted per unit of normalized weight
SCORE_PENALTY_PER_WEIGHT = 5

MAX_SCORE = 100.0
MIN_SCORE = 0.0


# =============================================================================
# Resilience Constants
# =============================================================================

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_RETRY_DELAY_MS = 1000
DEFAULT_MAX_RETRY_DELAY_MS = 10000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_CIRCUIT_BREAKER_THRESHOLD = 5
DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS = 30000
DEFAULT_MAX_CONCURRENT_OPERATIONS = 10

# Base timeouts per operation type
DEFAULT_OPERATION_TIMEOUTS_MS = {
    "navigation": 30000,
    "pageReady": 10000,
    "ruleExecution": 15000,
    "metadataExtraction": 5000,
    "screenshot": 10000,
}

# Timeout for operation types not listed above
FALLBACK_OPERATION_TIMEOUT_MS = 5000

# Adaptive timeout tuning
ADAPTIVE_MIN_SAMPLES = 5
ADAPTIVE_SLOW_SUCCESS_RATE = 0.8
ADAPTIVE_SLOW_TIMEOUT_RATE = 0.2
ADAPTIVE_FAST_SUCCESS_RATE = 0.95
ADAPTIVE_FAST_TIMEOUT_RATE = 0.05
ADAPTIVE_INCREASE_FACTOR = 1.5
ADAPTIVE_DECREASE_FACTOR = 0.8
ADAPTIVE_MIN_FACTOR = 0.5
ADAPTIVE_MAX_FACTOR = 3.0

# Jitter range applied to retry delays
RETRY_JITTER_MIN = 0.5
RETRY_JITTER_MAX = 1.0

# Substrings that make an error retryable when no strategy overrides them
DEFAULT_RETRYABLE_ERRORS = ("timeout", "network", "runtime")

# Stack lines kept in categorized error details
MAX_STACK_LINES = 3


# =============================================================================
# Crawler Constants
# =============================================================================

DEFAULT_MAX_DEPTH = 2
DEFAULT_MAX_PAGES = 100
DEFAULT_REQUEST_DELAY_MS = 1000
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_USER_AGENT = "a11yscan/1.0 (Accessibility Scanner)"

# Unlimited crawl depth marker
UNLIMITED_DEPTH = -1

# Priority assigned to start URLs
MAX_PRIORITY = 100

# Priority lost per depth level
PRIORITY_DECREMENT = 10

# Lowest priority a discovered URL can get
MIN_PRIORITY = 1

# Priority for sitemap entries without a <priority> element (0.5 * 100)
DEFAULT_SITEMAP_PRIORITY = 0.5

# Rolling error list bounds
MAX_RECENT_ERRORS = 20
PROGRESS_RECENT_ERRORS = 10

# Scheduling loop idle waits (seconds)
IDLE_WAIT_SECONDS = 0.05
PAUSE_WAIT_SECONDS = 0.25

# Maximum URLs accepted from sitemaps per start URL
MAX_SITEMAP_URLS = 500

# Maximum nesting of sitemap index files
MAX_SITEMAP_DEPTH = 3

# robots.txt / sitemap fetch timeout (seconds)
DISCOVERY_FETCH_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Browser Constants
# =============================================================================

DEFAULT_VIEWPORT_WIDTH = 1280
DEFAULT_VIEWPORT_HEIGHT = 720

# Internal navigation retries (the resilience layer retries on top of this)
DEFAULT_NAVIGATION_RETRIES = 1
DEFAULT_NAVIGATION_RETRY_DELAY_MS = 500

# Each page.goto attempt ends this long before the navigation timeout race
NAVIGATION_TIMEOUT_HEADROOM_MS = 1000
MIN_NAVIGATION_ATTEMPT_TIMEOUT_MS = 1000

# Page readiness waits
NETWORK_IDLE_TIMEOUT_MS = 10000
READY_PREDICATE_TIMEOUT_MS = 5000
PAGE_SETTLE_DELAY_MS = 1000
DEFAULT_PAGE_READY_TIMEOUT_MS = 10000

# Pinned axe-core build injected into pages
AXE_CORE_VERSION = "4.10.2"
AXE_CORE_CDN_URL = (
    f"https://cdnjs.cloudflare.com/ajax/libs/axe-core/{AXE_CORE_VERSION}/axe.min.js"
)

# =============================================================================
# Logging Constants
# =============================================================================

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers held at WARNING unless the scanner runs at DEBUG
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "playwright")
