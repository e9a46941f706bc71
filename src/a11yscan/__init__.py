"""Resilient crawl-and-scan engine for WCAG accessibility audits."""

__version__ = "0.1.0"

from a11yscan.page_scanner import PageScanner, calculate_accessibility_score
from a11yscan.site_crawler import SiteCrawler
from a11yscan.rule_engine import RuleEngine, RuleResult
from a11yscan.wcag_level_handler import WCAGLevelConfig, WCAGLevelHandler
from a11yscan.frontier import URLFrontier, normalize_url
from a11yscan.events import CrawlEventBus
from a11yscan.discovery import RobotsPolicy, SitemapParser
from a11yscan.models import (
    AccessibilityIssue,
    ScanError,
    ScanMetadata,
    ScanResult,
    ComplianceSummary,
    URLEntry,
    URLStatus,
    URLDiscoverySource,
    CrawlStatus,
    CrawlStats,
    CrawlSession,
    CrawlEvent,
    CrawlEventType,
    CrawlProgress,
)
from a11yscan.config import Config, CrawlerConfig, ScanOptions, settings

from a11yscan.infrastructure import (
    BrowserManager,
    ErrorResilienceManager,
    ResilienceConfig,
    RetryStrategy,
    CircuitBreaker,
    CircuitBreakerState,
    RateLimiter,
)

__all__ = [
    "PageScanner",
    "calculate_accessibility_score",
    "SiteCrawler",
    "RuleEngine",
    "RuleResult",
    "WCAGLevelConfig",
    "WCAGLevelHandler",
    "URLFrontier",
    "normalize_url",
    "CrawlEventBus",
    "RobotsPolicy",
    "SitemapParser",
    "AccessibilityIssue",
    "ScanError",
    "ScanMetadata",
    "ScanResult",
    "ComplianceSummary",
    "URLEntry",
    "URLStatus",
    "URLDiscoverySource",
    "CrawlStatus",
    "CrawlStats",
    "CrawlSession",
    "CrawlEvent",
    "CrawlEventType",
    "CrawlProgress",
    "Config",
    "CrawlerConfig",
    "ScanOptions",
    "settings",
    "BrowserManager",
    "ErrorResilienceManager",
    "ResilienceConfig",
    "RetryStrategy",
    "CircuitBreaker",
    "CircuitBreakerState",
    "RateLimiter",
]
