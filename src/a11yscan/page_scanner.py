"""
Page Scanner.

Scans a single URL: opens a page, navigates, waits for the page to settle,
extracts metadata (and optionally links), runs the accessibility rules and
turns the violations into scored, WCAG-categorized issues. Every browser
step runs through the ErrorResilienceManager.

scan() never raises: unexpected failures produce a partial result with
``success=False`` and the error recorded.
"""

import json
import logging
import math
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from a11yscan.config import ScanOptions
from a11yscan.constants import (
    SEVERITY_WEIGHTS,
    SCORE_PENALTY_PER_WEIGHT,
    MAX_SCORE,
    MIN_SCORE,
    NETWORK_IDLE_TIMEOUT_MS,
    READY_PREDICATE_TIMEOUT_MS,
    PAGE_SETTLE_DELAY_MS,
    DEFAULT_NAVIGATION_RETRIES,
    DEFAULT_NAVIGATION_RETRY_DELAY_MS,
    NAVIGATION_TIMEOUT_HEADROOM_MS,
    MIN_NAVIGATION_ATTEMPT_TIMEOUT_MS,
    DEFAULT_VIEWPORT_WIDTH,
    DEFAULT_VIEWPORT_HEIGHT,
)
from a11yscan.exceptions import BrowserError
from a11yscan.infrastructure.browser_manager import (
    BrowserManager,
    NavigationOptions,
    PageLoadResult,
)
from a11yscan.infrastructure.resilience import (
    ErrorResilienceManager,
    ResilienceConfig,
    RetryStrategy,
)
from a11yscan.models import (
    AccessibilityIssue,
    ScanError,
    ScanMetadata,
    ScanResult,
)
from a11yscan.rule_engine import RuleEngine, RuleResult
from a11yscan.wcag_level_handler import WCAGLevelConfig, WCAGLevelHandler

logger = logging.getLogger(__name__)


# Retry strategies per scan step
INITIALIZATION_RETRY = RetryStrategy(max_attempts=2, backoff_type="fixed", retryable_errors=("timeout", "network"))
PAGE_CREATION_RETRY = RetryStrategy(max_attempts=2, backoff_type="linear", retryable_errors=("timeout", "runtime"))
NAVIGATION_RETRY = RetryStrategy(max_attempts=3, backoff_type="exponential", retryable_errors=("timeout", "network"))
PAGE_READY_RETRY = RetryStrategy(max_attempts=2, backoff_type="linear", retryable_errors=("timeout",))
METADATA_RETRY = RetryStrategy(max_attempts=2, backoff_type="fixed", retryable_errors=("runtime", "timeout"))
RULE_EXECUTION_RETRY = RetryStrategy(max_attempts=2, backoff_type="linear", retryable_errors=("runtime", "timeout"))
SCREENSHOT_RETRY = RetryStrategy(max_attempts=2, backoff_type="fixed", retryable_errors=("timeout", "runtime"))

# Browser-level navigation error types reported as runtime scan errors
RUNTIME_NAVIGATION_ERRORS = ("navigation", "javascript", "security")

METADATA_SCRIPT = """
() => ({
    totalElements: document.querySelectorAll('*').length,
    interactiveElements: document.querySelectorAll(
        'a, button, input, select, textarea, [tabindex], [role="button"], [role="link"]'
    ).length,
    title: document.title || '',
    url: window.location.href || '',
    userAgent: navigator.userAgent || '',
    viewport: {
        width: window.innerWidth || 1280,
        height: window.innerHeight || 720,
    },
    language: document.documentElement.lang || '',
})
"""

ELEMENT_NAME_RE = re.compile(r"<(\w+)")


def is_valid_url(url: str) -> bool:
    """Only absolute http(s) URLs can be scanned."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_element_name(html: str) -> str:
    match = ELEMENT_NAME_RE.search(html or "")
    return match.group(1).lower() if match else "unknown"


def calculate_accessibility_score(issues: list[AccessibilityIssue], total_elements: int) -> float:
    """
    Score a page from 0 to 100.

    Issue weights are summed by severity and normalized by page complexity
    (log10 of the element count, at least 1); each normalized weight unit
    costs SCORE_PENALTY_PER_WEIGHT points.
    """
    if not issues:
        return MAX_SCORE

    total_weight = sum(SEVERITY_WEIGHTS.get(issue.severity, 1.0) for issue in issues)
    complexity_factor = max(1.0, math.log10(total_elements or 1))
    normalized_weight = total_weight / complexity_factor

    score = max(MIN_SCORE, MAX_SCORE - normalized_weight * SCORE_PENALTY_PER_WEIGHT)
    return round(min(MAX_SCORE, score), 2)


def navigation_attempt_timeout(
    timeout_ms: float,
    budget_ms: float,
    retries: int = DEFAULT_NAVIGATION_RETRIES,
    retry_delay_ms: float = DEFAULT_NAVIGATION_RETRY_DELAY_MS,
) -> float:
    """
    Timeout for one page.goto attempt.

    All attempts plus the delays between them must finish inside the
    navigation budget, otherwise the outer timeout cancels navigate()
    before its own failure handling and retries run.
    """
    retries = max(1, retries)
    per_attempt = (budget_ms - retry_delay_ms * (retries - 1)) / retries
    per_attempt -= NAVIGATION_TIMEOUT_HEADROOM_MS
    return max(MIN_NAVIGATION_ATTEMPT_TIMEOUT_MS, min(timeout_ms, per_attempt))


def default_metadata(url: str, scan_started: float) -> ScanMetadata:
    return ScanMetadata(
        scan_duration=(time.perf_counter() - scan_started) * 1000,
        original_url=url,
        final_url=url,
    )


class PageScanner:
    """
    Scan orchestrator for single pages.

    Usage:
        scanner = PageScanner(headless=True)
        await scanner.initialize()
        result = await scanner.scan("https://example.com")
        await scanner.cleanup()
    """

    def __init__(
        self,
        browser: Optional[BrowserManager] = None,
        rule_engine: Optional[RuleEngine] = None,
        resilience: ErrorResilienceManager | ResilienceConfig | dict | None = None,
        wcag_config: WCAGLevelConfig | dict | None = None,
        *,
        headless: bool = True,
        user_agent: Optional[str] = None,
        viewport: Optional[dict[str, int]] = None,
        axe_script_path: Optional[str] = None,
        axe_source_url: Optional[str] = None,
    ):
        """
        Initialize page scanner.

        Args:
            browser: Browser collaborator (a BrowserManager is created if omitted)
            rule_engine: Rule evaluator (a RuleEngine is created if omitted)
            resilience: Resilience manager, or the config to build one from
            wcag_config: WCAG level configuration
            headless: Headless mode for the default browser
            user_agent: User agent for the default browser
            viewport: Viewport for the default browser
            axe_script_path: Local axe-core build for the default rule engine
            axe_source_url: axe-core download URL for the default rule engine
        """
        self.browser = browser or BrowserManager(
            headless=headless,
            user_agent=user_agent,
            viewport=viewport,
        )
        self.rule_engine = rule_engine or RuleEngine(
            axe_script_path=axe_script_path,
            axe_source_url=axe_source_url,
        )
        if isinstance(resilience, ErrorResilienceManager):
            self.resilience = resilience
        else:
            self.resilience = ErrorResilienceManager(resilience)
        self.wcag_handler = WCAGLevelHandler(wcag_config)

        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Start the browser.

        Raises:
            BrowserError: If the browser cannot be started
        """
        if self._initialized:
            return

        try:
            await self.resilience.execute_resilient(
                self.browser.initialize,
                "initialization",
                use_circuit_breaker=False,
                use_timeout=False,
                retry_strategy=INITIALIZATION_RETRY,
            )
        except Exception as e:
            scan_error = self.resilience.categorize_error(e, "PageScanner initialization")
            raise BrowserError(f"Failed to initialize PageScanner: {scan_error.message}") from e

        self._initialized = True
        logger.info("Page scanner initialized")

    async def scan(self, url: str, options: Optional[ScanOptions] = None) -> ScanResult:
        """
        Scan a page for accessibility issues.

        Args:
            url: Absolute http(s) URL
            options: Per-scan options (WCAG overrides, timeouts, screenshot, links)

        Returns:
            ScanResult; ``success`` is False when the page could not be scanned
        """
        options = options or ScanOptions()
        scan_started = time.perf_counter()

        if not is_valid_url(url):
            logger.warning(f"Refusing to scan invalid URL: {url}")
            return ScanResult(
                url=url,
                score=0.0,
                errors=[ScanError(type="parsing", message=f"Invalid URL provided: {url}")],
                metadata=default_metadata(url, scan_started),
                success=False,
            )

        handler = self.wcag_handler.with_overrides(
            options.wcag_level, options.include_aaa, options.include_aria
        )
        errors: list[ScanError] = []
        issues: list[AccessibilityIssue] = []
        page = None

        try:
            if not self._initialized:
                await self.initialize()

            page = await self.resilience.execute_resilient(
                self.browser.create_page,
                "pageCreation",
                retry_strategy=PAGE_CREATION_RETRY,
            )

            attempt_timeout = navigation_attempt_timeout(
                options.timeout_ms,
                self.resilience.timeout_manager.get_timeout("navigation"),
            )
            navigation = await self.resilience.execute_resilient(
                lambda: self.browser.navigate(page, url, NavigationOptions(
                    timeout_ms=attempt_timeout,
                    wait_until="domcontentloaded",
                    retries=DEFAULT_NAVIGATION_RETRIES,
                    retry_delay_ms=DEFAULT_NAVIGATION_RETRY_DELAY_MS,
                )),
                "navigation",
                retry_strategy=NAVIGATION_RETRY,
            )
            if not navigation.success:
                errors.append(self._navigation_error(navigation))

            try:
                await self.resilience.execute_resilient(
                    lambda: self._wait_for_page_ready(page, options.page_ready_timeout_ms),
                    "pageReady",
                    retry_strategy=PAGE_READY_RETRY,
                )
            except Exception as e:
                logger.warning(f"Page ready wait failed for {url}, continuing with scan: {e}")

            try:
                metadata = await self.resilience.execute_resilient(
                    lambda: self._extract_metadata(page, navigation, scan_started),
                    "metadataExtraction",
                    retry_strategy=METADATA_RETRY,
                )
            except Exception as e:
                logger.debug(f"Metadata extraction failed for {url}: {e}")
                metadata = default_metadata(url, scan_started)

            links: list[str] = []
            if options.collect_links:
                try:
                    links = await self.browser.extract_links(page)
                except Exception as e:
                    logger.debug(f"Link extraction failed for {url}: {e}")

            try:
                rule_results = await self.resilience.execute_resilient(
                    lambda: self.rule_engine.execute_rules(
                        page, handler.generate_axe_tags(), options.disabled_rules
                    ),
                    "ruleExecution",
                    retry_strategy=RULE_EXECUTION_RETRY,
                )
                for rule_result in rule_results:
                    issues.extend(self._transform_rule_result(rule_result, handler))
                issues = handler.filter_issues(issues)
            except Exception as e:
                errors.append(self.resilience.categorize_error(e, "Rule execution"))

            score = calculate_accessibility_score(issues, metadata.total_elements)
            compliance = handler.get_compliance_summary(issues)

            screenshot_path = None
            if options.screenshot:
                try:
                    screenshot_path = await self.resilience.execute_resilient(
                        lambda: self.browser.screenshot(
                            page, self._screenshot_path(url, options.screenshot_dir)
                        ),
                        "screenshot",
                        retry_strategy=SCREENSHOT_RETRY,
                    )
                except Exception as e:
                    errors.append(self.resilience.categorize_error(e, "Screenshot capture"))

            metadata.scan_duration = (time.perf_counter() - scan_started) * 1000
            logger.info(
                f"Scanned {url}: score {score}, {len(issues)} issues, {len(errors)} errors"
            )

            return ScanResult(
                url=url,
                score=score,
                issues=issues,
                errors=errors,
                metadata=metadata,
                compliance=compliance,
                links=links,
                screenshot_path=screenshot_path,
                success=navigation.success,
            )

        except Exception as e:
            logger.error(f"Scan of {url} failed: {e}")
            errors.append(self.resilience.categorize_error(e, "Page scan operation"))
            return ScanResult(
                url=url,
                score=0.0,
                issues=issues,
                errors=errors,
                metadata=default_metadata(url, scan_started),
                success=False,
            )

        finally:
            if page is not None:
                await self.browser.close_page(page)

    def _navigation_error(self, navigation: PageLoadResult) -> ScanError:
        error = navigation.error
        error_type = error.type if error else "network"
        if error_type in RUNTIME_NAVIGATION_ERRORS:
            error_type = "runtime"
        return ScanError(
            type=error_type,
            message=error.message if error else "Navigation failed",
            details=json.dumps(error.details) if error and error.details else None,
        )

    async def _wait_for_page_ready(self, page, timeout_ms: float) -> None:
        """Network idle (best effort), then document ready, then a settle delay."""
        try:
            await self.browser.wait_for_network_idle(page, min(timeout_ms, NETWORK_IDLE_TIMEOUT_MS))
        except Exception as e:
            logger.debug(f"Network did not go idle: {e}")

        await self.browser.wait_for_ready_state(page, min(timeout_ms, READY_PREDICATE_TIMEOUT_MS))
        await self.browser.wait(PAGE_SETTLE_DELAY_MS)

    async def _extract_metadata(
        self,
        page,
        navigation: PageLoadResult,
        scan_started: float,
    ) -> ScanMetadata:
        info = await self.browser.evaluate(page, METADATA_SCRIPT) or {}
        viewport = info.get("viewport") or {}

        return ScanMetadata(
            scan_duration=(time.perf_counter() - scan_started) * 1000,
            page_load_time=navigation.load_time,
            total_elements=int(info.get("totalElements") or 0),
            tested_elements=int(info.get("interactiveElements") or 0),
            user_agent=info.get("userAgent") or "unknown",
            viewport={
                "width": int(viewport.get("width") or DEFAULT_VIEWPORT_WIDTH),
                "height": int(viewport.get("height") or DEFAULT_VIEWPORT_HEIGHT),
            },
            original_url=navigation.url,
            final_url=info.get("url") or navigation.final_url,
            redirects=navigation.redirects,
            title=info.get("title") or None,
            language=info.get("language") or None,
        )

    @staticmethod
    def _transform_rule_result(
        rule_result: RuleResult,
        handler: WCAGLevelHandler,
    ) -> list[AccessibilityIssue]:
        severity = handler.map_to_severity(
            rule_result.level, rule_result.impact, rule_result.wcag_reference
        )
        return [
            AccessibilityIssue(
                id=rule_result.rule_id,
                wcag_reference=rule_result.wcag_reference,
                level=rule_result.level,
                severity=severity,
                element=extract_element_name(node.html),
                selector=", ".join(node.target),
                message=rule_result.description,
                remediation=rule_result.help,
                impact=rule_result.impact,
                help_url=rule_result.help_url,
                tags=list(rule_result.tags),
            )
            for node in rule_result.nodes
        ]

    @staticmethod
    def _screenshot_path(url: str, directory: str) -> str:
        parsed = urlparse(url)
        slug = re.sub(r"[^A-Za-z0-9]+", "-", f"{parsed.netloc}{parsed.path}").strip("-")[:80]
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        return str(Path(directory) / f"screenshot-{slug or 'page'}-{stamp}.png")

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "browser": self.browser.get_status(),
            "wcag": self.wcag_handler.get_config(),
        }

    def get_resilience_status(self) -> dict:
        return self.resilience.get_status()

    def reset_resilience(self) -> None:
        self.resilience.reset()

    async def cleanup(self) -> None:
        """Close the browser. The next scan() or initialize() restarts it."""
        await self.browser.cleanup()
        self._initialized = False
        logger.info("Page scanner cleaned up")
