"""
Browser Management.

Owns the Playwright browser, its single browser context and the pages the
scanner opens. Navigation runs its own short retry loop and reports the
outcome as a PageLoadResult instead of raising.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urljoin, urldefrag, urlparse

from playwright.async_api import async_playwright

from a11yscan.constants import (
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_VIEWPORT_WIDTH,
    DEFAULT_VIEWPORT_HEIGHT,
    DEFAULT_NAVIGATION_RETRIES,
    DEFAULT_NAVIGATION_RETRY_DELAY_MS,
)
from a11yscan.exceptions import BrowserError

logger = logging.getLogger(__name__)


# Chromium flags for running inside containers and CI
DEFAULT_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--disable-gpu",
]

LINK_EXTRACTION_SCRIPT = """
() => Array.from(document.querySelectorAll('a[href]'), a => a.href)
"""

READY_STATE_PREDICATE = "() => document.readyState === 'complete'"


@dataclass
class NavigationOptions:
    """Options for a single navigation."""
    timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS
    wait_until: str = "domcontentloaded"
    retries: int = DEFAULT_NAVIGATION_RETRIES
    retry_delay_ms: float = DEFAULT_NAVIGATION_RETRY_DELAY_MS


@dataclass
class ResourceInfo:
    """A response received while loading a page."""
    url: str
    type: str
    status: int
    size: int
    load_time: float  # ms since navigation start


@dataclass
class PageError:
    """Why a navigation failed."""
    type: str  # timeout/network/navigation/security/javascript
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PageLoadResult:
    """Outcome of navigating a page to a URL."""
    success: bool
    url: str
    final_url: str
    status_code: Optional[int] = None
    load_time: float = 0.0  # ms
    redirects: int = 0
    resources: list[ResourceInfo] = field(default_factory=list)
    error: Optional[PageError] = None


def categorize_navigation_error(message: str) -> str:
    """Classify a Playwright navigation error message."""
    lowered = message.lower()
    if "timeout" in lowered:
        return "timeout"
    if "net::" in lowered or "dns" in lowered or "connection" in lowered:
        return "network"
    if "navigation" in lowered:
        return "navigation"
    if "security" in lowered or "ssl" in lowered or "cert" in lowered:
        return "security"
    return "javascript"


def normalize_links(hrefs: list[str], base_url: str) -> list[str]:
    """Resolve hrefs against ``base_url``, strip fragments, keep http(s), dedupe in order."""
    links: list[str] = []
    seen: set[str] = set()
    for href in hrefs:
        if not href:
            continue
        absolute, _ = urldefrag(urljoin(base_url, href.strip()))
        if urlparse(absolute).scheme not in ("http", "https"):
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


class BrowserManager:
    """
    Headless Chromium lifecycle management.

    Usage:
        async with BrowserManager(headless=True) as browser:
            page = await browser.create_page()
            result = await browser.navigate(page, "https://example.com")
            await browser.close_page(page)
    """

    def __init__(
        self,
        headless: bool = True,
        timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS,
        viewport: Optional[dict[str, int]] = None,
        user_agent: Optional[str] = None,
        args: Optional[list[str]] = None,
    ):
        """
        Initialize browser manager.

        Args:
            headless: Run Chromium headless
            timeout_ms: Default timeout for page operations
            viewport: Viewport size ({"width", "height"})
            user_agent: Custom user agent string
            args: Chromium launch arguments
        """
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.viewport = viewport or {
            "width": DEFAULT_VIEWPORT_WIDTH,
            "height": DEFAULT_VIEWPORT_HEIGHT,
        }
        self.user_agent = user_agent
        self.args = args if args is not None else list(DEFAULT_BROWSER_ARGS)

        self._playwright = None
        self._browser = None
        self._context = None
        self._active_pages = 0

    async def __aenter__(self) -> "BrowserManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cleanup()

    @property
    def is_initialized(self) -> bool:
        return self._browser is not None and self._context is not None

    async def initialize(self) -> None:
        """
        Launch Chromium and create the browser context.

        Raises:
            BrowserError: If already initialized or the launch fails
        """
        if self._browser is not None:
            raise BrowserError("Browser already initialized")

        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=self.args,
            )

            context_options: dict[str, Any] = {
                "viewport": self.viewport,
                "ignore_https_errors": True,
                "java_script_enabled": True,
            }
            if self.user_agent:
                context_options["user_agent"] = self.user_agent

            self._context = await self._browser.new_context(**context_options)
            self._context.set_default_timeout(self.timeout_ms)
            self._context.set_default_navigation_timeout(self.timeout_ms)
        except Exception as e:
            await self.cleanup()
            raise BrowserError(f"Failed to initialize browser: {e}") from e

        logger.info(f"Browser initialized (headless={self.headless})")

    async def create_page(self):
        """
        Open a new page with dialog and error handlers attached.

        Raises:
            BrowserError: If the browser is not initialized or page creation fails
        """
        if self._context is None:
            raise BrowserError("Browser not initialized. Call initialize() first.")

        try:
            page = await self._context.new_page()
        except Exception as e:
            raise BrowserError(f"Failed to create page: {e}") from e

        self._active_pages += 1
        self._attach_page_handlers(page)
        logger.debug(f"Page created ({self._active_pages} active)")
        return page

    def _attach_page_handlers(self, page) -> None:
        async def dismiss_dialog(dialog) -> None:
            logger.debug(f"Dismissing {dialog.type} dialog: {dialog.message}")
            await dialog.dismiss()

        page.on("dialog", dismiss_dialog)
        page.on("pageerror", lambda error: logger.debug(f"Page JavaScript error: {error}"))

    async def navigate(
        self,
        page,
        url: str,
        options: Optional[NavigationOptions] = None,
    ) -> PageLoadResult:
        """
        Navigate a page to a URL.

        Args:
            page: Playwright page
            url: URL to load
            options: Navigation options

        Returns:
            PageLoadResult; failures are reported, not raised
        """
        options = options or NavigationOptions(timeout_ms=self.timeout_ms)
        start = time.perf_counter()
        resources: list[ResourceInfo] = []
        state = {"final_url": url, "status_code": None, "redirects": 0}

        def on_response(response) -> None:
            request = response.request
            try:
                size = int(response.headers.get("content-length", "0") or 0)
            except ValueError:
                size = 0
            resources.append(ResourceInfo(
                url=request.url,
                type=request.resource_type,
                status=response.status,
                size=size,
                load_time=(time.perf_counter() - start) * 1000,
            ))
            if 300 <= response.status < 400:
                state["redirects"] += 1
            if response.url == url or request.is_navigation_request():
                state["status_code"] = response.status
                state["final_url"] = response.url

        page.on("response", on_response)
        last_error: Optional[PageError] = None

        try:
            for attempt in range(1, options.retries + 1):
                try:
                    response = await page.goto(
                        url,
                        timeout=options.timeout_ms,
                        wait_until=options.wait_until,
                    )
                    if response is not None:
                        state["status_code"] = response.status
                        state["final_url"] = response.url

                    load_time = (time.perf_counter() - start) * 1000
                    logger.debug(
                        f"Loaded {url} -> {state['final_url']} "
                        f"({state['status_code']}, {load_time:.0f}ms, attempt {attempt})"
                    )
                    return PageLoadResult(
                        success=True,
                        url=url,
                        final_url=state["final_url"],
                        status_code=state["status_code"],
                        load_time=load_time,
                        redirects=state["redirects"],
                        resources=resources,
                    )
                except Exception as e:
                    message = str(e)
                    last_error = PageError(
                        type=categorize_navigation_error(message),
                        message=message,
                        details={"attempt": attempt, "url": url, "timeout": options.timeout_ms},
                    )
                    logger.debug(f"Navigation to {url} failed (attempt {attempt}): {message}")

                    if attempt < options.retries:
                        await self.wait(options.retry_delay_ms)
        finally:
            page.remove_listener("response", on_response)

        return PageLoadResult(
            success=False,
            url=url,
            final_url=state["final_url"],
            status_code=state["status_code"],
            load_time=(time.perf_counter() - start) * 1000,
            redirects=state["redirects"],
            resources=resources,
            error=last_error,
        )

    async def wait_for_network_idle(self, page, timeout_ms: float) -> None:
        await page.wait_for_load_state("networkidle", timeout=timeout_ms)

    async def wait_for_ready_state(self, page, timeout_ms: float) -> None:
        await page.wait_for_function(READY_STATE_PREDICATE, timeout=timeout_ms)

    async def wait(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000)

    async def evaluate(self, page, script: str, arg: Any = None) -> Any:
        """Evaluate a JavaScript function in the page."""
        if arg is None:
            return await page.evaluate(script)
        return await page.evaluate(script, arg)

    async def extract_links(self, page) -> list[str]:
        """Collect the page's anchors as absolute, fragment-free http(s) URLs."""
        hrefs = await page.evaluate(LINK_EXTRACTION_SCRIPT)
        return normalize_links(hrefs or [], page.url)

    async def screenshot(self, page, path: str, full_page: bool = True) -> str:
        """Save a PNG screenshot and return its path."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=path, full_page=full_page)
        return path

    async def close_page(self, page) -> None:
        """Close a page; already-closed pages are ignored."""
        try:
            await page.close()
        except Exception as e:
            logger.debug(f"Error closing page: {e}")
        self._active_pages = max(0, self._active_pages - 1)

    def get_status(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "active_pages": self._active_pages,
            "browser_connected": bool(self._browser and self._browser.is_connected()),
        }

    async def cleanup(self) -> None:
        """Close the context, the browser and Playwright."""
        if self._context is not None:
            try:
                await self._context.close()
            except Exception as e:
                logger.warning(f"Error closing browser context: {e}")
            self._context = None

        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
            self._browser = None

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            self._playwright = None

        self._active_pages = 0
        logger.debug("Browser resources released")
