"""
Site Crawler.

Runs crawl sessions: seeds a priority frontier with start URLs (and
optionally sitemap URLs), dispatches one scan task per URL under a
concurrency ceiling and a request-spacing rate limit, folds results into
session statistics and feeds the links found on each page back into the
frontier.

All session state is mutated on the event loop thread, either by the
scheduling loop or by per-URL tasks between awaits, so no locks are used.
"""

import asyncio
import copy
import logging
import re
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

from a11yscan.config import CrawlerConfig, ScanOptions
from a11yscan.constants import (
    IDLE_WAIT_SECONDS,
    MAX_RECENT_ERRORS,
    PAUSE_WAIT_SECONDS,
    PROGRESS_RECENT_ERRORS,
    UNLIMITED_DEPTH,
)
from a11yscan.discovery import RobotsPolicy, SitemapParser
from a11yscan.events import CrawlEventBus
from a11yscan.exceptions import CrawlerBusyError, CrawlerStateError, InvalidURLError
from a11yscan.frontier import (
    URLFrontier,
    make_child_entry,
    make_start_entry,
    normalize_url,
    sitemap_priority,
)
from a11yscan.infrastructure.rate_limiter import RateLimiter
from a11yscan.models import (
    CrawlEvent,
    CrawlEventType,
    CrawlProgress,
    CrawlSession,
    CrawlStatus,
    ScanResult,
    URLDiscoverySource,
    URLEntry,
    URLStatus,
)
from a11yscan.page_scanner import PageScanner

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Crawl session was manually stopped"


class SiteCrawler:
    """
    Crawls a site and scans every eligible page.

    Usage:
        crawler = SiteCrawler(PageScanner())
        crawler.events.subscribe(print)
        session_id = await crawler.start_crawl(
            ["https://example.com"], CrawlerConfig(max_depth=1, max_pages=20)
        )
        session = await crawler.wait_for_completion()

    One session runs at a time. start_crawl() returns once the session is
    set up; the crawl itself runs as a background task.
    """

    def __init__(
        self,
        scanner: Optional[PageScanner] = None,
        event_bus: Optional[CrawlEventBus] = None,
        robots_policy: Optional[RobotsPolicy] = None,
        sitemap_parser: Optional[SitemapParser] = None,
    ):
        """
        Initialize the crawler.

        Args:
            scanner: Page scanner (a default PageScanner is created if omitted)
            event_bus: Event channel (a new CrawlEventBus if omitted)
            robots_policy: robots.txt policy (one per session if omitted)
            sitemap_parser: Sitemap parser (one per session if omitted)
        """
        self.scanner = scanner or PageScanner()
        self.events = event_bus or CrawlEventBus()
        self._robots_override = robots_policy
        self._sitemap_override = sitemap_parser

        self._session: Optional[CrawlSession] = None
        self._frontier = URLFrontier()
        self._in_flight: dict[str, asyncio.Task] = {}
        self._crawl_task: Optional[asyncio.Task] = None
        self._abort = asyncio.Event()
        self._running = False
        self._paused = False
        self._active_status = CrawlStatus.INITIALIZING

        self._rate_limiter: Optional[RateLimiter] = None
        self._robots: Optional[RobotsPolicy] = None
        self._excluded_paths: list[re.Pattern] = []
        self._included_paths: list[re.Pattern] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_crawl(
        self,
        urls: Iterable[str],
        config: CrawlerConfig | dict | None = None,
        scan_options: ScanOptions | dict | None = None,
    ) -> str:
        """
        Start a crawl session.

        Args:
            urls: Start URLs (http/https)
            config: Crawl policy
            scan_options: Options passed to every page scan

        Returns:
            The new session id

        Raises:
            CrawlerBusyError: If a session is already running
            InvalidURLError: If none of the start URLs is valid
            re.error: If a path pattern in the config is not a valid regex
            BrowserError: If the scanner cannot be initialized
        """
        if self._running:
            raise CrawlerBusyError("Crawler is already running. Stop the current session first.")

        urls = list(urls)
        start_urls = self._validate_start_urls(urls)
        if not start_urls:
            raise InvalidURLError("No valid start URLs provided", url=urls[0] if urls else None)

        if isinstance(config, dict):
            config = CrawlerConfig.from_dict(config)
        config = config or CrawlerConfig()

        if isinstance(scan_options, dict):
            scan_options = ScanOptions.from_dict(scan_options)
        scan_options = replace(scan_options or ScanOptions(), collect_links=True)

        self._excluded_paths = [re.compile(p) for p in config.excluded_paths]
        self._included_paths = [re.compile(p) for p in config.included_paths]

        # Claimed before the first await so a concurrent call sees the crawler busy
        self._running = True
        try:
            await self.scanner.initialize()
        except Exception:
            self._running = False
            raise

        self._session = CrawlSession(
            id=str(uuid.uuid4()),
            start_urls=start_urls,
            config=config,
            scan_options=scan_options,
        )
        self.events.clear()
        self._frontier.clear()
        self._in_flight.clear()
        self._abort = asyncio.Event()
        self._paused = False
        self._active_status = CrawlStatus.INITIALIZING
        self._rate_limiter = RateLimiter(config.request_delay_ms)
        self._robots = None
        if config.respect_robots_txt:
            self._robots = self._robots_override or RobotsPolicy(user_agent=config.user_agent)

        logger.info(
            f"Starting crawl session {self._session.id} with {len(start_urls)} start URLs "
            f"(max_depth={config.max_depth}, max_pages={config.max_pages}, "
            f"concurrency={config.max_concurrency})"
        )
        self._emit(CrawlEventType.SESSION_STARTED, data={"start_urls": list(start_urls)})

        self._crawl_task = asyncio.create_task(self._crawl())
        return self._session.id

    def pause_crawl(self) -> None:
        """
        Pause dispatching; scans already running finish.

        Raises:
            CrawlerStateError: If no session is running or it is already paused
        """
        if not self._has_live_session() or self._paused:
            raise CrawlerStateError("No active crawl session to pause")

        self._paused = True
        self._session.status = CrawlStatus.PAUSED
        logger.info(f"Crawl session {self._session.id} paused")
        self._emit(CrawlEventType.SESSION_PAUSED)

    def resume_crawl(self) -> None:
        """
        Resume a paused session.

        Raises:
            CrawlerStateError: If no session is paused
        """
        if not self._has_live_session() or not self._paused:
            raise CrawlerStateError("No paused crawl session to resume")

        self._paused = False
        self._session.status = self._active_status
        logger.info(f"Crawl session {self._session.id} resumed")
        self._emit(CrawlEventType.SESSION_RESUMED)

    async def stop_crawl(self) -> None:
        """Stop the session after in-flight scans finish."""
        if not self._running or self._crawl_task is None:
            return

        logger.info(f"Stopping crawl session {self._session.id}")
        self._abort.set()
        await self._crawl_task

        if not self._session.status.is_terminal:
            self._mark_cancelled()

    def _has_live_session(self) -> bool:
        # _running is also set while a new session is still initializing
        return (
            self._running
            and self._session is not None
            and not self._session.status.is_terminal
        )

    async def wait_for_completion(self, timeout: Optional[float] = None) -> Optional[CrawlSession]:
        """
        Wait for the running session to finish.

        Args:
            timeout: Seconds to wait (forever when None)

        Returns:
            The session snapshot

        Raises:
            asyncio.TimeoutError: If the timeout elapses first; the crawl keeps running
        """
        if self._crawl_task is not None:
            await asyncio.wait_for(asyncio.shield(self._crawl_task), timeout)
        return self.get_session()

    def get_session(self) -> Optional[CrawlSession]:
        """Shallow copy of the current (or last) session."""
        return copy.copy(self._session) if self._session else None

    def get_progress(self) -> Optional[CrawlProgress]:
        session = self._session
        if session is None:
            return None

        counts = session.stats.url_counts
        processed = counts["completed"] + counts["failed"] + counts["skipped"]
        total = counts["total"]
        percentage = round(processed / total * 100) if total > 0 else 0

        elapsed_minutes = (datetime.now() - session.start_time).total_seconds() / 60
        scan_rate = session.stats.pages_scanned / elapsed_minutes if elapsed_minutes > 0 else 0.0

        remaining = counts["pending"] + counts["processing"]
        estimated = remaining / scan_rate * 60000 if scan_rate > 0 else None

        processing = [e for e in session.urls.values() if e.status == URLStatus.PROCESSING]
        if processing:
            current_depth = max(e.depth for e in processing)
        else:
            current_depth = max((e.depth for e in session.urls.values()), default=0)

        return CrawlProgress(
            status=session.status,
            percentage=percentage,
            urls_processed=processed,
            total_urls=total,
            current_depth=current_depth,
            scan_rate=scan_rate,
            estimated_time_remaining=estimated,
            current_url=processing[0].url if processing else None,
            recent_errors=session.recent_errors[-PROGRESS_RECENT_ERRORS:],
        )

    # ------------------------------------------------------------------
    # Crawl task
    # ------------------------------------------------------------------

    async def _crawl(self) -> None:
        session = self._session
        try:
            self._set_active_status(CrawlStatus.DISCOVERING)
            self._seed_start_urls()

            if session.config.use_sitemaps:
                await self._discover_from_sitemaps()

            self._set_active_status(CrawlStatus.CRAWLING)
            await self._crawl_loop()

            if self._abort.is_set():
                self._mark_cancelled()
            else:
                session.status = CrawlStatus.COMPLETED
                session.end_time = datetime.now()
                self._update_stats()
                logger.info(
                    f"Crawl session {session.id} completed: "
                    f"{session.stats.pages_scanned} pages scanned, "
                    f"{session.stats.total_issues} issues, "
                    f"average score {session.stats.average_score:.2f}"
                )
                self._emit(CrawlEventType.SESSION_COMPLETED, data={
                    "pages_scanned": session.stats.pages_scanned,
                    "total_issues": session.stats.total_issues,
                    "average_score": session.stats.average_score,
                })
        except Exception as e:
            self._handle_crawl_error(e)
            await self._drain()
        finally:
            self._update_stats()
            self._running = False
            self._paused = False
            try:
                await self.scanner.cleanup()
            except Exception as e:
                logger.warning(f"Scanner cleanup failed: {e}")

    def _set_active_status(self, status: CrawlStatus) -> None:
        self._active_status = status
        if not self._paused:
            self._session.status = status

    async def _crawl_loop(self) -> None:
        config = self._session.config

        while (self._frontier or self._in_flight) and not self._abort.is_set():
            if self._paused:
                await asyncio.sleep(PAUSE_WAIT_SECONDS)
                continue

            if len(self._in_flight) >= config.max_concurrency:
                await self._wait_idle()
                continue

            entry = self._frontier.pop()
            if entry is None:
                await self._wait_idle()
                continue

            # Rejected URLs are skipped without consuming a rate limit slot
            reason = await self._rejection_reason(entry)
            if reason is not None:
                self._skip_url(entry, reason)
                continue

            waited = await self._rate_limiter.wait()
            if waited > 0:
                self._emit(
                    CrawlEventType.RATE_LIMIT_APPLIED,
                    url=entry.url,
                    data={"delay": waited * 1000},
                )

            task = asyncio.create_task(self._process_url(entry))
            self._in_flight[entry.url] = task

        await self._drain()

    async def _wait_idle(self) -> None:
        if self._in_flight:
            await asyncio.wait(
                list(self._in_flight.values()),
                timeout=IDLE_WAIT_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
        else:
            await asyncio.sleep(IDLE_WAIT_SECONDS)

    async def _drain(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _process_url(self, entry: URLEntry) -> None:
        session = self._session
        url = entry.url

        try:
            self._start_url(entry)
            result = await self.scanner.scan(url, session.scan_options)

            if not result.success:
                message = result.errors[0].message if result.errors else "Scan failed"
                self._mark_failed(entry, message)
                return

            session.results[url] = result
            entry.status = URLStatus.COMPLETED
            self._update_stats_for_result(result)
            self._emit(CrawlEventType.URL_COMPLETED, url=url, data={
                "score": result.score,
                "issues": len(result.issues),
            })

            if config_allows_children(session.config, entry):
                self._discover_links(result, entry)

        except Exception as e:
            logger.error(f"Failed to process {url}: {e}")
            self._mark_failed(entry, str(e) or type(e).__name__)
        finally:
            self._in_flight.pop(url, None)
            self._update_stats()

    def _start_url(self, entry: URLEntry) -> None:
        entry.status = URLStatus.PROCESSING
        entry.attempts += 1
        entry.last_attempt = datetime.now()
        self._emit(CrawlEventType.URL_STARTED, url=entry.url, data={"depth": entry.depth})

    def _skip_url(self, entry: URLEntry, reason: str) -> None:
        self._start_url(entry)
        if reason == "depth_limit":
            self._emit(CrawlEventType.DEPTH_LIMIT_REACHED, url=entry.url, data={"depth": entry.depth})
        elif reason == "page_limit":
            self._emit(CrawlEventType.PAGE_LIMIT_REACHED, url=entry.url, data={
                "pages_scanned": self._session.stats.pages_scanned,
            })

        entry.status = URLStatus.SKIPPED
        logger.debug(f"Skipping {entry.url}: {reason}")
        self._emit(CrawlEventType.URL_SKIPPED, url=entry.url, data={"reason": reason})

    # ------------------------------------------------------------------
    # URL policy
    # ------------------------------------------------------------------

    async def should_process_url(self, entry: URLEntry) -> bool:
        """Whether a dequeued entry passes the session's crawl policy."""
        return await self._rejection_reason(entry) is None

    async def _rejection_reason(self, entry: URLEntry) -> Optional[str]:
        if entry.is_start_url:
            return None

        config = self._session.config
        parsed = urlparse(entry.url)
        hostname = parsed.hostname or ""
        path = parsed.path or "/"

        if config.allowed_domains and hostname not in config.allowed_domains:
            return "domain_not_allowed"

        if any(domain in hostname for domain in config.excluded_domains):
            return "domain_excluded"

        if any(pattern.search(path) for pattern in self._excluded_paths):
            return "path_excluded"

        if self._included_paths and not any(p.search(path) for p in self._included_paths):
            return "path_not_included"

        if self._robots is not None and not await self._robots.is_allowed(entry.url):
            return "robots_disallowed"

        if config.max_depth != UNLIMITED_DEPTH and entry.depth > config.max_depth:
            return "depth_limit"

        if self._session.stats.pages_scanned >= config.max_pages:
            return "page_limit"

        return None

    def should_add_url(self, url: str) -> bool:
        """Whether a discovered URL should enter the frontier."""
        if self._session is None or url in self._session.urls:
            return False

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return False

        config = self._session.config
        if config.discover_external_links:
            return True

        hostname = parsed.hostname or ""
        return not config.allowed_domains or hostname in config.allowed_domains

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _validate_start_urls(self, urls: list[str]) -> list[str]:
        valid: list[str] = []
        for url in urls:
            normalized = normalize_url(url)
            if normalized is None:
                logger.warning(f"Invalid start URL: {url}")
            elif normalized not in valid:
                valid.append(normalized)
        return valid

    def _seed_start_urls(self) -> None:
        for url in self._session.start_urls:
            self._register(make_start_entry(url))

    async def _discover_from_sitemaps(self) -> None:
        parser = self._sitemap_override or SitemapParser(user_agent=self._session.config.user_agent)

        for start_url in self._session.start_urls:
            try:
                sitemap_urls = await parser.discover(start_url)
            except Exception as e:
                logger.warning(f"Failed to read sitemap for {start_url}: {e}")
                continue

            for item in sitemap_urls:
                url = normalize_url(item.url)
                if url is None or not self.should_add_url(url):
                    continue
                self._register(URLEntry(
                    url=url,
                    depth=0,
                    source=URLDiscoverySource.SITEMAP,
                    priority=sitemap_priority(item.priority),
                    parent=start_url,
                ))

    def _discover_links(self, result: ScanResult, parent: URLEntry) -> None:
        added = 0
        for link in result.links:
            url = normalize_url(link)
            if url is None or not self.should_add_url(url):
                continue
            self._register(make_child_entry(url, parent))
            added += 1
        if added:
            logger.debug(f"Discovered {added} new URLs on {parent.url}")

    def _register(self, entry: URLEntry) -> None:
        self._session.urls[entry.url] = entry
        self._frontier.add(entry)
        self._emit(CrawlEventType.URL_DISCOVERED, url=entry.url, data={
            "depth": entry.depth,
            "source": entry.source.value,
            "parent": entry.parent,
            "priority": entry.priority,
        })

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _mark_failed(self, entry: URLEntry, message: str) -> None:
        session = self._session
        entry.status = URLStatus.FAILED
        entry.error = message
        session.recent_errors.append(f"{entry.url}: {message}")
        del session.recent_errors[:-MAX_RECENT_ERRORS]
        self._emit(CrawlEventType.URL_FAILED, url=entry.url, error=message)

    def _mark_cancelled(self) -> None:
        session = self._session
        session.status = CrawlStatus.CANCELLED
        session.end_time = datetime.now()
        logger.info(f"Crawl session {session.id} cancelled")
        self._emit(CrawlEventType.SESSION_FAILED, error=STOPPED_MESSAGE)

    def _handle_crawl_error(self, error: Exception) -> None:
        session = self._session
        session.status = CrawlStatus.FAILED
        session.error = str(error) or type(error).__name__
        session.end_time = datetime.now()
        logger.error(f"Crawl session {session.id} failed: {session.error}")
        self._emit(CrawlEventType.SESSION_FAILED, error=session.error)

    def _update_stats(self) -> None:
        session = self._session
        if session is None:
            return

        counts = session.stats.url_counts
        for key in counts:
            counts[key] = 0
        counts["total"] = len(session.urls)
        for entry in session.urls.values():
            counts[entry.status.value] += 1

        end = session.end_time or datetime.now()
        elapsed_ms = (end - session.start_time).total_seconds() * 1000
        performance = session.stats.performance
        performance["total_crawl_time"] = elapsed_ms
        performance["pages_per_minute"] = (
            session.stats.pages_scanned / (elapsed_ms / 60000) if elapsed_ms > 0 else 0.0
        )

    def _update_stats_for_result(self, result: ScanResult) -> None:
        stats = self._session.stats
        stats.pages_scanned += 1
        n = stats.pages_scanned

        stats.total_issues += len(result.issues)
        for issue in result.issues:
            stats.issues_by_severity[issue.severity] = stats.issues_by_severity.get(issue.severity, 0) + 1

        stats.average_score = running_average(stats.average_score, result.score, n)
        performance = stats.performance
        performance["avg_page_load_time"] = running_average(
            performance["avg_page_load_time"], result.metadata.page_load_time, n
        )
        performance["avg_scan_time"] = running_average(
            performance["avg_scan_time"], result.metadata.scan_duration, n
        )

        compliance = stats.wcag_compliance
        if result.compliance is not None and result.compliance.compliant:
            compliance["compliant_pages"] += 1
        else:
            compliance["non_compliant_pages"] += 1
        compliance["compliance_rate"] = compliance["compliant_pages"] / n

        if result.compliance is not None:
            breakdown = compliance["level_breakdown"]
            for level, count in result.compliance.level_breakdown.items():
                if level in breakdown:
                    breakdown[level] += count

    def _emit(
        self,
        event_type: CrawlEventType,
        url: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        # Subscribers always see counts that match session.urls
        self._update_stats()
        self.events.publish(CrawlEvent(
            type=event_type,
            session_id=self._session.id if self._session else "",
            url=url,
            data=data or {},
            error=error,
        ))


def running_average(current: float, value: float, count: int) -> float:
    """Average after adding ``value`` as the ``count``-th sample."""
    return (current * (count - 1) + value) / count


def config_allows_children(config: CrawlerConfig, entry: URLEntry) -> bool:
    """Whether links found on ``entry`` are within the depth limit."""
    return config.max_depth == UNLIMITED_DEPTH or entry.depth < config.max_depth
