"""Tests for the site crawler.

A fake scanner serves a small in-memory site graph, so crawls run without a
browser and finish in milliseconds.
"""

import asyncio

import pytest

pytest_plugins = ('pytest_asyncio',)

from a11yscan.config import CrawlerConfig, ScanOptions
from a11yscan.discovery import SitemapURL
from a11yscan.exceptions import CrawlerBusyError, CrawlerStateError, InvalidURLError
from a11yscan.frontier import make_child_entry, make_start_entry
from a11yscan.models import (
    AccessibilityIssue,
    ComplianceSummary,
    CrawlEventType,
    CrawlStatus,
    ScanError,
    ScanResult,
    URLDiscoverySource,
    URLStatus,
)
from a11yscan.site_crawler import STOPPED_MESSAGE, SiteCrawler, running_average


ROOT = "https://example.com/"


def page(path):
    return f"https://example.com{path}"


class FakeScanner:
    """Scanner double serving links from a dict of url -> links."""

    def __init__(self, site=None, delay=0.0, failures=(), raises=(), compliant=True,
                 score=90.0, issue_count=1, severity="serious"):
        self.site = site or {}
        self.score = score
        self.issue_count = issue_count
        self.severity = severity
        self.delay = delay
        self.failures = set(failures)
        self.raises = set(raises)
        self.compliant = compliant

        self.scanned = []
        self.options = []
        self.active = 0
        self.max_active = 0
        self.initialize_calls = 0
        self.cleanup_calls = 0

    async def initialize(self):
        self.initialize_calls += 1

    async def scan(self, url, options=None):
        self.scanned.append(url)
        self.options.append(options)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        if url in self.raises:
            raise RuntimeError("browser crashed")

        if url in self.failures:
            return ScanResult(
                url=url,
                score=0.0,
                errors=[ScanError(type="network", message="net::ERR_CONNECTION_REFUSED")],
                success=False,
            )

        issues = [
            AccessibilityIssue(
                id="image-alt",
                wcag_reference="1.1.1",
                level="A",
                severity=self.severity,
                element="img",
                selector="img",
                message="Images must have alternate text",
                remediation="Add alt text",
            )
            for _ in range(self.issue_count)
        ]
        return ScanResult(
            url=url,
            score=self.score,
            issues=issues,
            compliance=ComplianceSummary(
                compliant=self.compliant,
                primary_level_issues=0 if self.compliant else 1,
                warning_issues=0,
                total_issues=self.issue_count,
                level_breakdown={"A": 1, "AA": 0, "AAA": 0, "ARIA": 0},
            ),
            links=list(self.site.get(url, [])),
        )

    async def cleanup(self):
        self.cleanup_calls += 1


class SlowInitScanner(FakeScanner):
    async def initialize(self):
        await asyncio.sleep(0.02)
        await super().initialize()


class FailingInitScanner(FakeScanner):
    fail = True

    async def initialize(self):
        if self.fail:
            raise RuntimeError("Executable doesn't exist")
        await super().initialize()


class FakeRobots:
    async def is_allowed(self, url):
        return "/private" not in url


class FakeSitemaps:
    def __init__(self, urls):
        self.urls = urls

    async def discover(self, start_url):
        return list(self.urls)


def config(**overrides):
    values = {"request_delay_ms": 0, "max_concurrency": 1}
    values.update(overrides)
    return CrawlerConfig(**values)


async def crawl(crawler, urls=(ROOT,), **overrides):
    await crawler.start_crawl(list(urls), config(**overrides))
    return await crawler.wait_for_completion(timeout=5)


SITE = {
    ROOT: [page("/a"), page("/b")],
    page("/a"): [page("/c"), ROOT],
    page("/b"): [page("/a"), page("/d#section")],
    page("/c"): [page("/e")],
}

EXTERNAL_SITE = {
    ROOT: [page("/a"), "https://other.com/x"],
}


class TestCrawlBasics:
    """Tests for a complete crawl."""

    @pytest.mark.asyncio
    async def test_depth_limited_crawl(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=1)

        assert session.status == CrawlStatus.COMPLETED
        assert sorted(scanner.scanned) == [ROOT, page("/a"), page("/b")]
        assert set(session.urls) == {ROOT, page("/a"), page("/b")}
        assert session.end_time is not None
        assert scanner.initialize_calls == 1
        assert scanner.cleanup_calls == 1
        assert crawler.is_running is False

    @pytest.mark.asyncio
    async def test_start_urls_scanned_first(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)

        await crawl(crawler, max_depth=2)

        assert scanner.scanned[0] == ROOT
        assert scanner.scanned[1:3] == [page("/a"), page("/b")]

    @pytest.mark.asyncio
    async def test_each_url_scanned_once(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=-1)

        assert len(scanner.scanned) == len(set(scanner.scanned))
        assert set(scanner.scanned) == {
            ROOT, page("/a"), page("/b"), page("/c"), page("/d"), page("/e")
        }
        assert session.urls[page("/e")].depth == 3

    @pytest.mark.asyncio
    async def test_depth_zero_scans_only_start_urls(self):
        scanner = FakeScanner(SITE)
        session = await crawl(SiteCrawler(scanner), max_depth=0)

        assert scanner.scanned == [ROOT]
        assert list(session.urls) == [ROOT]

    @pytest.mark.asyncio
    async def test_any_host_followed_without_allowed_domains(self):
        scanner = FakeScanner(EXTERNAL_SITE)
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=1)

        assert "https://other.com/x" in scanner.scanned
        assert session.urls["https://other.com/x"].parent == ROOT
        assert crawler.should_add_url("https://another.org/page") is True

    @pytest.mark.asyncio
    async def test_links_outside_allowed_domains_ignored(self):
        crawler = SiteCrawler(FakeScanner(EXTERNAL_SITE))

        session = await crawl(crawler, max_depth=1, allowed_domains=["example.com"])

        assert "https://other.com/x" not in session.urls
        assert page("/a") in session.urls
        assert crawler.should_add_url("https://another.org/page") is False

    @pytest.mark.asyncio
    async def test_external_discovery_overrides_allowed_domains(self):
        crawler = SiteCrawler(FakeScanner(EXTERNAL_SITE))

        session = await crawl(
            crawler,
            max_depth=1,
            allowed_domains=["example.com"],
            discover_external_links=True,
        )

        # Discovered, but dispatch still applies the domain policy
        assert session.urls["https://other.com/x"].status == URLStatus.SKIPPED
        reasons = [e.data["reason"] for e in crawler.events.events_of(CrawlEventType.URL_SKIPPED)]
        assert reasons == ["domain_not_allowed"]

    @pytest.mark.asyncio
    async def test_should_add_url_rejects_known_and_non_http(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=0)

        assert crawler.should_add_url(ROOT) is False
        assert crawler.should_add_url("mailto:team@example.com") is False
        assert crawler.should_add_url(page("/new")) is True

    @pytest.mark.asyncio
    async def test_links_collected_for_every_scan(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)
        await crawler.start_crawl([ROOT], config(max_depth=1), ScanOptions(collect_links=False))
        await crawler.wait_for_completion(timeout=5)

        assert all(options.collect_links for options in scanner.options)

    @pytest.mark.asyncio
    async def test_child_priorities(self):
        session = await crawl(SiteCrawler(FakeScanner(SITE)), max_depth=2)

        assert session.urls[ROOT].priority == 100
        assert session.urls[page("/a")].priority == 90
        assert session.urls[page("/c")].priority == 80
        assert session.urls[page("/a")].source == URLDiscoverySource.PAGE


class TestCrawlPolicy:
    """Tests for URL filtering."""

    @pytest.mark.asyncio
    async def test_page_limit(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=-1, max_pages=2)

        assert session.stats.pages_scanned == 2
        assert len(scanner.scanned) == 2
        skipped = crawler.events.events_of(CrawlEventType.URL_SKIPPED)
        assert skipped
        assert all(e.data["reason"] == "page_limit" for e in skipped)
        assert crawler.events.events_of(CrawlEventType.PAGE_LIMIT_REACHED)

    @pytest.mark.asyncio
    async def test_start_urls_scanned_past_page_limit(self):
        scanner = FakeScanner(SITE)
        starts = [ROOT, page("/x"), page("/y")]

        session = await crawl(SiteCrawler(scanner), urls=starts, max_depth=1, max_pages=1)

        assert sorted(scanner.scanned) == sorted(starts)
        assert session.stats.pages_scanned == 3
        assert all(session.urls[url].status == URLStatus.COMPLETED for url in starts)
        assert session.urls[page("/a")].status == URLStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_should_process_url_after_page_limit(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        session = await crawl(crawler, max_depth=1, max_pages=1)
        assert session.stats.pages_scanned == 1

        assert await crawler.should_process_url(make_start_entry(page("/late"))) is True
        child = make_child_entry(page("/late"), session.urls[ROOT])
        assert await crawler.should_process_url(child) is False

    @pytest.mark.asyncio
    async def test_rejected_urls_skip_rate_limit(self):
        crawler = SiteCrawler(FakeScanner(SITE))

        session = await crawl(crawler, max_depth=1, max_pages=1, request_delay_ms=200)

        assert session.urls[page("/a")].status == URLStatus.SKIPPED
        assert session.urls[page("/b")].status == URLStatus.SKIPPED
        assert crawler.events.events_of(CrawlEventType.RATE_LIMIT_APPLIED) == []
        assert session.stats.performance["total_crawl_time"] < 200

    @pytest.mark.asyncio
    async def test_excluded_paths(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=1, excluded_paths=["^/b"])

        assert page("/b") not in scanner.scanned
        assert session.urls[page("/b")].status == URLStatus.SKIPPED
        reasons = [e.data["reason"] for e in crawler.events.events_of(CrawlEventType.URL_SKIPPED)]
        assert reasons == ["path_excluded"]

    @pytest.mark.asyncio
    async def test_included_paths_do_not_block_start_url(self):
        scanner = FakeScanner(SITE)

        await crawl(SiteCrawler(scanner), max_depth=1, included_paths=["^/a"])

        assert sorted(scanner.scanned) == [ROOT, page("/a")]

    @pytest.mark.asyncio
    async def test_excluded_domains(self):
        scanner = FakeScanner(EXTERNAL_SITE)

        await crawl(
            SiteCrawler(scanner),
            max_depth=1,
            excluded_domains=["other.com"],
        )

        assert "https://other.com/x" not in scanner.scanned
        assert page("/a") in scanner.scanned

    @pytest.mark.asyncio
    async def test_allowed_domains(self):
        scanner = FakeScanner({
            ROOT: ["https://docs.example.com/", "https://other.com/"],
        })

        session = await crawl(
            SiteCrawler(scanner),
            max_depth=1,
            allowed_domains=["example.com", "docs.example.com"],
        )

        assert "https://docs.example.com/" in scanner.scanned
        assert "https://other.com/" not in session.urls

    @pytest.mark.asyncio
    async def test_robots_disallowed(self):
        scanner = FakeScanner({ROOT: [page("/private/x"), page("/public")]})
        crawler = SiteCrawler(scanner, robots_policy=FakeRobots())

        session = await crawl(crawler, max_depth=1, respect_robots_txt=True)

        assert page("/private/x") not in scanner.scanned
        assert page("/public") in scanner.scanned
        assert session.urls[page("/private/x")].status == URLStatus.SKIPPED
        reasons = [e.data["reason"] for e in crawler.events.events_of(CrawlEventType.URL_SKIPPED)]
        assert reasons == ["robots_disallowed"]

    @pytest.mark.asyncio
    async def test_sitemap_seeding(self):
        scanner = FakeScanner({})
        crawler = SiteCrawler(scanner, sitemap_parser=FakeSitemaps([
            SitemapURL(url=page("/from-sitemap"), priority=0.8),
            SitemapURL(url="https://other.com/elsewhere"),
        ]))

        session = await crawl(crawler, max_depth=0, use_sitemaps=True, allowed_domains=["example.com"])

        entry = session.urls[page("/from-sitemap")]
        assert entry.source == URLDiscoverySource.SITEMAP
        assert entry.priority == 80
        assert page("/from-sitemap") in scanner.scanned
        assert "https://other.com/elsewhere" not in session.urls

    def test_running_average(self):
        assert running_average(0.0, 80.0, 1) == 80.0
        assert running_average(80.0, 100.0, 2) == 90.0


class TestCrawlFailures:
    """Tests for failed pages and invalid input."""

    @pytest.mark.asyncio
    async def test_failed_scan_recorded(self):
        scanner = FakeScanner(SITE, failures=[page("/a")])
        crawler = SiteCrawler(scanner)

        session = await crawl(crawler, max_depth=1)

        assert session.status == CrawlStatus.COMPLETED
        assert session.urls[page("/a")].status == URLStatus.FAILED
        assert page("/a") not in session.results
        assert session.recent_errors == [f"{page('/a')}: net::ERR_CONNECTION_REFUSED"]
        assert session.stats.url_counts["failed"] == 1
        failed = crawler.events.events_of(CrawlEventType.URL_FAILED)
        assert [e.url for e in failed] == [page("/a")]

    @pytest.mark.asyncio
    async def test_scanner_exception_marks_failed(self):
        scanner = FakeScanner(SITE, raises=[page("/b")])

        session = await crawl(SiteCrawler(scanner), max_depth=1)

        assert session.status == CrawlStatus.COMPLETED
        assert session.urls[page("/b")].status == URLStatus.FAILED
        assert session.urls[page("/b")].error == "browser crashed"

    @pytest.mark.asyncio
    async def test_invalid_start_urls(self):
        crawler = SiteCrawler(FakeScanner())

        with pytest.raises(InvalidURLError):
            await crawler.start_crawl(["ftp://example.com", "not a url"], config())

        assert crawler.is_running is False

    @pytest.mark.asyncio
    async def test_busy(self):
        crawler = SiteCrawler(FakeScanner(SITE, delay=0.05))
        await crawler.start_crawl([ROOT], config(max_depth=2))

        with pytest.raises(CrawlerBusyError):
            await crawler.start_crawl([ROOT], config())

        await crawler.stop_crawl()

    @pytest.mark.asyncio
    async def test_busy_while_scanner_initializes(self):
        """Test overlapping start_crawl calls start exactly one session."""
        scanner = SlowInitScanner(SITE)
        crawler = SiteCrawler(scanner)

        results = await asyncio.gather(
            crawler.start_crawl([ROOT], config(max_depth=0)),
            crawler.start_crawl([page("/other")], config(max_depth=0)),
            return_exceptions=True,
        )

        session_ids = [r for r in results if isinstance(r, str)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(session_ids) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CrawlerBusyError)

        session = await crawler.wait_for_completion(timeout=5)
        assert session.id == session_ids[0]
        assert scanner.initialize_calls == 1
        assert scanner.scanned == [ROOT]

    @pytest.mark.asyncio
    async def test_initialize_failure_releases_crawler(self):
        scanner = FailingInitScanner(SITE)
        crawler = SiteCrawler(scanner)

        with pytest.raises(RuntimeError):
            await crawler.start_crawl([ROOT], config())

        assert crawler.is_running is False
        assert crawler.get_session() is None

        scanner.fail = False
        session = await crawl(crawler, max_depth=0)
        assert session.status == CrawlStatus.COMPLETED


class TestCrawlStats:
    """Tests for session statistics and progress."""

    @pytest.mark.asyncio
    async def test_stats(self):
        scanner = FakeScanner(SITE, compliant=False)
        session = await crawl(SiteCrawler(scanner), max_depth=1)
        stats = session.stats

        assert stats.pages_scanned == 3
        assert stats.total_issues == 3
        assert stats.issues_by_severity["serious"] == 3
        assert stats.average_score == 90.0
        assert stats.url_counts["total"] == 3
        assert stats.url_counts["completed"] == 3
        assert stats.wcag_compliance["non_compliant_pages"] == 3
        assert stats.wcag_compliance["compliance_rate"] == 0.0
        assert stats.wcag_compliance["level_breakdown"]["A"] == 3
        assert set(session.results) == {ROOT, page("/a"), page("/b")}

    @pytest.mark.asyncio
    async def test_single_page_crawl(self):
        scanner = FakeScanner(SITE, score=85.0, issue_count=3, severity="moderate")

        session = await crawl(SiteCrawler(scanner), max_depth=0)

        assert session.status == CrawlStatus.COMPLETED
        assert session.stats.pages_scanned == 1
        assert session.stats.average_score == 85.0
        assert session.stats.total_issues == 3
        assert session.stats.issues_by_severity["moderate"] == 3

    @pytest.mark.asyncio
    async def test_url_total_matches_known_urls_on_every_event(self):
        crawler = SiteCrawler(FakeScanner(SITE, failures=[page("/b")]))
        observed = []

        def check(event):
            session = crawler.get_session()
            observed.append((event.type, session.stats.url_counts["total"], len(session.urls)))

        crawler.events.subscribe(check)
        await crawl(crawler, max_depth=-1, max_pages=3)

        assert len(observed) > 10
        mismatched = [o for o in observed if o[1] != o[2]]
        assert mismatched == []

    @pytest.mark.asyncio
    async def test_progress_after_completion(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=1)

        progress = crawler.get_progress()

        assert progress.status == CrawlStatus.COMPLETED
        assert progress.percentage == 100
        assert progress.urls_processed == progress.total_urls == 3
        assert progress.current_url is None

    def test_no_session(self):
        crawler = SiteCrawler(FakeScanner())

        assert crawler.get_session() is None
        assert crawler.get_progress() is None

    @pytest.mark.asyncio
    async def test_session_to_dict(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        session = await crawl(crawler, max_depth=1)

        data = session.to_dict(include_results=True)

        assert data["status"] == "completed"
        assert data["config"]["max_depth"] == 1
        assert len(data["results"]) == 3


class TestCrawlEvents:
    """Tests for the published event sequence."""

    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=1)

        types = [e.type for e in crawler.events.history]
        assert types[0] == CrawlEventType.SESSION_STARTED
        assert types[-1] == CrawlEventType.SESSION_COMPLETED
        assert types.count(CrawlEventType.URL_DISCOVERED) == 3
        assert types.count(CrawlEventType.URL_COMPLETED) == 3

    @pytest.mark.asyncio
    async def test_url_started_before_completed(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=1)

        for url in (ROOT, page("/a"), page("/b")):
            types = [e.type for e in crawler.events.history if e.url == url]
            assert types.index(CrawlEventType.URL_STARTED) < types.index(CrawlEventType.URL_COMPLETED)

    @pytest.mark.asyncio
    async def test_rate_limit_events(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=1, request_delay_ms=20)

        assert crawler.events.events_of(CrawlEventType.RATE_LIMIT_APPLIED)

    @pytest.mark.asyncio
    async def test_dispatches_spaced_by_request_delay(self):
        crawler = SiteCrawler(FakeScanner(SITE))
        await crawl(crawler, max_depth=1, request_delay_ms=100)

        started = [e.timestamp for e in crawler.events.events_of(CrawlEventType.URL_STARTED)]
        assert len(started) == 3
        gaps = [(b - a).total_seconds() for a, b in zip(started, started[1:])]
        # small allowance for timer granularity
        assert all(gap >= 0.095 for gap in gaps)
        delays = [e.data["delay"] for e in crawler.events.events_of(CrawlEventType.RATE_LIMIT_APPLIED)]
        assert len(delays) == 2
        assert all(0 < delay <= 100 for delay in delays)


class TestCrawlControl:
    """Tests for concurrency, pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        links = [page(f"/p{i}") for i in range(8)]
        scanner = FakeScanner({ROOT: links}, delay=0.02)

        await crawl(SiteCrawler(scanner), max_depth=1, max_concurrency=3)

        assert len(scanner.scanned) == 9
        assert 1 < scanner.max_active <= 3

    @pytest.mark.asyncio
    async def test_pause_requires_running_session(self):
        crawler = SiteCrawler(FakeScanner())

        with pytest.raises(CrawlerStateError):
            crawler.pause_crawl()
        with pytest.raises(CrawlerStateError):
            crawler.resume_crawl()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        scanner = FakeScanner(SITE, delay=0.05)
        crawler = SiteCrawler(scanner)
        await crawler.start_crawl([ROOT], config(max_depth=1))
        await asyncio.sleep(0.01)

        crawler.pause_crawl()
        assert crawler.is_paused
        assert crawler.get_session().status == CrawlStatus.PAUSED
        with pytest.raises(CrawlerStateError):
            crawler.pause_crawl()

        await asyncio.sleep(0.1)
        assert scanner.scanned == [ROOT]

        crawler.resume_crawl()
        session = await crawler.wait_for_completion(timeout=5)

        assert session.status == CrawlStatus.COMPLETED
        assert len(scanner.scanned) == 3
        assert crawler.events.events_of(CrawlEventType.SESSION_PAUSED)
        assert crawler.events.events_of(CrawlEventType.SESSION_RESUMED)

    @pytest.mark.asyncio
    async def test_stop(self):
        links = [page(f"/p{i}") for i in range(20)]
        scanner = FakeScanner({ROOT: links}, delay=0.02)
        crawler = SiteCrawler(scanner)
        await crawler.start_crawl([ROOT], config(max_depth=1))
        await asyncio.sleep(0.05)

        await crawler.stop_crawl()

        session = crawler.get_session()
        assert session.status == CrawlStatus.CANCELLED
        assert session.end_time is not None
        assert crawler.is_running is False
        assert len(scanner.scanned) < 21
        assert scanner.active == 0
        failed = crawler.events.events_of(CrawlEventType.SESSION_FAILED)
        assert [e.error for e in failed] == [STOPPED_MESSAGE]

    @pytest.mark.asyncio
    async def test_stop_without_session_is_noop(self):
        crawler = SiteCrawler(FakeScanner())
        await crawler.stop_crawl()
        assert crawler.get_session() is None

    @pytest.mark.asyncio
    async def test_restart_after_completion(self):
        scanner = FakeScanner(SITE)
        crawler = SiteCrawler(scanner)
        first = await crawl(crawler, max_depth=0)
        second = await crawl(crawler, max_depth=0)

        assert first.id != second.id
        assert second.status == CrawlStatus.COMPLETED
        assert scanner.scanned == [ROOT, ROOT]
