"""Command-line interface for the accessibility scanner."""

import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Optional

from a11yscan.config import Config, ScanOptions, settings
from a11yscan.constants import WCAG_LEVELS
from a11yscan.exceptions import A11yScanError
from a11yscan.logging_config import setup_logging
from a11yscan.models import CrawlEvent, CrawlEventType, ScanResult
from a11yscan.page_scanner import PageScanner
from a11yscan.site_crawler import SiteCrawler
from a11yscan.wcag_level_handler import WCAGLevelHandler

logger = logging.getLogger(__name__)


def load_config(args) -> Config:
    """Configuration from ``--config`` when given, otherwise the environment."""
    if getattr(args, "config", None):
        return Config.from_file(args.config)
    return Config.from_env()


def build_scanner(config: Config) -> PageScanner:
    return PageScanner(
        resilience=config.resilience,
        wcag_config=config.wcag,
        headless=config.headless,
        user_agent=config.user_agent,
        viewport={"width": config.viewport_width, "height": config.viewport_height},
        axe_script_path=config.axe_script_path or settings.AXE_SCRIPT_PATH,
        axe_source_url=config.axe_source_url or settings.AXE_SOURCE_URL,
    )


def scan_options_from_args(args, config: Config) -> ScanOptions:
    options = config.scan_options
    changes = {}
    if args.wcag_level:
        changes["wcag_level"] = args.wcag_level
    if args.include_aaa is not None:
        changes["include_aaa"] = args.include_aaa
    if args.include_aria is not None:
        changes["include_aria"] = args.include_aria
    if getattr(args, "screenshot", False):
        changes["screenshot"] = True
    if getattr(args, "timeout", None):
        changes["timeout_ms"] = args.timeout
    return replace(options, **changes)


def write_output(payload, output_file: Optional[str]) -> None:
    output = json.dumps(payload, indent=2, default=str)
    if output_file:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(output)
        print(f"\nReport written to {output_file}")
    else:
        print(output)


def print_scan_result(result: ScanResult) -> None:
    """Print a scan result in a readable form."""
    print(f"\n{'=' * 60}")
    print(f"Accessibility scan for: {result.url}")
    print(f"{'=' * 60}")

    if not result.success:
        print("\n❌ Scan failed")
        for error in result.errors:
            print(f"  • [{error.type}] {error.message}")
        return

    print(f"\n📊 Score: {result.score}/100")
    if result.compliance is not None:
        verdict = "✅ compliant" if result.compliance.compliant else "⚠️  not compliant"
        print(f"WCAG: {verdict} ({result.compliance.primary_level_issues} primary-level issues, "
              f"{result.compliance.warning_issues} warnings)")

    if result.issues:
        print("\nIssues:")
        for issue in result.issues:
            reference = f" {issue.wcag_reference}" if issue.wcag_reference else ""
            print(f"  • [{issue.severity}] {issue.id} (WCAG{reference} {issue.level}): "
                  f"{issue.selector}")

    if result.errors:
        print("\nErrors:")
        for error in result.errors:
            print(f"  • [{error.type}] {error.message}")

    print(f"\n{'=' * 60}\n")


async def _async_scan(urls: list[str], scanner: PageScanner, options: ScanOptions) -> list[ScanResult]:
    results = []
    try:
        await scanner.initialize()
        for url in urls:
            results.append(await scanner.scan(url, options))
    finally:
        await scanner.cleanup()
    return results


def scan_command(args):
    """Scan one or more URLs."""
    config = load_config(args)
    scanner = build_scanner(config)
    options = scan_options_from_args(args, config)

    try:
        results = asyncio.run(_async_scan(args.urls, scanner, options))
    except A11yScanError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output == "json":
        write_output([result.to_dict() for result in results], args.output_file)
    else:
        for result in results:
            print_scan_result(result)

    if any(not result.success for result in results):
        sys.exit(1)


def _log_crawl_event(event: CrawlEvent) -> None:
    if event.type == CrawlEventType.URL_COMPLETED:
        logger.info(f"✓ {event.url} (score {event.data.get('score')}, {event.data.get('issues')} issues)")
    elif event.type == CrawlEventType.URL_FAILED:
        logger.warning(f"✗ {event.url}: {event.error}")
    elif event.type == CrawlEventType.URL_SKIPPED:
        logger.debug(f"- {event.url} skipped ({event.data.get('reason')})")


async def _async_crawl(args, config: Config) -> dict:
    crawler_config = config.crawler
    changes = {}
    if args.max_depth is not None:
        changes["max_depth"] = args.max_depth
    if args.max_pages is not None:
        changes["max_pages"] = args.max_pages
    if args.max_concurrency is not None:
        changes["max_concurrency"] = args.max_concurrency
    if args.request_delay is not None:
        changes["request_delay_ms"] = args.request_delay
    if args.allowed_domain:
        changes["allowed_domains"] = tuple(args.allowed_domain)
    if args.exclude_path:
        changes["excluded_paths"] = tuple(args.exclude_path)
    if args.include_path:
        changes["included_paths"] = tuple(args.include_path)
    if args.respect_robots:
        changes["respect_robots_txt"] = True
    if args.use_sitemaps:
        changes["use_sitemaps"] = True
    if args.external:
        changes["discover_external_links"] = True
    crawler_config = replace(crawler_config, **changes)

    crawler = SiteCrawler(build_scanner(config))
    crawler.events.subscribe(_log_crawl_event)

    await crawler.start_crawl(args.urls, crawler_config, scan_options_from_args(args, config))
    try:
        session = await crawler.wait_for_completion()
    except asyncio.CancelledError:
        await crawler.stop_crawl()
        raise

    return session.to_dict(include_results=args.include_results)


def crawl_command(args):
    """Crawl a site and scan every eligible page."""
    config = load_config(args)

    try:
        summary = asyncio.run(_async_crawl(args, config))
    except A11yScanError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.output == "json":
        write_output(summary, args.output_file)
    else:
        stats = summary["stats"]
        print(f"\n{'=' * 60}")
        print(f"Crawl {summary['id']}: {summary['status']}")
        print(f"{'=' * 60}")
        print(f"\n📊 Pages scanned: {stats['pages_scanned']}")
        print(f"Average score: {stats['average_score']:.2f}")
        print(f"Total issues: {stats['total_issues']}")
        for severity, count in stats["issues_by_severity"].items():
            print(f"  • {severity}: {count}")
        compliance = stats["wcag_compliance"]
        print(f"Compliant pages: {compliance['compliant_pages']}/{stats['pages_scanned']}")
        if summary["recent_errors"]:
            print("\nRecent errors:")
            for error in summary["recent_errors"]:
                print(f"  • {error}")
        print(f"\n{'=' * 60}\n")

    if summary["status"] == "failed":
        sys.exit(1)


def levels_command(args):
    """List the supported WCAG levels."""
    for level in WCAGLevelHandler.get_supported_levels():
        print(f"{level['level']:<5} {level['description']}")
        print(f"      {level['requirements']}")


def _add_scan_option_arguments(parser) -> None:
    parser.add_argument(
        "--wcag-level",
        choices=list(WCAG_LEVELS),
        help="Primary WCAG conformance level (default: AA)",
    )
    parser.add_argument(
        "--include-aaa",
        dest="include_aaa",
        action="store_true",
        default=None,
        help="Report AAA issues as warnings",
    )
    parser.add_argument(
        "--no-aaa",
        dest="include_aaa",
        action="store_false",
        help="Ignore AAA issues",
    )
    parser.add_argument(
        "--include-aria",
        dest="include_aria",
        action="store_true",
        default=None,
        help="Report ARIA issues",
    )
    parser.add_argument(
        "--no-aria",
        dest="include_aria",
        action="store_false",
        help="Ignore ARIA issues",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Navigation timeout in milliseconds",
    )
    parser.add_argument(
        "--screenshot",
        action="store_true",
        help="Save a full-page screenshot of each scanned page",
    )
    parser.add_argument(
        "--output",
        "-o",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    parser.add_argument(
        "--output-file",
        "-f",
        help="Write output to file (only for json format)",
    )


def main():
    """Main CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="a11yscan - Crawl websites and audit them for WCAG accessibility issues"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper(),
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=settings.LOG_FILE,
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="YAML or JSON configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    scan_parser = subparsers.add_parser("scan", help="Scan one or more pages.")
    scan_parser.add_argument("urls", nargs="+", help="URLs to scan")
    _add_scan_option_arguments(scan_parser)
    scan_parser.set_defaults(func=scan_command)

    crawl_parser = subparsers.add_parser("crawl", help="Crawl a site and scan its pages.")
    crawl_parser.add_argument("urls", nargs="+", help="Start URLs")
    crawl_parser.add_argument(
        "--max-depth",
        type=int,
        help="Maximum link depth, -1 for unlimited (default: 2)",
    )
    crawl_parser.add_argument(
        "--max-pages",
        type=int,
        help="Maximum pages to scan (default: 100)",
    )
    crawl_parser.add_argument(
        "--max-concurrency",
        type=int,
        help="Maximum concurrent page scans (default: 5)",
    )
    crawl_parser.add_argument(
        "--request-delay",
        type=float,
        help="Milliseconds between page dispatches (default: 1000)",
    )
    crawl_parser.add_argument(
        "--allowed-domain",
        action="append",
        help="Only scan this hostname (repeatable)",
    )
    crawl_parser.add_argument(
        "--exclude-path",
        action="append",
        help="Skip paths matching this regex (repeatable)",
    )
    crawl_parser.add_argument(
        "--include-path",
        action="append",
        help="Only scan paths matching this regex (repeatable)",
    )
    crawl_parser.add_argument(
        "--respect-robots",
        action="store_true",
        help="Honour robots.txt",
    )
    crawl_parser.add_argument(
        "--use-sitemaps",
        action="store_true",
        help="Seed the crawl from /sitemap.xml",
    )
    crawl_parser.add_argument(
        "--external",
        action="store_true",
        help="Follow links to other hosts",
    )
    crawl_parser.add_argument(
        "--include-results",
        action="store_true",
        help="Include per-page results in JSON output",
    )
    _add_scan_option_arguments(crawl_parser)
    crawl_parser.set_defaults(func=crawl_command)

    levels_parser = subparsers.add_parser("levels", help="List supported WCAG levels.")
    levels_parser.set_defaults(func=levels_command)

    args = parser.parse_args()

    # Configure logging based on flags
    setup_logging(
        level=args.log_level,
        log_file=getattr(args, "log_file", None),
    )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
