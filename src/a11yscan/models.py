"""Data models for accessibility scanning and site crawling."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from a11yscan.config import CrawlerConfig, ScanOptions


def _json_ready(value: Any) -> Any:
    """Convert enums and datetimes so the value can be passed to json.dump."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(v) for v in value]
    return value


class URLStatus(str, Enum):
    """Processing status of a URL in a crawl session."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    EXCLUDED = "excluded"


class URLDiscoverySource(str, Enum):
    """How a URL entered the frontier."""
    INITIAL = "initial"
    PAGE = "page"
    SITEMAP = "sitemap"
    ROBOTS = "robots"
    MANUAL = "manual"


class CrawlStatus(str, Enum):
    """Lifecycle state of a crawl session."""
    INITIALIZING = "initializing"
    DISCOVERING = "discovering"
    CRAWLING = "crawling"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CrawlStatus.COMPLETED, CrawlStatus.FAILED, CrawlStatus.CANCELLED)


class CrawlEventType(str, Enum):
    """Event types published while a crawl runs."""
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    URL_DISCOVERED = "url_discovered"
    URL_STARTED = "url_started"
    URL_COMPLETED = "url_completed"
    URL_FAILED = "url_failed"
    URL_SKIPPED = "url_skipped"
    DEPTH_LIMIT_REACHED = "depth_limit_reached"
    PAGE_LIMIT_REACHED = "page_limit_reached"
    RATE_LIMIT_APPLIED = "rate_limit_applied"


@dataclass
class AccessibilityIssue:
    """A single accessibility violation found on a page."""

    id: str
    wcag_reference: str
    level: str  # A/AA/AAA/ARIA
    severity: str  # critical/serious/moderate/minor/warning
    element: str
    selector: str
    message: str
    remediation: str
    impact: str = "moderate"
    help_url: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class ScanError:
    """A categorized, non-fatal error recorded during a scan."""

    type: str  # timeout/network/parsing/runtime
    message: str
    details: Optional[str] = None


@dataclass
class ScanMetadata:
    """Metadata collected about a scanned page."""

    scan_duration: float = 0.0  # ms
    page_load_time: float = 0.0  # ms
    total_elements: int = 0
    tested_elements: int = 0
    user_agent: str = "unknown"
    viewport: dict[str, int] = field(default_factory=lambda: {"width": 1280, "height": 720})
    original_url: str = ""
    final_url: str = ""
    redirects: int = 0
    title: Optional[str] = None
    language: Optional[str] = None


@dataclass
class ComplianceSummary:
    """WCAG compliance verdict for a set of issues."""

    compliant: bool
    primary_level_issues: int
    warning_issues: int
    total_issues: int
    level_breakdown: dict[str, int] = field(
        default_factory=lambda: {"A": 0, "AA": 0, "AAA": 0, "ARIA": 0}
    )


@dataclass
class ScanResult:
    """Result of scanning a single URL."""

    url: str
    score: float
    issues: list[AccessibilityIssue] = field(default_factory=list)
    errors: list[ScanError] = field(default_factory=list)
    metadata: ScanMetadata = field(default_factory=ScanMetadata)
    compliance: Optional[ComplianceSummary] = None
    links: list[str] = field(default_factory=list)
    screenshot_path: Optional[str] = None
    success: bool = True
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return _json_ready(asdict(self))


@dataclass
class URLEntry:
    """A URL known to a crawl session."""

    url: str
    depth: int
    source: URLDiscoverySource
    priority: int
    parent: Optional[str] = None
    discovered_at: datetime = field(default_factory=datetime.now)
    sequence: int = 0  # Discovery order, breaks priority ties
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    status: URLStatus = URLStatus.PENDING
    error: Optional[str] = None

    @property
    def is_start_url(self) -> bool:
        return self.depth == 0 and self.source == URLDiscoverySource.INITIAL


def _initial_url_counts() -> dict[str, int]:
    return {
        "total": 0,
        "pending": 0,
        "processing": 0,
        "completed": 0,
        "failed": 0,
        "skipped": 0,
        "excluded": 0,
    }


def _initial_severity_counts() -> dict[str, int]:
    return {"critical": 0, "serious": 0, "moderate": 0, "minor": 0, "warning": 0}


def _initial_performance() -> dict[str, float]:
    return {
        "avg_page_load_time": 0.0,
        "avg_scan_time": 0.0,
        "total_crawl_time": 0.0,
        "pages_per_minute": 0.0,
    }


def _initial_compliance() -> dict[str, Any]:
    return {
        "compliant_pages": 0,
        "non_compliant_pages": 0,
        "compliance_rate": 0.0,
        "level_breakdown": {"A": 0, "AA": 0, "AAA": 0, "ARIA": 0},
    }


@dataclass
class CrawlStats:
    """Aggregate statistics for a crawl session."""

    url_counts: dict[str, int] = field(default_factory=_initial_url_counts)
    pages_scanned: int = 0
    total_issues: int = 0
    issues_by_severity: dict[str, int] = field(default_factory=_initial_severity_counts)
    average_score: float = 0.0
    performance: dict[str, float] = field(default_factory=_initial_performance)
    wcag_compliance: dict[str, Any] = field(default_factory=_initial_compliance)


@dataclass
class CrawlSession:
    """State of one crawl run."""

    id: str
    start_urls: list[str]
    config: CrawlerConfig
    scan_options: ScanOptions
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: CrawlStatus = CrawlStatus.INITIALIZING
    urls: dict[str, URLEntry] = field(default_factory=dict)
    results: dict[str, ScanResult] = field(default_factory=dict)
    stats: CrawlStats = field(default_factory=CrawlStats)
    error: Optional[str] = None
    recent_errors: list[str] = field(default_factory=list)

    def to_dict(self, include_results: bool = False) -> dict:
        """Summarize the session for reports and the CLI."""
        data = {
            "id": self.id,
            "start_urls": list(self.start_urls),
            "config": self.config.to_dict(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status,
            "error": self.error,
            "stats": asdict(self.stats),
            "urls": [asdict(entry) for entry in self.urls.values()],
            "recent_errors": list(self.recent_errors),
        }
        if include_results:
            data["results"] = [result.to_dict() for result in self.results.values()]
        return _json_ready(data)


@dataclass
class CrawlEvent:
    """An event published on the crawl event channel."""

    type: CrawlEventType
    session_id: str
    timestamp: datetime = field(default_factory=datetime.now)
    url: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class CrawlProgress:
    """Snapshot of crawl progress."""

    status: CrawlStatus
    percentage: int
    urls_processed: int
    total_urls: int
    current_depth: int
    scan_rate: float  # pages per minute
    estimated_time_remaining: Optional[float] = None  # ms
    current_url: Optional[str] = None
    recent_errors: list[str] = field(default_factory=list)
