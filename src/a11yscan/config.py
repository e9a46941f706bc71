from dotenv import load_dotenv
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Optional
from pathlib import Path
import json
import os
import re

import yaml

from a11yscan.constants import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_PAGES,
    DEFAULT_REQUEST_DELAY_MS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_USER_AGENT,
    DEFAULT_LOG_FORMAT,
    DEFAULT_PAGE_READY_TIMEOUT_MS,
    DEFAULT_VIEWPORT_WIDTH,
    DEFAULT_VIEWPORT_HEIGHT,
)

load_dotenv()  # Loads variables from .env file


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    LOG_LEVEL = os.getenv("A11YSCAN_LOG_LEVEL", "INFO")
    LOG_FILE = os.getenv("A11YSCAN_LOG_FILE")
    LOG_FORMAT = os.getenv("A11YSCAN_LOG_FORMAT", DEFAULT_LOG_FORMAT)
    USER_AGENT = os.getenv("A11YSCAN_USER_AGENT", DEFAULT_USER_AGENT)
    HEADLESS = os.getenv("A11YSCAN_HEADLESS", "true").lower() != "false"
    AXE_SCRIPT_PATH = os.getenv("A11YSCAN_AXE_SCRIPT_PATH")
    AXE_SOURCE_URL = os.getenv("A11YSCAN_AXE_SOURCE_URL")


settings = Settings()


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# camelCase keys whose snake_case field name carries a unit suffix
_KEY_ALIASES = {
    "request_delay": "request_delay_ms",
    "request_timeout": "request_timeout_ms",
    "timeout": "timeout_ms",
    "page_ready_timeout": "page_ready_timeout_ms",
    "base_retry_delay": "base_retry_delay_ms",
    "max_retry_delay": "max_retry_delay_ms",
    "circuit_breaker_timeout": "circuit_breaker_timeout_ms",
    "include_a_a_a": "include_aaa",
    "include_a_r_i_a": "include_aria",
}


def to_snake_case(key: str) -> str:
    """Convert a camelCase configuration key to snake_case."""
    snake = _CAMEL_RE.sub("_", key).lower()
    return _KEY_ALIASES.get(snake, snake)


def normalize_keys(data: dict, allowed: set[str]) -> dict:
    """Map camelCase/snake_case keys onto dataclass field names, dropping unknown keys."""
    normalized = {}
    for key, value in (data or {}).items():
        name = key if key in allowed else to_snake_case(key)
        if name in allowed:
            normalized[name] = value
    return normalized


@dataclass(frozen=True)
class CrawlerConfig:
    """Crawl policy for one session. Immutable once the session starts."""
    max_depth: int = DEFAULT_MAX_DEPTH  # -1 = unlimited
    max_pages: int = DEFAULT_MAX_PAGES
    allowed_domains: tuple[str, ...] = ()
    excluded_domains: tuple[str, ...] = ()
    excluded_paths: tuple[str, ...] = ()  # regex patterns
    included_paths: tuple[str, ...] = ()  # regex patterns, empty = all
    request_delay_ms: float = DEFAULT_REQUEST_DELAY_MS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    respect_robots_txt: bool = False
    discover_external_links: bool = False
    use_sitemaps: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS

    def __post_init__(self):
        # Accept lists from callers and config files
        for name in ("allowed_domains", "excluded_domains", "excluded_paths", "included_paths"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value or ()))
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_depth < -1:
            raise ValueError("max_depth must be -1 (unlimited) or >= 0")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CrawlerConfig":
        """Build a config from snake_case or camelCase keys."""
        allowed = {f.name for f in fields(cls)}
        return cls(**normalize_keys(data or {}, allowed))

    def to_dict(self) -> dict:
        return {k: list(v) if isinstance(v, tuple) else v for k, v in asdict(self).items()}


@dataclass
class ScanOptions:
    """Options for scanning a single page.

    ``wcag_level``, ``include_aaa`` and ``include_aria`` override the
    scanner's WCAG level configuration for that scan when set.
    """
    wcag_level: Optional[str] = None
    include_aaa: Optional[bool] = None
    include_aria: Optional[bool] = None
    timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS
    page_ready_timeout_ms: float = DEFAULT_PAGE_READY_TIMEOUT_MS
    screenshot: bool = False
    screenshot_dir: str = "screenshots"
    collect_links: bool = False
    disabled_rules: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ScanOptions":
        allowed = {f.name for f in fields(cls)}
        return cls(**normalize_keys(data or {}, allowed))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Config:
    """Top-level configuration for the scanner CLI."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = DEFAULT_VIEWPORT_WIDTH
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    axe_script_path: Optional[str] = None
    axe_source_url: Optional[str] = None
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    scan_options: ScanOptions = field(default_factory=ScanOptions)
    # Raw sections handed to ResilienceConfig.from_dict / WCAGLevelConfig.from_dict
    resilience: dict[str, Any] = field(default_factory=dict)
    wcag: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables.

        Returns:
            Config: Configuration instance with values from environment
        """
        crawler = CrawlerConfig(
            max_depth=int(os.getenv("A11YSCAN_MAX_DEPTH", str(DEFAULT_MAX_DEPTH))),
            max_pages=int(os.getenv("A11YSCAN_MAX_PAGES", str(DEFAULT_MAX_PAGES))),
            request_delay_ms=float(os.getenv("A11YSCAN_REQUEST_DELAY_MS", str(DEFAULT_REQUEST_DELAY_MS))),
            max_concurrency=int(os.getenv("A11YSCAN_MAX_CONCURRENCY", str(DEFAULT_MAX_CONCURRENCY))),
            user_agent=os.getenv("A11YSCAN_USER_AGENT", DEFAULT_USER_AGENT),
        )
        wcag = {}
        if os.getenv("A11YSCAN_WCAG_LEVEL"):
            wcag["primary_level"] = os.getenv("A11YSCAN_WCAG_LEVEL").upper()
        return cls(
            log_level=os.getenv("A11YSCAN_LOG_LEVEL", "INFO"),
            log_file=os.getenv("A11YSCAN_LOG_FILE"),
            headless=os.getenv("A11YSCAN_HEADLESS", "true").lower() != "false",
            user_agent=crawler.user_agent,
            axe_script_path=os.getenv("A11YSCAN_AXE_SCRIPT_PATH"),
            axe_source_url=os.getenv("A11YSCAN_AXE_SOURCE_URL"),
            crawler=crawler,
            wcag=wcag,
        )

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """Load configuration from a YAML or JSON file.

        Recognized sections are ``scanning``, ``crawling``, ``browser``,
        ``performance`` and ``output``; unknown keys are ignored.

        Args:
            path: Path to the configuration file

        Returns:
            Config with values from file (defaults when the file is missing)
        """
        file_path = Path(path)
        if not file_path.exists():
            return cls()

        with open(file_path, "r", encoding="utf-8") as f:
            if file_path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        data = data or {}

        scanning = data.get("scanning", {}) or {}
        browser = data.get("browser", {}) or {}
        output = data.get("output", {}) or {}
        viewport = browser.get("viewport", {}) or {}

        wcag = {}
        for key, target in (("wcagLevel", "primary_level"), ("includeAAA", "include_aaa"),
                            ("includeARIA", "include_aria")):
            if key in scanning:
                wcag[target] = scanning[key]

        user_agent = browser.get("userAgent", DEFAULT_USER_AGENT)
        crawling = dict(data.get("crawling", {}) or {})
        crawling.setdefault("userAgent", user_agent)

        return cls(
            log_level="DEBUG" if output.get("debug") else "INFO",
            headless=browser.get("headless", True),
            user_agent=user_agent,
            viewport_width=viewport.get("width", DEFAULT_VIEWPORT_WIDTH),
            viewport_height=viewport.get("height", DEFAULT_VIEWPORT_HEIGHT),
            crawler=CrawlerConfig.from_dict(crawling),
            scan_options=ScanOptions(
                timeout_ms=scanning.get("timeout", DEFAULT_REQUEST_TIMEOUT_MS),
                screenshot=scanning.get("captureScreenshots", False),
                disabled_rules=list(scanning.get("disabledRules", []) or []),
            ),
            resilience=dict(data.get("performance", {}) or {}),
            wcag=wcag,
        )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        data = asdict(self)
        data["crawler"] = self.crawler.to_dict()
        return data
