"""robots.txt policy and XML sitemap discovery for crawl sessions."""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser
from xml.etree import ElementTree as ET

import httpx

from a11yscan.constants import (
    DEFAULT_USER_AGENT,
    DISCOVERY_FETCH_TIMEOUT_SECONDS,
    MAX_SITEMAP_DEPTH,
    MAX_SITEMAP_URLS,
)

logger = logging.getLogger(__name__)

SITEMAP_NS = "{http://www.sitemaps.org/schemas/sitemap/0.9}"


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RobotsPolicy:
    """
    robots.txt rules per origin.

    Each origin's robots.txt is fetched once; a missing or unreachable
    robots.txt allows everything.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DISCOVERY_FETCH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self._transport = transport
        # origin -> parser, None when robots.txt could not be loaded
        self._parsers: dict[str, Optional[RobotFileParser]] = {}

    async def load(self, url: str) -> None:
        """Fetch and cache robots.txt for the URL's origin."""
        origin = origin_of(url)
        if origin in self._parsers:
            return

        robots_url = f"{origin}/robots.txt"
        parser: Optional[RobotFileParser] = None

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    robots_url,
                    headers={"User-Agent": self.user_agent, "Accept": "text/plain,*/*"},
                )
            if response.status_code == 200:
                parser = RobotFileParser()
                parser.set_url(robots_url)
                parser.parse(response.text.splitlines())
                logger.info(f"Loaded robots.txt from {robots_url}")
            else:
                logger.info(f"No robots.txt found at {robots_url} (status: {response.status_code})")
        except httpx.HTTPError as e:
            logger.warning(f"Could not load robots.txt from {robots_url}: {e}")

        self._parsers[origin] = parser

    async def is_allowed(self, url: str) -> bool:
        """Whether robots.txt lets our user agent fetch ``url``."""
        await self.load(url)
        parser = self._parsers.get(origin_of(url))
        if parser is None:
            return True
        return parser.can_fetch(self.user_agent, url)

    def clear(self) -> None:
        self._parsers.clear()


@dataclass
class SitemapURL:
    """A URL listed in a sitemap."""
    url: str
    priority: Optional[float] = None
    lastmod: Optional[str] = None


class SitemapParser:
    """
    Async XML sitemap parser.

    Handles ``urlset`` files and follows ``sitemapindex`` files to a limited
    depth. Fetch and parse failures are logged and contribute no URLs.
    """

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DISCOVERY_FETCH_TIMEOUT_SECONDS,
        max_urls: int = MAX_SITEMAP_URLS,
        max_depth: int = MAX_SITEMAP_DEPTH,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.max_urls = max_urls
        self.max_depth = max_depth
        self._transport = transport

    async def discover(self, start_url: str) -> list[SitemapURL]:
        """Parse ``<origin>/sitemap.xml`` for a start URL."""
        return await self.parse(f"{origin_of(start_url)}/sitemap.xml")

    async def parse(self, sitemap_url: str) -> list[SitemapURL]:
        """
        Parse a sitemap or sitemap index.

        Args:
            sitemap_url: URL of sitemap.xml or a sitemap index

        Returns:
            Listed URLs in document order, deduplicated, at most ``max_urls``
        """
        found: dict[str, SitemapURL] = {}
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            await self._fetch_and_parse(client, sitemap_url, found, depth=0)

        logger.info(f"Found {len(found)} URLs in sitemap {sitemap_url}")
        return list(found.values())

    async def _fetch_and_parse(
        self,
        client: httpx.AsyncClient,
        sitemap_url: str,
        found: dict[str, SitemapURL],
        depth: int,
    ) -> None:
        if depth > self.max_depth or len(found) >= self.max_urls:
            return

        try:
            response = await client.get(
                sitemap_url,
                headers={"User-Agent": self.user_agent, "Accept": "application/xml, text/xml, */*"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch sitemap {sitemap_url}: {e}")
            return

        try:
            root = ET.fromstring(self._clean_xml(response.text))
        except ET.ParseError as e:
            logger.warning(f"Failed to parse sitemap XML {sitemap_url}: {e}")
            return

        root_tag = root.tag.split("}")[-1]
        if root_tag == "sitemapindex":
            for child_url in self._child_sitemaps(root):
                logger.debug(f"Following child sitemap: {child_url}")
                await self._fetch_and_parse(client, child_url, found, depth + 1)
                if len(found) >= self.max_urls:
                    return
        elif root_tag == "urlset":
            self._collect_urls(root, found)
        else:
            logger.warning(f"Unknown sitemap root element: {root_tag}")

    @staticmethod
    def _clean_xml(content: str) -> str:
        content = re.sub(r"<!DOCTYPE[^>]*>", "", content)
        return content.strip()

    @staticmethod
    def _find_text(element: ET.Element, name: str) -> Optional[str]:
        child = element.find(f"{SITEMAP_NS}{name}")
        if child is None:
            child = element.find(name)
        if child is None or not child.text:
            return None
        return child.text.strip()

    def _child_sitemaps(self, root: ET.Element) -> list[str]:
        children = []
        for element in root:
            if element.tag.split("}")[-1] == "sitemap":
                loc = self._find_text(element, "loc")
                if loc:
                    children.append(loc)
        return children

    def _collect_urls(self, root: ET.Element, found: dict[str, SitemapURL]) -> None:
        for element in root:
            if element.tag.split("}")[-1] != "url":
                continue

            loc = self._find_text(element, "loc")
            if not loc or loc in found:
                continue

            priority_text = self._find_text(element, "priority")
            try:
                priority = float(priority_text) if priority_text else None
            except ValueError:
                priority = None

            found[loc] = SitemapURL(
                url=loc,
                priority=priority,
                lastmod=self._find_text(element, "lastmod"),
            )
            if len(found) >= self.max_urls:
                logger.info(f"Reached sitemap URL limit ({self.max_urls})")
                return
