"""Priority URL frontier for crawl sessions."""

import heapq
import itertools
import logging
from typing import Iterator, Optional
from urllib.parse import urldefrag, urlparse, urlunparse

from a11yscan.constants import MAX_PRIORITY, MIN_PRIORITY, PRIORITY_DECREMENT
from a11yscan.models import URLDiscoverySource, URLEntry

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> Optional[str]:
    """
    Normalize a URL for use as a frontier key.

    Strips the fragment, lowercases scheme and host and gives an empty path
    a trailing slash.

    Returns:
        The normalized URL, or None if it is not an absolute http(s) URL
    """
    if not url:
        return None
    try:
        url, _ = urldefrag(url.strip())
        parsed = urlparse(url)
    except ValueError:
        return None

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https") or not parsed.netloc:
        return None

    return urlunparse((
        scheme,
        parsed.netloc.lower(),
        parsed.path or "/",
        parsed.params,
        parsed.query,
        "",
    ))


def child_priority(parent_priority: int) -> int:
    """Priority of a URL discovered on a page with ``parent_priority``."""
    return max(MIN_PRIORITY, parent_priority - PRIORITY_DECREMENT)


def sitemap_priority(value: Optional[float]) -> int:
    """Map a sitemap ``<priority>`` (0.0-1.0) onto the frontier scale."""
    if value is None:
        value = 0.5
    return max(MIN_PRIORITY, min(MAX_PRIORITY, round(value * MAX_PRIORITY)))


class URLFrontier:
    """
    Pending URLs ordered by priority, then discovery order.

    The frontier assigns each entry a sequence number when it is added;
    entries with equal priority come out in the order they were added.
    A URL can be queued only once at a time.
    """

    def __init__(self):
        self._heap: list[tuple[int, int, str]] = []
        self._entries: dict[str, URLEntry] = {}
        self._sequence = itertools.count()

    def add(self, entry: URLEntry) -> bool:
        """
        Queue an entry.

        Returns:
            False if the URL is already queued
        """
        if entry.url in self._entries:
            return False
        entry.sequence = next(self._sequence)
        self._entries[entry.url] = entry
        heapq.heappush(self._heap, (-entry.priority, entry.sequence, entry.url))
        return True

    def pop(self) -> Optional[URLEntry]:
        """Remove and return the highest-priority entry, or None when empty."""
        while self._heap:
            _, _, url = heapq.heappop(self._heap)
            entry = self._entries.pop(url, None)
            if entry is not None:
                return entry
        return None

    def peek(self) -> Optional[URLEntry]:
        if not self._heap:
            return None
        return self._entries.get(self._heap[0][2])

    def clear(self) -> None:
        self._heap.clear()
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def __iter__(self) -> Iterator[URLEntry]:
        """Queued entries in pop order."""
        for _, _, url in sorted(self._heap):
            yield self._entries[url]


def make_start_entry(url: str) -> URLEntry:
    return URLEntry(
        url=url,
        depth=0,
        source=URLDiscoverySource.INITIAL,
        priority=MAX_PRIORITY,
    )


def make_child_entry(url: str, parent: URLEntry) -> URLEntry:
    return URLEntry(
        url=url,
        depth=parent.depth + 1,
        source=URLDiscoverySource.PAGE,
        priority=child_priority(parent.priority),
        parent=parent.url,
    )
