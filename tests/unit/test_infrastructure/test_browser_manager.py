"""Unit tests for BrowserManager helpers and navigation.

Playwright pages are replaced by mocks; no browser is launched.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

pytest_plugins = ('pytest_asyncio',)

from a11yscan.exceptions import BrowserError
from a11yscan.infrastructure.browser_manager import (
    BrowserManager,
    NavigationOptions,
    categorize_navigation_error,
    normalize_links,
)


class TestCategorizeNavigationError:
    """Tests for navigation error classification."""

    @pytest.mark.parametrize("message,expected", [
        ("Timeout 30000ms exceeded.", "timeout"),
        ("net::ERR_NAME_NOT_RESOLVED at https://nope.invalid/", "network"),
        ("Navigation failed because page crashed!", "navigation"),
        ("net::ERR_CERT_AUTHORITY_INVALID", "network"),
        ("SSL handshake failed", "security"),
        ("Execution context was destroyed", "javascript"),
    ])
    def test_categories(self, message, expected):
        assert categorize_navigation_error(message) == expected


class TestNormalizeLinks:
    """Tests for link normalization."""

    def test_resolves_relative_links(self):
        links = normalize_links(["/about", "contact.html"], "https://example.com/team/")

        assert links == [
            "https://example.com/about",
            "https://example.com/team/contact.html",
        ]

    def test_strips_fragments_and_dedupes(self):
        links = normalize_links(
            ["/a#top", "/a#bottom", "/a"],
            "https://example.com/",
        )

        assert links == ["https://example.com/a"]

    def test_drops_non_http_schemes(self):
        links = normalize_links(
            ["mailto:me@example.com", "javascript:void(0)", "tel:123", "", "https://x.org/"],
            "https://example.com/",
        )

        assert links == ["https://x.org/"]


def make_page(goto_side_effect=None, status=200, final_url="https://example.com/"):
    page = MagicMock()
    response = MagicMock()
    response.status = status
    response.url = final_url
    page.goto = AsyncMock(return_value=response, side_effect=goto_side_effect)
    return page


class TestBrowserManager:
    """Tests for BrowserManager."""

    def test_defaults(self):
        manager = BrowserManager()

        assert manager.headless is True
        assert manager.is_initialized is False

    @pytest.mark.asyncio
    async def test_create_page_requires_initialize(self):
        manager = BrowserManager()

        with pytest.raises(BrowserError):
            await manager.create_page()

    @pytest.mark.asyncio
    async def test_navigate_success(self):
        manager = BrowserManager()
        page = make_page(final_url="https://example.com/home")

        result = await manager.navigate(page, "https://example.com/", NavigationOptions(retries=1))

        assert result.success is True
        assert result.status_code == 200
        assert result.final_url == "https://example.com/home"
        assert result.error is None
        page.remove_listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_navigate_failure_is_reported(self):
        """Test that navigation failures come back as results, not exceptions."""
        manager = BrowserManager()
        manager.wait = AsyncMock()
        page = make_page(goto_side_effect=Exception("Timeout 30000ms exceeded."))

        result = await manager.navigate(
            page, "https://example.com/", NavigationOptions(retries=2, retry_delay_ms=10)
        )

        assert result.success is False
        assert result.error.type == "timeout"
        assert result.error.details["attempt"] == 2
        assert page.goto.await_count == 2
        manager.wait.assert_awaited_once_with(10)
        page.remove_listener.assert_called_once()

    @pytest.mark.asyncio
    async def test_navigate_retry_then_success(self):
        manager = BrowserManager()
        manager.wait = AsyncMock()
        response = MagicMock(status=200, url="https://example.com/")
        page = make_page()
        page.goto = AsyncMock(side_effect=[Exception("net::ERR_CONNECTION_RESET"), response])

        result = await manager.navigate(page, "https://example.com/", NavigationOptions(retries=2))

        assert result.success is True
        assert page.goto.await_count == 2

    @pytest.mark.asyncio
    async def test_extract_links(self):
        manager = BrowserManager()
        page = MagicMock()
        page.url = "https://example.com/docs/"
        page.evaluate = AsyncMock(return_value=["intro", "/faq#q1", "mailto:x@y.z"])

        links = await manager.extract_links(page)

        assert links == ["https://example.com/docs/intro", "https://example.com/faq"]

    @pytest.mark.asyncio
    async def test_close_page_ignores_errors(self):
        manager = BrowserManager()
        page = MagicMock()
        page.is_closed = MagicMock(return_value=False)
        page.close = AsyncMock(side_effect=Exception("Target closed"))

        await manager.close_page(page)

        page.close.assert_awaited_once()
