"""
Browser session manager tests against a mocked Playwright page.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from browser.session_manager import SessionManager, SessionSettings, random_viewport
from conftest import detail_html, listing_html, place_url
from scraper.delays import DelayController
from scraper.errors import ChallengeDetected, ExtractionError, SessionCrashed
from scraper.extractors import ListingExtractor, PlaceDetailExtractor


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def mock_page(html="", url="https://www.google.com/maps", body_text="Results"):
    page = MagicMock()
    page.goto = AsyncMock()
    page.query_selector = AsyncMock(return_value=None)
    page.query_selector_all = AsyncMock(return_value=[])
    page.inner_text = AsyncMock(return_value=body_text)
    page.wait_for_selector = AsyncMock()
    page.evaluate = AsyncMock()
    page.content = AsyncMock(return_value=html)
    page.url = url
    page.is_closed = MagicMock(return_value=False)
    return page


def open_manager(page, settings=None, clock=None):
    manager = SessionManager(settings or SessionSettings(), DelayController(sleep=AsyncMock()), clock or FakeClock())
    manager.page = page
    manager.browser = MagicMock(is_connected=MagicMock(return_value=True))
    manager.session_id = "session_test"
    manager.opened_at = manager._clock()
    return manager


class TestRotationBudget:

    def test_closed_session_never_due(self):
        assert not SessionManager().rotation_due()

    def test_due_after_record_budget(self):
        manager = open_manager(mock_page(), SessionSettings(rotate_after_records=3))
        manager.record_success(2)
        assert not manager.rotation_due()
        manager.record_success()
        assert manager.rotation_due()

    def test_due_after_age_budget(self):
        clock = FakeClock()
        manager = open_manager(mock_page(), SessionSettings(rotate_after_minutes=45), clock)
        clock.now += 44 * 60
        assert not manager.rotation_due()
        clock.now += 60
        assert manager.rotation_due()

    def test_viewport_jitter(self):
        viewport = random_viewport()
        assert 1920 <= viewport["width"] < 2020
        assert 1080 <= viewport["height"] < 1180


@pytest.mark.asyncio
class TestRotation:

    async def test_rotates_when_due(self):
        manager = open_manager(mock_page(), SessionSettings(rotate_after_records=1))
        manager.record_success()
        manager._close_browser = AsyncMock()
        manager.initialize = AsyncMock()

        assert await manager.maybe_rotate() is True

        manager._close_browser.assert_awaited_once()
        manager.initialize.assert_awaited_once()
        assert manager.rotations == 1

    async def test_no_rotation_within_budget(self):
        manager = open_manager(mock_page())
        manager._close_browser = AsyncMock()

        assert await manager.maybe_rotate() is False
        manager._close_browser.assert_not_awaited()


@pytest.mark.asyncio
class TestNavigateAndExtract:

    async def test_detail_page(self):
        url = place_url("p1")
        page = mock_page(html=detail_html("Joe's Bakery"), url=url)
        manager = open_manager(page)

        record = await manager.navigate_and_extract(url, PlaceDetailExtractor())

        assert record.place_id == "p1"
        assert record.name == "Joe's Bakery"
        page.goto.assert_awaited_once_with(url, wait_until="domcontentloaded")
        page.wait_for_selector.assert_awaited_once()
        page.evaluate.assert_not_awaited()

    async def test_listing_scrolls_until_end_marker(self):
        links = [place_url("p1"), place_url("p2")]
        page = mock_page(html=listing_html(links), body_text="You've reached the end of the list.")
        manager = open_manager(page)

        assert await manager.navigate_and_extract("https://www.google.com/maps/search/bakery", ListingExtractor()) == links
        assert page.evaluate.await_count == 1

    async def test_listing_stops_when_results_stop_growing(self):
        page = mock_page(html=listing_html([], end=False))
        page.query_selector_all = AsyncMock(return_value=[object(), object()])
        manager = open_manager(page, SessionSettings(max_scroll_attempts=10, stable_scroll_rounds=2))

        await manager.navigate_and_extract("https://www.google.com/maps/search/bakery", ListingExtractor())

        assert page.evaluate.await_count == 3

    async def test_challenge_page(self):
        page = mock_page(body_text="Our systems have detected unusual traffic from your computer network")
        manager = open_manager(page)

        with pytest.raises(ChallengeDetected):
            await manager.navigate_and_extract(place_url("p1"), PlaceDetailExtractor())

    async def test_challenge_check_can_be_skipped(self):
        url = "https://bakery.example.com/"
        page = mock_page(html="<html><body>No captcha here, just bread</body></html>", url=url,
                         body_text="No captcha here, just bread")
        manager = open_manager(page)
        extractor = MagicMock(landmark=None, scroll_container=None)
        extractor.extract.return_value = "ok"

        assert await manager.navigate_and_extract(url, extractor, check_challenge=False) == "ok"

    async def test_missing_landmark(self):
        page = mock_page()
        page.wait_for_selector = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 10000ms exceeded"))
        manager = open_manager(page)

        with pytest.raises(ExtractionError):
            await manager.navigate_and_extract(place_url("p1"), PlaceDetailExtractor())

    async def test_dead_page_is_session_crash(self):
        page = mock_page()
        page.goto = AsyncMock(side_effect=PlaywrightError("Target page, context or browser has been closed"))
        page.is_closed = MagicMock(return_value=True)
        manager = open_manager(page)

        with pytest.raises(SessionCrashed):
            await manager.navigate_and_extract(place_url("p1"), PlaceDetailExtractor())

    async def test_browser_error_on_live_page_propagates(self):
        page = mock_page()
        page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))
        manager = open_manager(page)

        with pytest.raises(PlaywrightError):
            await manager.navigate_and_extract(place_url("p1"), PlaceDetailExtractor())


@pytest.mark.asyncio
class TestClose:

    async def test_close_is_idempotent(self):
        manager = open_manager(mock_page())
        context = MagicMock(close=AsyncMock())
        browser = manager.browser
        browser.close = AsyncMock()
        manager.context = context
        playwright = MagicMock(stop=AsyncMock())
        manager.playwright = playwright

        await manager.close()
        await manager.close()

        context.close.assert_awaited_once()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        assert manager.get_stats()["open"] is False

    async def test_close_ignores_browser_errors(self):
        manager = open_manager(mock_page())
        manager.browser.close = AsyncMock(side_effect=PlaywrightError("already gone"))

        await manager.close()

        assert manager.browser is None
