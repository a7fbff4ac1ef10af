"""
Browser Session Manager
Owns exactly one Playwright browser context and recycles it on a budget.

Features:
- Identity masking: randomized viewport, fixed realistic user agent,
  language headers, permission pre-grants, stealth init script
- Navigate + wait for landmark + scroll lazy result containers
- Rotation after N records or T minutes of wall-clock age
- Idempotent close, usable as an async context manager
"""

import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

from api.logging_config import log_browser_event
from browser.challenge_detector import detect_challenge
from scraper.delays import DelayController
from scraper.errors import ChallengeDetected, ExtractionError, SessionCrashed
from scraper.extractors import Extractor

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

EXTRA_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
}

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

PERMISSION_ORIGIN = "https://www.google.com"
PERMISSIONS = ["geolocation", "notifications"]

STEALTH_SCRIPT = """
    Object.defineProperty(navigator, 'webdriver', { get: () => undefined });

    Object.defineProperty(navigator, 'plugins', {
        get: () => {
            const plugins = [
                { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
                { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
                { name: 'Native Client', filename: 'internal-nacl-plugin' }
            ];
            plugins.length = 3;
            return plugins;
        }
    });

    Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
    Object.defineProperty(navigator, 'platform', { get: () => 'MacIntel' });
    Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => 8 });

    window.chrome = { runtime: {}, loadTimes: function() {}, csi: function() {}, app: {} };

    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
"""

SCROLL_SCRIPT = """
    (selector) => {
        const el = document.querySelector(selector);
        if (el) { el.scrollTop = el.scrollHeight; }
    }
"""


def random_viewport() -> Dict[str, int]:
    """Desktop-sized viewport with a little jitter per session."""
    return {
        "width": 1920 + random.randint(0, 99),
        "height": 1080 + random.randint(0, 99),
    }


@dataclass
class SessionSettings:
    """Tunables for one managed browser session."""
    headless: bool = True
    user_agent: str = USER_AGENT
    navigation_timeout_ms: int = 60000
    landmark_timeout_ms: int = 10000
    max_scroll_attempts: int = 10
    stable_scroll_rounds: int = 2
    scroll_delay_ms: tuple = (1000, 2000)
    rotate_after_records: int = 400
    rotate_after_minutes: float = 45.0
    extra_headers: Dict[str, str] = field(default_factory=lambda: dict(EXTRA_HEADERS))

    @classmethod
    def from_config(cls, cfg: Any) -> "SessionSettings":
        return cls(
            headless=cfg.BROWSER_HEADLESS,
            navigation_timeout_ms=cfg.NAVIGATION_TIMEOUT_MS,
            landmark_timeout_ms=cfg.LANDMARK_TIMEOUT_MS,
            max_scroll_attempts=cfg.MAX_SCROLL_ATTEMPTS,
            rotate_after_records=cfg.SESSION_ROTATE_RECORDS,
            rotate_after_minutes=cfg.SESSION_ROTATE_MINUTES,
        )


class SessionManager:
    """
    One owned browser automation context.

    Create one per orchestrator run and close it when the run ends, however
    it ends. ``close()`` can be called any number of times.
    """

    def __init__(
        self,
        settings: Optional[SessionSettings] = None,
        delays: Optional[DelayController] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or SessionSettings()
        self.delays = delays or DelayController()
        self._clock = clock

        self.session_id: Optional[str] = None
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None

        self.records_since_open = 0
        self.opened_at: Optional[float] = None
        self.rotations = 0

    @property
    def is_open(self) -> bool:
        return self.page is not None

    async def initialize(self):
        """Open a fresh browser context with identity masking applied."""
        if self.is_open:
            return

        if not self.playwright:
            self.playwright = await async_playwright().start()

        viewport = random_viewport()
        self.browser = await self.playwright.chromium.launch(
            headless=self.settings.headless,
            args=LAUNCH_ARGS + [f"--window-size={viewport['width']},{viewport['height']}"],
        )
        self.context = await self.browser.new_context(
            viewport=viewport,
            user_agent=self.settings.user_agent,
            locale="en-US",
            extra_http_headers=self.settings.extra_headers,
        )
        await self.context.grant_permissions(PERMISSIONS, origin=PERMISSION_ORIGIN)
        await self.context.add_init_script(STEALTH_SCRIPT)

        self.page = await self.context.new_page()
        self.page.set_default_navigation_timeout(self.settings.navigation_timeout_ms)

        self.session_id = f"session_{uuid.uuid4().hex[:8]}"
        self.records_since_open = 0
        self.opened_at = self._clock()
        log_browser_event(self.session_id, "opened", f"viewport {viewport['width']}x{viewport['height']}")

    # ============== Navigation ==============

    async def navigate_and_extract(self, url: str, extractor: Extractor, check_challenge: bool = True) -> Any:
        """
        Load ``url``, wait for the extractor's landmark, scroll if asked, and
        run the extractor over the loaded document.

        Raises ChallengeDetected when the page is an interstitial,
        SessionCrashed when the browser died underneath us and
        ExtractionError when the landmark never appears.
        """
        if not self.is_open:
            await self.initialize()

        page = self.page
        try:
            await page.goto(url, wait_until="domcontentloaded")

            if check_challenge and await detect_challenge(page):
                raise ChallengeDetected(url)

            if extractor.landmark:
                try:
                    await page.wait_for_selector(extractor.landmark, timeout=self.settings.landmark_timeout_ms)
                except PlaywrightTimeoutError:
                    if check_challenge and await detect_challenge(page):
                        raise ChallengeDetected(url)
                    raise ExtractionError(f"Landmark {extractor.landmark!r} not found on {url}")

            if extractor.scroll_container:
                await self._scroll_results(extractor)

            html = await page.content()
            final_url = page.url
        except PlaywrightError as e:
            if self._is_dead(page):
                raise SessionCrashed(f"Browser session {self.session_id} died: {e}") from e
            raise

        return extractor.extract(html, final_url)

    async def _scroll_results(self, extractor: Extractor):
        """Scroll the lazy results container until it stops growing or the end marker shows."""
        page = self.page
        last_count = -1
        stable_rounds = 0

        for attempt in range(self.settings.max_scroll_attempts):
            await page.evaluate(SCROLL_SCRIPT, extractor.scroll_container)
            await self.delays.wait(*self.settings.scroll_delay_ms)

            if extractor.end_marker:
                body_text = await page.inner_text("body")
                if extractor.end_marker in body_text:
                    logger.debug(f"End of results after {attempt + 1} scrolls")
                    break

            if extractor.item_selector:
                count = len(await page.query_selector_all(extractor.item_selector))
                if count == last_count:
                    stable_rounds += 1
                    if stable_rounds >= self.settings.stable_scroll_rounds:
                        logger.debug(f"No new results after {attempt + 1} scrolls ({count} items)")
                        break
                else:
                    stable_rounds = 0
                last_count = count

    async def is_challenged(self) -> bool:
        if not self.is_open:
            return False
        return await detect_challenge(self.page)

    def _is_dead(self, page: Optional[Page]) -> bool:
        if page is None or page.is_closed():
            return True
        return self.browser is not None and not self.browser.is_connected()

    # ============== Rotation ==============

    def record_success(self, count: int = 1):
        self.records_since_open += count

    def rotation_due(self) -> bool:
        if not self.is_open or self.opened_at is None:
            return False
        if self.records_since_open >= self.settings.rotate_after_records:
            return True
        age_minutes = (self._clock() - self.opened_at) / 60
        return age_minutes >= self.settings.rotate_after_minutes

    async def maybe_rotate(self) -> bool:
        """Close and reopen the context when the record or age budget is spent."""
        if not self.rotation_due():
            return False

        old_id = self.session_id
        records = self.records_since_open
        await self._close_browser()
        await self.initialize()
        self.rotations += 1
        log_browser_event(old_id, "rotated", f"after {records} records, new session {self.session_id}")
        return True

    # ============== Cleanup ==============

    async def _close_browser(self):
        context, browser = self.context, self.browser
        self.page = None
        self.context = None
        self.browser = None

        for resource in (context, browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as e:
                logger.debug(f"Ignoring close error: {e}")

    async def close(self):
        """Release every underlying resource. Safe to call repeatedly."""
        had_session = self.session_id is not None and self.is_open
        await self._close_browser()

        if self.playwright:
            try:
                await self.playwright.stop()
            except PlaywrightError as e:
                logger.debug(f"Ignoring playwright stop error: {e}")
            self.playwright = None

        if had_session:
            log_browser_event(self.session_id, "closed", f"{self.records_since_open} records in last context")

    async def __aenter__(self) -> "SessionManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "open": self.is_open,
            "records_since_open": self.records_since_open,
            "rotations": self.rotations,
        }
