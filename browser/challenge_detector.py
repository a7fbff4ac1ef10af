"""
Anti-automation challenge detection.

Best-effort heuristic: a known challenge widget selector, or known challenge
phrasing in the visible body text. Detection only; nothing here tries to
solve or bypass a challenge.
"""

import logging
from typing import Optional

from bs4 import BeautifulSoup
from playwright.async_api import Page, Error as PlaywrightError

logger = logging.getLogger(__name__)

CHALLENGE_SELECTORS = [
    'iframe[src*="recaptcha"]',
    ".g-recaptcha",
    "#captcha",
    '[aria-label*="captcha"]',
    'iframe[title*="recaptcha"]',
]

CHALLENGE_PHRASES = [
    "unusual traffic",
    "verify you are not a robot",
    "captcha",
]


def text_has_challenge(text: Optional[str]) -> bool:
    """Case-insensitive substring match against the challenge phrase list."""
    if not text:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in CHALLENGE_PHRASES)


def html_has_challenge(html: str) -> bool:
    """Offline check over a page snapshot."""
    soup = BeautifulSoup(html or "", "html.parser")
    for selector in CHALLENGE_SELECTORS:
        if soup.select_one(selector) is not None:
            return True
    body = soup.body or soup
    return text_has_challenge(body.get_text(" ", strip=True))


async def detect_challenge(page: Page) -> bool:
    """
    Inspect a live page for a challenge interstitial.

    Browser errors while probing are treated as "no challenge"; a dead page
    surfaces on the next navigation instead.
    """
    try:
        for selector in CHALLENGE_SELECTORS:
            if await page.query_selector(selector):
                logger.warning(f"Challenge widget found: {selector}")
                return True

        body_text = await page.inner_text("body")
        if text_has_challenge(body_text):
            logger.warning("Challenge phrasing found in page text")
            return True
    except PlaywrightError as e:
        logger.debug(f"Challenge probe failed: {e}")
    return False
