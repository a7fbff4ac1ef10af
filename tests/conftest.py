"""
Pytest fixtures and configuration for the Map Scraper test suite.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from unittest.mock import AsyncMock

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api import database  # noqa: E402
from api.config import config  # noqa: E402
from scraper.delays import DelayController  # noqa: E402
from scraper.errors import ChallengeDetected, ExtractionError, SessionCrashed  # noqa: E402
from scraper.extractors import build_search_url  # noqa: E402


# === Environment ===

@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """No background workers and no outbound webhooks during tests."""
    monkeypatch.setattr(config, "QUEUE_WORKER_ENABLED", False)
    monkeypatch.setattr(config, "DISCORD_WEBHOOK_URL", None)
    monkeypatch.setattr(config, "SLACK_WEBHOOK_URL", None)


@pytest.fixture
def test_db(tmp_path, monkeypatch):
    """Fresh SQLite database per test."""
    db_path = tmp_path / "test_scraper.db"
    monkeypatch.setattr(database, "DB_PATH", db_path)
    asyncio.run(database.init_database())
    return db_path


# === Fixture HTML ===

def place_url(place_id: str, lat: float = 39.78, lng: float = -89.65) -> str:
    return f"https://www.google.com/maps/place/Shop+{place_id}/@{lat},{lng},17z/data=!4m6!3m5!1s{place_id}!8m2"


def listing_html(links: Iterable[str], end: bool = True) -> str:
    anchors = "\n".join(f'<a class="hfpxzc" href="{link}">result</a>' for link in links)
    marker = "<p>You've reached the end of the list.</p>" if end else ""
    return f'<html><body><div role="feed">{anchors}</div>{marker}</body></html>'


def detail_html(
    name: str,
    address: str = "12 Main St, Springfield, IL 62701, United States",
    phone: str = "(217) 555-0100",
    website: Optional[str] = "https://bakery.example.com/",
    rating: str = "4.6",
    reviews: str = "1,234",
    extra: str = "",
) -> str:
    website_link = (
        f'<a data-item-id="authority" href="{website}">Website</a>' if website else ""
    )
    return f"""
    <html><body>
      <h1>{name}</h1>
      <div role="img" aria-label="{rating} stars"></div>
      <button aria-label="{reviews} reviews">{reviews}</button>
      <button jsaction="pane.rating.category">Bakery</button>
      <button data-item-id="address" aria-label="Address: {address}">{address}</button>
      <button data-item-id="phone:tel:2175550100" aria-label="Phone: {phone}">{phone}</button>
      {website_link}
      {extra}
    </body></html>
    """


# === Fakes ===

class FakeSession:
    """
    Stands in for SessionManager: serves fixture HTML by URL and runs the
    real extractor over it.
    """

    def __init__(
        self,
        pages: Dict[str, str],
        challenge_urls: Iterable[str] = (),
        crash_urls: Iterable[str] = (),
        rotate_every: Optional[int] = None,
    ):
        self.pages = dict(pages)
        self.challenge_urls = set(challenge_urls)
        self.crash_urls = set(crash_urls)
        self.rotate_every = rotate_every
        self.visited: List[str] = []
        self.records_since_open = 0
        self.rotations = 0
        self.close_calls = 0

    async def navigate_and_extract(self, url, extractor, check_challenge=True):
        self.visited.append(url)
        if url in self.crash_urls:
            raise SessionCrashed(f"Browser died loading {url}")
        if check_challenge and url in self.challenge_urls:
            raise ChallengeDetected(url)
        if url not in self.pages:
            raise ExtractionError(f"Landmark {extractor.landmark!r} not found on {url}")
        return extractor.extract(self.pages[url], url)

    async def is_challenged(self):
        return False

    async def maybe_rotate(self):
        if self.rotate_every and self.records_since_open >= self.rotate_every:
            self.rotations += 1
            self.records_since_open = 0
            return True
        return False

    def record_success(self, count=1):
        self.records_since_open += count

    async def close(self):
        self.close_calls += 1


class SessionFactory:
    """Hands out one FakeSession per orchestrator run and remembers them."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.sessions: List[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession(**self.kwargs)
        self.sessions.append(session)
        return session


class RecordingNotifier:
    """Collects notification calls instead of posting webhooks."""

    def __init__(self):
        self.calls = []

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        async def record(*args, **kwargs):
            self.calls.append((name, args))
            return True

        return record


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fast_delays():
    """DelayController that never actually sleeps."""
    return DelayController(sleep=AsyncMock())


@pytest.fixture
def search_url():
    return build_search_url


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: Tests that exercise several components together")
    config.addinivalue_line("markers", "slow: Slow tests")
