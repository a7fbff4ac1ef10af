"""
Page extractors for the map-search site.

Each extractor is a pure parsing function over a loaded document. The
session manager does the navigation and hands over the page HTML plus the
final URL; the extractor tells the session manager which landmark to wait
for and whether the results container should be scrolled first. All
source-specific selectors live in this module.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urljoin, urlparse

from bs4 import BeautifulSoup

from scraper.errors import ExtractionError
from scraper.models import PlaceRecord

logger = logging.getLogger(__name__)

MAPS_BASE_URL = "https://www.google.com"
SEARCH_URL_TEMPLATE = MAPS_BASE_URL + "/maps/search/{query}"

PLACE_ID_RE = re.compile(r"!1s([^!]+)")
COORDINATES_RE = re.compile(r"@(-?\d+\.\d+),(-?\d+\.\d+)")
NUMBER_RE = re.compile(r"[\d.]+")
COUNT_RE = re.compile(r"[\d,]+")
EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,}")

SOCIAL_PATTERNS = {
    "facebook": re.compile(r"facebook\.com", re.I),
    "instagram": re.compile(r"instagram\.com", re.I),
    "twitter": re.compile(r"(?:^|//|\.)(?:twitter|x)\.com", re.I),
    "linkedin": re.compile(r"linkedin\.com", re.I),
}

# File-like suffixes that look like emails to the regex ("logo@2x.png").
_EMAIL_FALSE_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".css", ".js")


def build_search_url(term: str, location: Optional[str] = None) -> str:
    """Search URL for ``term``, scoped to ``location`` when given.

    Grid cells (``@lat,lng,zoomz``) are appended as a viewport path segment;
    plain place names become part of the query text.
    """
    if location and location.startswith("@"):
        return SEARCH_URL_TEMPLATE.format(query=quote(term, safe="")) + "/" + location
    query = f"{term} in {location}" if location else term
    return SEARCH_URL_TEMPLATE.format(query=quote(query, safe=""))


def absolute_url(href: str, base: str = MAPS_BASE_URL) -> str:
    return href if href.startswith("http") else urljoin(base, href)


def extract_place_id(url: str) -> Optional[str]:
    match = PLACE_ID_RE.search(url or "")
    return match.group(1) if match else None


def extract_coordinates(url: str) -> Tuple[Optional[float], Optional[float]]:
    match = COORDINATES_RE.search(url or "")
    if not match:
        return None, None
    return float(match.group(1)), float(match.group(2))


def city_from_address(address: Optional[str]) -> Optional[str]:
    """
    Best guess at the locality in a formatted address.

    "12 Main St, Springfield, IL 62701, United States" -> "Springfield".
    """
    if not address:
        return None
    parts = [p.strip() for p in address.split(",") if p.strip()]
    if len(parts) < 2:
        return None
    # Trailing country name
    if len(parts) >= 3 and not any(ch.isdigit() for ch in parts[-1]):
        parts = parts[:-1]
    if any(ch.isdigit() for ch in parts[-1]):
        return parts[-2]
    return parts[-1]


def find_emails(text: str) -> List[str]:
    """Email-shaped tokens in ``text``, lower-cased and deduplicated in order."""
    found: List[str] = []
    for match in EMAIL_RE.findall(text or ""):
        email = match.strip(".").lower()
        if email.endswith(_EMAIL_FALSE_SUFFIXES):
            continue
        if email not in found:
            found.append(email)
    return found


class Extractor(ABC):
    """
    One page type's parsing rules.

    The class attributes are navigation hints consumed by the session
    manager: ``landmark`` is waited for after load, and when
    ``scroll_container`` is set the container is scrolled until no new
    ``item_selector`` matches appear or ``end_marker`` text shows up.
    """

    name: str = "page"
    landmark: Optional[str] = None
    scroll_container: Optional[str] = None
    item_selector: Optional[str] = None
    end_marker: Optional[str] = None

    @abstractmethod
    def extract(self, html: str, url: str) -> Any:
        ...

    @staticmethod
    def soup(html: str) -> BeautifulSoup:
        return BeautifulSoup(html or "", "html.parser")


class ListingExtractor(Extractor):
    """Search result listing -> ordered, deduplicated detail page links."""

    name = "listing"
    landmark = '[role="feed"]'
    scroll_container = '[role="feed"]'
    item_selector = 'a[href*="/maps/place/"]'
    end_marker = "You've reached the end"

    def extract(self, html: str, url: str) -> List[str]:
        links: List[str] = []
        for anchor in self.soup(html).select(self.item_selector):
            href = anchor.get("href")
            if not href:
                continue
            full = absolute_url(href)
            if full not in links:
                links.append(full)
        return links


class PlaceDetailExtractor(Extractor):
    """Place detail page -> PlaceRecord."""

    name = "detail"
    landmark = "h1"

    def extract(self, html: str, url: str) -> PlaceRecord:
        place_id = extract_place_id(url)
        if not place_id:
            raise ExtractionError(f"No place identifier in URL: {url}")

        soup = self.soup(html)
        latitude, longitude = extract_coordinates(url)

        record = PlaceRecord(place_id=place_id, latitude=latitude, longitude=longitude)

        heading = soup.find("h1")
        if heading:
            record.name = heading.get_text(strip=True) or None

        record.address = self._item_label(soup, 'button[data-item-id="address"]', "Address: ")
        record.city = city_from_address(record.address)
        record.phone = self._item_label(soup, 'button[data-item-id*="phone"]', "Phone: ")
        record.plus_code = self._item_label(soup, 'button[data-item-id*="plus_code"]', "Plus code: ")
        record.rating, record.reviews_count = self._rating(soup)

        website = soup.select_one('a[data-item-id*="authority"]')
        if website and website.get("href"):
            record.website = website["href"]

        category = soup.select_one('button[jsaction*="category"]')
        if category and category.get_text(strip=True):
            record.business_types = [category.get_text(strip=True)]

        about = soup.select_one('[aria-label*="About"]')
        if about and about.get_text(strip=True):
            record.about = about.get_text(" ", strip=True)

        record.business_status = self._business_status(soup)
        record.opening_hours = self._opening_hours(soup)

        for key, value in self._social_links(soup).items():
            setattr(record, key, value)

        mailto = soup.select_one('a[href^="mailto:"]')
        if mailto:
            record.email = mailto["href"][len("mailto:"):].split("?")[0] or None

        return record

    @staticmethod
    def _item_label(soup: BeautifulSoup, selector: str, prefix: str) -> Optional[str]:
        element = soup.select_one(selector)
        if not element:
            return None
        label = element.get("aria-label") or element.get_text(" ", strip=True)
        label = label.replace(prefix, "", 1).strip()
        return label or None

    @staticmethod
    def _rating(soup: BeautifulSoup) -> Tuple[Optional[float], Optional[int]]:
        rating = None
        reviews = None

        stars = soup.select_one('[role="img"][aria-label*="star"]')
        if stars:
            match = NUMBER_RE.search(stars.get("aria-label", ""))
            if match:
                try:
                    rating = float(match.group(0))
                except ValueError:
                    rating = None

        for button in soup.select("button[aria-label]"):
            label = button.get("aria-label", "")
            if "reviews" in label:
                match = COUNT_RE.search(label)
                if match and match.group(0).replace(",", ""):
                    reviews = int(match.group(0).replace(",", ""))
                break

        return rating, reviews

    @staticmethod
    def _business_status(soup: BeautifulSoup) -> str:
        text = soup.get_text(" ", strip=True)
        if "Permanently closed" in text:
            return "CLOSED_PERMANENTLY"
        if "Temporarily closed" in text:
            return "CLOSED_TEMPORARILY"
        return "OPERATIONAL"

    @staticmethod
    def _opening_hours(soup: BeautifulSoup) -> Dict[str, str]:
        hours: Dict[str, str] = {}
        for row in soup.select('[aria-label*="hours"] tr, table.hours tr'):
            cells = [c.get_text(" ", strip=True) for c in row.find_all("td")]
            if len(cells) >= 2 and cells[0]:
                hours[cells[0]] = cells[1]
        return hours

    @staticmethod
    def _social_links(soup: BeautifulSoup) -> Dict[str, str]:
        found: Dict[str, str] = {}
        for anchor in soup.select("a[href]"):
            href = anchor["href"]
            for key, pattern in SOCIAL_PATTERNS.items():
                if key not in found and pattern.search(href):
                    found[key] = href
        return found


@dataclass
class ContactPage:
    """Emails and follow-up contact/about links found on an external site page."""
    emails: List[str] = field(default_factory=list)
    contact_links: List[str] = field(default_factory=list)


class ContactPageExtractor(Extractor):
    """External business website -> emails plus contact/about links."""

    name = "contact"
    landmark = "body"
    link_keywords = ("contact", "about")

    def extract(self, html: str, url: str) -> ContactPage:
        soup = self.soup(html)
        page = ContactPage()

        for anchor in soup.select('a[href^="mailto:"]'):
            for email in find_emails(anchor["href"]):
                if email not in page.emails:
                    page.emails.append(email)

        for script in soup(["script", "style", "noscript"]):
            script.decompose()
        body = soup.body or soup
        for email in find_emails(body.get_text(" ", strip=True)):
            if email not in page.emails:
                page.emails.append(email)

        origin = urlparse(url)
        for anchor in soup.select("a[href]"):
            href = anchor["href"]
            if href.startswith(("mailto:", "tel:", "javascript:", "#")):
                continue
            if not any(keyword in href.lower() for keyword in self.link_keywords):
                continue
            full = urljoin(url, href)
            parsed = urlparse(full)
            if parsed.scheme not in ("http", "https"):
                continue
            if parsed.netloc and parsed.netloc != origin.netloc:
                continue
            if full.rstrip("/") == url.rstrip("/"):
                continue
            if full not in page.contact_links:
                page.contact_links.append(full)

        return page
