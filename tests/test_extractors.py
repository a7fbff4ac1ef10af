"""
Extractor tests: listing, place detail and external contact pages.
"""

import pytest

from conftest import detail_html, listing_html, place_url
from scraper.errors import ExtractionError
from scraper.extractors import (
    ContactPageExtractor,
    ListingExtractor,
    PlaceDetailExtractor,
    build_search_url,
    city_from_address,
    extract_coordinates,
    extract_place_id,
    find_emails,
)


class TestUrlHelpers:

    def test_search_url_with_location(self):
        url = build_search_url("bakery", "Springfield")
        assert url == "https://www.google.com/maps/search/bakery%20in%20Springfield"

    def test_search_url_without_location(self):
        assert build_search_url("coffee shop") == "https://www.google.com/maps/search/coffee%20shop"

    def test_search_url_with_grid_cell(self):
        url = build_search_url("bakery", "@39.781700,-89.650100,14z")
        assert url == "https://www.google.com/maps/search/bakery/@39.781700,-89.650100,14z"

    def test_place_id_and_coordinates_from_url(self):
        url = place_url("0x880b:0x1a2b", lat=39.7817, lng=-89.6501)
        assert extract_place_id(url) == "0x880b:0x1a2b"
        assert extract_coordinates(url) == (39.7817, -89.6501)

    def test_missing_place_id(self):
        assert extract_place_id("https://www.google.com/maps/search/bakery") is None
        assert extract_coordinates("https://example.com") == (None, None)

    def test_city_from_address(self):
        assert city_from_address("12 Main St, Springfield, IL 62701, United States") == "Springfield"
        assert city_from_address("5 Rue Cler, Paris") == "Paris"
        assert city_from_address("Springfield") is None
        assert city_from_address(None) is None


class TestListingExtractor:

    def test_returns_absolute_deduplicated_links_in_order(self):
        html = listing_html([
            "/maps/place/A/data=!1sA!",
            "https://www.google.com/maps/place/B/data=!1sB!",
            "/maps/place/A/data=!1sA!",
        ])
        links = ListingExtractor().extract(html, "https://www.google.com/maps/search/x")
        assert links == [
            "https://www.google.com/maps/place/A/data=!1sA!",
            "https://www.google.com/maps/place/B/data=!1sB!",
        ]

    def test_ignores_non_place_links(self):
        html = '<div role="feed"><a href="/maps/search/other">x</a><a href="/intl/about">y</a></div>'
        assert ListingExtractor().extract(html, "") == []


class TestPlaceDetailExtractor:

    def test_full_record(self):
        url = place_url("p1", lat=39.7817, lng=-89.6501)
        html = detail_html(
            "Joe's Bakery",
            extra="""
              <a href="https://www.facebook.com/joesbakery">fb</a>
              <a href="https://instagram.com/joesbakery">ig</a>
              <a href="mailto:hello@joesbakery.com">Email us</a>
              <table class="hours"><tr><td>Monday</td><td>7 AM-6 PM</td></tr></table>
            """,
        )
        record = PlaceDetailExtractor().extract(html, url)

        assert record.place_id == "p1"
        assert record.name == "Joe's Bakery"
        assert record.address == "12 Main St, Springfield, IL 62701, United States"
        assert record.city == "Springfield"
        assert record.phone == "(217) 555-0100"
        assert record.website == "https://bakery.example.com/"
        assert record.rating == 4.6
        assert record.reviews_count == 1234
        assert record.latitude == 39.7817
        assert record.longitude == -89.6501
        assert record.business_types == ["Bakery"]
        assert record.business_status == "OPERATIONAL"
        assert record.facebook == "https://www.facebook.com/joesbakery"
        assert record.instagram == "https://instagram.com/joesbakery"
        assert record.email == "hello@joesbakery.com"
        assert record.opening_hours == {"Monday": "7 AM-6 PM"}

    def test_missing_fields_stay_empty(self):
        html = "<html><body><h1>Bare Place</h1></body></html>"
        record = PlaceDetailExtractor().extract(html, place_url("p2"))
        assert record.name == "Bare Place"
        assert record.phone is None
        assert record.website is None
        assert record.rating is None
        assert record.business_types == []

    def test_closed_status(self):
        html = detail_html("Old Mill", extra="<span>Permanently closed</span>")
        record = PlaceDetailExtractor().extract(html, place_url("p3"))
        assert record.business_status == "CLOSED_PERMANENTLY"

    def test_url_without_place_id_is_an_extraction_error(self):
        with pytest.raises(ExtractionError):
            PlaceDetailExtractor().extract(detail_html("X"), "https://www.google.com/maps/place/X")


class TestContactPageExtractor:

    def test_emails_from_mailto_and_text(self):
        html = """
        <html><body>
          <a href="mailto:Info@Bakery.example.com?subject=Hi">Mail</a>
          <p>Orders: orders@bakery.example.com</p>
          <img src="logo@2x.png">
          <script>var x = "tracking@analytics.example.com";</script>
        </body></html>
        """
        page = ContactPageExtractor().extract(html, "https://bakery.example.com/")
        assert page.emails == ["info@bakery.example.com", "orders@bakery.example.com"]

    def test_same_site_contact_links_only(self):
        html = """
        <html><body>
          <a href="/contact-us">Contact</a>
          <a href="https://bakery.example.com/about">About</a>
          <a href="https://other.example.org/contact">Elsewhere</a>
          <a href="/menu">Menu</a>
          <a href="tel:+12175550100">Call</a>
        </body></html>
        """
        page = ContactPageExtractor().extract(html, "https://bakery.example.com/")
        assert page.contact_links == [
            "https://bakery.example.com/contact-us",
            "https://bakery.example.com/about",
        ]

    def test_find_emails_skips_asset_names(self):
        assert find_emails("icon@2x.png a@b.co A@B.CO") == ["a@b.co"]
