"""
CSV export tests.
"""

import csv
import io

from api.export import export_columns, iter_csv, place_to_row
from scraper.models import Job

BASE = ["Name", "Address", "Website", "Place ID"]


def titles(fields):
    return [title for title, _ in export_columns(fields)]


class TestColumns:

    def test_phone_only(self):
        assert titles(["phone"]) == BASE + ["Phone"]

    def test_base_columns_always_present(self):
        assert titles([]) == BASE

    def test_order_does_not_depend_on_selection_order(self):
        assert titles(["socialMedia", "city"]) == titles(["city", "socialMedia"])
        assert titles(["socialMedia", "city"]) == BASE + ["City", "Facebook", "Instagram", "Twitter", "LinkedIn"]

    def test_group_expansion(self):
        columns = titles(["rating", "coordinates", "businessInfo"])
        assert columns == BASE + [
            "Rating", "Reviews Count", "Latitude", "Longitude", "Business Status", "Business Types",
        ]


class TestCsv:

    def test_rows_follow_job_fields(self):
        job = Job(id="job_1", client_name="Acme", search_terms=["bakery"], fields=["phone", "businessInfo"])
        places = [
            {
                "name": "Joe's Bakery",
                "address": "12 Main St, Springfield",
                "website": None,
                "place_id": "p1",
                "phone": "(217) 555-0100",
                "latitude": 39.78,
                "business_status": "OPERATIONAL",
                "business_types": ["Bakery", "Cafe"],
            },
        ]

        text = "".join(iter_csv(job, places))
        rows = list(csv.DictReader(io.StringIO(text)))

        assert list(rows[0].keys()) == BASE + ["Phone", "Business Status", "Business Types"]
        assert rows[0]["Name"] == "Joe's Bakery"
        assert rows[0]["Website"] == ""
        assert rows[0]["Business Types"] == "Bakery, Cafe"
        assert "Latitude" not in rows[0]

    def test_header_only_for_job_without_places(self):
        job = Job(id="job_1", client_name="Acme", search_terms=["bakery"], fields=["phone"])
        chunks = list(iter_csv(job, []))
        assert chunks == ["Name,Address,Website,Place ID,Phone\r\n"]

    def test_place_to_row_blanks_missing_values(self):
        row = place_to_row({"place_id": "p1"}, export_columns(["rating"]))
        assert row == {"Name": "", "Address": "", "Website": "", "Place ID": "p1", "Rating": "", "Reviews Count": ""}
