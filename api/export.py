"""
CSV export of a job's places.

The column set follows the field groups the job was created with; name,
address, website and place id are always present.
"""

import csv
import io
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Tuple

from scraper.models import Job

# (column title, place key)
BASE_COLUMNS: List[Tuple[str, str]] = [
    ("Name", "name"),
    ("Address", "address"),
    ("Website", "website"),
    ("Place ID", "place_id"),
]

FIELD_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "city": [("City", "city")],
    "rating": [("Rating", "rating"), ("Reviews Count", "reviews_count")],
    "phone": [("Phone", "phone")],
    "email": [("Email", "email")],
    "coordinates": [("Latitude", "latitude"), ("Longitude", "longitude")],
    "businessInfo": [("Business Status", "business_status"), ("Business Types", "business_types")],
    "socialMedia": [
        ("Facebook", "facebook"),
        ("Instagram", "instagram"),
        ("Twitter", "twitter"),
        ("LinkedIn", "linkedin"),
    ],
}


def export_columns(fields: Iterable[str]) -> List[Tuple[str, str]]:
    """Columns for a field selection, in a fixed order regardless of how ``fields`` is ordered."""
    selected = set(fields or [])
    columns = list(BASE_COLUMNS)
    for group, group_columns in FIELD_COLUMNS.items():
        if group in selected:
            columns.extend(group_columns)
    return columns


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return value


def place_to_row(place: Dict[str, Any], columns: List[Tuple[str, str]]) -> Dict[str, Any]:
    return {title: _cell(place.get(key)) for title, key in columns}


def iter_csv(job: Job, places: Iterable[Dict[str, Any]]) -> Iterator[str]:
    """Yield the header line, then one CSV line per place."""
    columns = export_columns(job.fields)
    buf = io.StringIO()
    writer = csv.DictWriter(
        buf,
        fieldnames=[title for title, _ in columns],
        extrasaction="ignore",
        restval="",
        lineterminator="\r\n",
    )
    writer.writeheader()
    yield buf.getvalue()

    for place in places:
        buf.seek(0)
        buf.truncate(0)
        writer.writerow(place_to_row(place, columns))
        yield buf.getvalue()


def export_filename(job: Job) -> str:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return f"job_{job.id}_{timestamp}.csv"
