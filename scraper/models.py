#!/usr/bin/env python3
"""
Data models for the map-search scraping engine.

Jobs, scraped place records and the queue payloads that move between the
API, the worker pools and the scrape orchestrator all live here.
"""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# ============== Enums ==============

class JobStatus(str, Enum):
    """Lifecycle states of a scrape job."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class EnrichmentStatus(str, Enum):
    """Contact enrichment state of a stored place."""
    PENDING = "PENDING"
    SCRAPING = "SCRAPING"
    DONE = "DONE"
    FAILED = "FAILED"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# Field groups a client can select for export. Name, address, website and
# place id are always exported.
FIELD_GROUPS = ("city", "rating", "phone", "email", "coordinates", "businessInfo", "socialMedia")
DEFAULT_FIELDS = ["phone", "rating", "city", "businessInfo", "coordinates"]


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _load_list(value: Any) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return json.loads(value)


# ============== Job ==============

@dataclass
class PacingConfig:
    """Per-job pacing, all durations in milliseconds."""
    min_delay_ms: int = 2000
    max_delay_ms: int = 4000
    rest_every: int = 50
    rest_duration_ms: int = 60000

    def validate(self) -> List[str]:
        problems = []
        if self.min_delay_ms < 0:
            problems.append("min_delay_ms must be >= 0")
        if self.max_delay_ms < self.min_delay_ms:
            problems.append("max_delay_ms must be >= min_delay_ms")
        if self.rest_every < 0:
            problems.append("rest_every must be >= 0")
        if self.rest_duration_ms < 0:
            problems.append("rest_duration_ms must be >= 0")
        return problems

    @property
    def average_delay_ms(self) -> float:
        return (self.min_delay_ms + self.max_delay_ms) / 2


@dataclass
class Job:
    """A client scrape job and its persisted progress cursor."""
    id: str
    client_name: str
    search_terms: List[str]
    locations: List[str] = field(default_factory=list)
    sub_locations: List[str] = field(default_factory=list)
    grid_size: Optional[int] = None
    result_cap: int = 500
    pacing: PacingConfig = field(default_factory=PacingConfig)
    fields: List[str] = field(default_factory=lambda: list(DEFAULT_FIELDS))
    status: JobStatus = JobStatus.PENDING
    current_term: Optional[str] = None
    current_term_index: int = 0
    current_location_index: int = 0
    records_scraped: int = 0
    failed_count: int = 0
    pause_reason: Optional[str] = None
    error_message: Optional[str] = None
    estimated_duration: Optional[int] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    def effective_locations(self) -> List[Optional[str]]:
        """Locations iterated per term; a single ``None`` means no location scoping."""
        if self.sub_locations:
            return list(self.sub_locations)
        if self.locations:
            return list(self.locations)
        return [None]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=row["id"],
            client_name=row["client_name"],
            search_terms=_load_list(row.get("search_terms_json")),
            locations=_load_list(row.get("locations_json")),
            sub_locations=_load_list(row.get("sub_locations_json")),
            grid_size=row.get("grid_size"),
            result_cap=int(row.get("result_cap") or 0),
            pacing=PacingConfig(
                min_delay_ms=int(row.get("min_delay_ms") or 0),
                max_delay_ms=int(row.get("max_delay_ms") or 0),
                rest_every=int(row.get("rest_every") or 0),
                rest_duration_ms=int(row.get("rest_duration_ms") or 0),
            ),
            fields=_load_list(row.get("fields_json")),
            status=JobStatus(row["status"]),
            current_term=row.get("current_term"),
            current_term_index=int(row.get("current_term_index") or 0),
            current_location_index=int(row.get("current_location_index") or 0),
            records_scraped=int(row.get("records_scraped") or 0),
            failed_count=int(row.get("failed_count") or 0),
            pause_reason=row.get("pause_reason"),
            error_message=row.get("error_message"),
            estimated_duration=row.get("estimated_duration"),
            created_at=_parse_dt(row.get("created_at")),
            started_at=_parse_dt(row.get("started_at")),
            completed_at=_parse_dt(row.get("completed_at")),
            failed_at=_parse_dt(row.get("failed_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "started_at", "completed_at", "failed_at"):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data


# ============== Records ==============

@dataclass
class PlaceRecord:
    """One place scraped from a detail page. Only ``place_id`` is required."""
    place_id: str
    name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    linkedin: Optional[str] = None
    plus_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    business_status: Optional[str] = None
    business_types: List[str] = field(default_factory=list)
    opening_hours: Dict[str, str] = field(default_factory=dict)
    about: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        row = asdict(self)
        row["business_types_json"] = json.dumps(row.pop("business_types") or [])
        row["opening_hours_json"] = json.dumps(row.pop("opening_hours") or {})
        return row


# ============== Queue payloads ==============

@dataclass
class ScrapeUnit:
    """Queue payload for one scrape job execution."""
    job_id: str
    client_name: str = ""
    search_terms: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    result_cap: int = 0
    pacing: Dict[str, int] = field(default_factory=dict)
    resume_term_index: int = 0
    resume_location_index: int = 0

    @classmethod
    def for_job(cls, job: Job) -> "ScrapeUnit":
        return cls(
            job_id=job.id,
            client_name=job.client_name,
            search_terms=list(job.search_terms),
            locations=[loc for loc in job.effective_locations() if loc is not None],
            result_cap=job.result_cap,
            pacing=asdict(job.pacing),
            resume_term_index=job.current_term_index,
            resume_location_index=job.current_location_index,
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ScrapeUnit":
        if not payload.get("job_id"):
            raise ValueError("Scrape unit payload is missing job_id")
        known = {k: v for k, v in payload.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class EnrichmentUnit:
    """Queue payload for contact enrichment of one stored place."""
    place_id: str
    website: str
    job_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "EnrichmentUnit":
        if not payload.get("place_id") or not payload.get("website"):
            raise ValueError("Enrichment unit payload needs place_id and website")
        return cls(
            place_id=str(payload["place_id"]),
            website=str(payload["website"]),
            job_id=payload.get("job_id"),
        )
