"""
Map-search scraping engine: models, pacing, page extraction, orchestration
and contact enrichment.
"""

from scraper.errors import (
    ChallengeDetected,
    ExtractionError,
    InvalidTransition,
    JobNotFound,
    RecordNotFound,
    ScraperError,
    SessionCrashed,
)
from scraper.models import (
    DEFAULT_FIELDS,
    FIELD_GROUPS,
    EnrichmentStatus,
    EnrichmentUnit,
    Job,
    JobStatus,
    PacingConfig,
    PlaceRecord,
    ScrapeUnit,
)

__all__ = [
    "ChallengeDetected",
    "ExtractionError",
    "InvalidTransition",
    "JobNotFound",
    "RecordNotFound",
    "ScraperError",
    "SessionCrashed",
    "DEFAULT_FIELDS",
    "FIELD_GROUPS",
    "EnrichmentStatus",
    "EnrichmentUnit",
    "Job",
    "JobStatus",
    "PacingConfig",
    "PlaceRecord",
    "ScrapeUnit",
]
