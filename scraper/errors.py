"""
Exception types raised by the scraping engine.
"""

from typing import Optional


class ScraperError(Exception):
    """Base class for scraping engine errors."""


class ChallengeDetected(ScraperError):
    """An anti-automation interstitial was shown instead of real content."""

    def __init__(self, url: Optional[str] = None):
        self.url = url
        super().__init__(f"Challenge detected at {url}" if url else "Challenge detected")


class SessionCrashed(ScraperError):
    """The browser automation context died and cannot serve further work."""


class ExtractionError(ScraperError):
    """A loaded page could not be parsed into the expected shape."""


class JobNotFound(ScraperError):
    """The job referenced by a request or queue unit does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class RecordNotFound(ScraperError):
    """The place referenced by an enrichment unit does not exist."""

    def __init__(self, place_id: str):
        self.place_id = place_id
        super().__init__(f"Place not found: {place_id}")


class InvalidTransition(ScraperError):
    """A job-control request is not valid from the job's current status."""

    def __init__(self, job_id: str, current: str, action: str):
        self.job_id = job_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} job {job_id} while it is {current}")


# Errors the queue worker must not retry.
PERMANENT_ERRORS = (JobNotFound, RecordNotFound, ValueError)
