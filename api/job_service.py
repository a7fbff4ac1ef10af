"""
Job submission and control.

The HTTP layer and the CLI both go through these functions, so validation,
duration estimates, audit log entries and queueing behave the same way
whichever boundary a request comes in through.
"""

import logging
import math
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from api import database as db
from api.config import config
from api.logging_config import log_job_event
from scraper.errors import InvalidTransition, JobNotFound
from scraper.geo import build_sub_locations
from scraper.models import FIELD_GROUPS, Job, JobStatus, LogLevel, PacingConfig, ScrapeUnit

logger = logging.getLogger(__name__)

SCRAPE_QUEUE = "scrape"
MANUAL_PAUSE_REASON = "Manually paused by user"
MAX_GRID_SIZE = 10

Geocoder = Callable[[str, int], Awaitable[List[str]]]


def estimate_duration(term_count: int, result_cap: int, pacing: PacingConfig) -> int:
    """
    Rough runtime in seconds: every capped result paced at the average delay,
    plus the rest windows that many records would trigger.
    """
    total_records = term_count * result_cap
    scraping = total_records * pacing.average_delay_ms / 1000
    rest_windows = math.floor(total_records / pacing.rest_every) if pacing.rest_every > 0 else 0
    cooldown = rest_windows * pacing.rest_duration_ms / 1000
    return int(round(scraping + cooldown))


def _clean_list(values: Optional[List[str]]) -> List[str]:
    return [v.strip() for v in (values or []) if v and v.strip()]


async def _log(job_id: str, level: LogLevel, event: str, message: str, metadata: Optional[Dict[str, Any]] = None):
    log_job_event(job_id, event, message, level.value)
    await db.add_system_log(job_id, level.value, event, message, metadata)


async def enqueue_job(job: Job) -> Optional[str]:
    """Queue a scrape unit carrying the job's persisted cursor. One active unit per job."""
    unit = ScrapeUnit.for_job(job)
    return await db.enqueue_unit(
        SCRAPE_QUEUE,
        unit.to_payload(),
        dedupe_key=job.id,
        job_id=job.id,
        max_attempts=config.SCRAPE_MAX_ATTEMPTS,
    )


async def create_job(
    client_name: str,
    search_terms: List[str],
    locations: Optional[List[str]] = None,
    result_cap: Optional[int] = None,
    pacing: Optional[PacingConfig] = None,
    fields: Optional[List[str]] = None,
    grid_size: Optional[int] = None,
    geocoder: Geocoder = build_sub_locations,
) -> Job:
    """Validate, persist and enqueue a new job. Raises ValueError on bad input."""
    client_name = (client_name or "").strip()
    terms = _clean_list(search_terms)
    locations = _clean_list(locations)
    pacing = pacing or PacingConfig(
        min_delay_ms=config.DEFAULT_MIN_DELAY_MS,
        max_delay_ms=config.DEFAULT_MAX_DELAY_MS,
        rest_every=config.DEFAULT_REST_EVERY,
        rest_duration_ms=config.DEFAULT_REST_DURATION_MS,
    )
    result_cap = config.DEFAULT_RESULT_CAP if result_cap is None else int(result_cap)
    fields = list(fields) if fields is not None else list(config.DEFAULT_FIELDS)

    problems = []
    if not client_name:
        problems.append("client_name is required")
    if not terms:
        problems.append("at least one search term is required")
    if result_cap < 1:
        problems.append("result_cap must be >= 1")
    problems.extend(pacing.validate())
    unknown_fields = [f for f in fields if f not in FIELD_GROUPS]
    if unknown_fields:
        problems.append(f"unknown fields: {', '.join(unknown_fields)}")
    if grid_size is not None and not 1 <= grid_size <= MAX_GRID_SIZE:
        problems.append(f"grid_size must be between 1 and {MAX_GRID_SIZE}")
    if problems:
        raise ValueError("; ".join(problems))

    sub_locations: List[str] = []
    if grid_size and locations:
        sub_locations = await geocoder(locations[0], grid_size)
        if not sub_locations:
            logger.warning(f"Could not build a grid for {locations[0]!r}; using plain locations")

    job_id = await db.create_job(
        client_name,
        terms,
        locations=locations,
        sub_locations=sub_locations,
        grid_size=grid_size,
        result_cap=result_cap,
        pacing=pacing,
        fields=fields,
        estimated_duration=estimate_duration(len(terms), result_cap, pacing),
    )
    job = await db.get_job(job_id)

    await _log(
        job_id, LogLevel.INFO, "JOB_CREATED",
        f"Job created for {client_name} with {len(terms)} search terms",
        {
            "search_terms": terms,
            "locations": locations,
            "sub_locations": len(sub_locations),
            "result_cap": result_cap,
        },
    )
    await enqueue_job(job)
    return job


async def pause_job(job_id: str) -> Job:
    """Request a pause; the running orchestrator stops at its next term/location boundary."""
    job = await db.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)

    paused = await db.transition_job(
        job_id, JobStatus.RUNNING, JobStatus.PAUSED, pause_reason=MANUAL_PAUSE_REASON
    )
    if not paused:
        current = await db.get_job(job_id)
        raise InvalidTransition(job_id, current.status.value if current else job.status.value, "pause")

    await _log(job_id, LogLevel.WARNING, "JOB_PAUSED", MANUAL_PAUSE_REASON)
    return await db.get_job(job_id)


async def resume_job(job_id: str) -> Job:
    """Move a paused job back to PENDING and re-enqueue it at its persisted cursor."""
    job = await db.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)

    resumed = await db.transition_job(job_id, JobStatus.PAUSED, JobStatus.PENDING, pause_reason=None)
    if not resumed:
        current = await db.get_job(job_id)
        raise InvalidTransition(job_id, current.status.value if current else job.status.value, "resume")

    job = await db.get_job(job_id)
    await _log(
        job_id, LogLevel.INFO, "JOB_RESUMED",
        f"Job resumed at term {job.current_term_index}, location {job.current_location_index}",
        {"current_term_index": job.current_term_index, "current_location_index": job.current_location_index},
    )
    if await enqueue_job(job) is None:
        # The previous unit is still winding down; settle_job requeues once it finishes.
        logger.info(f"Job {job_id} still has an active scrape unit; requeue deferred")
    return job


async def settle_job(job_id: str, error: Optional[str] = None):
    """
    Reconcile a job with its queue after its scrape unit reached a final
    queue state.

    A job left PENDING (resumed while the unit was still finishing) gets a
    fresh unit at its cursor. A job left RUNNING by a unit that failed
    (a worker that stopped heartbeating) is marked FAILED.
    """
    job = await db.get_job(job_id)
    if job is None or job.status.is_terminal:
        return

    if job.status == JobStatus.PENDING:
        if await enqueue_job(job):
            await _log(
                job_id, LogLevel.INFO, "JOB_REQUEUED",
                f"Job requeued at term {job.current_term_index}, location {job.current_location_index}",
                {"current_term_index": job.current_term_index, "current_location_index": job.current_location_index},
            )
        return

    if job.status == JobStatus.RUNNING and error:
        failed = await db.transition_job(
            job_id, JobStatus.RUNNING, JobStatus.FAILED, error_message=error[:1000], failed_at=datetime.now()
        )
        if failed:
            await _log(
                job_id, LogLevel.ERROR, "JOB_FAILED", f"Job failed: {error}",
                {"records_scraped": job.records_scraped},
            )


async def delete_job(job_id: str):
    if not await db.delete_job(job_id):
        raise JobNotFound(job_id)
    logger.info(f"Deleted job {job_id}")


async def get_job_detail(job_id: str) -> Dict[str, Any]:
    """Full job state plus recent places, failures and log entries."""
    job = await db.get_job(job_id)
    if job is None:
        raise JobNotFound(job_id)

    detail = job.to_dict()
    detail["places"] = await db.list_places(job_id, limit=10, newest_first=True)
    detail["failed_scrapes"] = await db.list_failed_scrapes(job_id, limit=10)
    detail["logs"] = await db.list_system_logs(job_id, limit=20)
    detail["counts"] = await db.count_related(job_id)
    return detail


async def list_job_summaries(status: Optional[str] = None, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
    if status:
        status = JobStatus(status.upper()).value

    jobs = await db.list_jobs(status=status, limit=limit, offset=offset)
    summaries = []
    for job in jobs:
        summary = job.to_dict()
        summary["counts"] = await db.count_related(job.id)
        summaries.append(summary)

    return {
        "jobs": summaries,
        "total": await db.count_jobs(status),
        "limit": limit,
        "offset": offset,
    }
