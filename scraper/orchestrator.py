"""
Scrape Orchestrator

Drives one job from its persisted cursor to completion or pause:

    for term in search_terms:            (outer)
        for location in locations:       (inner, or one "no location" pass)
            check pause -> persist cursor -> listing -> detail pages

Failures are isolated per (term, location) pair and per record. A challenge
page pauses the job and never retries by itself. Anything that escapes the
per-pair boundary (a dead browser, a broken database) fails the job and is
re-raised to the queue worker.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

import aiosqlite

from api import database as db
from api.config import config
from api.logging_config import log_job_event
from browser.session_manager import SessionManager, SessionSettings
from monitoring.events import EventBus, JobCompleted, JobFailed, JobPaused, JobProgress
from monitoring.notifications import NotificationManager, notifications as default_notifications
from scraper.delays import DelayController
from scraper.enrichment import queue_enrichment_for_job
from scraper.errors import ChallengeDetected, JobNotFound, SessionCrashed
from scraper.extractors import ListingExtractor, PlaceDetailExtractor, build_search_url
from scraper.models import Job, JobStatus, LogLevel

logger = logging.getLogger(__name__)

CHALLENGE_PAUSE_REASON = "Challenge detected"

# Errors that escape the per-record / per-pair isolation boundary
FATAL_ERRORS = (SessionCrashed, aiosqlite.Error)


class ScrapeOrchestrator:
    """
    Runs a single job. One instance per execution attempt; the browser
    session it opens is closed when ``run()`` returns or raises.
    """

    def __init__(
        self,
        job_id: str,
        *,
        session_factory: Optional[Callable[[], SessionManager]] = None,
        delays: Optional[DelayController] = None,
        notifier: Optional[NotificationManager] = None,
        event_bus: Optional[EventBus] = None,
        milestone_every: Optional[int] = None,
        enqueue_enrichment: bool = True,
    ):
        self.job_id = job_id
        self.delays = delays or DelayController()
        self.session_factory = session_factory or self._default_session
        self.notifier = notifier or default_notifications
        self.event_bus = event_bus
        self.milestone_every = milestone_every or config.MILESTONE_EVERY
        self.enqueue_enrichment = enqueue_enrichment

        self.listing_extractor = ListingExtractor()
        self.detail_extractor = PlaceDetailExtractor()

        self.records_scraped = 0
        self.failed_count = 0
        self.current_term: Optional[str] = None

    def _default_session(self) -> SessionManager:
        return SessionManager(SessionSettings.from_config(config), delays=self.delays)

    # ============== Entry point ==============

    async def run(self) -> JobStatus:
        """Execute the job and return the status it ended in."""
        job = await db.get_job(self.job_id)
        if job is None:
            raise JobNotFound(self.job_id)

        if job.status in (JobStatus.PAUSED, JobStatus.COMPLETED):
            logger.info(f"Job {job.id} is {job.status.value}; nothing to run")
            return job.status

        if not await self._start(job):
            current = await db.get_job(job.id)
            if current is None:
                raise JobNotFound(job.id)
            logger.info(f"Job {job.id} moved to {current.status.value} before it started; nothing to run")
            return current.status

        session = self.session_factory()
        try:
            return await self._scrape(job, session)
        except JobNotFound:
            logger.warning(f"Job {job.id} disappeared while running")
            raise
        except Exception as e:
            await self._fail(job, e)
            raise
        finally:
            await session.close()

    async def _start(self, job: Job) -> bool:
        """Move the job to RUNNING from the status just read. False if it changed meanwhile."""
        first_start = job.started_at is None
        started_at = job.started_at or datetime.now()
        started = await db.transition_job(
            job.id,
            job.status,
            JobStatus.RUNNING,
            started_at=started_at,
            error_message=None,
            pause_reason=None,
        )
        if not started:
            return False
        job.started_at = started_at
        job.status = JobStatus.RUNNING

        self.records_scraped = job.records_scraped
        self.failed_count = job.failed_count

        cursor = f"term {job.current_term_index}, location {job.current_location_index}"
        message = "Job started" if first_start else f"Job resumed from {cursor}"
        await self._log(job.id, LogLevel.INFO, "JOB_STARTED", message, {"cursor": cursor})

        if first_start:
            await self.notifier.job_started(
                job.id, job.client_name, len(job.search_terms), job.result_cap, job.estimated_duration
            )
        return True

    # ============== Main loop ==============

    async def _scrape(self, job: Job, session: SessionManager) -> JobStatus:
        terms = job.search_terms
        locations = job.effective_locations()
        term_index = job.current_term_index
        location_index = job.current_location_index
        if location_index >= len(locations):
            term_index, location_index = term_index + 1, 0

        while term_index < len(terms):
            term = terms[term_index]
            location = locations[location_index]

            if await self._pause_requested(job):
                await self._observe_external_pause(job)
                return JobStatus.PAUSED

            self.current_term = term
            await db.update_job(
                job.id,
                current_term=term,
                current_term_index=term_index,
                current_location_index=location_index,
            )

            paused = await self._scrape_pair(job, session, term, location)
            if paused:
                await self._finalize_enrichment(job)
                return JobStatus.PAUSED

            location_index += 1
            if location_index >= len(locations):
                term_index, location_index = term_index + 1, 0
            await db.update_job(job.id, current_term_index=term_index, current_location_index=location_index)

        return await self._complete(job)

    async def _scrape_pair(self, job: Job, session: SessionManager, term: str, location: Optional[str]) -> bool:
        """
        Scrape one (term, location) pair. Returns True when the job was paused
        by a challenge.
        """
        url = build_search_url(term, location)
        label = f"{term!r} in {location!r}" if location else repr(term)

        try:
            await self._maybe_rotate(job, session)
            links: List[str] = await session.navigate_and_extract(url, self.listing_extractor)
        except ChallengeDetected as e:
            await self._pause_for_challenge(job, e.url or url)
            return True
        except FATAL_ERRORS:
            raise
        except Exception as e:
            logger.warning(f"Listing failed for {label}: {e}")
            await self._record_failure(job, term, location, e, url)
            return False

        if job.result_cap > 0:
            links = links[:job.result_cap]
        logger.info(f"Job {job.id}: {len(links)} places for {label}")

        pacing = job.pacing
        for link in links:
            try:
                await self._maybe_rotate(job, session)
                await self.delays.wait(pacing.min_delay_ms, pacing.max_delay_ms)
                if await session.is_challenged():
                    raise ChallengeDetected(link)
                record = await session.navigate_and_extract(link, self.detail_extractor)
            except ChallengeDetected as e:
                await self._pause_for_challenge(job, e.url or link)
                return True
            except FATAL_ERRORS:
                raise
            except Exception as e:
                logger.warning(f"Detail page failed ({link}): {e}")
                await self._record_failure(job, term, location, e, link)
                continue

            inserted = await db.insert_place(job.id, record, search_term=term, search_location=location)
            if not inserted:
                logger.debug(f"Duplicate place {record.place_id}, skipped")
                continue

            session.record_success()
            await self._record_success(job, term)

            if self.delays.rest_due(self.records_scraped, pacing.rest_every):
                await self.delays.rest_window(pacing.rest_duration_ms)

        return False

    # ============== Bookkeeping ==============

    async def _record_success(self, job: Job, term: str):
        self.records_scraped += 1
        await db.increment_job_counters(job.id, scraped=1)
        self._publish(JobProgress(job_id=job.id, records_scraped=self.records_scraped, current_term=term))

        if self.records_scraped % self.milestone_every == 0:
            await self._log(
                job.id, LogLevel.INFO, "MILESTONE",
                f"Reached {self.records_scraped} places",
                {"records_scraped": self.records_scraped, "current_term": term},
            )
            await self.notifier.milestone(job.id, job.client_name, self.records_scraped, term)

    async def _record_failure(self, job: Job, term: str, location: Optional[str], error: Exception, url: str):
        self.failed_count += 1
        await db.add_failed_scrape(job.id, term, location, type(error).__name__, str(error), url=url)
        await db.increment_job_counters(job.id, failed=1)

    async def _maybe_rotate(self, job: Job, session: SessionManager):
        records = session.records_since_open
        if await session.maybe_rotate():
            await self._log(
                job.id, LogLevel.INFO, "SESSION_ROTATED",
                f"Browser session rotated after {records} records",
                {"records": records},
            )

    async def _pause_requested(self, job: Job) -> bool:
        current = await db.get_job(job.id)
        if current is None:
            raise JobNotFound(job.id)
        if current.status == JobStatus.PAUSED:
            job.pause_reason = current.pause_reason
            return True
        if current.status == JobStatus.PENDING:
            # Paused and resumed again before this loop noticed; keep going.
            await db.update_job(job.id, status=JobStatus.RUNNING)
        return False

    # ============== Transitions ==============

    async def _observe_external_pause(self, job: Job):
        reason = job.pause_reason or "Paused"
        log_job_event(job.id, "paused", reason)
        self._publish(JobPaused(job_id=job.id, reason=reason))
        await self.notifier.job_paused(job.id, job.client_name, reason, self.records_scraped)
        await self._finalize_enrichment(job)

    async def _pause_for_challenge(self, job: Job, url: str):
        await db.update_job(job.id, status=JobStatus.PAUSED, pause_reason=CHALLENGE_PAUSE_REASON)
        await self._log(
            job.id, LogLevel.CRITICAL, "CAPTCHA_DETECTED",
            f"Challenge detected, job paused after {self.records_scraped} places",
            {"url": url, "records_scraped": self.records_scraped, "current_term": self.current_term},
        )
        self._publish(JobPaused(job_id=job.id, reason=CHALLENGE_PAUSE_REASON))
        await self.notifier.challenge_detected(job.id, job.client_name, self.records_scraped, url)

    async def _complete(self, job: Job) -> JobStatus:
        # A pause that lands during the final pair wins; the cursor already points past the end.
        if await self._pause_requested(job):
            await self._observe_external_pause(job)
            return JobStatus.PAUSED

        completed_at = datetime.now()
        duration = (completed_at - job.started_at).total_seconds() if job.started_at else None
        completed = await db.transition_job(
            job.id,
            JobStatus.RUNNING,
            JobStatus.COMPLETED,
            completed_at=completed_at,
            current_term=None,
            current_term_index=len(job.search_terms),
            current_location_index=0,
        )
        if not completed:
            current = await db.get_job(job.id)
            if current is None:
                raise JobNotFound(job.id)
            logger.warning(f"Job {job.id} is {current.status.value}; not marking it completed")
            if current.status == JobStatus.PAUSED:
                job.pause_reason = current.pause_reason
                await self._observe_external_pause(job)
            return current.status

        attempted = self.records_scraped + self.failed_count
        success_rate = round(self.records_scraped / attempted * 100, 1) if attempted else 100.0
        await self._log(
            job.id, LogLevel.INFO, "JOB_COMPLETED",
            f"Job completed: {self.records_scraped} places, {self.failed_count} failed",
            {
                "records_scraped": self.records_scraped,
                "failed_count": self.failed_count,
                "duration_seconds": duration,
                "success_rate": success_rate,
            },
        )
        self._publish(JobCompleted(job_id=job.id, records_scraped=self.records_scraped))
        await self.notifier.job_completed(
            job.id, job.client_name, self.records_scraped, self.failed_count, duration
        )
        await self._finalize_enrichment(job)
        return JobStatus.COMPLETED

    async def _fail(self, job: Job, error: Exception):
        message = str(error) or type(error).__name__
        logger.error(f"Job {job.id} failed: {message}")
        try:
            await db.update_job(
                job.id,
                status=JobStatus.FAILED,
                error_message=message[:1000],
                failed_at=datetime.now(),
            )
            await self._log(
                job.id, LogLevel.ERROR, "JOB_FAILED", f"Job failed: {message}",
                {"error_type": type(error).__name__, "records_scraped": self.records_scraped},
            )
        except aiosqlite.Error as db_error:
            logger.error(f"Could not persist failure of job {job.id}: {db_error}")

        self._publish(JobFailed(job_id=job.id, error=message))
        await self.notifier.job_failed(job.id, job.client_name, message, self.records_scraped)

    async def _finalize_enrichment(self, job: Job):
        if not self.enqueue_enrichment:
            return
        queued = await queue_enrichment_for_job(job.id)
        if queued:
            await self._log(
                job.id, LogLevel.INFO, "ENRICHMENT_QUEUED",
                f"Queued {queued} places for contact enrichment",
                {"count": queued},
            )

    # ============== Helpers ==============

    def _publish(self, event):
        if self.event_bus is None:
            return
        try:
            self.event_bus.publish(event)
        except RuntimeError as e:
            logger.warning(f"Event publish failed: {e}")

    async def _log(self, job_id: str, level: LogLevel, event: str, message: str, metadata=None):
        log_job_event(job_id, event, message, level.value)
        await db.add_system_log(job_id, level.value, event, message, metadata)
