"""
Enrichment Pipeline

Secondary consumer that visits a stored place's own website to recover
contact emails. Runs in its own worker pool with its own disposable
browser session, independent of the scrape job's pacing.
"""

import logging
from typing import Callable, List, Optional

from api import database as db
from api.config import config
from browser.session_manager import SessionManager, SessionSettings
from scraper.errors import RecordNotFound, SessionCrashed
from scraper.extractors import ContactPage, ContactPageExtractor
from scraper.models import EnrichmentStatus, EnrichmentUnit

logger = logging.getLogger(__name__)

ENRICH_QUEUE = "enrich"


def enrichment_session() -> SessionManager:
    """A lighter browser session: shorter timeouts, never rotated."""
    settings = SessionSettings(
        headless=config.BROWSER_HEADLESS,
        navigation_timeout_ms=30000,
        landmark_timeout_ms=5000,
        max_scroll_attempts=0,
        rotate_after_records=10**6,
        rotate_after_minutes=10**6,
    )
    return SessionManager(settings)


async def queue_enrichment_for_job(job_id: str) -> int:
    """Queue one enrichment unit per place of ``job_id`` that has a website. Returns the count."""
    places = await db.list_places_for_enrichment(job_id)
    queued = 0
    for place in places:
        unit = EnrichmentUnit(place_id=place["place_id"], website=place["website"], job_id=job_id)
        queue_id = await db.enqueue_unit(
            ENRICH_QUEUE,
            unit.to_payload(),
            dedupe_key=f"enrich:{unit.place_id}",
            job_id=job_id,
            max_attempts=config.ENRICH_MAX_ATTEMPTS,
        )
        await db.update_place_enrichment(unit.place_id, EnrichmentStatus.PENDING)
        if queue_id:
            queued += 1
    return queued


class EnrichmentPipeline:
    """Homepage plus up to N contact/about pages -> deduplicated emails."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], SessionManager]] = None,
        max_contact_pages: Optional[int] = None,
    ):
        self.session_factory = session_factory or enrichment_session
        self.max_contact_pages = config.ENRICH_MAX_CONTACT_PAGES if max_contact_pages is None else max_contact_pages
        self.extractor = ContactPageExtractor()

    async def enrich(self, unit: EnrichmentUnit) -> List[str]:
        """
        Enrich one place. Marks it DONE with the found emails, or FAILED and
        re-raises when the homepage cannot be read.
        """
        place = await db.get_place(unit.place_id)
        if place is None:
            raise RecordNotFound(unit.place_id)

        await db.update_place_enrichment(unit.place_id, EnrichmentStatus.SCRAPING)

        session = self.session_factory()
        try:
            emails = await self._collect_emails(session, unit.website)
        except Exception as e:
            logger.warning(f"Enrichment failed for {unit.place_id} ({unit.website}): {e}")
            await db.update_place_enrichment(unit.place_id, EnrichmentStatus.FAILED, error=str(e)[:500])
            raise
        finally:
            await session.close()

        await db.update_place_enrichment(
            unit.place_id,
            EnrichmentStatus.DONE,
            email=", ".join(emails) if emails else None,
        )
        logger.info(f"Enriched {unit.place_id}: {len(emails)} emails")
        return emails

    async def _collect_emails(self, session: SessionManager, website: str) -> List[str]:
        home: ContactPage = await session.navigate_and_extract(website, self.extractor, check_challenge=False)
        emails = list(home.emails)

        for link in home.contact_links[:self.max_contact_pages]:
            try:
                page: ContactPage = await session.navigate_and_extract(link, self.extractor, check_challenge=False)
            except SessionCrashed:
                raise
            except Exception as e:
                logger.debug(f"Skipping contact page {link}: {e}")
                continue
            for email in page.emails:
                if email not in emails:
                    emails.append(email)

        return emails
