#!/usr/bin/env python3
"""
Persistent Queue Worker

Processes job_queue items for one named queue:
- Claims units atomically and keeps a heartbeat while they run
- Retries failures up to max_attempts with exponential backoff + jitter
- Sweeps stalled units (no heartbeat) back onto the queue, or fails them
  once they are out of attempts
- Passes every unit that reached a final state to an optional ``on_settled``
  hook (the scrape pool uses it to reconcile the job row with the queue)

Two pools run inside the FastAPI lifespan (or `main.py worker`): a small
scrape pool and a wider enrichment pool.
"""

from __future__ import annotations

import asyncio
import os
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from api.config import config as app_config
from api.database import (
    fetch_next_queue_item,
    heartbeat_queue_item,
    mark_queue_item_completed,
    release_queue_item,
    requeue_stalled_items,
    schedule_queue_retry,
    QUEUE_FAILED,
)
from api.job_service import SCRAPE_QUEUE, settle_job
from api.logging_config import logger
from monitoring.events import EventBus
from monitoring.notifications import NotificationManager
from scraper.delays import DelayController
from scraper.enrichment import ENRICH_QUEUE, EnrichmentPipeline
from scraper.errors import PERMANENT_ERRORS
from scraper.models import EnrichmentUnit, JobStatus, ScrapeUnit
from scraper.orchestrator import ScrapeOrchestrator

UnitHandler = Callable[[Dict[str, Any]], Awaitable[Any]]
SettledHook = Callable[[Dict[str, Any], Optional[str]], Awaitable[Any]]


def _now() -> datetime:
    return datetime.now()


def _is_permanent_error(exc: BaseException) -> bool:
    return isinstance(exc, PERMANENT_ERRORS)


@dataclass
class WorkerConfig:
    poll_interval_seconds: float = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "2.0"))
    base_retry_delay_seconds: float = float(os.getenv("QUEUE_BASE_RETRY_DELAY_SECONDS", "20.0"))
    max_retry_delay_seconds: float = float(os.getenv("QUEUE_MAX_RETRY_DELAY_SECONDS", "1800.0"))  # 30m

    # Stalled-unit detection
    heartbeat_interval_seconds: float = float(os.getenv("QUEUE_HEARTBEAT_INTERVAL_SECONDS", "15.0"))
    stall_timeout_seconds: float = float(os.getenv("QUEUE_STALL_TIMEOUT_SECONDS", "300.0"))  # 5m
    stall_check_interval_seconds: float = float(os.getenv("QUEUE_STALL_CHECK_INTERVAL_SECONDS", "60.0"))


def compute_backoff_seconds(attempt_number: int, config: WorkerConfig, rng: Optional[random.Random] = None) -> float:
    """Exponential backoff from the base delay, capped, plus up to 15% jitter."""
    rng = rng or random
    base = config.base_retry_delay_seconds
    exp = min(config.max_retry_delay_seconds, base * (2 ** max(0, attempt_number - 1)))
    jitter = rng.uniform(0, min(30.0, exp * 0.15))
    return float(min(config.max_retry_delay_seconds, exp + jitter))


@dataclass
class QueueWorker:
    queue: str
    handler: UnitHandler
    config: WorkerConfig = field(default_factory=WorkerConfig)
    on_settled: Optional[SettledHook] = None
    worker_id: str = field(default_factory=lambda: f"worker_{uuid.uuid4().hex[:10]}")
    _task: Optional[asyncio.Task] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    def start(self):
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_loop(), name=f"queue-worker:{self.queue}:{self.worker_id}")
        logger.info(f"QueueWorker started: {self.queue}/{self.worker_id}")

    async def stop(self):
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info(f"QueueWorker stopped: {self.queue}/{self.worker_id}")

    async def run_loop(self):
        while not self._stop_event.is_set():
            try:
                if not await self.run_once():
                    await asyncio.sleep(self.config.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"QueueWorker loop error ({self.queue}): {e}")
                await asyncio.sleep(2.0)

    async def run_once(self) -> bool:
        """Claim and process one unit. Returns False when the queue had nothing runnable."""
        item = await fetch_next_queue_item(self.queue, self.worker_id)
        if not item:
            return False
        await self._process_item(item)
        return True

    async def _heartbeat_loop(self, queue_id: str, unit: asyncio.Task) -> bool:
        """Refresh the claim until cancelled. Cancels ``unit`` and returns False once the claim is lost."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            try:
                held = await heartbeat_queue_item(queue_id, self.worker_id)
            except Exception as e:
                logger.warning(f"Heartbeat failed for queue item {queue_id}: {e}")
                continue
            if not held:
                logger.warning(f"Lost claim on queue item {queue_id}; stopping its handler")
                unit.cancel()
                return False

    async def _process_item(self, item: dict):
        queue_id = str(item["id"])
        payload = item.get("payload") or {}
        attempts = int(item.get("attempts") or 0)
        max_attempts = int(item.get("max_attempts") or 3)

        unit = asyncio.create_task(self.handler(payload))
        heartbeat = asyncio.create_task(self._heartbeat_loop(queue_id, unit))
        try:
            await unit
            await mark_queue_item_completed(queue_id, attempts=attempts + 1)
            await self._settled(payload)

        except asyncio.CancelledError:
            if heartbeat.done() and not heartbeat.cancelled():
                # Claim lost; the sweeper already owns this unit's outcome.
                return
            # Shutdown mid-unit: hand it back without spending an attempt.
            await release_queue_item(queue_id, self.worker_id)
            raise

        except Exception as e:
            err = str(e) or type(e).__name__
            if _is_permanent_error(e) or attempts + 1 >= max_attempts:
                logger.error(f"Queue item {queue_id} failed permanently: {err}")
                await mark_queue_item_completed(queue_id, status=QUEUE_FAILED, attempts=attempts + 1, last_error=err)
                await self._settled(payload, err)
                return

            backoff = self._compute_backoff_seconds(attempts + 1)
            logger.warning(f"Queue item {queue_id} failed (attempt {attempts + 1}/{max_attempts}), retry in {backoff:.0f}s: {err}")
            await schedule_queue_retry(
                queue_id,
                attempts=attempts + 1,
                next_run_at=_now() + timedelta(seconds=backoff),
                last_error=err,
            )

        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _settled(self, payload: Dict[str, Any], error: Optional[str] = None):
        if self.on_settled is None:
            return
        try:
            await self.on_settled(payload, error)
        except Exception as e:
            logger.error(f"Settle hook failed on '{self.queue}': {e}")

    def _compute_backoff_seconds(self, attempt_number: int) -> float:
        return compute_backoff_seconds(attempt_number, self.config)


class WorkerPool:
    """N workers on one queue plus a stalled-unit sweeper."""

    def __init__(
        self,
        queue: str,
        handler: UnitHandler,
        concurrency: int,
        config: Optional[WorkerConfig] = None,
        on_settled: Optional[SettledHook] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.config = config or WorkerConfig()
        self.on_settled = on_settled
        self.workers = [
            QueueWorker(queue=queue, handler=handler, config=self.config, on_settled=on_settled)
            for _ in range(concurrency)
        ]
        self._sweeper: Optional[asyncio.Task] = None

    def start(self):
        for worker in self.workers:
            worker.start()
        if not self._sweeper or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name=f"queue-sweeper:{self.queue}")
        logger.info(f"WorkerPool '{self.queue}' started with {len(self.workers)} workers")

    async def stop(self):
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await asyncio.gather(*(worker.stop() for worker in self.workers))
        logger.info(f"WorkerPool '{self.queue}' stopped")

    async def sweep_once(self):
        """Requeue or fail stalled units. Returns (requeued, failed) counts."""
        requeued, failed = await requeue_stalled_items(
            self.queue,
            self.config.stall_timeout_seconds,
            lambda attempt: compute_backoff_seconds(attempt, self.config),
        )
        if requeued or failed:
            logger.warning(f"Stalled units on '{self.queue}': {requeued} requeued, {len(failed)} failed")
        if self.on_settled is not None:
            for item in failed:
                try:
                    await self.on_settled(item["payload"], item["last_error"])
                except Exception as e:
                    logger.error(f"Settle hook failed for stalled item {item['id']}: {e}")
        return requeued, len(failed)

    async def _sweep_loop(self):
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Stall sweep error ({self.queue}): {e}")
            await asyncio.sleep(self.config.stall_check_interval_seconds)


# ============== Unit handlers ==============

class ScrapeUnitHandler:
    """Adapts a scrape queue payload to one ScrapeOrchestrator run."""

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        notifier: Optional[NotificationManager] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        delays: Optional[DelayController] = None,
    ):
        self.event_bus = event_bus
        self.notifier = notifier
        self.session_factory = session_factory
        self.delays = delays

    async def __call__(self, payload: Dict[str, Any]) -> JobStatus:
        unit = ScrapeUnit.from_payload(payload)
        orchestrator = ScrapeOrchestrator(
            unit.job_id,
            session_factory=self.session_factory,
            delays=self.delays,
            notifier=self.notifier,
            event_bus=self.event_bus,
        )
        return await orchestrator.run()

    async def settled(self, payload: Dict[str, Any], error: Optional[str] = None):
        """Reconcile the job once its unit has completed or failed for good."""
        job_id = payload.get("job_id")
        if job_id:
            await settle_job(job_id, error)


class EnrichmentUnitHandler:
    """Adapts an enrichment queue payload to the enrichment pipeline."""

    def __init__(self, pipeline: Optional[EnrichmentPipeline] = None):
        self.pipeline = pipeline or EnrichmentPipeline()

    async def __call__(self, payload: Dict[str, Any]) -> List[str]:
        return await self.pipeline.enrich(EnrichmentUnit.from_payload(payload))


def build_worker_pools(
    event_bus: Optional[EventBus] = None,
    notifier: Optional[NotificationManager] = None,
) -> List[WorkerPool]:
    """The scrape pool and the enrichment pool, sized from configuration."""
    worker_config = WorkerConfig()
    scrape_handler = ScrapeUnitHandler(event_bus=event_bus, notifier=notifier)
    return [
        WorkerPool(
            SCRAPE_QUEUE,
            scrape_handler,
            app_config.SCRAPE_CONCURRENCY,
            worker_config,
            on_settled=scrape_handler.settled,
        ),
        WorkerPool(
            ENRICH_QUEUE,
            EnrichmentUnitHandler(),
            app_config.ENRICH_CONCURRENCY,
            worker_config,
        ),
    ]
