"""
Map Scraper API - FastAPI Backend
Job submission and control, live progress over SSE, CSV export and stats.
The scrape and enrichment worker pools run inside the app lifespan.
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, validator

from api import database as db
from api import job_service
from api.config import config
from api.export import export_filename, iter_csv
from api.logging_config import attach_package_loggers, log_request, logger
from api.queue_worker import build_worker_pools
from monitoring.events import EventBus, Subscription
from monitoring.notifications import notifications
from scraper.errors import InvalidTransition, JobNotFound
from scraper.models import FIELD_GROUPS, PacingConfig

VERSION = "1.0.0"


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting Map Scraper API...")
    attach_package_loggers("scraper", "browser", "monitoring")
    for problem in config.validate():
        logger.warning(f"Config: {problem}")

    await db.init_database()
    logger.info("Database initialized")

    app.state.event_bus = EventBus(queue_size=config.EVENT_QUEUE_SIZE)
    app.state.worker_pools = []
    if config.QUEUE_WORKER_ENABLED:
        pools = build_worker_pools(event_bus=app.state.event_bus, notifier=notifications)
        for pool in pools:
            pool.start()
        app.state.worker_pools = pools
        logger.info("Queue workers enabled")
    else:
        logger.info("Queue workers disabled")

    yield

    logger.info("Shutting down Map Scraper API...")
    for pool in app.state.worker_pools:
        await pool.stop()
    app.state.event_bus.close()


app = FastAPI(
    title="Map Scraper API",
    description="Bulk map-search scraping with pause/resume, enrichment and CSV export",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    log_request(request.method, request.url.path, response.status_code, duration)
    return response


# === Pydantic Models with Validation ===

class CreateJobRequest(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=200)
    search_terms: List[str] = Field(..., min_items=1, example=["dentist", "orthodontist"])
    locations: List[str] = Field(default_factory=list, example=["Austin, TX"])
    result_cap: int = Field(default=config.DEFAULT_RESULT_CAP, ge=1, le=5000)
    min_delay_ms: int = Field(default=config.DEFAULT_MIN_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=config.DEFAULT_MAX_DELAY_MS, ge=0)
    rest_every: int = Field(default=config.DEFAULT_REST_EVERY, ge=0)
    rest_duration_ms: int = Field(default=config.DEFAULT_REST_DURATION_MS, ge=0)
    fields: List[str] = Field(default_factory=lambda: list(config.DEFAULT_FIELDS))
    grid_size: Optional[int] = Field(default=None, ge=1, le=job_service.MAX_GRID_SIZE)

    @validator('search_terms')
    def validate_terms(cls, v):
        terms = [t.strip() for t in v if t and t.strip()]
        if not terms:
            raise ValueError('At least one non-empty search term is required')
        return [t[:200] for t in terms]

    @validator('fields')
    def validate_fields(cls, v):
        unknown = [f for f in v if f not in FIELD_GROUPS]
        if unknown:
            raise ValueError(f"Unknown fields: {', '.join(unknown)}")
        return v

    @validator('max_delay_ms')
    def validate_delays(cls, v, values):
        if 'min_delay_ms' in values and v < values['min_delay_ms']:
            raise ValueError('max_delay_ms must be >= min_delay_ms')
        return v

    def pacing(self) -> PacingConfig:
        return PacingConfig(
            min_delay_ms=self.min_delay_ms,
            max_delay_ms=self.max_delay_ms,
            rest_every=self.rest_every,
            rest_duration_ms=self.rest_duration_ms,
        )


# === Error Handlers ===

@app.exception_handler(JobNotFound)
async def job_not_found_handler(request: Request, exc: JobNotFound):
    return JSONResponse(status_code=404, content={"detail": "Job not found"})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# === API Endpoints ===

@app.get("/")
async def root():
    return {"status": "ok", "message": f"Map Scraper API v{VERSION}", "docs": "/docs" if config.DEBUG else "disabled"}


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    pools = getattr(request.app.state, "worker_pools", [])
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "queue_workers": {pool.queue: len(pool.workers) for pool in pools},
        "version": VERSION,
    }


@app.get("/stats")
async def stats(request: Request):
    data = await db.get_stats()
    bus = getattr(request.app.state, "event_bus", None)
    data["sse_subscribers"] = bus.subscriber_count() if bus else 0
    return data


# === Jobs ===

@app.post("/jobs", status_code=status.HTTP_201_CREATED)
async def jobs_create(request: CreateJobRequest):
    try:
        job = await job_service.create_job(
            request.client_name,
            request.search_terms,
            locations=request.locations,
            result_cap=request.result_cap,
            pacing=request.pacing(),
            fields=request.fields,
            grid_size=request.grid_size,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return job.to_dict()


@app.get("/jobs")
async def jobs_list(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    try:
        return await job_service.list_job_summaries(status_filter, limit=limit, offset=offset)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown status: {status_filter}")


@app.get("/jobs/{job_id}")
async def jobs_get(job_id: str):
    return await job_service.get_job_detail(job_id)


@app.delete("/jobs/{job_id}")
async def jobs_delete(job_id: str):
    await job_service.delete_job(job_id)
    return {"message": "Job deleted", "job_id": job_id}


@app.post("/jobs/{job_id}/pause")
async def jobs_pause(job_id: str):
    job = await job_service.pause_job(job_id)
    return {"message": "Job paused", "job": job.to_dict()}


@app.post("/jobs/{job_id}/resume")
async def jobs_resume(job_id: str):
    job = await job_service.resume_job(job_id)
    return {"message": "Job resumed", "job": job.to_dict()}


@app.get("/jobs/{job_id}/export")
async def jobs_export(job_id: str):
    job = await db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    places = await db.list_places(job_id)
    filename = export_filename(job)
    return StreamingResponse(
        content=iter_csv(job, places),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Row-Count": str(len(places)),
        },
    )


# === Live progress (SSE) ===

def _sse_frame(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def event_stream(
    subscription: Subscription,
    keepalive_seconds: float,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    SSE frames for one subscription: a ``connected`` frame, then bus events,
    with a ``keepalive`` frame whenever nothing arrived for ``keepalive_seconds``.
    The subscription is always removed when the stream ends.
    """
    try:
        yield _sse_frame("connected", {"type": "connected", "job_id": subscription.job_id})
        while True:
            if is_disconnected is not None and await is_disconnected():
                break
            event = await subscription.get(timeout=keepalive_seconds)
            if event is not None:
                yield event.to_sse()
            elif subscription.closed:
                break
            else:
                yield _sse_frame("keepalive", {"type": "keepalive"})
    finally:
        subscription.close()


@app.get("/events")
async def events(request: Request, job_id: Optional[str] = None):
    bus: EventBus = request.app.state.event_bus
    if bus.closed:
        raise HTTPException(status_code=503, detail="Event stream unavailable")
    subscription = bus.subscribe(job_id)
    return StreamingResponse(
        event_stream(subscription, config.SSE_KEEPALIVE_SECONDS, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


# Run with: uvicorn api.main:app --reload --port 8080
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)
