"""
Database module for the Map Scraper service.
Implements SQLite persistence with async support.

Tables: jobs, places, failed_scrapes, system_logs and the persistent
job_queue shared by the scrape and enrichment worker pools.
"""

import json
import aiosqlite
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from pathlib import Path
from contextlib import asynccontextmanager
import uuid

from api.config import config
from scraper.models import EnrichmentStatus, Job, JobStatus, PacingConfig, PlaceRecord

# Database configuration
DB_PATH = Path(config.DATABASE_PATH)
DB_PATH.parent.mkdir(parents=True, exist_ok=True)

# Queue item statuses
QUEUE_QUEUED = "queued"
QUEUE_RETRY = "retry_scheduled"
QUEUE_IN_PROGRESS = "in_progress"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"
QUEUE_ACTIVE_STATUSES = (QUEUE_QUEUED, QUEUE_RETRY, QUEUE_IN_PROGRESS)

STALLED_ERROR = "stalled: no heartbeat"

# Columns update_job may write
JOB_UPDATABLE_COLUMNS = {
    "status",
    "current_term",
    "current_term_index",
    "current_location_index",
    "records_scraped",
    "failed_count",
    "pause_reason",
    "error_message",
    "estimated_duration",
    "started_at",
    "completed_at",
    "failed_at",
}


async def init_database():
    """Initialize the database schema."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA journal_mode=WAL")

        # Scrape jobs with their progress cursor
        await db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                client_name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                search_terms_json TEXT NOT NULL,
                locations_json TEXT,
                sub_locations_json TEXT,
                grid_size INTEGER,
                result_cap INTEGER NOT NULL DEFAULT 500,
                min_delay_ms INTEGER NOT NULL DEFAULT 2000,
                max_delay_ms INTEGER NOT NULL DEFAULT 4000,
                rest_every INTEGER NOT NULL DEFAULT 50,
                rest_duration_ms INTEGER NOT NULL DEFAULT 60000,
                fields_json TEXT,
                current_term TEXT,
                current_term_index INTEGER DEFAULT 0,
                current_location_index INTEGER DEFAULT 0,
                records_scraped INTEGER DEFAULT 0,
                failed_count INTEGER DEFAULT 0,
                pause_reason TEXT,
                error_message TEXT,
                estimated_duration INTEGER,
                created_at TEXT,
                started_at TEXT,
                completed_at TEXT,
                failed_at TEXT,
                updated_at TEXT
            )
        """)

        # Scraped places, unique by the source's place identifier
        await db.execute("""
            CREATE TABLE IF NOT EXISTS places (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                place_id TEXT UNIQUE NOT NULL,
                job_id TEXT NOT NULL,
                search_term TEXT,
                search_location TEXT,
                name TEXT,
                address TEXT,
                city TEXT,
                rating REAL,
                reviews_count INTEGER,
                phone TEXT,
                website TEXT,
                email TEXT,
                facebook TEXT,
                instagram TEXT,
                twitter TEXT,
                linkedin TEXT,
                plus_code TEXT,
                latitude REAL,
                longitude REAL,
                business_status TEXT,
                business_types_json TEXT,
                opening_hours_json TEXT,
                about TEXT,
                enrichment_status TEXT,
                enrichment_error TEXT,
                scraped_at TEXT,
                updated_at TEXT,
                FOREIGN KEY (job_id) REFERENCES jobs(id)
            )
        """)

        # Append-only failure log
        await db.execute("""
            CREATE TABLE IF NOT EXISTS failed_scrapes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                search_term TEXT,
                location TEXT,
                url TEXT,
                error_type TEXT,
                error_message TEXT,
                created_at TEXT,
                FOREIGN KEY (job_id) REFERENCES jobs(id)
            )
        """)

        # Append-only per-job audit trail
        await db.execute("""
            CREATE TABLE IF NOT EXISTS system_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT,
                level TEXT NOT NULL,
                event TEXT NOT NULL,
                message TEXT,
                metadata_json TEXT,
                created_at TEXT
            )
        """)

        # Persistent work queue with retries/backoff
        await db.execute("""
            CREATE TABLE IF NOT EXISTS job_queue (
                id TEXT PRIMARY KEY,
                queue TEXT NOT NULL,
                job_id TEXT,
                dedupe_key TEXT,
                status TEXT NOT NULL,
                priority INTEGER DEFAULT 0,
                attempts INTEGER DEFAULT 0,
                max_attempts INTEGER DEFAULT 3,
                next_run_at TEXT,
                locked_at TEXT,
                locked_by TEXT,
                heartbeat_at TEXT,
                last_error TEXT,
                payload_json TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        # Create indexes
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON jobs(created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_places_job_id ON places(job_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_places_scraped_at ON places(scraped_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_failed_job_id ON failed_scrapes(job_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_job_id ON system_logs(job_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_queue_job_id ON job_queue(job_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_queue_dedupe ON job_queue(queue, dedupe_key)")
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_status_next_run ON job_queue(queue, status, next_run_at)"
        )

        await db.commit()


@asynccontextmanager
async def get_db():
    """Get a database connection."""
    db = await aiosqlite.connect(DB_PATH)
    db.row_factory = aiosqlite.Row
    try:
        yield db
    finally:
        await db.close()


def _now() -> str:
    return datetime.now().isoformat()


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


# ============== Jobs ==============

async def create_job(
    client_name: str,
    search_terms: List[str],
    *,
    locations: Optional[List[str]] = None,
    sub_locations: Optional[List[str]] = None,
    grid_size: Optional[int] = None,
    result_cap: int = 500,
    pacing: Optional[PacingConfig] = None,
    fields: Optional[List[str]] = None,
    estimated_duration: Optional[int] = None,
    job_id: Optional[str] = None,
) -> str:
    """Create a new job in PENDING and return its id."""
    job_id = job_id or f"job_{uuid.uuid4().hex}"
    pacing = pacing or PacingConfig()
    now = _now()
    async with get_db() as db:
        await db.execute(
            """INSERT INTO jobs
               (id, client_name, status, search_terms_json, locations_json, sub_locations_json,
                grid_size, result_cap, min_delay_ms, max_delay_ms, rest_every, rest_duration_ms,
                fields_json, estimated_duration, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job_id,
                client_name,
                JobStatus.PENDING.value,
                json.dumps(list(search_terms)),
                json.dumps(list(locations or [])),
                json.dumps(list(sub_locations or [])),
                grid_size,
                int(result_cap),
                int(pacing.min_delay_ms),
                int(pacing.max_delay_ms),
                int(pacing.rest_every),
                int(pacing.rest_duration_ms),
                json.dumps(list(fields or [])),
                estimated_duration,
                now,
                now,
            ),
        )
        await db.commit()
    return job_id


async def get_job(job_id: str) -> Optional[Job]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return Job.from_row(dict(row)) if row else None


async def list_jobs(status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Job]:
    async with get_db() as db:
        if status:
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (status, limit, offset),
            )
        else:
            cursor = await db.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            )
        rows = await cursor.fetchall()
        return [Job.from_row(dict(row)) for row in rows]


async def count_jobs(status: Optional[str] = None) -> int:
    async with get_db() as db:
        if status:
            cursor = await db.execute("SELECT COUNT(*) as count FROM jobs WHERE status = ?", (status,))
        else:
            cursor = await db.execute("SELECT COUNT(*) as count FROM jobs")
        row = await cursor.fetchone()
        return row["count"] if row else 0


async def update_job(job_id: str, **fields: Any) -> bool:
    """Update whitelisted job columns. Returns False when the job does not exist."""
    unknown = set(fields) - JOB_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown job columns: {sorted(unknown)}")
    if not fields:
        return True

    columns = ", ".join(f"{name} = ?" for name in fields)
    values = [_to_db(value) for value in fields.values()]
    async with get_db() as db:
        cursor = await db.execute(
            f"UPDATE jobs SET {columns}, updated_at = ? WHERE id = ?",
            (*values, _now(), job_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def transition_job(job_id: str, from_status: JobStatus, to_status: JobStatus, **fields: Any) -> bool:
    """Compare-and-set the job status. False when the job is not in ``from_status``."""
    unknown = set(fields) - JOB_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown job columns: {sorted(unknown)}")

    assignments = ["status = ?"] + [f"{name} = ?" for name in fields]
    values = [_to_db(to_status)] + [_to_db(value) for value in fields.values()]
    async with get_db() as db:
        cursor = await db.execute(
            f"UPDATE jobs SET {', '.join(assignments)}, updated_at = ? WHERE id = ? AND status = ?",
            (*values, _now(), job_id, _to_db(from_status)),
        )
        await db.commit()
        return cursor.rowcount > 0


async def increment_job_counters(job_id: str, scraped: int = 0, failed: int = 0):
    """Atomically bump the saved/failed counters."""
    async with get_db() as db:
        await db.execute(
            """UPDATE jobs
               SET records_scraped = records_scraped + ?,
                   failed_count = failed_count + ?,
                   updated_at = ?
               WHERE id = ?""",
            (int(scraped), int(failed), _now(), job_id),
        )
        await db.commit()


async def delete_job(job_id: str) -> bool:
    """Delete a job with its places, failures, logs and queue units."""
    async with get_db() as db:
        await db.execute("DELETE FROM places WHERE job_id = ?", (job_id,))
        await db.execute("DELETE FROM failed_scrapes WHERE job_id = ?", (job_id,))
        await db.execute("DELETE FROM system_logs WHERE job_id = ?", (job_id,))
        await db.execute("DELETE FROM job_queue WHERE job_id = ?", (job_id,))
        cursor = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        await db.commit()
        return cursor.rowcount > 0


# ============== Places ==============

def _place_from_row(row: aiosqlite.Row) -> Dict[str, Any]:
    place = dict(row)
    place["business_types"] = json.loads(place.pop("business_types_json", None) or "[]")
    place["opening_hours"] = json.loads(place.pop("opening_hours_json", None) or "{}")
    return place


async def insert_place(
    job_id: str,
    record: PlaceRecord,
    search_term: Optional[str] = None,
    search_location: Optional[str] = None,
) -> bool:
    """Insert a scraped place. Returns False when the place id is already stored."""
    row = record.to_row()
    now = _now()
    row.update({
        "job_id": job_id,
        "search_term": search_term,
        "search_location": search_location,
        "scraped_at": now,
        "updated_at": now,
    })
    columns = ", ".join(row.keys())
    placeholders = ", ".join("?" for _ in row)
    async with get_db() as db:
        try:
            await db.execute(
                f"INSERT INTO places ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            await db.commit()
            return True
        except aiosqlite.IntegrityError:
            return False


async def get_place(place_id: str) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM places WHERE place_id = ?", (place_id,))
        row = await cursor.fetchone()
        return _place_from_row(row) if row else None


async def update_place_enrichment(
    place_id: str,
    status: EnrichmentStatus,
    email: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    """Set the enrichment status; a non-empty email replaces the stored one."""
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE places
               SET enrichment_status = ?,
                   email = COALESCE(?, email),
                   enrichment_error = ?,
                   updated_at = ?
               WHERE place_id = ?""",
            (_to_db(status), email or None, error, _now(), place_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def list_places(
    job_id: str,
    limit: Optional[int] = None,
    newest_first: bool = False,
) -> List[Dict[str, Any]]:
    order = "DESC" if newest_first else "ASC"
    query = f"SELECT * FROM places WHERE job_id = ? ORDER BY id {order}"
    params: Tuple[Any, ...] = (job_id,)
    if limit is not None:
        query += " LIMIT ?"
        params = (job_id, int(limit))
    async with get_db() as db:
        cursor = await db.execute(query, params)
        rows = await cursor.fetchall()
        return [_place_from_row(row) for row in rows]


async def list_places_for_enrichment(job_id: str) -> List[Dict[str, Any]]:
    """Places of a job with a website that have not been queued for enrichment yet."""
    async with get_db() as db:
        cursor = await db.execute(
            """SELECT * FROM places
               WHERE job_id = ?
                 AND website IS NOT NULL AND website != ''
                 AND enrichment_status IS NULL
               ORDER BY id ASC""",
            (job_id,),
        )
        rows = await cursor.fetchall()
        return [_place_from_row(row) for row in rows]


# ============== Failures + Logs ==============

async def add_failed_scrape(
    job_id: str,
    search_term: Optional[str],
    location: Optional[str],
    error_type: str,
    error_message: str,
    url: Optional[str] = None,
):
    async with get_db() as db:
        await db.execute(
            """INSERT INTO failed_scrapes
               (job_id, search_term, location, url, error_type, error_message, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (job_id, search_term, location, url, error_type, (error_message or "")[:2000], _now()),
        )
        await db.commit()


async def list_failed_scrapes(job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM failed_scrapes WHERE job_id = ? ORDER BY id DESC LIMIT ?",
            (job_id, limit),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]


async def add_system_log(
    job_id: Optional[str],
    level: str,
    event: str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
):
    async with get_db() as db:
        await db.execute(
            """INSERT INTO system_logs (job_id, level, event, message, metadata_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (job_id, _to_db(level), event, message, json.dumps(metadata or {}), _now()),
        )
        await db.commit()


async def list_system_logs(job_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute(
            "SELECT * FROM system_logs WHERE job_id = ? ORDER BY id DESC LIMIT ?",
            (job_id, limit),
        )
        rows = await cursor.fetchall()
        logs = []
        for row in rows:
            entry = dict(row)
            entry["metadata"] = json.loads(entry.pop("metadata_json", None) or "{}")
            logs.append(entry)
        return logs


async def count_related(job_id: str) -> Dict[str, int]:
    """Row counts of everything attached to a job."""
    async with get_db() as db:
        counts: Dict[str, int] = {}
        for key, table in (("places", "places"), ("failed_scrapes", "failed_scrapes"), ("logs", "system_logs")):
            cursor = await db.execute(f"SELECT COUNT(*) as count FROM {table} WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
            counts[key] = row["count"] if row else 0
        return counts


# ============== Queue ==============

def _queue_item(row: aiosqlite.Row) -> Dict[str, Any]:
    item = dict(row)
    item["payload"] = json.loads(item.get("payload_json") or "{}")
    return item


async def enqueue_unit(
    queue: str,
    payload: Dict[str, Any],
    *,
    dedupe_key: Optional[str] = None,
    job_id: Optional[str] = None,
    max_attempts: int = 3,
    priority: int = 0,
) -> Optional[str]:
    """
    Enqueue one work unit and return its queue id.

    Returns None when a non-terminal unit with the same dedupe key already
    exists on that queue.
    """
    now = _now()
    async with get_db() as db:
        if dedupe_key:
            cursor = await db.execute(
                f"""SELECT id FROM job_queue
                    WHERE queue = ? AND dedupe_key = ?
                      AND status IN ({",".join("?" for _ in QUEUE_ACTIVE_STATUSES)})
                    LIMIT 1""",
                (queue, dedupe_key, *QUEUE_ACTIVE_STATUSES),
            )
            if await cursor.fetchone():
                return None

        qid = f"q_{uuid.uuid4().hex}"
        await db.execute(
            """INSERT INTO job_queue
               (id, queue, job_id, dedupe_key, status, priority, attempts, max_attempts,
                next_run_at, payload_json, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
            (
                qid,
                queue,
                job_id,
                dedupe_key,
                QUEUE_QUEUED,
                int(priority),
                int(max_attempts),
                now,
                json.dumps(payload or {}),
                now,
                now,
            ),
        )
        await db.commit()
    return qid


async def get_queue_item(queue_id: str) -> Optional[Dict[str, Any]]:
    async with get_db() as db:
        cursor = await db.execute("SELECT * FROM job_queue WHERE id = ?", (queue_id,))
        row = await cursor.fetchone()
        return _queue_item(row) if row else None


async def list_queue_items(queue: Optional[str] = None, job_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    clauses, params = [], []
    if queue:
        clauses.append("queue = ?")
        params.append(queue)
    if job_id:
        clauses.append("job_id = ?")
        params.append(job_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with get_db() as db:
        cursor = await db.execute(
            f"SELECT * FROM job_queue {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_queue_item(row) for row in rows]


async def get_queue_counts(queue: Optional[str] = None) -> Dict[str, int]:
    async with get_db() as db:
        if queue:
            cursor = await db.execute(
                """SELECT status, COUNT(*) as count
                   FROM job_queue
                   WHERE queue = ?
                   GROUP BY status""",
                (queue,),
            )
        else:
            cursor = await db.execute(
                "SELECT status, COUNT(*) as count FROM job_queue GROUP BY status"
            )
        rows = await cursor.fetchall()
        out: Dict[str, int] = {}
        for row in rows:
            out[str(row["status"])] = int(row["count"])
        return out


async def fetch_next_queue_item(queue: str, worker_id: str) -> Optional[Dict[str, Any]]:
    """
    Atomically claim the next runnable item on ``queue``.
    Returns the claimed item dict, or None.
    """
    now = _now()
    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")

        cursor = await db.execute(
            """
            SELECT * FROM job_queue
            WHERE queue = ?
              AND status IN ('queued', 'retry_scheduled')
              AND (next_run_at IS NULL OR next_run_at <= ?)
              AND locked_at IS NULL
            ORDER BY priority DESC, next_run_at ASC, created_at ASC
            LIMIT 1
            """,
            (queue, now),
        )
        row = await cursor.fetchone()
        if not row:
            await db.execute("COMMIT")
            return None

        qid = row["id"]
        await db.execute(
            """UPDATE job_queue
               SET status = 'in_progress', locked_at = ?, locked_by = ?, heartbeat_at = ?, updated_at = ?
               WHERE id = ?""",
            (now, worker_id, now, now, qid),
        )
        await db.commit()

        item = _queue_item(row)
        item.update({"status": QUEUE_IN_PROGRESS, "locked_at": now, "locked_by": worker_id, "heartbeat_at": now})
        return item


async def heartbeat_queue_item(queue_id: str, worker_id: str) -> bool:
    """Refresh the claim on an in-progress item. False if the claim was lost."""
    now = _now()
    async with get_db() as db:
        cursor = await db.execute(
            """UPDATE job_queue
               SET heartbeat_at = ?, updated_at = ?
               WHERE id = ? AND locked_by = ? AND status = 'in_progress'""",
            (now, now, queue_id, worker_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def release_queue_item(queue_id: str, worker_id: str):
    """Put a claimed item back on the queue without counting an attempt (used on shutdown)."""
    now = _now()
    async with get_db() as db:
        await db.execute(
            """UPDATE job_queue
               SET status = 'queued', locked_at = NULL, locked_by = NULL, heartbeat_at = NULL,
                   next_run_at = ?, updated_at = ?
               WHERE id = ? AND locked_by = ? AND status = 'in_progress'""",
            (now, now, queue_id, worker_id),
        )
        await db.commit()


async def mark_queue_item_completed(
    queue_id: str,
    *,
    status: str = QUEUE_COMPLETED,
    attempts: Optional[int] = None,
    last_error: Optional[str] = None,
):
    now = _now()
    async with get_db() as db:
        await db.execute(
            """UPDATE job_queue
               SET status = ?, attempts = COALESCE(?, attempts), last_error = ?,
                   locked_at = NULL, locked_by = NULL, heartbeat_at = NULL, updated_at = ?
               WHERE id = ?""",
            (status, attempts, last_error, now, queue_id),
        )
        await db.commit()


async def schedule_queue_retry(
    queue_id: str,
    *,
    attempts: int,
    next_run_at: datetime,
    last_error: str,
):
    now = _now()
    async with get_db() as db:
        await db.execute(
            """UPDATE job_queue
               SET status = 'retry_scheduled',
                   attempts = ?,
                   next_run_at = ?,
                   last_error = ?,
                   locked_at = NULL,
                   locked_by = NULL,
                   heartbeat_at = NULL,
                   updated_at = ?
               WHERE id = ?""",
            (int(attempts), next_run_at.isoformat(), last_error, now, queue_id),
        )
        await db.commit()


async def requeue_stalled_items(
    queue: str,
    stall_timeout_seconds: float,
    backoff: Callable[[int], float],
) -> Tuple[int, List[Dict[str, Any]]]:
    """
    Requeue in-progress items whose heartbeat is older than the timeout.

    Each stall counts as an attempt; items out of attempts are marked failed.
    Returns (requeued count, failed items) so the caller can settle the jobs
    behind the failed ones.
    """
    now_dt = datetime.now()
    now = now_dt.isoformat()
    cutoff = (now_dt - timedelta(seconds=stall_timeout_seconds)).isoformat()
    requeued = 0
    failed: List[Dict[str, Any]] = []

    async with get_db() as db:
        await db.execute("BEGIN IMMEDIATE")
        cursor = await db.execute(
            """SELECT * FROM job_queue
               WHERE queue = ? AND status = 'in_progress'
                 AND COALESCE(heartbeat_at, locked_at) < ?""",
            (queue, cutoff),
        )
        rows = await cursor.fetchall()

        for row in rows:
            attempts = int(row["attempts"] or 0) + 1
            if attempts >= int(row["max_attempts"] or 1):
                await db.execute(
                    """UPDATE job_queue
                       SET status = 'failed', attempts = ?, last_error = ?,
                           locked_at = NULL, locked_by = NULL, heartbeat_at = NULL, updated_at = ?
                       WHERE id = ?""",
                    (attempts, STALLED_ERROR, now, row["id"]),
                )
                item = _queue_item(row)
                item.update({"status": QUEUE_FAILED, "attempts": attempts, "last_error": STALLED_ERROR})
                failed.append(item)
            else:
                next_run_at = now_dt + timedelta(seconds=backoff(attempts))
                await db.execute(
                    """UPDATE job_queue
                       SET status = 'retry_scheduled', attempts = ?, next_run_at = ?,
                           last_error = ?,
                           locked_at = NULL, locked_by = NULL, heartbeat_at = NULL, updated_at = ?
                       WHERE id = ?""",
                    (attempts, next_run_at.isoformat(), STALLED_ERROR, now, row["id"]),
                )
                requeued += 1

        await db.commit()
    return requeued, failed


# ============== Stats ==============

async def get_stats() -> Dict[str, Any]:
    """Dashboard-level totals across all jobs."""
    today = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0).isoformat()
    async with get_db() as db:
        cursor = await db.execute("SELECT status, COUNT(*) as count FROM jobs GROUP BY status")
        by_status = {str(row["status"]): int(row["count"]) for row in await cursor.fetchall()}

        cursor = await db.execute("SELECT COUNT(*) as count FROM places")
        total_places = (await cursor.fetchone())["count"]

        cursor = await db.execute("SELECT COUNT(*) as count FROM places WHERE scraped_at >= ?", (today,))
        places_today = (await cursor.fetchone())["count"]

    return {
        "total_jobs": sum(by_status.values()),
        "active_jobs": by_status.get(JobStatus.RUNNING.value, 0) + by_status.get(JobStatus.PENDING.value, 0),
        "completed_jobs": by_status.get(JobStatus.COMPLETED.value, 0),
        "failed_jobs": by_status.get(JobStatus.FAILED.value, 0),
        "paused_jobs": by_status.get(JobStatus.PAUSED.value, 0),
        "total_places": total_places,
        "places_today": places_today,
        "queues": {
            "scrape": await get_queue_counts("scrape"),
            "enrich": await get_queue_counts("enrich"),
        },
    }
