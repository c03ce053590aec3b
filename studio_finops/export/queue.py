"""
Durable job queue.

SQLite is the broker: producers insert rows and return immediately,
workers claim rows one at a time. Several worker processes can share the
same database file; SQLite's write lock serializes claims.

Lifecycle: waiting -> active -> completed | failed. Terminal rows are
never touched again. A live worker renews its lease on a timer while the
job runs; an active row whose lease expired (its worker died) can be
claimed again by another worker.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from studio_finops.storage.db import get_connection
from studio_finops.storage.models import ExportJob, JobState, JobStatus

from .options import ExportOptions

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_DB_PATH = "studio_finops_jobs.db"
DEFAULT_LEASE_SECONDS = 600

KIND_EXPORT = "export"
KIND_GENERATE = "generate"

_JOB_COLUMNS = (
    "id, kind, state, progress, input_ref, output_ref, options, project_id, "
    "failure_reason, worker_id, lease_expires_at, created_at, updated_at"
)


class QueueUnavailableError(Exception):
    """The durable broker could not be reached."""


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row) -> ExportJob:
    return ExportJob(
        id=row[0],
        kind=row[1],
        state=JobState(row[2]),
        progress_percent=row[3],
        input_ref=row[4],
        output_ref=row[5],
        options=json.loads(row[6]) if row[6] else {},
        project_id=row[7],
        failure_reason=row[8],
        worker_id=row[9],
        lease_expires_at=_parse_ts(row[10]),
        created_at=_parse_ts(row[11]),
        updated_at=_parse_ts(row[12]),
    )


class JobQueue:
    """SQLite-backed queue of export and generation jobs."""

    def __init__(
        self,
        db_path: str = DEFAULT_QUEUE_DB_PATH,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the queue.

        Args:
            db_path: Path to the SQLite database acting as broker
            lease_seconds: How long a claim survives without a lease renewal
            clock: Time source
        """
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be > 0")
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = get_connection(self.db_path)
            conn.isolation_level = None  # explicit transactions only
            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True
            return conn
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Job broker {self.db_path} unavailable: {e}") from e

    @staticmethod
    def _create_schema(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS export_jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                state TEXT NOT NULL,
                progress REAL NOT NULL DEFAULT 0,
                input_ref TEXT NOT NULL,
                output_ref TEXT,
                options TEXT,
                project_id TEXT,
                failure_reason TEXT,
                worker_id TEXT,
                lease_expires_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_export_jobs_state
            ON export_jobs (state, seq)
        """)

    def initialize_schema(self) -> None:
        """Create the jobs table.

        Raises:
            QueueUnavailableError: If the database cannot be opened
        """
        self._connect().close()

    def _execute(self, query: str, params: Iterable[Any] = ()) -> int:
        conn = self._connect()
        try:
            return conn.execute(query, tuple(params)).rowcount
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Job broker {self.db_path} unavailable: {e}") from e
        finally:
            conn.close()

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(
        self,
        input_ref: str,
        output_ref: Optional[str],
        options: Union[ExportOptions, Dict[str, Any], None] = None,
        project_id: Optional[str] = None,
        kind: str = KIND_EXPORT,
    ) -> str:
        """Persist a new job in the waiting state and return its id.

        Never performs the work inline.

        Raises:
            ValueError: If export options are outside the supported surface
            QueueUnavailableError: If the broker cannot be written
        """
        if not input_ref:
            raise ValueError("input_ref is required and cannot be empty")
        if kind == KIND_EXPORT:
            if not output_ref:
                raise ValueError("output_ref is required for export jobs")
            if options is None:
                options = ExportOptions()
            elif isinstance(options, dict):
                options = ExportOptions.from_dict(options)
        payload = options.to_dict() if isinstance(options, ExportOptions) else dict(options or {})

        job_id = uuid.uuid4().hex
        now = _ts(self._clock())
        self._execute(f"""
            INSERT INTO export_jobs ({_JOB_COLUMNS})
            VALUES (?, ?, ?, 0, ?, ?, ?, ?, NULL, NULL, NULL, ?, ?)
        """, (
            job_id, kind, JobState.WAITING.value, input_ref, output_ref,
            json.dumps(payload), project_id, now, now,
        ))
        logger.info("Enqueued %s job %s for project %s", kind, job_id, project_id)
        return job_id

    def enqueue_generation_batch(self, requests: List[Dict[str, Any]], project_id: Optional[str] = None) -> List[str]:
        """Submit each generation request as its own independent job."""
        job_ids = []
        for request in requests:
            if not request.get("model_identifier"):
                raise ValueError("model_identifier is required for generation jobs")
            job_ids.append(self.enqueue(
                input_ref=request["model_identifier"],
                output_ref=None,
                options=request,
                project_id=project_id or request.get("project_id"),
                kind=KIND_GENERATE,
            ))
        return job_ids

    # =========================================================================
    # Read side
    # =========================================================================

    def get_job(self, job_id: str) -> ExportJob:
        """Full job record.

        Raises:
            KeyError: If the job does not exist
        """
        conn = self._connect()
        try:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM export_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Job broker {self.db_path} unavailable: {e}") from e
        finally:
            conn.close()
        if row is None:
            raise KeyError(job_id)
        return _row_to_job(row)

    def get_status(self, job_id: str) -> JobStatus:
        """Read-only status, safe to poll repeatedly.

        output_ref is reported once the job has completed.
        """
        job = self.get_job(job_id)
        return JobStatus(
            state=job.state,
            progress_percent=job.progress_percent,
            output_ref=job.output_ref if job.state == JobState.COMPLETED else None,
            failure_reason=job.failure_reason,
        )

    def list_jobs(self, project_id: Optional[str] = None, limit: int = 50) -> List[ExportJob]:
        """Most recent jobs first."""
        query = f"SELECT {_JOB_COLUMNS} FROM export_jobs"
        params: list = []
        if project_id is not None:
            query += " WHERE project_id = ?"
            params.append(project_id)
        query += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Job broker {self.db_path} unavailable: {e}") from e
        finally:
            conn.close()

    # =========================================================================
    # Worker side
    # =========================================================================

    def claim_next(self, worker_id: str) -> Optional[ExportJob]:
        """Atomically take the oldest claimable job.

        Claimable means waiting, or active with an expired lease.
        """
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("""
                SELECT id FROM export_jobs
                WHERE state = ?
                   OR (state = ? AND lease_expires_at < ?)
                ORDER BY seq
                LIMIT 1
            """, (JobState.WAITING.value, JobState.ACTIVE.value, _ts(now))).fetchone()

            if row is None:
                conn.execute("COMMIT")
                return None

            conn.execute("""
                UPDATE export_jobs
                SET state = ?, worker_id = ?, lease_expires_at = ?, updated_at = ?
                WHERE id = ?
            """, (
                JobState.ACTIVE.value, worker_id,
                _ts(now + timedelta(seconds=self.lease_seconds)), _ts(now), row[0],
            ))
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise QueueUnavailableError(f"Job broker {self.db_path} unavailable: {e}") from e
        finally:
            conn.close()

        logger.info("Worker %s claimed job %s", worker_id, row[0])
        return self.get_job(row[0])

    def update_progress(self, job_id: str, worker_id: str, percent: float) -> bool:
        """Raise progress for an active job and extend its lease.

        Progress never decreases; lower values are ignored.

        Returns:
            False if the job is no longer active under this worker
        """
        percent = min(100.0, max(0.0, float(percent)))
        now = self._clock()
        updated = self._execute("""
            UPDATE export_jobs
            SET progress = MAX(progress, ?), lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND state = ? AND worker_id = ?
        """, (
            percent, _ts(now + timedelta(seconds=self.lease_seconds)), _ts(now),
            job_id, JobState.ACTIVE.value, worker_id,
        ))
        return updated == 1

    def renew_lease(self, job_id: str, worker_id: str) -> bool:
        """Extend the lease of an active job without touching its progress.

        Returns:
            False if the job is no longer active under this worker
        """
        now = self._clock()
        updated = self._execute("""
            UPDATE export_jobs
            SET lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND state = ? AND worker_id = ?
        """, (
            _ts(now + timedelta(seconds=self.lease_seconds)), _ts(now),
            job_id, JobState.ACTIVE.value, worker_id,
        ))
        return updated == 1

    def complete(self, job_id: str, worker_id: str, output_ref: Optional[str]) -> bool:
        """Mark an active job completed with its output."""
        updated = self._execute("""
            UPDATE export_jobs
            SET state = ?, progress = 100, output_ref = ?, lease_expires_at = NULL, updated_at = ?
            WHERE id = ? AND state = ? AND worker_id = ?
        """, (
            JobState.COMPLETED.value, output_ref, _ts(self._clock()),
            job_id, JobState.ACTIVE.value, worker_id,
        ))
        if updated != 1:
            logger.warning("Job %s was not active under worker %s, completion ignored", job_id, worker_id)
        return updated == 1

    def fail(self, job_id: str, worker_id: str, reason: str) -> bool:
        """Mark an active job failed with a reason."""
        updated = self._execute("""
            UPDATE export_jobs
            SET state = ?, failure_reason = ?, lease_expires_at = NULL, updated_at = ?
            WHERE id = ? AND state = ? AND worker_id = ?
        """, (
            JobState.FAILED.value, reason or "unknown error", _ts(self._clock()),
            job_id, JobState.ACTIVE.value, worker_id,
        ))
        if updated != 1:
            logger.warning("Job %s was not active under worker %s, failure ignored", job_id, worker_id)
        return updated == 1
