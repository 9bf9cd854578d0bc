"""Ingestion job lifecycle for the review pipeline."""

import logging
from typing import Any, Dict, List, Optional

from .db import as_json, connect
from .errors import InvalidTransition
from .models import IngestionJob, JobStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, List[JobStatus]] = {
    JobStatus.STAGING: [JobStatus.NEEDS_REVIEW],
    JobStatus.NEEDS_REVIEW: [JobStatus.APPROVED, JobStatus.REJECTED],
    JobStatus.APPROVED: [JobStatus.INDEXED, JobStatus.REJECTED],
    JobStatus.REJECTED: [],
    JobStatus.INDEXED: [],
}

TERMINAL_STATUSES = (JobStatus.REJECTED, JobStatus.INDEXED)

# Columns a transition may set alongside the status.
UPDATABLE_COLUMNS = ("final_metadata", "document_id", "version_id", "last_error")

JOB_COLUMNS = """
    id, blob_id, status, suggested_metadata, final_metadata, duplicate_warning,
    document_id, version_id, last_error, created_at, updated_at
"""


def check_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidTransition unless `current -> target` is allowed."""
    if target not in ALLOWED_TRANSITIONS[JobStatus(current)]:
        raise InvalidTransition(f"Job cannot move from {JobStatus(current).value} to {JobStatus(target).value}")


def _row_to_job(row: Dict[str, Any]) -> IngestionJob:
    data = dict(row)
    data["suggested_metadata"] = data.get("suggested_metadata") or {}
    return IngestionJob(**data)


class JobRepository:
    """SQL access to ingestion_jobs. Every status change is a conditional update."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def create(self, job: IngestionJob) -> IngestionJob:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    INSERT INTO ingestion_jobs (
                        id, blob_id, status, suggested_metadata, duplicate_warning, last_error
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {JOB_COLUMNS}
                """, (
                    job.id,
                    job.blob_id,
                    JobStatus.STAGING.value,
                    as_json(job.suggested_metadata),
                    job.duplicate_warning,
                    job.last_error,
                ))
                row = cur.fetchone()
            conn.commit()
        return _row_to_job(row)

    def get(self, job_id: str) -> Optional[IngestionJob]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {JOB_COLUMNS} FROM ingestion_jobs WHERE id = %s", (job_id,))
                row = cur.fetchone()
        return _row_to_job(row) if row else None

    def list(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[IngestionJob]:
        query = f"SELECT {JOB_COLUMNS} FROM ingestion_jobs"
        params: list = []
        if status is not None:
            query += " WHERE status = %s"
            params.append(JobStatus(status).value)
        query += " ORDER BY created_at ASC, id ASC LIMIT %s"
        params.append(limit)

        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [_row_to_job(row) for row in rows]

    def transition(
        self,
        job_id: str,
        current: JobStatus,
        target: JobStatus,
        **updates: Any
    ) -> None:
        """Move a job from `current` to `target`, failing if another writer got there first."""
        check_transition(current, target)

        assignments = ["status = %s", "updated_at = NOW()"]
        params: list = [JobStatus(target).value]
        for column, value in updates.items():
            if column not in UPDATABLE_COLUMNS:
                raise ValueError(f"Unknown job column: {column}")
            assignments.append(f"{column} = %s")
            params.append(as_json(value) if column == "final_metadata" else value)
        params.extend([job_id, JobStatus(current).value])

        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE ingestion_jobs SET {', '.join(assignments)} WHERE id = %s AND status = %s",
                    params,
                )
                updated = cur.rowcount
            conn.commit()

        if updated == 0:
            raise InvalidTransition(
                f"Job {job_id} is no longer {JobStatus(current).value}; cannot move to {JobStatus(target).value}"
            )

    def record_error(self, job_id: str, error: str) -> None:
        """Surface an indexing failure without changing status."""
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE ingestion_jobs SET last_error = %s, updated_at = NOW() WHERE id = %s",
                    (error, job_id),
                )
            conn.commit()

    def list_ocr_reindex_candidates(self, limit: int = 10) -> List[IngestionJob]:
        """Indexed jobs whose blob finished OCR and has not been re-uploaded as text."""
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {', '.join('j.' + c.strip() for c in JOB_COLUMNS.split(','))}
                    FROM ingestion_jobs j
                    JOIN file_blobs b ON b.id = j.blob_id
                    WHERE j.status = 'indexed'
                      AND b.ocr_status = 'completed'
                      AND b.ocr_reindexed_at IS NULL
                    ORDER BY b.ocr_completed_at ASC
                    LIMIT %s
                """, (limit,))
                rows = cur.fetchall()
        return [_row_to_job(row) for row in rows]
