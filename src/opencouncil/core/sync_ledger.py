"""Sync ledger for the auto-ingest path: one row per discovered source key.

Rows move `pending -> synced` or `pending -> failed`. A failed row only returns
to `pending` through `reset_failed`, never automatically.
"""

import logging
from typing import List, Optional

from .db import connect
from .errors import InvalidTransition
from .models import SyncRecord, SyncStats

logger = logging.getLogger(__name__)

SYNC_COLUMNS = """
    id, source_key, town, store_id, category, board, year, meeting_date, is_minutes,
    size_bytes, status, search_document_id, error_message, created_at, synced_at
"""


def placeholder_store_id(town: str) -> str:
    return f"pending_resolution:{town}"


def is_placeholder_store_id(store_id: str) -> bool:
    return store_id.startswith("pending_resolution:")


class SyncRepository:
    """SQL access to s3_gemini_sync."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def exists(self, source_key: str) -> bool:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM s3_gemini_sync WHERE source_key = %s", (source_key,))
                return cur.fetchone() is not None

    def insert_pending(self, record: SyncRecord) -> bool:
        """Insert a pending row. Returns False if the source key was already known."""
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO s3_gemini_sync (
                        id, source_key, town, store_id, category, board, year,
                        meeting_date, is_minutes, size_bytes, status
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
                    ON CONFLICT (source_key) DO NOTHING
                    RETURNING id
                """, (
                    record.id,
                    record.source_key,
                    record.town,
                    record.store_id,
                    record.category,
                    record.board,
                    record.year,
                    record.meeting_date,
                    record.is_minutes,
                    record.size_bytes,
                ))
                inserted = cur.fetchone() is not None
            conn.commit()
        return inserted

    def get(self, record_id: str) -> Optional[SyncRecord]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {SYNC_COLUMNS} FROM s3_gemini_sync WHERE id = %s", (record_id,))
                row = cur.fetchone()
        return SyncRecord(**row) if row else None

    def next_pending(self, limit: int, town: Optional[str] = None) -> List[SyncRecord]:
        """Oldest pending rows first."""
        query = f"SELECT {SYNC_COLUMNS} FROM s3_gemini_sync WHERE status = 'pending'"
        params: list = []
        if town:
            query += " AND town = %s"
            params.append(town.lower())
        query += " ORDER BY created_at ASC, id ASC LIMIT %s"
        params.append(limit)

        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [SyncRecord(**row) for row in rows]

    def set_store_id(self, record_id: str, store_id: str) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE s3_gemini_sync SET store_id = %s WHERE id = %s",
                    (store_id, record_id),
                )
            conn.commit()

    def mark_synced(self, record_id: str, document_id: str) -> None:
        self._transition(record_id, """
            UPDATE s3_gemini_sync
            SET status = 'synced', search_document_id = %s, synced_at = NOW(), error_message = NULL
            WHERE id = %s AND status = 'pending'
        """, (document_id, record_id), "synced")

    def mark_failed(self, record_id: str, error_message: str) -> None:
        self._transition(record_id, """
            UPDATE s3_gemini_sync
            SET status = 'failed', error_message = %s
            WHERE id = %s AND status = 'pending'
        """, (error_message, record_id), "failed")

    def _transition(self, record_id: str, query: str, params: tuple, target: str) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                updated = cur.rowcount
            conn.commit()
        if updated == 0:
            raise InvalidTransition(f"Sync record {record_id} is not pending; cannot mark {target}")

    def reset_failed(self, town: Optional[str] = None) -> int:
        query = """
            UPDATE s3_gemini_sync
            SET status = 'pending', error_message = NULL
            WHERE status = 'failed'
        """
        params: list = []
        if town:
            query += " AND town = %s"
            params.append(town.lower())
        query += " RETURNING id"

        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                count = len(cur.fetchall())
            conn.commit()
        logger.info(f"Reset {count} failed sync records to pending")
        return count

    def stats(self, town: Optional[str] = None) -> SyncStats:
        query = """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'synced') AS synced,
                COUNT(*) FILTER (WHERE status = 'pending') AS pending,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed
            FROM s3_gemini_sync
        """
        params: list = []
        if town:
            query += " WHERE town = %s"
            params.append(town.lower())

        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        return SyncStats(**row) if row else SyncStats()
