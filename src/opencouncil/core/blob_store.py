"""Content-addressed blob store: raw bytes keyed by sha256, rows in file_blobs."""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .db import connect, new_id
from .errors import BlobStorageError
from .models import DuplicateMatch, FileBlob, OcrStatus, QualityAnalysis
from .quality import PREVIEW_CHAR_LIMIT, mime_type_for

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"


def calculate_sha256(data: bytes) -> str:
    """Calculate SHA256 hash of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def calculate_preview_hash(text: Optional[str]) -> Optional[str]:
    """Hash of extracted preview text, used for near-duplicate detection."""
    if not text or not text.strip():
        return None
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class LocalBlobStorage:
    """Blob bytes on local disk, one file per content hash."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def write(self, object_name: str, data: bytes) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        dest_path = self.root / object_name
        if not dest_path.exists():
            dest_path.write_bytes(data)
            logger.info(f"Saved blob to local store: {dest_path}")
        else:
            logger.info(f"Blob already exists in local store: {dest_path}")
        return str(dest_path)

    def read(self, path: str) -> bytes:
        return Path(path).read_bytes()


class S3BlobStorage:
    """Blob bytes in an S3 bucket under a `blobs/` prefix."""

    def __init__(self, client: Any, bucket: str, prefix: str = "blobs"):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def location_for(self, object_name: str) -> str:
        return f"{S3_SCHEME}{self.bucket}/{self.prefix}/{object_name}"

    def write(self, object_name: str, data: bytes, content_type: str) -> str:
        key = f"{self.prefix}/{object_name}"
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        return self.location_for(object_name)

    def read(self, location: str) -> bytes:
        bucket, key = parse_s3_location(location)
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise BlobStorageError(f"Object not found: {location}", "ENOENT") from e
            raise BlobStorageError(
                f"Failed to read from object storage: {e}", "OBJECT_STORAGE_ERROR"
            ) from e
        except BotoCoreError as e:
            raise BlobStorageError(
                f"Failed to read from object storage: {e}", "OBJECT_STORAGE_ERROR"
            ) from e


def parse_s3_location(location: str) -> tuple:
    """Split `s3://bucket/key` into its bucket and key."""
    parts = location[len(S3_SCHEME):].split("/", 1)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise BlobStorageError(f"Invalid object storage path: {location}", "OBJECT_STORAGE_ERROR")
    return parts[0], parts[1]


class BlobStorage:
    """Primary object storage with a local-disk fallback."""

    def __init__(
        self,
        local: LocalBlobStorage,
        primary: Optional[S3BlobStorage] = None,
        reader: Optional[S3BlobStorage] = None
    ):
        self.local = local
        self.primary = primary
        # Reads s3:// locations outside the blob bucket (e.g. discovered source objects).
        self.reader = reader or primary

    def save(self, data: bytes, raw_hash: str, filename: str) -> str:
        """Persist bytes and return the storage path recorded on the blob row."""
        object_name = f"{raw_hash}{Path(filename).suffix.lower()}"
        if self.primary is not None:
            try:
                return self.primary.write(object_name, data, mime_type_for(filename))
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Object storage save failed, falling back to local: {e}")
        return self.local.write(object_name, data)

    def read(self, storage_path: str) -> bytes:
        if storage_path.startswith(S3_SCHEME):
            if self.reader is None:
                raise BlobStorageError(
                    f"Object storage is not configured for {storage_path}", "OBJECT_STORAGE_ERROR"
                )
            return self.reader.read(storage_path)

        try:
            return self.local.read(storage_path)
        except FileNotFoundError as e:
            if self.primary is None:
                raise BlobStorageError(f"File not found: {storage_path}", "ENOENT") from e
            # Local copy gone; the same object name may exist in the bucket.
            try:
                return self.primary.read(self.primary.location_for(Path(storage_path).name))
            except BlobStorageError as obj_error:
                raise BlobStorageError(f"File not found: {storage_path}", "ENOENT") from obj_error


BLOB_COLUMNS = """
    id, raw_hash, preview_hash, size_bytes, mime_type, original_filename, storage_path,
    preview_text, extracted_text_char_count, needs_ocr, ocr_status, ocr_text,
    ocr_text_char_count, ocr_failure_reason, ocr_queued_at, ocr_started_at,
    ocr_completed_at, ocr_reindexed_at, created_at
"""


class BlobRepository:
    """SQL access to file_blobs."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _fetch_one(self, query: str, params: tuple) -> Optional[FileBlob]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        return FileBlob(**row) if row else None

    def get(self, blob_id: str) -> Optional[FileBlob]:
        return self._fetch_one(f"SELECT {BLOB_COLUMNS} FROM file_blobs WHERE id = %s", (blob_id,))

    def get_by_raw_hash(self, raw_hash: str) -> Optional[FileBlob]:
        return self._fetch_one(
            f"SELECT {BLOB_COLUMNS} FROM file_blobs WHERE raw_hash = %s", (raw_hash,)
        )

    def get_by_preview_hash(self, preview_hash: str) -> Optional[FileBlob]:
        return self._fetch_one(
            f"SELECT {BLOB_COLUMNS} FROM file_blobs WHERE preview_hash = %s "
            "ORDER BY created_at ASC LIMIT 1",
            (preview_hash,),
        )

    def insert(self, blob: FileBlob) -> FileBlob:
        """Insert a blob row; a concurrent insert of the same hash returns the winner."""
        inserted = self._fetch_one(f"""
            INSERT INTO file_blobs (
                id, raw_hash, preview_hash, size_bytes, mime_type, original_filename, storage_path
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (raw_hash) DO NOTHING
            RETURNING {BLOB_COLUMNS}
        """, (
            blob.id,
            blob.raw_hash,
            blob.preview_hash,
            blob.size_bytes,
            blob.mime_type,
            blob.original_filename,
            blob.storage_path,
        ))
        if inserted is not None:
            return inserted
        existing = self.get_by_raw_hash(blob.raw_hash)
        if existing is None:
            raise BlobStorageError(f"Blob {blob.raw_hash} vanished after conflict", "ENOENT")
        return existing

    def update_analysis(
        self,
        blob_id: str,
        preview_text: str,
        preview_hash: Optional[str],
        char_count: int,
        needs_ocr: bool
    ) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE file_blobs
                    SET preview_text = %s, preview_hash = %s,
                        extracted_text_char_count = %s, needs_ocr = %s
                    WHERE id = %s
                """, (preview_text, preview_hash, char_count, needs_ocr, blob_id))
            conn.commit()

    def queue_for_ocr(self, blob_id: str) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE file_blobs
                    SET needs_ocr = TRUE, ocr_status = 'queued', ocr_queued_at = NOW(),
                        ocr_failure_reason = NULL
                    WHERE id = %s
                """, (blob_id,))
            conn.commit()

    def claim_next_ocr_job(self) -> Optional[FileBlob]:
        # SKIP LOCKED keeps concurrent OCR consumers off the same row.
        return self._fetch_one(f"""
            UPDATE file_blobs
            SET ocr_status = 'processing', ocr_started_at = NOW()
            WHERE id = (
                SELECT id FROM file_blobs
                WHERE ocr_status = 'queued'
                ORDER BY ocr_queued_at ASC NULLS LAST
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {BLOB_COLUMNS}
        """, ())

    def complete_ocr(
        self,
        blob_id: str,
        ocr_text: str,
        preview_text: str,
        preview_hash: Optional[str]
    ) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE file_blobs
                    SET ocr_status = 'completed', ocr_completed_at = NOW(), needs_ocr = FALSE,
                        ocr_text = %s, ocr_text_char_count = %s,
                        preview_text = %s, preview_hash = %s, ocr_failure_reason = NULL
                    WHERE id = %s
                """, (ocr_text, len(ocr_text), preview_text, preview_hash, blob_id))
            conn.commit()

    def fail_ocr(self, blob_id: str, reason: str) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE file_blobs
                    SET ocr_status = 'failed', ocr_completed_at = NOW(), ocr_failure_reason = %s
                    WHERE id = %s
                """, (reason, blob_id))
            conn.commit()

    def recover_stale_ocr_jobs(self, started_before: datetime) -> int:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE file_blobs
                    SET ocr_status = 'queued', ocr_started_at = NULL,
                        ocr_failure_reason = 'Recovered from stale processing state'
                    WHERE ocr_status = 'processing' AND ocr_started_at < %s
                    RETURNING id
                """, (started_before,))
                recovered = len(cur.fetchall())
            conn.commit()
        return recovered

    def ocr_queue_stats(self) -> Dict[str, int]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT ocr_status, COUNT(*) AS count
                    FROM file_blobs
                    GROUP BY ocr_status
                """)
                rows = cur.fetchall()
        return {row["ocr_status"]: row["count"] for row in rows}

    def mark_ocr_reindexed(self, blob_id: str) -> None:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE file_blobs SET ocr_reindexed_at = NOW() WHERE id = %s", (blob_id,)
                )
            conn.commit()


class BlobStore:
    """Deduplicating front door for raw file bytes.

    The store is the only writer of OCR fields on a blob. Storage writes are not
    transactional with the row insert; a crash in between can orphan bytes on disk
    but never leaves a row without bytes.
    """

    def __init__(self, repo: BlobRepository, storage: BlobStorage):
        self.repo = repo
        self.storage = storage

    def save_blob(self, data: bytes, filename: str, location: Optional[str] = None) -> FileBlob:
        """Store bytes once per distinct content and return the blob row.

        When `location` is given the bytes already live there durably and are
        not written again.
        """
        raw_hash = calculate_sha256(data)

        existing = self.repo.get_by_raw_hash(raw_hash)
        if existing is not None:
            logger.info(f"Exact duplicate of {existing.original_filename} (hash: {raw_hash[:8]})")
            return existing

        storage_path = location or self.storage.save(data, raw_hash, filename)
        blob = FileBlob(
            id=new_id(),
            raw_hash=raw_hash,
            size_bytes=len(data),
            mime_type=mime_type_for(filename),
            original_filename=Path(filename).name,
            storage_path=storage_path,
        )
        return self.repo.insert(blob)

    def find_duplicates(self, raw_hash: str, preview_hash: Optional[str] = None) -> DuplicateMatch:
        exact = self.repo.get_by_raw_hash(raw_hash)
        preview = None
        if exact is None and preview_hash:
            preview = self.repo.get_by_preview_hash(preview_hash)
        return DuplicateMatch(exact=exact, preview=preview)

    def get(self, blob_id: str) -> Optional[FileBlob]:
        return self.repo.get(blob_id)

    def read_blob(self, blob: FileBlob) -> bytes:
        return self.storage.read(blob.storage_path)

    def record_analysis(self, blob_id: str, analysis: QualityAnalysis) -> None:
        self.repo.update_analysis(
            blob_id,
            analysis.preview_text,
            calculate_preview_hash(analysis.preview_text),
            analysis.extracted_char_count,
            analysis.needs_ocr,
        )

    def queue_for_ocr(self, blob_id: str) -> None:
        self.repo.queue_for_ocr(blob_id)

    def claim_next_ocr_job(self) -> Optional[FileBlob]:
        return self.repo.claim_next_ocr_job()

    def record_ocr_result(self, blob_id: str, ocr_text: str) -> None:
        preview_text = ocr_text[:PREVIEW_CHAR_LIMIT]
        self.repo.complete_ocr(blob_id, ocr_text, preview_text, calculate_preview_hash(ocr_text))

    def record_ocr_failure(self, blob_id: str, reason: str) -> None:
        self.repo.fail_ocr(blob_id, reason)

    def recover_stale_ocr_jobs(self, stale_minutes: int = 30) -> int:
        threshold = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
        recovered = self.repo.recover_stale_ocr_jobs(threshold)
        if recovered:
            logger.warning(f"Recovered {recovered} stale OCR jobs")
        return recovered

    def ocr_queue_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in OcrStatus}
        stats.update(self.repo.ocr_queue_stats())
        return stats

    def mark_ocr_reindexed(self, blob_id: str) -> None:
        self.repo.mark_ocr_reindexed(blob_id)
