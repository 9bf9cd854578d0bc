"""Shared pytest fixtures: in-memory stand-ins for the SQL repositories and remote services."""

import copy
import io
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from opencouncil.core.blob_store import BlobStore
from opencouncil.core.errors import IndexingError, InvalidTransition
from opencouncil.core.jobs import check_transition
from opencouncil.core.models import (
    DocumentVersion,
    FileBlob,
    IngestionJob,
    JobStatus,
    LogicalDocument,
    OcrStatus,
    SyncRecord,
    SyncStats,
    SyncStatus,
)
from opencouncil.core.object_store import S3ObjectStore
from opencouncil.core.registry import Registry


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------


class FakeBlobRepository:
    def __init__(self):
        self.blobs: Dict[str, FileBlob] = {}
        self.reindexed: List[str] = []

    def get(self, blob_id):
        return self.blobs.get(blob_id)

    def get_by_raw_hash(self, raw_hash):
        return next((b for b in self.blobs.values() if b.raw_hash == raw_hash), None)

    def get_by_preview_hash(self, preview_hash):
        return next((b for b in self.blobs.values() if b.preview_hash == preview_hash), None)

    def insert(self, blob):
        existing = self.get_by_raw_hash(blob.raw_hash)
        if existing is not None:
            return existing
        stored = blob.model_copy(update={"created_at": _now()})
        self.blobs[stored.id] = stored
        return stored

    def update_analysis(self, blob_id, preview_text, preview_hash, char_count, needs_ocr):
        blob = self.blobs[blob_id]
        blob.preview_text = preview_text
        blob.preview_hash = preview_hash
        blob.extracted_text_char_count = char_count
        blob.needs_ocr = needs_ocr

    def queue_for_ocr(self, blob_id):
        blob = self.blobs[blob_id]
        blob.needs_ocr = True
        blob.ocr_status = OcrStatus.QUEUED
        blob.ocr_queued_at = _now()

    def claim_next_ocr_job(self):
        for blob in self.blobs.values():
            if blob.ocr_status == OcrStatus.QUEUED:
                blob.ocr_status = OcrStatus.PROCESSING
                blob.ocr_started_at = _now()
                return blob
        return None

    def complete_ocr(self, blob_id, ocr_text, preview_text, preview_hash):
        blob = self.blobs[blob_id]
        blob.ocr_status = OcrStatus.COMPLETED
        blob.needs_ocr = False
        blob.ocr_text = ocr_text
        blob.ocr_text_char_count = len(ocr_text)
        blob.preview_text = preview_text
        blob.preview_hash = preview_hash

    def fail_ocr(self, blob_id, reason):
        blob = self.blobs[blob_id]
        blob.ocr_status = OcrStatus.FAILED
        blob.ocr_failure_reason = reason

    def recover_stale_ocr_jobs(self, started_before):
        recovered = 0
        for blob in self.blobs.values():
            if blob.ocr_status == OcrStatus.PROCESSING and blob.ocr_started_at < started_before:
                blob.ocr_status = OcrStatus.QUEUED
                recovered += 1
        return recovered

    def ocr_queue_stats(self):
        stats: Dict[str, int] = {}
        for blob in self.blobs.values():
            stats[blob.ocr_status.value] = stats.get(blob.ocr_status.value, 0) + 1
        return stats

    def mark_ocr_reindexed(self, blob_id):
        self.blobs[blob_id].ocr_reindexed_at = _now()
        self.reindexed.append(blob_id)


class FakeStorage:
    """Counts writes; stores bytes under `mem://<hash>`."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.writes = 0

    def save(self, data, raw_hash, filename):
        self.writes += 1
        path = f"mem://{raw_hash}{Path(filename).suffix.lower()}"
        self.objects[path] = data
        return path

    def read(self, storage_path):
        return self.objects[storage_path]


@pytest.fixture
def blob_repo() -> FakeBlobRepository:
    return FakeBlobRepository()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def blob_store(blob_repo, storage) -> BlobStore:
    return BlobStore(blob_repo, storage)


# ---------------------------------------------------------------------------
# Sync ledger
# ---------------------------------------------------------------------------


class FakeSyncRepository:
    def __init__(self):
        self.rows: Dict[str, SyncRecord] = {}
        self._order: List[str] = []

    def exists(self, source_key):
        return any(r.source_key == source_key for r in self.rows.values())

    def insert_pending(self, record):
        if self.exists(record.source_key):
            return False
        self.rows[record.id] = record.model_copy(update={"status": SyncStatus.PENDING})
        self._order.append(record.id)
        return True

    def get(self, record_id):
        return self.rows.get(record_id)

    def next_pending(self, limit, town=None):
        pending = [
            self.rows[i] for i in self._order
            if self.rows[i].status == SyncStatus.PENDING and (town is None or self.rows[i].town == town.lower())
        ]
        return [r.model_copy() for r in pending[:limit]]

    def set_store_id(self, record_id, store_id):
        self.rows[record_id].store_id = store_id

    def _require_pending(self, record_id, target):
        if self.rows[record_id].status != SyncStatus.PENDING:
            raise InvalidTransition(f"Sync record {record_id} is not pending; cannot mark {target}")

    def mark_synced(self, record_id, document_id):
        self._require_pending(record_id, "synced")
        row = self.rows[record_id]
        row.status = SyncStatus.SYNCED
        row.search_document_id = document_id
        row.error_message = None
        row.synced_at = _now()

    def mark_failed(self, record_id, error_message):
        self._require_pending(record_id, "failed")
        row = self.rows[record_id]
        row.status = SyncStatus.FAILED
        row.error_message = error_message

    def reset_failed(self, town=None):
        count = 0
        for row in self.rows.values():
            if row.status == SyncStatus.FAILED and (town is None or row.town == town.lower()):
                row.status = SyncStatus.PENDING
                row.error_message = None
                count += 1
        return count

    def stats(self, town=None):
        rows = [r for r in self.rows.values() if town is None or r.town == town.lower()]
        return SyncStats(
            total=len(rows),
            synced=sum(1 for r in rows if r.status == SyncStatus.SYNCED),
            pending=sum(1 for r in rows if r.status == SyncStatus.PENDING),
            failed=sum(1 for r in rows if r.status == SyncStatus.FAILED),
        )


@pytest.fixture
def sync_repo() -> FakeSyncRepository:
    return FakeSyncRepository()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FakeRegistryTransaction:
    def __init__(self, repo):
        self.repo = repo

    def lock_or_create_document(self, canonical_title, town, board, category):
        for doc in self.repo.documents.values():
            if doc.canonical_title == canonical_title and doc.town == town:
                return doc.model_copy()
        doc = LogicalDocument(
            id=f"doc-{len(self.repo.documents) + 1}",
            canonical_title=canonical_title,
            town=town,
            board=board,
            category=category or "uncategorized",
        )
        self.repo.documents[doc.id] = doc
        return doc.model_copy()

    def insert_version(self, version):
        self.repo.insert_calls += 1
        if self.repo.fail_on_insert:
            raise RuntimeError("insert failed")
        stored = version.model_copy(update={"is_current": False, "created_at": _now()})
        self.repo.versions[stored.id] = stored
        return stored.model_copy()

    def clear_current(self, document_id):
        for version in self.repo.versions.values():
            if version.document_id == document_id:
                version.is_current = False

    def set_current(self, version_id):
        if self.repo.fail_on_set_current:
            raise RuntimeError("set_current failed")
        self.repo.versions[version_id].is_current = True

    def point_document(self, document_id, version_id):
        self.repo.documents[document_id].current_version_id = version_id


class FakeDocumentRepository:
    """Snapshot/restore on error stands in for a database rollback."""

    def __init__(self):
        self.documents: Dict[str, LogicalDocument] = {}
        self.versions: Dict[str, DocumentVersion] = {}
        self.insert_calls = 0
        self.fail_on_insert = False
        self.fail_on_set_current = False

    @contextmanager
    def transaction(self):
        snapshot = (copy.deepcopy(self.documents), copy.deepcopy(self.versions))
        try:
            yield FakeRegistryTransaction(self)
        except Exception:
            self.documents, self.versions = snapshot
            raise

    def get_document(self, document_id):
        return self.documents.get(document_id)

    def list_versions(self, document_id):
        return [v for v in self.versions.values() if v.document_id == document_id]


@pytest.fixture
def document_repo() -> FakeDocumentRepository:
    return FakeDocumentRepository()


@pytest.fixture
def registry(document_repo) -> Registry:
    return Registry(document_repo)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class FakeJobRepository:
    def __init__(self, blob_repo: FakeBlobRepository):
        self.blob_repo = blob_repo
        self.jobs: Dict[str, IngestionJob] = {}

    def create(self, job):
        stored = job.model_copy(update={"status": JobStatus.STAGING, "created_at": _now()})
        self.jobs[stored.id] = stored
        return stored.model_copy()

    def get(self, job_id):
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    def list(self, status=None, limit=50):
        jobs = [j for j in self.jobs.values() if status is None or j.status == status]
        return [j.model_copy() for j in jobs[:limit]]

    def transition(self, job_id, current, target, **updates):
        check_transition(current, target)
        job = self.jobs.get(job_id)
        if job is None or job.status != current:
            raise InvalidTransition(f"Job {job_id} is no longer {JobStatus(current).value}")
        job.status = JobStatus(target)
        for column, value in updates.items():
            setattr(job, column, value)

    def record_error(self, job_id, error):
        self.jobs[job_id].last_error = error

    def list_ocr_reindex_candidates(self, limit=10):
        candidates = []
        for job in self.jobs.values():
            blob = self.blob_repo.get(job.blob_id)
            if (
                job.status == JobStatus.INDEXED
                and blob.ocr_status == OcrStatus.COMPLETED
                and blob.ocr_reindexed_at is None
            ):
                candidates.append(job.model_copy())
        return candidates[:limit]


@pytest.fixture
def job_repo(blob_repo) -> FakeJobRepository:
    return FakeJobRepository(blob_repo)


# ---------------------------------------------------------------------------
# Remote services
# ---------------------------------------------------------------------------


class FakeIndexing:
    """Records uploads; `fail_on` names display-name substrings that raise."""

    def __init__(self):
        self.stores: Dict[str, str] = {}
        self.uploads: List[Dict[str, Any]] = []
        self.text_uploads: List[Dict[str, Any]] = []
        self.fail_on: List[str] = []

    def get_or_create_store(self, town):
        return self.stores.setdefault(town, f"fileSearchStores/{town}")

    def _check(self, display_name):
        for needle in self.fail_on:
            if needle in display_name:
                raise IndexingError("Failed to extract document ID from response")

    def upload(self, file_path, store_id, display_name, mime_type, metadata):
        self._check(display_name)
        self.uploads.append({
            "file_path": Path(file_path),
            "store_id": store_id,
            "display_name": display_name,
            "mime_type": mime_type,
            "metadata": metadata,
        })
        return f"documents/{len(self.uploads) + len(self.text_uploads)}"

    def upload_text(self, text, store_id, display_name, metadata):
        self._check(display_name)
        self.text_uploads.append({
            "text": text,
            "store_id": store_id,
            "display_name": display_name,
            "metadata": metadata,
        })
        return f"documents/{len(self.uploads) + len(self.text_uploads)}"


@pytest.fixture
def indexing() -> FakeIndexing:
    return FakeIndexing()


class FakeS3Client:
    """Serves list_objects_v2 in fixed pages and get_object from a dict."""

    def __init__(self, objects: Dict[str, bytes], page_size: int = 2):
        self.objects = objects
        self.page_size = page_size
        self.list_calls: List[Dict[str, Any]] = []

    def list_objects_v2(self, **params):
        self.list_calls.append(params)
        keys = sorted(k for k in self.objects if k.startswith(params.get("Prefix", "")))
        start = int(params.get("ContinuationToken", "0"))
        page = keys[start:start + self.page_size]
        response = {
            "Contents": [{"Key": k, "Size": len(self.objects[k])} for k in page],
            "IsTruncated": start + self.page_size < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    def get_object(self, Bucket, Key):
        return {"Body": io.BytesIO(self.objects[Key])}


@pytest.fixture
def bucket_objects() -> Dict[str, bytes]:
    return {
        "conway/minutes/Planning_Board/2024/Planning_Board_Minutes_03-15-2024.pdf": b"%PDF-1.4 conway minutes",
        "conway/agendas/Select_Board/2024/agenda_2024-04-02.pdf": b"%PDF-1.4 conway agenda",
        "conway/notes/": b"",
        "conway/readme.txt": b"not eligible",
        "jackson/Zoning_Ordinance_2023.pdf": b"%PDF-1.4 jackson zoning",
    }


@pytest.fixture
def s3_client(bucket_objects) -> FakeS3Client:
    return FakeS3Client(bucket_objects)


@pytest.fixture
def object_store(s3_client) -> S3ObjectStore:
    return S3ObjectStore(s3_client, "municipal-docs")


@pytest.fixture
def upload_operation():
    """Finished upload operation in the `response.document_name` shape."""
    def _make(document_name: Optional[str] = "fileSearchStores/conway/documents/abc"):
        return SimpleNamespace(
            name="operations/upload-1",
            done=True,
            error=None,
            response=SimpleNamespace(document_name=document_name, files=[]),
            document_name=None,
        )
    return _make
