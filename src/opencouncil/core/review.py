"""Manual upload and review pipeline."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg
from google.genai import errors as genai_errors

from .blob_store import BlobStore, calculate_preview_hash, calculate_sha256
from .db import new_id
from .errors import IngestError, truncate_error
from .indexing import IndexingClient, build_display_name, build_metadata
from .jobs import JobRepository
from .logging_config import get_audit_logger
from .metadata import extract_metadata, infer_metadata
from .models import ExtractedMetadata, IngestionJob, JobStatus, QualityAnalysis
from .ocr import ocr_surrogate
from .pipeline import BatchResult, BatchWorker, IngestOutcome, IngestionPipeline, WorkItem
from .quality import analyze
from .registry import Registry

logger = get_audit_logger("review")

UPLOAD_SOURCE = "upload"


def suggest_metadata(name_or_key: str) -> ExtractedMetadata:
    """Filename heuristics; a leading path segment is taken as the town."""
    if "/" in name_or_key.strip("/"):
        return extract_metadata(name_or_key)
    return infer_metadata(Path(name_or_key).name)


def job_metadata(job: IngestionJob) -> ExtractedMetadata:
    meta = ExtractedMetadata(**(job.final_metadata or job.suggested_metadata))
    meta.is_minutes = meta.category == "minutes"
    return meta


class ReviewLedger:
    """Review work: approved ingestion jobs. Only this ledger moves a job to indexed."""

    requires_approval = True
    source = UPLOAD_SOURCE

    def __init__(self, job_repo: JobRepository, blob_store: BlobStore):
        self.job_repo = job_repo
        self.blob_store = blob_store

    def next_batch(self, limit: int) -> List[WorkItem]:
        items = []
        for job in self.job_repo.list(JobStatus.APPROVED, limit):
            meta = job_metadata(job)
            items.append(WorkItem(
                item_id=job.id,
                source_key=meta.filename,
                metadata=meta,
                blob_id=job.blob_id,
            ))
        return items

    def fetch(self, item: WorkItem, work_dir: Path) -> Path:
        blob = self.blob_store.get(item.blob_id)
        local_path = work_dir / Path(blob.original_filename).name
        local_path.write_bytes(self.blob_store.read_blob(blob))
        return local_path

    def location(self, item: WorkItem) -> Optional[str]:
        return None

    def resolve_store(self, item: WorkItem, store_id: str) -> None:
        item.store_id = store_id

    def mark_success(self, item: WorkItem, outcome: IngestOutcome) -> None:
        self.job_repo.transition(
            item.item_id,
            JobStatus.APPROVED,
            JobStatus.INDEXED,
            document_id=outcome.version.document_id,
            version_id=outcome.version.id,
            last_error=None,
        )

    def mark_failure(self, item: WorkItem, error: str) -> None:
        # The job stays approved so the failure is visible and retryable.
        self.job_repo.record_error(item.item_id, error)


class ReviewService:
    """Stage uploads, record reviewer decisions and index approved jobs."""

    def __init__(
        self,
        blob_store: BlobStore,
        job_repo: JobRepository,
        pipeline: IngestionPipeline,
        indexing: IndexingClient,
        registry: Registry,
        ocr_threshold: int = 1200,
        ocr_enabled: bool = True
    ):
        self.blob_store = blob_store
        self.job_repo = job_repo
        self.pipeline = pipeline
        self.indexing = indexing
        self.registry = registry
        self.ocr_threshold = ocr_threshold
        self.ocr_enabled = ocr_enabled
        self.ledger = ReviewLedger(job_repo, blob_store)

    def stage_upload(self, file_path: Path, source_key: Optional[str] = None) -> IngestionJob:
        """Store, analyze and queue a file for review.

        A file that cannot be analyzed is still staged with default metadata so it
        shows up in the review queue.
        """
        file_path = Path(file_path)
        data = file_path.read_bytes()
        raw_hash = calculate_sha256(data)

        analysis: Optional[QualityAnalysis] = None
        try:
            analysis = analyze(file_path, file_path.name, self.ocr_threshold)
        except Exception as e:
            logger.warning("analysis_failed", filename=file_path.name, error=str(e))

        preview_hash = calculate_preview_hash(analysis.preview_text) if analysis else None
        duplicates = self.blob_store.find_duplicates(raw_hash, preview_hash)

        blob = self.blob_store.save_blob(data, file_path.name)
        if analysis is not None and duplicates.exact is None:
            self.blob_store.record_analysis(blob.id, analysis)
            if analysis.needs_ocr and self.ocr_enabled:
                self.blob_store.queue_for_ocr(blob.id)

        suggested = suggest_metadata(source_key or file_path.name)
        job = self.job_repo.create(IngestionJob(
            id=new_id(),
            blob_id=blob.id,
            suggested_metadata=suggested.model_dump(mode="json"),
            duplicate_warning=duplicates.warning(),
            last_error=None if analysis else "Analysis failed; review metadata manually",
        ))
        self.job_repo.transition(job.id, JobStatus.STAGING, JobStatus.NEEDS_REVIEW)

        logger.info(
            "upload_staged",
            job_id=job.id,
            blob_id=blob.id,
            filename=file_path.name,
            duplicate_warning=job.duplicate_warning,
            needs_ocr=analysis.needs_ocr if analysis else None,
        )
        return self.job_repo.get(job.id)

    def _require(self, job_id: str) -> IngestionJob:
        job = self.job_repo.get(job_id)
        if job is None:
            raise IngestError(f"Ingestion job {job_id} not found")
        return job

    def approve(self, job_id: str, final_metadata: Optional[Dict[str, Any]] = None) -> IngestionJob:
        job = self._require(job_id)
        merged = dict(job.suggested_metadata)
        overrides = {k: v for k, v in (final_metadata or {}).items() if v not in (None, "")}
        merged.update(overrides)
        meta = ExtractedMetadata(**merged)
        meta.town = meta.town.lower()
        if meta.meeting_date is not None:
            meta.year = meta.meeting_date.year
        meta.is_minutes = meta.category == "minutes"

        self.job_repo.transition(
            job.id, job.status, JobStatus.APPROVED, final_metadata=meta.model_dump(mode="json")
        )
        logger.info("job_approved", job_id=job.id, town=meta.town, category=meta.category)
        return self.job_repo.get(job.id)

    def reject(self, job_id: str) -> IngestionJob:
        job = self._require(job_id)
        self.job_repo.transition(job.id, job.status, JobStatus.REJECTED)
        logger.info("job_rejected", job_id=job.id)
        return self.job_repo.get(job.id)

    def index_approved(self, limit: int = 10) -> BatchResult:
        worker = BatchWorker(self.pipeline, self.ledger, batch_size=limit)
        return worker.run_batch()

    def reindex_ocr_completed(self, limit: int = 10) -> int:
        """Re-upload OCR text for indexed jobs and make it the current version."""
        reindexed = 0
        for job in self.job_repo.list_ocr_reindex_candidates(limit):
            blob = self.blob_store.get(job.blob_id)
            meta = job_metadata(job)
            try:
                store_id = self.indexing.get_or_create_store(meta.town)
                surrogate = ocr_surrogate(blob.ocr_text or "", meta.filename, meta.town, meta.board, meta.category)
                document_id = self.indexing.upload_text(
                    surrogate,
                    store_id,
                    build_display_name(meta, ocr=True),
                    build_metadata(meta, source=UPLOAD_SOURCE),
                )
                self.registry.link_version(
                    meta.town,
                    build_display_name(meta),
                    blob.id,
                    document_id,
                    store_id,
                    meta,
                    notes="OCR reindex",
                )
            except (IngestError, genai_errors.APIError, psycopg.Error) as e:
                logger.warning("ocr_reindex_failed", job_id=job.id, error=truncate_error(e))
                continue

            self.blob_store.mark_ocr_reindexed(blob.id)
            reindexed += 1
        return reindexed
