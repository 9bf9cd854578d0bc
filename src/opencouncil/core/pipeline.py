"""Generic ingestion pipeline: analyze -> (OCR) -> index -> register.

The same pipeline drives the auto-sync ledger and the review ledger; a ledger
decides where work comes from and how outcomes are recorded.
"""

import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import psycopg

from .blob_store import BlobStore
from .errors import BlobStorageError, IngestError, OcrError, truncate_error
from .indexing import IndexingClient, build_display_name, build_metadata
from .logging_config import get_audit_logger, log_ingestion_event, log_ingestion_failure
from .models import DocumentVersion, ExtractedMetadata, FileBlob, OcrStatus, SyncRecord
from .object_store import S3ObjectStore
from .ocr import OcrEngine, ocr_surrogate
from .quality import analyze
from .registry import Registry
from .sync_ledger import SyncRepository, is_placeholder_store_id

logger = get_audit_logger("pipeline")


@dataclass
class WorkItem:
    """One file to ingest, independent of which ledger it came from."""
    item_id: str
    source_key: str
    metadata: ExtractedMetadata
    store_id: Optional[str] = None
    blob_id: Optional[str] = None


@dataclass
class IngestOutcome:
    blob: FileBlob
    store_id: str
    document_id: str
    version: DocumentVersion
    ocr_performed: bool
    extracted_chars: int


@dataclass
class BatchResult:
    processed: int = 0
    errors: int = 0


class SyncLedger:
    """Auto-sync work: pending s3_gemini_sync rows, no human approval."""

    requires_approval = False
    source = "s3_sync"

    def __init__(self, sync_repo: SyncRepository, object_store: S3ObjectStore, town: Optional[str] = None):
        self.sync_repo = sync_repo
        self.object_store = object_store
        self.town = town

    @staticmethod
    def to_work_item(record: SyncRecord) -> WorkItem:
        metadata = ExtractedMetadata(
            town=record.town,
            category=record.category or "uncategorized",
            board=record.board,
            year=record.year,
            meeting_date=record.meeting_date,
            is_minutes=record.is_minutes,
            filename=record.source_key.rsplit("/", 1)[-1],
        )
        return WorkItem(
            item_id=record.id,
            source_key=record.source_key,
            metadata=metadata,
            store_id=record.store_id,
        )

    def next_batch(self, limit: int) -> List[WorkItem]:
        return [self.to_work_item(r) for r in self.sync_repo.next_pending(limit, self.town)]

    def fetch(self, item: WorkItem, work_dir: Path) -> Path:
        return self.object_store.download(item.source_key, work_dir / item.metadata.filename)

    def location(self, item: WorkItem) -> Optional[str]:
        return f"s3://{self.object_store.bucket}/{item.source_key}"

    def resolve_store(self, item: WorkItem, store_id: str) -> None:
        if item.store_id is None or is_placeholder_store_id(item.store_id):
            self.sync_repo.set_store_id(item.item_id, store_id)
            item.store_id = store_id

    def mark_success(self, item: WorkItem, outcome: IngestOutcome) -> None:
        self.sync_repo.mark_synced(item.item_id, outcome.document_id)

    def mark_failure(self, item: WorkItem, error: str) -> None:
        self.sync_repo.mark_failed(item.item_id, error)


class IngestionPipeline:
    """Runs one work item through analysis, OCR escalation, indexing and the registry."""

    def __init__(
        self,
        blob_store: BlobStore,
        indexing: IndexingClient,
        registry: Registry,
        ocr_engine: Optional[OcrEngine] = None,
        ocr_threshold: int = 1200
    ):
        self.blob_store = blob_store
        self.indexing = indexing
        self.registry = registry
        self.ocr_engine = ocr_engine
        self.ocr_threshold = ocr_threshold

    def process(self, item: WorkItem, ledger) -> IngestOutcome:
        start_time = time.time()
        meta = item.metadata

        store_id = self.indexing.get_or_create_store(meta.town)
        ledger.resolve_store(item, store_id)

        with tempfile.TemporaryDirectory(prefix="ingest-") as tmp:
            local_path = ledger.fetch(item, Path(tmp))

            if item.blob_id:
                blob = self.blob_store.get(item.blob_id)
                if blob is None:
                    raise BlobStorageError(f"Blob {item.blob_id} not found", "ENOENT")
            else:
                blob = self.blob_store.save_blob(
                    local_path.read_bytes(), meta.filename, location=ledger.location(item)
                )

            analysis = analyze(local_path, meta.filename, self.ocr_threshold)
            if blob.ocr_status != OcrStatus.COMPLETED:
                # A completed OCR preview is better than the native one.
                self.blob_store.record_analysis(blob.id, analysis)

            ocr_text = None
            if analysis.needs_ocr:
                logger.info(
                    "ocr_needed",
                    source_key=item.source_key,
                    extracted_chars=analysis.extracted_char_count,
                )
                ocr_text = self._ocr(blob, local_path)

            display_name = build_display_name(meta, ocr=ocr_text is not None)
            custom_metadata = build_metadata(meta, source=ledger.source)
            if ocr_text is not None:
                surrogate = ocr_surrogate(ocr_text, item.source_key, meta.town, meta.board, meta.category)
                document_id = self.indexing.upload_text(surrogate, store_id, display_name, custom_metadata)
            else:
                document_id = self.indexing.upload(
                    local_path, store_id, display_name, analysis.mime_type, custom_metadata
                )

        version = self.registry.link_version(
            meta.town,
            build_display_name(meta),
            blob.id,
            document_id,
            store_id,
            meta,
        )
        outcome = IngestOutcome(
            blob=blob,
            store_id=store_id,
            document_id=document_id,
            version=version,
            ocr_performed=ocr_text is not None,
            extracted_chars=analysis.extracted_char_count,
        )
        ledger.mark_success(item, outcome)

        log_ingestion_event(
            logger,
            source_key=item.source_key,
            blob_id=blob.id,
            store_id=store_id,
            document_id=document_id,
            version_id=version.id,
            extracted_chars=analysis.extracted_char_count,
            ocr_performed=outcome.ocr_performed,
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        return outcome

    def _ocr(self, blob: FileBlob, local_path: Path) -> Optional[str]:
        """OCR text for a blob, or None to fall back to the original binary."""
        if blob.ocr_status == OcrStatus.COMPLETED and blob.ocr_text:
            return blob.ocr_text
        if self.ocr_engine is None:
            return None

        try:
            text = self.ocr_engine.ocr_file(local_path)
        except OcrError as e:
            logger.warning("ocr_failed_fallback_to_original", blob_id=blob.id, error=str(e))
            self.blob_store.record_ocr_failure(blob.id, truncate_error(e))
            return None

        self.blob_store.record_ocr_result(blob.id, text)
        return text


class BatchWorker:
    """Pulls a bounded batch from a ledger and processes items one at a time."""

    def __init__(self, pipeline: IngestionPipeline, ledger, batch_size: int = 1):
        self.pipeline = pipeline
        self.ledger = ledger
        self.batch_size = batch_size

    def run_batch(self) -> BatchResult:
        result = BatchResult()
        items = self.ledger.next_batch(self.batch_size)
        if items:
            logger.info("batch_started", items=len(items), requires_approval=self.ledger.requires_approval)

        for item in items:
            try:
                self.pipeline.process(item, self.ledger)
                result.processed += 1
            except Exception as e:
                # One item's failure never stops the batch.
                error = truncate_error(e)
                result.errors += 1
                log_ingestion_failure(
                    logger,
                    source_key=item.source_key,
                    item_id=item.item_id,
                    error=error,
                    requires_approval=self.ledger.requires_approval,
                )
                self._record_failure(item, error)
        return result

    def _record_failure(self, item: WorkItem, error: str) -> None:
        try:
            self.ledger.mark_failure(item, error)
        except (IngestError, psycopg.Error) as e:
            # Typically the item was already settled by another worker.
            log_ingestion_failure(
                logger,
                source_key=item.source_key,
                item_id=item.item_id,
                error=f"Could not record failure: {truncate_error(e)}",
                requires_approval=self.ledger.requires_approval,
            )

    def run_until_empty(self, pause_seconds: float = 1.0, sleep=time.sleep) -> BatchResult:
        """Repeat batches until one comes back empty."""
        total = BatchResult()
        while True:
            result = self.run_batch()
            total.processed += result.processed
            total.errors += result.errors
            if result.processed == 0 and result.errors == 0:
                logger.info("queue_empty", processed=total.processed, errors=total.errors)
                return total
            sleep(pause_seconds)
