"""Records shared across the ingestion pipeline."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OcrStatus(str, Enum):
    NONE = "none"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    STAGING = "staging"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    INDEXED = "indexed"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class FileBlob(BaseModel):
    """Physical file identity, keyed by the sha256 of its bytes."""
    id: str
    raw_hash: str
    preview_hash: Optional[str] = None
    size_bytes: int
    mime_type: str
    original_filename: str
    storage_path: str
    preview_text: Optional[str] = None
    extracted_text_char_count: Optional[int] = None
    needs_ocr: bool = False
    ocr_status: OcrStatus = OcrStatus.NONE
    ocr_text: Optional[str] = None
    ocr_text_char_count: Optional[int] = None
    ocr_failure_reason: Optional[str] = None
    ocr_queued_at: Optional[datetime] = None
    ocr_started_at: Optional[datetime] = None
    ocr_completed_at: Optional[datetime] = None
    ocr_reindexed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DuplicateMatch(BaseModel):
    """Result of a duplicate lookup; both sides are advisory."""
    exact: Optional[FileBlob] = None
    preview: Optional[FileBlob] = None

    def warning(self) -> Optional[str]:
        if self.exact is not None:
            return f"exact_duplicate:{self.exact.original_filename}"
        if self.preview is not None:
            return f"preview_match:{self.preview.original_filename}"
        return None


class ExtractedMetadata(BaseModel):
    """Tenant, category and dating derived from a source key."""
    town: str = "unknown"
    category: str = "uncategorized"
    board: Optional[str] = None
    year: Optional[int] = None
    meeting_date: Optional[date] = None
    is_minutes: bool = False
    filename: str = ""


class QualityAnalysis(BaseModel):
    needs_ocr: bool
    extracted_char_count: int
    mime_type: str
    preview_text: str = ""


class LogicalDocument(BaseModel):
    id: str
    canonical_title: str
    town: str
    board: Optional[str] = None
    category: Optional[str] = None
    current_version_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentVersion(BaseModel):
    id: str
    document_id: str
    blob_id: Optional[str] = None
    year: Optional[int] = None
    notes: Optional[str] = None
    store_id: str
    search_document_id: str
    is_current: bool = False
    supersedes_version_id: Optional[str] = None
    is_minutes: bool = False
    meeting_date: Optional[date] = None
    created_at: Optional[datetime] = None


class IngestionJob(BaseModel):
    """Review-pipeline work item wrapping a FileBlob."""
    id: str
    blob_id: str
    status: JobStatus = JobStatus.STAGING
    suggested_metadata: Dict[str, Any] = Field(default_factory=dict)
    final_metadata: Optional[Dict[str, Any]] = None
    duplicate_warning: Optional[str] = None
    document_id: Optional[str] = None
    version_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncRecord(BaseModel):
    """Auto-sync work item, one per discovered source key."""
    id: str
    source_key: str
    town: str
    store_id: str
    category: Optional[str] = None
    board: Optional[str] = None
    year: Optional[int] = None
    meeting_date: Optional[date] = None
    size_bytes: int = 0
    is_minutes: bool = False
    status: SyncStatus = SyncStatus.PENDING
    search_document_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None


class SyncStats(BaseModel):
    total: int = 0
    synced: int = 0
    pending: int = 0
    failed: int = 0
