"""Wire settings into concrete repositories, clients and services."""

from dataclasses import dataclass
from typing import Optional

from .blob_store import BlobRepository, BlobStorage, BlobStore, LocalBlobStorage, S3BlobStorage
from .config import Settings
from .discovery import Discovery
from .indexing import IndexingClient, StoreCache, StoreRepository
from .jobs import JobRepository
from .object_store import S3ObjectStore, create_s3_client
from .ocr import OcrEngine, OcrQueueWorker
from .pipeline import BatchWorker, IngestionPipeline, SyncLedger
from .registry import DocumentRepository, Registry
from .review import ReviewService
from .sync_ledger import SyncRepository


@dataclass
class Services:
    settings: Settings
    object_store: S3ObjectStore
    sync_repo: SyncRepository
    blob_store: BlobStore
    indexing: IndexingClient
    registry: Registry
    discovery: Discovery
    pipeline: IngestionPipeline
    review: ReviewService
    ocr_worker: OcrQueueWorker

    def sync_worker(self, town: Optional[str] = None) -> BatchWorker:
        ledger = SyncLedger(self.sync_repo, self.object_store, town)
        return BatchWorker(self.pipeline, ledger, batch_size=self.settings.batch_size)


def build_services(settings: Settings) -> Services:
    s3_client = create_s3_client(settings.aws_region)
    object_store = S3ObjectStore(s3_client, settings.s3_bucket)

    storage = BlobStorage(
        LocalBlobStorage(settings.blob_local_dir),
        primary=S3BlobStorage(s3_client, settings.blob_bucket) if settings.blob_bucket else None,
        reader=S3BlobStorage(s3_client, settings.s3_bucket),
    )
    blob_store = BlobStore(BlobRepository(settings.database_url), storage)

    indexing = IndexingClient(
        api_key=settings.gemini_api_key,
        store_repo=StoreRepository(settings.database_url),
        cache=StoreCache(settings.store_cache_ttl_seconds),
    )
    registry = Registry(DocumentRepository(settings.database_url))
    sync_repo = SyncRepository(settings.database_url)
    ocr_engine = OcrEngine(settings.ocr_dpi, settings.ocr_language)

    pipeline = IngestionPipeline(
        blob_store,
        indexing,
        registry,
        ocr_engine=ocr_engine if settings.ocr_enabled else None,
        ocr_threshold=settings.ocr_min_char_threshold,
    )
    # Review uploads use the OCR queue rather than inline OCR.
    review_pipeline = IngestionPipeline(
        blob_store, indexing, registry, ocr_engine=None, ocr_threshold=settings.ocr_min_char_threshold
    )
    review = ReviewService(
        blob_store,
        JobRepository(settings.database_url),
        review_pipeline,
        indexing,
        registry,
        ocr_threshold=settings.ocr_min_char_threshold,
        ocr_enabled=settings.ocr_enabled,
    )

    return Services(
        settings=settings,
        object_store=object_store,
        sync_repo=sync_repo,
        blob_store=blob_store,
        indexing=indexing,
        registry=registry,
        discovery=Discovery(object_store, sync_repo, settings.eligible_extensions),
        pipeline=pipeline,
        review=review,
        ocr_worker=OcrQueueWorker(blob_store, ocr_engine),
    )
