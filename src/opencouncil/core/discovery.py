"""Discovery: register unseen bucket objects as pending sync records."""

import time
from dataclasses import dataclass
from typing import Optional, Sequence

from .db import new_id
from .logging_config import get_audit_logger, log_discovery_event
from .metadata import extract_metadata
from .models import SyncRecord
from .object_store import S3ObjectStore
from .sync_ledger import SyncRepository, placeholder_store_id

logger = get_audit_logger("discovery")


@dataclass
class DiscoveryResult:
    scanned: int = 0
    added: int = 0


class Discovery:
    """Walks the bucket listing and inserts pending rows; reruns add nothing new."""

    def __init__(
        self,
        object_store: S3ObjectStore,
        sync_repo: SyncRepository,
        extensions: Sequence[str] = (".pdf",)
    ):
        self.object_store = object_store
        self.sync_repo = sync_repo
        self.extensions = tuple(ext.lower() for ext in extensions)

    def discover(self, tenant_filter: Optional[str] = None) -> DiscoveryResult:
        start_time = time.time()
        prefix = f"{tenant_filter.strip('/').lower()}/" if tenant_filter else ""
        logger.info("discovery_started", prefix=prefix or "*")

        result = DiscoveryResult()
        for obj in self.object_store.list_objects(prefix, self.extensions):
            result.scanned += 1
            if self.sync_repo.exists(obj.key):
                continue

            # Never raises; malformed keys fall back to defaults.
            meta = extract_metadata(obj.key)
            record = SyncRecord(
                id=new_id(),
                source_key=obj.key,
                town=meta.town,
                store_id=placeholder_store_id(meta.town),
                category=meta.category,
                board=meta.board,
                year=meta.year,
                meeting_date=meta.meeting_date,
                is_minutes=meta.is_minutes,
                size_bytes=obj.size,
            )
            if self.sync_repo.insert_pending(record):
                result.added += 1

        log_discovery_event(
            logger,
            prefix=prefix,
            scanned=result.scanned,
            added=result.added,
            execution_time_ms=(time.time() - start_time) * 1000,
        )
        return result
