"""Gemini File Search client: per-town stores and document uploads."""

import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from google import genai
from google.genai import errors
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .db import connect
from .errors import IndexingError
from .models import ExtractedMetadata

logger = logging.getLogger(__name__)

STORE_DISPLAY_PREFIX = "OPENCouncil - "
DEFAULT_SOURCE = "s3_sync"
CHUNKING_CONFIG = {
    "white_space_config": {
        "max_tokens_per_chunk": 200,
        "max_overlap_tokens": 20,
    }
}


def capitalize_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def store_display_name(town: str) -> str:
    return f"{STORE_DISPLAY_PREFIX}{capitalize_first(town)}"


def build_display_name(metadata: ExtractedMetadata, ocr: bool = False) -> str:
    """`[Town - Board - Meeting YYYY-MM-DD] filename`, falling back to the year."""
    parts = []
    if metadata.town:
        parts.append(capitalize_first(metadata.town))
    if metadata.board:
        parts.append(metadata.board)
    if metadata.meeting_date:
        parts.append(f"Meeting {metadata.meeting_date.isoformat()}")
    elif metadata.year:
        parts.append(str(metadata.year))

    name = f"[{' - '.join(parts)}] {metadata.filename}" if parts else metadata.filename
    return f"{name} (OCR)" if ocr else name


def build_metadata(metadata: ExtractedMetadata, source: str = DEFAULT_SOURCE) -> List[Dict[str, str]]:
    """Key/value pairs attached to the remote document for filtering."""
    custom = [
        {"key": "category", "string_value": "meeting_minutes" if metadata.is_minutes else metadata.category},
        {"key": "town", "string_value": metadata.town},
        {"key": "source", "string_value": source},
    ]
    if metadata.board:
        custom.append({"key": "board", "string_value": metadata.board})
    if metadata.year:
        custom.append({"key": "year", "string_value": str(metadata.year)})
    if metadata.is_minutes:
        custom.append({"key": "isMinutes", "string_value": "true"})
    if metadata.meeting_date:
        custom.append({"key": "meetingDate", "string_value": metadata.meeting_date.isoformat()})
    return custom


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        if name in obj:
            return obj[name]
        camel = name.split("_")[0] + "".join(p.title() for p in name.split("_")[1:])
        return obj.get(camel)
    return getattr(obj, name, None)


def extract_document_id(operation: Any) -> Optional[str]:
    """Document id from any of the known upload response shapes."""
    response = _field(operation, "response")
    document_id = _field(response, "document_name") or _field(operation, "document_name")
    if document_id:
        return document_id

    files = _field(response, "files") or []
    if files:
        return _field(files[0], "name")
    return None


class StoreCache:
    """Town to store-id memo with a time-to-live."""

    def __init__(self, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, town: str) -> Optional[str]:
        entry = self._entries.get(town)
        if entry is None:
            return None
        store_id, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[town]
            return None
        return store_id

    def put(self, town: str, store_id: str) -> None:
        self._entries[town] = (store_id, self.clock() + self.ttl_seconds)

    def invalidate(self, town: Optional[str] = None) -> None:
        if town is None:
            self._entries.clear()
        else:
            self._entries.pop(town, None)


class StoreRepository:
    """Persisted town to store-id mapping in search_stores."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def get(self, town: str) -> Optional[str]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT store_id FROM search_stores WHERE town = %s", (town,))
                row = cur.fetchone()
        return row["store_id"] if row else None

    def save(self, town: str, store_id: str, display_name: str) -> str:
        """Record a store; if another process recorded one first, return that one."""
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO search_stores (town, store_id, display_name)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (town) DO NOTHING
                """, (town, store_id, display_name))
                cur.execute("SELECT store_id FROM search_stores WHERE town = %s", (town,))
                row = cur.fetchone()
            conn.commit()
        return row["store_id"]


class IndexingClient:
    """Uploads documents to per-town File Search stores."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Any = None,
        store_repo: Optional[StoreRepository] = None,
        cache: Optional[StoreCache] = None,
        poll_interval: float = 2.0,
        max_polls: int = 150,
        sleep: Callable[[float], None] = time.sleep
    ):
        if client is None:
            if not api_key:
                raise IndexingError("GEMINI_API_KEY is required for the indexing client")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.store_repo = store_repo
        self.cache = cache or StoreCache()
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sleep = sleep

    def get_or_create_store(self, town: str) -> str:
        """Resolve the store for a town, creating it remotely on first use."""
        cached = self.cache.get(town)
        if cached:
            return cached

        if self.store_repo is not None:
            persisted = self.store_repo.get(town)
            if persisted:
                self.cache.put(town, persisted)
                return persisted

        display_name = store_display_name(town)
        store = self._create_store(display_name)
        store_id = _field(store, "name")
        if not store_id:
            raise IndexingError(f"Failed to create store for {town}")
        logger.info(f"Created store for {town}: {store_id}")

        if self.store_repo is not None:
            winner = self.store_repo.save(town, store_id, display_name)
            if winner != store_id:
                logger.warning(f"Store for {town} was created concurrently; using {winner}")
            store_id = winner

        self.cache.put(town, store_id)
        return store_id

    @retry(
        retry=retry_if_exception_type(errors.ServerError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    def _create_store(self, display_name: str) -> Any:
        return self.client.file_search_stores.create(config={"display_name": display_name})

    @retry(
        retry=retry_if_exception_type(errors.ServerError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    def _start_upload(
        self,
        file_path: Path,
        store_id: str,
        display_name: str,
        mime_type: str,
        custom_metadata: List[Dict[str, str]]
    ) -> Any:
        return self.client.file_search_stores.upload_to_file_search_store(
            file=str(file_path),
            file_search_store_name=store_id,
            config={
                "display_name": display_name,
                "mime_type": mime_type,
                "custom_metadata": custom_metadata,
                "chunking_config": CHUNKING_CONFIG,
            },
        )

    def _wait(self, operation: Any) -> Any:
        polls = 0
        while not _field(operation, "done"):
            if polls >= self.max_polls:
                raise IndexingError(f"Upload operation {_field(operation, 'name')} did not finish")
            self.sleep(self.poll_interval)
            operation = self.client.operations.get(operation)
            polls += 1

        error = _field(operation, "error")
        if error:
            raise IndexingError(f"Upload operation failed: {error}")
        return operation

    def upload(
        self,
        file_path: Path,
        store_id: str,
        display_name: str,
        mime_type: str,
        metadata: List[Dict[str, str]]
    ) -> str:
        """Upload a local file and return the remote document id.

        Raises:
            IndexingError: if the finished operation carries no document id
        """
        operation = self._start_upload(Path(file_path), store_id, display_name, mime_type, metadata)
        operation = self._wait(operation)

        document_id = extract_document_id(operation)
        if not document_id:
            raise IndexingError("Failed to extract document ID from response")
        logger.info(f"Uploaded {display_name} to {store_id}: {document_id}")
        return document_id

    def upload_text(
        self,
        text: str,
        store_id: str,
        display_name: str,
        metadata: List[Dict[str, str]]
    ) -> str:
        """Upload a text surrogate as text/plain."""
        with tempfile.TemporaryDirectory(prefix="surrogate-") as tmp:
            text_path = Path(tmp) / "document.txt"
            text_path.write_text(text, encoding="utf-8")
            return self.upload(text_path, store_id, display_name, "text/plain", metadata)
