"""Unit tests for the File Search indexing client."""

from datetime import date
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from opencouncil.core.errors import IndexingError
from opencouncil.core.indexing import (
    IndexingClient,
    StoreCache,
    build_display_name,
    build_metadata,
    extract_document_id,
    store_display_name,
)
from opencouncil.core.models import ExtractedMetadata


@pytest.fixture
def minutes_meta() -> ExtractedMetadata:
    return ExtractedMetadata(
        town="conway",
        category="minutes",
        board="Planning Board",
        year=2024,
        meeting_date=date(2024, 3, 15),
        is_minutes=True,
        filename="pb_minutes.pdf",
    )


class TestDisplayNames:
    def test_meeting_date_preferred(self, minutes_meta):
        assert build_display_name(minutes_meta) == "[Conway - Planning Board - Meeting 2024-03-15] pb_minutes.pdf"

    def test_year_fallback_and_ocr_suffix(self):
        meta = ExtractedMetadata(town="jackson", category="ordinances", year=2023, filename="z.pdf")
        assert build_display_name(meta, ocr=True) == "[Jackson - 2023] z.pdf (OCR)"

    def test_store_display_name(self):
        assert store_display_name("conway") == "OPENCouncil - Conway"


class TestCustomMetadata:
    def test_minutes_keys(self, minutes_meta):
        pairs = {m["key"]: m["string_value"] for m in build_metadata(minutes_meta)}
        assert pairs == {
            "category": "meeting_minutes",
            "town": "conway",
            "source": "s3_sync",
            "board": "Planning Board",
            "year": "2024",
            "isMinutes": "true",
            "meetingDate": "2024-03-15",
        }

    def test_optional_keys_omitted(self):
        pairs = {m["key"] for m in build_metadata(ExtractedMetadata(town="x", filename="f.pdf"), source="upload")}
        assert pairs == {"category", "town", "source"}


class TestDocumentIdExtraction:
    def test_response_document_name(self, upload_operation):
        assert extract_document_id(upload_operation("documents/1")) == "documents/1"

    def test_operation_document_name(self):
        op = SimpleNamespace(response=None, document_name="documents/2")
        assert extract_document_id(op) == "documents/2"

    def test_files_list_shape(self):
        op = {"response": {"files": [{"name": "documents/3"}]}}
        assert extract_document_id(op) == "documents/3"

    def test_camel_case_dict(self):
        assert extract_document_id({"response": {"documentName": "documents/4"}}) == "documents/4"

    def test_no_known_shape(self, upload_operation):
        assert extract_document_id(upload_operation(None)) is None


class TestIndexingClient:
    def test_upload_returns_document_id(self, upload_operation, tmp_path, minutes_meta):
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = upload_operation("documents/9")
        indexing = IndexingClient(client=client)

        document_id = indexing.upload(
            tmp_path / "a.pdf", "fileSearchStores/conway", "name", "application/pdf", build_metadata(minutes_meta)
        )

        assert document_id == "documents/9"
        kwargs = client.file_search_stores.upload_to_file_search_store.call_args.kwargs
        assert kwargs["file_search_store_name"] == "fileSearchStores/conway"
        assert kwargs["config"]["mime_type"] == "application/pdf"

    def test_missing_document_id_raises(self, upload_operation, tmp_path):
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = upload_operation(None)
        indexing = IndexingClient(client=client)

        with pytest.raises(IndexingError, match="Failed to extract document ID"):
            indexing.upload(tmp_path / "a.pdf", "store", "name", "application/pdf", [])

    def test_polls_until_done(self, upload_operation, tmp_path):
        pending = SimpleNamespace(name="operations/1", done=False, error=None)
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = pending
        client.operations.get.side_effect = [pending, upload_operation("documents/5")]
        sleeps = []
        indexing = IndexingClient(client=client, sleep=sleeps.append, poll_interval=0.5)

        assert indexing.upload(tmp_path / "a.pdf", "store", "name", "application/pdf", []) == "documents/5"
        assert sleeps == [0.5, 0.5]

    def test_operation_timeout(self, tmp_path):
        pending = SimpleNamespace(name="operations/1", done=False, error=None)
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = pending
        client.operations.get.return_value = pending
        indexing = IndexingClient(client=client, sleep=lambda _: None, max_polls=3)

        with pytest.raises(IndexingError, match="did not finish"):
            indexing.upload(tmp_path / "a.pdf", "store", "name", "application/pdf", [])

    def test_operation_error(self, tmp_path):
        failed = SimpleNamespace(name="operations/1", done=True, error={"message": "bad file"})
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = failed

        with pytest.raises(IndexingError, match="bad file"):
            IndexingClient(client=client).upload(tmp_path / "a.pdf", "store", "name", "application/pdf", [])

    def test_upload_text_sends_plain_text(self, upload_operation):
        client = MagicMock()
        client.file_search_stores.upload_to_file_search_store.return_value = upload_operation("documents/7")

        assert IndexingClient(client=client).upload_text("hello", "store", "name (OCR)", []) == "documents/7"
        kwargs = client.file_search_stores.upload_to_file_search_store.call_args.kwargs
        assert kwargs["config"]["mime_type"] == "text/plain"
        assert kwargs["file"].endswith("document.txt")

    def test_store_is_created_once(self):
        client = MagicMock()
        client.file_search_stores.create.return_value = SimpleNamespace(name="fileSearchStores/conway-1")
        indexing = IndexingClient(client=client)

        assert indexing.get_or_create_store("conway") == "fileSearchStores/conway-1"
        assert indexing.get_or_create_store("conway") == "fileSearchStores/conway-1"
        client.file_search_stores.create.assert_called_once_with(config={"display_name": "OPENCouncil - Conway"})

    def test_persisted_store_is_reused(self):
        client = MagicMock()
        store_repo = MagicMock()
        store_repo.get.return_value = "fileSearchStores/existing"

        assert IndexingClient(client=client, store_repo=store_repo).get_or_create_store("conway") == "fileSearchStores/existing"
        client.file_search_stores.create.assert_not_called()

    def test_concurrent_creation_uses_winner(self):
        client = MagicMock()
        client.file_search_stores.create.return_value = SimpleNamespace(name="fileSearchStores/mine")
        store_repo = MagicMock()
        store_repo.get.return_value = None
        store_repo.save.return_value = "fileSearchStores/theirs"

        assert IndexingClient(client=client, store_repo=store_repo).get_or_create_store("conway") == "fileSearchStores/theirs"

    def test_requires_api_key_without_client(self):
        with pytest.raises(IndexingError):
            IndexingClient()


class TestStoreCache:
    def test_entries_expire(self):
        now = [100.0]
        cache = StoreCache(ttl_seconds=10, clock=lambda: now[0])
        cache.put("conway", "store-1")
        assert cache.get("conway") == "store-1"
        now[0] = 110.0
        assert cache.get("conway") is None

    def test_invalidate(self):
        cache = StoreCache()
        cache.put("a", "1")
        cache.put("b", "2")
        cache.invalidate("a")
        assert cache.get("a") is None and cache.get("b") == "2"
        cache.invalidate()
        assert cache.get("b") is None
