"""Logical document and version registry."""

from contextlib import contextmanager
from typing import Iterator, List, Optional

from .db import connect, new_id
from .logging_config import get_audit_logger
from .models import DocumentVersion, ExtractedMetadata, LogicalDocument

logger = get_audit_logger("registry")

STATEWIDE = "statewide"

DOCUMENT_COLUMNS = "id, canonical_title, town, board, category, current_version_id, created_at, updated_at"
VERSION_COLUMNS = """
    id, document_id, blob_id, year, notes, store_id, search_document_id, is_current,
    supersedes_version_id, is_minutes, meeting_date, created_at
"""


class RegistryTransaction:
    """Registry writes sharing one database transaction."""

    def __init__(self, cur):
        self.cur = cur

    def lock_or_create_document(
        self,
        canonical_title: str,
        town: str,
        board: Optional[str],
        category: Optional[str]
    ) -> LogicalDocument:
        # The upsert locks the document row until commit.
        self.cur.execute(f"""
            INSERT INTO logical_documents (id, canonical_title, town, board, category)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (canonical_title, town) DO UPDATE SET updated_at = NOW()
            RETURNING {DOCUMENT_COLUMNS}
        """, (new_id(), canonical_title, town, board, category or "uncategorized"))
        return LogicalDocument(**self.cur.fetchone())

    def insert_version(self, version: DocumentVersion) -> DocumentVersion:
        self.cur.execute(f"""
            INSERT INTO document_versions (
                id, document_id, blob_id, year, notes, store_id, search_document_id,
                is_current, supersedes_version_id, is_minutes, meeting_date
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s, %s)
            RETURNING {VERSION_COLUMNS}
        """, (
            version.id,
            version.document_id,
            version.blob_id,
            version.year,
            version.notes,
            version.store_id,
            version.search_document_id,
            version.supersedes_version_id,
            version.is_minutes,
            version.meeting_date,
        ))
        return DocumentVersion(**self.cur.fetchone())

    def clear_current(self, document_id: str) -> None:
        self.cur.execute(
            "UPDATE document_versions SET is_current = FALSE WHERE document_id = %s AND is_current",
            (document_id,),
        )

    def set_current(self, version_id: str) -> None:
        self.cur.execute(
            "UPDATE document_versions SET is_current = TRUE WHERE id = %s", (version_id,)
        )

    def point_document(self, document_id: str, version_id: str) -> None:
        self.cur.execute("""
            UPDATE logical_documents
            SET current_version_id = %s, updated_at = NOW()
            WHERE id = %s
        """, (version_id, document_id))


class DocumentRepository:
    """SQL access to logical_documents and document_versions."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    @contextmanager
    def transaction(self) -> Iterator[RegistryTransaction]:
        with connect(self.db_url) as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    yield RegistryTransaction(cur)

    def get_document(self, document_id: str) -> Optional[LogicalDocument]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {DOCUMENT_COLUMNS} FROM logical_documents WHERE id = %s", (document_id,)
                )
                row = cur.fetchone()
        return LogicalDocument(**row) if row else None

    def list_versions(self, document_id: str) -> List[DocumentVersion]:
        with connect(self.db_url) as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {VERSION_COLUMNS} FROM document_versions
                    WHERE document_id = %s ORDER BY created_at ASC
                """, (document_id,))
                rows = cur.fetchall()
        return [DocumentVersion(**row) for row in rows]


class Registry:
    """Sole writer of logical documents and their versions."""

    def __init__(self, repo: DocumentRepository):
        self.repo = repo

    def link_version(
        self,
        town: str,
        canonical_title: str,
        blob_id: Optional[str],
        search_document_id: str,
        store_id: str,
        metadata: ExtractedMetadata,
        notes: Optional[str] = None
    ) -> DocumentVersion:
        """Record a newly indexed file as the current version of its logical document.

        Documents are keyed by (canonical_title, town); the same title in two towns
        yields two documents. Clearing the old current flag, setting the new one and
        re-pointing the document happen in one transaction.
        """
        town = (town or STATEWIDE).lower()
        with self.repo.transaction() as tx:
            document = tx.lock_or_create_document(
                canonical_title, town, metadata.board, metadata.category
            )
            version = tx.insert_version(DocumentVersion(
                id=new_id(),
                document_id=document.id,
                blob_id=blob_id,
                year=metadata.year,
                notes=notes,
                store_id=store_id,
                search_document_id=search_document_id,
                supersedes_version_id=document.current_version_id,
                is_minutes=metadata.is_minutes,
                meeting_date=metadata.meeting_date,
            ))
            tx.clear_current(document.id)
            tx.set_current(version.id)
            tx.point_document(document.id, version.id)

        version.is_current = True
        logger.info(
            "version_linked",
            document_id=document.id,
            version_id=version.id,
            supersedes=document.current_version_id,
            canonical_title=canonical_title,
            town=town,
        )
        return version
