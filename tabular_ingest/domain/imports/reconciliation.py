"""
Cascading deletion and consistency checks between import metadata and rows.

Metadata and row documents are written independently, so an interrupted
import can leave metadata without rows ("hanging" imports) or rows without
metadata ("orphaned" data). The scans here load each side once and compare
id sets; they never query per import.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from tabular_ingest.core.errors import ImportNotFoundError
from tabular_ingest.db.documents import DocumentQuery, DocumentStore
from tabular_ingest.domain.imports.keys import (
    IMPORT_DOCUMENT_TYPE,
    IMPORT_ID_PREFIX,
    METADATA_PARTITION_KEY,
    ROW_DOCUMENT_TYPE,
    import_id_from_partition_key,
    metadata_document_id,
    normalize_import_id,
    row_partition_key,
)
from tabular_ingest.domain.imports.models import ROW_IMPORT_ID_FIELD, ImportStatus

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass
class DeleteResult:
    import_id: str
    deleted_rows: int = 0
    deleted_content: int = 0
    failed_deletions: int = 0


@dataclass
class OrphanReport:
    orphaned_rows: List[Document] = field(default_factory=list)
    orphaned_content: List[Document] = field(default_factory=list)

    @property
    def orphaned_import_ids(self) -> List[str]:
        ids = {_data_import_id(doc) for doc in self.orphaned_rows + self.orphaned_content}
        return sorted(i for i in ids if i)

    @property
    def total(self) -> int:
        return len(self.orphaned_rows) + len(self.orphaned_content)

    def counts_by_import(self) -> Dict[str, Tuple[int, int]]:
        """Map each orphaned import id to its (row, content document) counts."""
        counts: Dict[str, List[int]] = {}
        for index, documents in enumerate((self.orphaned_rows, self.orphaned_content)):
            for doc in documents:
                key = _data_import_id(doc) or "<unlinked>"
                counts.setdefault(key, [0, 0])[index] += 1
        return {key: (value[0], value[1]) for key, value in sorted(counts.items())}


@dataclass
class CleanupResult:
    deleted: int = 0
    failed: int = 0
    skipped: int = 0


def _metadata_import_id(document: Document) -> Optional[str]:
    raw = document.get("import_id") or document.get("id")
    try:
        return normalize_import_id(raw)
    except ValueError:
        logger.warning("Metadata document without a usable import id: %r", document.get("id"))
        return None


def _data_import_id(document: Document) -> Optional[str]:
    raw = document.get(ROW_IMPORT_ID_FIELD)
    try:
        if raw:
            return normalize_import_id(raw)
        partition_key = document.get("partition_key") or ""
        if partition_key.startswith(IMPORT_ID_PREFIX):
            return import_id_from_partition_key(partition_key)
    except ValueError:
        pass
    logger.warning("Data document %r is not linked to any import", document.get("id"))
    return None


class ImportReconciler:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def find_metadata_document(self, import_id: str) -> Optional[Document]:
        document = await self.store.get(metadata_document_id(import_id), METADATA_PARTITION_KEY)
        if document is not None:
            return document

        # Legacy writers stored some metadata under a repeated prefix
        matches = await self.store.query(
            DocumentQuery(partition_key=METADATA_PARTITION_KEY, import_id=import_id, limit=1)
        )
        return matches[0] if matches else None

    async def _delete_each(self, documents: Iterable[Document], label: str) -> Tuple[int, int]:
        deleted = 0
        failed = 0
        for document in documents:
            try:
                if await self.store.delete(document["id"], document["partition_key"]):
                    deleted += 1
            except Exception as e:
                failed += 1
                logger.error("Failed to delete %s %s: %s", label, document.get("id"), e)
        return deleted, failed

    async def delete_import(self, import_id: str) -> DeleteResult:
        """
        Delete an import's metadata, legacy content documents and row documents.

        Raises:
            ImportNotFoundError: If no metadata exists for the import
        """
        bare_id = normalize_import_id(import_id)
        metadata = await self.find_metadata_document(bare_id)
        if metadata is None:
            raise ImportNotFoundError(bare_id)

        await self.store.delete(metadata["id"], metadata["partition_key"])
        logger.info("Deleted metadata for import %s", bare_id)

        result = DeleteResult(import_id=bare_id)

        try:
            content = await self.store.query(
                DocumentQuery(partition_key=row_partition_key(bare_id), untyped_only=True)
            )
        except Exception as e:
            logger.error("Could not list content documents for import %s: %s", bare_id, e)
            content = []
        result.deleted_content, failed_content = await self._delete_each(content, "content document")

        rows = await self.store.query(DocumentQuery(import_id=bare_id, document_type=ROW_DOCUMENT_TYPE))
        result.deleted_rows, failed_rows = await self._delete_each(rows, "row")
        result.failed_deletions = failed_content + failed_rows

        logger.info(
            "Deleted import %s: %d rows, %d content documents, %d failed deletions",
            bare_id,
            result.deleted_rows,
            result.deleted_content,
            result.failed_deletions,
        )
        return result

    async def _load_metadata(self) -> List[Document]:
        return await self.store.query(
            DocumentQuery(partition_key=METADATA_PARTITION_KEY, document_type=IMPORT_DOCUMENT_TYPE)
        )

    async def _load_rows(self) -> List[Document]:
        return await self.store.query(DocumentQuery(document_type=ROW_DOCUMENT_TYPE))

    async def _load_content(self) -> List[Document]:
        return await self.store.query(DocumentQuery(partition_prefix=IMPORT_ID_PREFIX, untyped_only=True))

    async def find_hanging_imports(self) -> List[Document]:
        """Metadata documents whose import has no row documents."""
        metadata = await self._load_metadata()
        rows = await self._load_rows()

        imports_with_rows: Set[str] = {i for i in map(_data_import_id, rows) if i}
        hanging = [doc for doc in metadata if _metadata_import_id(doc) not in imports_with_rows]

        logger.info("Found %d hanging imports out of %d", len(hanging), len(metadata))
        return hanging

    async def find_orphaned_data(self) -> OrphanReport:
        """Row and content documents whose import has no metadata."""
        metadata = await self._load_metadata()
        known_ids: Set[str] = {i for i in map(_metadata_import_id, metadata) if i}

        rows = await self._load_rows()
        content = await self._load_content()

        report = OrphanReport(
            orphaned_rows=[doc for doc in rows if _data_import_id(doc) not in known_ids],
            orphaned_content=[doc for doc in content if _data_import_id(doc) not in known_ids],
        )
        logger.info(
            "Found %d orphaned rows and %d orphaned content documents across %d imports",
            len(report.orphaned_rows),
            len(report.orphaned_content),
            len(report.orphaned_import_ids),
        )
        return report

    async def cleanup_hanging_imports(self, include_processing: bool = False) -> CleanupResult:
        """
        Delete hanging metadata.

        Imports still in ``processing`` may simply not have written rows yet,
        so they are skipped unless ``include_processing`` is set.
        """
        result = CleanupResult()
        candidates = []
        for document in await self.find_hanging_imports():
            if document.get("status") == ImportStatus.PROCESSING.value and not include_processing:
                result.skipped += 1
                continue
            candidates.append(document)

        result.deleted, result.failed = await self._delete_each(candidates, "hanging import")
        return result

    async def cleanup_orphaned_data(self) -> CleanupResult:
        report = await self.find_orphaned_data()
        result = CleanupResult()
        result.deleted, result.failed = await self._delete_each(
            report.orphaned_rows + report.orphaned_content, "orphaned document"
        )
        return result
