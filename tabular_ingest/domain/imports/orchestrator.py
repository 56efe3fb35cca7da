"""
Import orchestration.

An import moves through ``processing`` to exactly one of ``completed`` or
``failed``. The orchestrator persists the ``processing`` metadata, then
runs the pipeline: read the file, archive the original to blob storage,
parse, infer field types, persist rows and finalize the metadata. Every
path through the pipeline persists a terminal status and removes the
uploaded source file.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from tabular_ingest.core.config import Settings, settings as default_settings
from tabular_ingest.core.errors import (
    BlobUploadError,
    CatastrophicFailureRateError,
    ImportNotFoundError,
    MetadataPersistenceError,
)
from tabular_ingest.db.documents import DocumentQuery, DocumentStore
from tabular_ingest.domain.imports.keys import (
    IMPORT_DOCUMENT_TYPE,
    METADATA_PARTITION_KEY,
    ROW_DOCUMENT_TYPE,
    normalize_import_id,
    row_partition_key,
)
from tabular_ingest.domain.imports.models import (
    ROW_IMPORT_ID_FIELD,
    ROW_IMPORTED_AT_FIELD,
    ROW_IMPORTED_BY_FIELD,
    ROW_NUMBER_FIELD,
    ImportMetadata,
    ImportStatus,
    utcnow,
)
from tabular_ingest.domain.imports.persistence import BatchPersistenceEngine, PersistenceResult
from tabular_ingest.domain.imports.processors.file_parser import (
    ParseOptions,
    ParseResult,
    parse_file,
    resolve_file_format,
)
from tabular_ingest.domain.imports.reconciliation import DeleteResult, ImportReconciler
from tabular_ingest.domain.imports.schema_inference import infer_field_types
from tabular_ingest.integrations.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class ImportPage:
    items: List[ImportMetadata]
    total: int


@dataclass
class RowPage:
    import_id: str
    items: List[Dict[str, Any]]
    total: int


def _read_bytes(file_path: str) -> bytes:
    with open(file_path, "rb") as handle:
        return handle.read()


def _apply_counts(metadata: ImportMetadata, parsed: ParseResult,
                  persisted: Optional[PersistenceResult]) -> None:
    """Fold parse and persistence outcomes into the metadata counters."""
    failed = persisted.failed if persisted else 0
    metadata.total_rows = parsed.total_rows
    metadata.valid_rows = parsed.valid_rows - failed
    metadata.error_rows = parsed.error_rows + failed
    metadata.skipped_rows = parsed.skipped_rows

    if persisted:
        for failure in persisted.failures:
            metadata.add_error(failure.row_number or 0, f"Failed to persist row: {failure.error}")


class IngestionOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        blob_store: BlobStore,
        persistence: Optional[BatchPersistenceEngine] = None,
        *,
        reconciler: Optional[ImportReconciler] = None,
        config: Settings = default_settings,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.store = store
        self.blob_store = blob_store
        self.config = config
        self.persistence = persistence or BatchPersistenceEngine.from_settings(store, config)
        self.reconciler = reconciler or ImportReconciler(store)
        self._id_factory = id_factory
        self._tasks: Set[asyncio.Task] = set()

    # -- lifecycle ------------------------------------------------------------

    def _remove_source(self, file_path: str) -> None:
        if not self.config.delete_source_after_import:
            return
        try:
            os.remove(file_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove uploaded file %s: %s", file_path, e)

    async def _begin(
        self,
        file_path: str,
        file_name: str,
        file_type: str,
        user_id: str,
        user_name: Optional[str],
        user_email: Optional[str],
    ) -> ImportMetadata:
        try:
            file_size = os.path.getsize(file_path)
        except OSError:
            file_size = 0

        metadata = ImportMetadata(
            import_id=normalize_import_id(self._id_factory()),
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            status=ImportStatus.PROCESSING,
            processed_by=user_id,
            processed_by_name=user_name,
            processed_by_email=user_email,
        )

        try:
            await self.persistence.persist_metadata(metadata)
        except MetadataPersistenceError:
            self._remove_source(file_path)
            raise

        logger.info("Import %s started for %s (%d bytes)", metadata.import_id, file_name, file_size)
        return metadata

    async def start_import(
        self,
        file_path: str,
        file_name: str,
        file_type: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> ImportMetadata:
        """
        Register an import and process it in the background.

        Returns the ``processing`` metadata immediately; poll ``get_import``
        for the outcome.
        """
        metadata = await self._begin(file_path, file_name, file_type, user_id, user_name, user_email)
        snapshot = metadata.model_copy(deep=True)

        task = asyncio.create_task(
            self._process_import(metadata, file_path, raise_on_failure=False),
            name=f"import-{metadata.import_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return snapshot

    async def run_import(
        self,
        file_path: str,
        file_name: str,
        file_type: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> ImportMetadata:
        """
        Register and process an import, waiting for it to finish.

        Raises:
            The stage-fatal error, after the ``failed`` status was persisted
        """
        metadata = await self._begin(file_path, file_name, file_type, user_id, user_name, user_email)
        return await self._process_import(metadata, file_path, raise_on_failure=True)

    async def wait_for_pending(self) -> None:
        """Wait for every background import started by this orchestrator."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- pipeline -------------------------------------------------------------

    async def _upload_original(self, metadata: ImportMetadata, data: bytes) -> str:
        blob_name = f"{metadata.import_id}/{os.path.basename(metadata.file_name)}"
        try:
            return await asyncio.wait_for(
                self.blob_store.upload(data, blob_name, metadata.file_type),
                timeout=self.config.blob_upload_timeout_seconds,
            )
        except Exception as e:
            raise BlobUploadError(f"Failed to upload original file: {e or type(e).__name__}") from e

    def _row_stamper(self, metadata: ImportMetadata):
        imported_at = utcnow().isoformat()

        def stamp(row: Dict[str, Any], row_index: int) -> Dict[str, Any]:
            stamped = dict(row)
            stamped[ROW_IMPORT_ID_FIELD] = metadata.import_id
            stamped[ROW_NUMBER_FIELD] = row_index + 1
            stamped[ROW_IMPORTED_AT_FIELD] = imported_at
            stamped[ROW_IMPORTED_BY_FIELD] = metadata.processed_by
            return stamped

        return stamp

    async def _run_pipeline(self, metadata: ImportMetadata, file_path: str) -> None:
        # Unsupported files fail before anything is read or archived
        resolve_file_format(metadata.file_type, metadata.file_name)

        data = await asyncio.to_thread(_read_bytes, file_path)
        metadata.file_size = len(data)

        metadata.blob_url = await self._upload_original(metadata, data)
        del data

        options = ParseOptions(transform_row=self._row_stamper(metadata))
        parsed = await asyncio.to_thread(
            parse_file, file_path, metadata.file_type, options, metadata.file_name
        )
        metadata.headers = parsed.headers
        metadata.errors.extend(parsed.errors)
        metadata.field_types = infer_field_types(
            parsed.rows,
            parsed.headers,
            sample_size=self.config.type_inference_sample_size or None,
        )

        try:
            persisted = await self.persistence.persist_rows(parsed.rows)
        except CatastrophicFailureRateError as e:
            _apply_counts(metadata, parsed, e.result)
            raise

        _apply_counts(metadata, parsed, persisted)
        metadata.status = ImportStatus.COMPLETED

    async def _process_import(self, metadata: ImportMetadata, file_path: str,
                              raise_on_failure: bool) -> ImportMetadata:
        started = time.monotonic()
        failure: Optional[BaseException] = None

        try:
            await self._run_pipeline(metadata, file_path)
        except Exception as e:
            failure = e
            logger.error("Import %s failed: %s", metadata.import_id, e, exc_info=True)
            metadata.status = ImportStatus.FAILED
            metadata.add_error(0, str(e) or type(e).__name__)
        finally:
            self._remove_source(file_path)

        now = utcnow()
        metadata.updated_at = now
        metadata.completed_at = now
        metadata.duration_seconds = round(time.monotonic() - started, 3)

        try:
            await self.persistence.persist_metadata(metadata)
        except MetadataPersistenceError as e:
            logger.error("Could not record final status of import %s: %s", metadata.import_id, e)
            if raise_on_failure:
                raise

        if metadata.status == ImportStatus.COMPLETED:
            logger.info(
                "Import %s completed: %d total, %d valid, %d errors in %.2fs",
                metadata.import_id,
                metadata.total_rows,
                metadata.valid_rows,
                metadata.error_rows,
                metadata.duration_seconds,
            )

        if failure is not None and raise_on_failure:
            raise failure
        return metadata

    # -- queries --------------------------------------------------------------

    async def get_import(self, import_id: str) -> Optional[ImportMetadata]:
        document = await self.reconciler.find_metadata_document(normalize_import_id(import_id))
        return ImportMetadata.from_document(document) if document else None

    async def list_imports(self, limit: int = 50, offset: int = 0,
                           status: Optional[str] = None) -> ImportPage:
        base = dict(
            partition_key=METADATA_PARTITION_KEY,
            document_type=IMPORT_DOCUMENT_TYPE,
            status=status,
        )
        documents = await self.store.query(
            DocumentQuery(order_by="-processed_at", limit=limit, offset=offset, **base)
        )
        total = await self.store.count(DocumentQuery(**base))
        return ImportPage(items=[ImportMetadata.from_document(doc) for doc in documents], total=total)

    async def list_rows(self, import_id: str, limit: int = 50, offset: int = 0,
                        fields: Optional[List[str]] = None) -> RowPage:
        """
        Return one page of an import's row documents in file order.

        With ``fields`` each row is projected to those columns plus its row
        number.

        Raises:
            ImportNotFoundError: If the import does not exist
        """
        bare_id = normalize_import_id(import_id)
        if await self.reconciler.find_metadata_document(bare_id) is None:
            raise ImportNotFoundError(bare_id)

        base = dict(
            partition_key=row_partition_key(bare_id),
            document_type=ROW_DOCUMENT_TYPE,
            import_id=bare_id,
        )
        documents = await self.store.query(
            DocumentQuery(order_by="_row_number", limit=limit, offset=offset, **base)
        )
        total = await self.store.count(DocumentQuery(**base))

        if fields:
            documents = [
                {ROW_NUMBER_FIELD: doc.get(ROW_NUMBER_FIELD), **{name: doc.get(name) for name in fields}}
                for doc in documents
            ]
        return RowPage(import_id=bare_id, items=documents, total=total)

    async def delete_import(self, import_id: str) -> DeleteResult:
        """
        Delete an import and everything it wrote.

        Raises:
            ImportNotFoundError: If the import does not exist
        """
        return await self.reconciler.delete_import(import_id)
