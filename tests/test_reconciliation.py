import pytest

from tabular_ingest.core.errors import ImportNotFoundError
from tabular_ingest.db.documents import InMemoryDocumentStore
from tabular_ingest.domain.imports.models import ImportMetadata, ImportStatus
from tabular_ingest.domain.imports.persistence import build_row_document
from tabular_ingest.domain.imports.reconciliation import ImportReconciler


async def _add_import(store, import_id, status=ImportStatus.COMPLETED):
    metadata = ImportMetadata(
        import_id=import_id,
        file_name=f"{import_id}.csv",
        file_type="text/csv",
        status=status,
        processed_by="user-1",
    )
    await store.upsert(metadata.to_document())


async def _add_rows(store, import_id, count):
    for row_number in range(1, count + 1):
        await store.upsert(build_row_document({"_import_id": import_id, "_row_number": row_number, "v": row_number}))


async def _add_content(store, import_id, doc_id):
    await store.upsert({"id": doc_id, "partition_key": f"import_{import_id}", "payload": "legacy"})


class FailingDeleteStore(InMemoryDocumentStore):
    def __init__(self, failing_ids):
        super().__init__()
        self.failing_ids = set(failing_ids)

    async def delete(self, document_id, partition_key):
        if document_id in self.failing_ids:
            raise ConnectionError("delete throttled")
        return await super().delete(document_id, partition_key)


@pytest.mark.asyncio
async def test_hanging_and_orphaned_detection(store):
    # Metadata {A, B}; rows {A, C}
    await _add_import(store, "A")
    await _add_import(store, "B")
    await _add_rows(store, "A", 2)
    await _add_rows(store, "C", 3)

    reconciler = ImportReconciler(store)
    hanging = await reconciler.find_hanging_imports()
    orphans = await reconciler.find_orphaned_data()

    assert [doc["import_id"] for doc in hanging] == ["B"]
    assert sorted(doc["id"] for doc in orphans.orphaned_rows) == ["row_C_1", "row_C_2", "row_C_3"]
    assert orphans.orphaned_import_ids == ["C"]
    assert orphans.counts_by_import() == {"C": (3, 0)}


@pytest.mark.asyncio
async def test_orphaned_content_documents_are_detected(store):
    await _add_import(store, "A")
    await _add_rows(store, "A", 1)
    await _add_content(store, "A", "content-keep")
    await _add_content(store, "Z", "content-orphan")

    orphans = await ImportReconciler(store).find_orphaned_data()

    assert [doc["id"] for doc in orphans.orphaned_content] == ["content-orphan"]
    assert orphans.orphaned_rows == []


@pytest.mark.asyncio
async def test_delete_import_cascades(store):
    await _add_import(store, "A")
    await _add_rows(store, "A", 3)
    await _add_content(store, "A", "content-1")
    await _add_import(store, "B")
    await _add_rows(store, "B", 1)

    result = await ImportReconciler(store).delete_import("A")

    assert result.deleted_rows == 3
    assert result.deleted_content == 1
    assert result.failed_deletions == 0
    assert await store.get("import_A", "imports") is None
    assert await store.get("row_A_1", "import_A") is None
    assert await store.get("content-1", "import_A") is None
    # Other imports are untouched
    assert await store.get("row_B_1", "import_B") is not None


@pytest.mark.asyncio
async def test_delete_import_normalizes_prefixed_ids(store):
    await _add_import(store, "A")
    await _add_rows(store, "A", 1)

    result = await ImportReconciler(store).delete_import("import_import_A")

    assert result.import_id == "A"
    assert result.deleted_rows == 1


@pytest.mark.asyncio
async def test_delete_unknown_import_raises(store):
    with pytest.raises(ImportNotFoundError):
        await ImportReconciler(store).delete_import("missing")


@pytest.mark.asyncio
async def test_row_delete_failures_are_counted_and_skipped():
    store = FailingDeleteStore({"row_A_2"})
    await _add_import(store, "A")
    await _add_rows(store, "A", 3)

    result = await ImportReconciler(store).delete_import("A")

    assert result.deleted_rows == 2
    assert result.failed_deletions == 1
    assert await store.get("row_A_2", "import_A") is not None


@pytest.mark.asyncio
async def test_cleanup_hanging_skips_processing_imports(store):
    await _add_import(store, "done", status=ImportStatus.COMPLETED)
    await _add_import(store, "running", status=ImportStatus.PROCESSING)
    await _add_import(store, "with-rows")
    await _add_rows(store, "with-rows", 1)

    reconciler = ImportReconciler(store)
    result = await reconciler.cleanup_hanging_imports()

    assert (result.deleted, result.skipped, result.failed) == (1, 1, 0)
    assert await store.get("import_done", "imports") is None
    assert await store.get("import_running", "imports") is not None
    assert await store.get("import_with-rows", "imports") is not None

    forced = await reconciler.cleanup_hanging_imports(include_processing=True)
    assert forced.deleted == 1
    assert await store.get("import_running", "imports") is None


@pytest.mark.asyncio
async def test_cleanup_orphaned_data(store):
    await _add_import(store, "A")
    await _add_rows(store, "A", 1)
    await _add_rows(store, "C", 2)
    await _add_content(store, "C", "content-c")

    result = await ImportReconciler(store).cleanup_orphaned_data()

    assert result.deleted == 3
    assert await store.get("row_A_1", "import_A") is not None
    assert (await ImportReconciler(store).find_orphaned_data()).total == 0
