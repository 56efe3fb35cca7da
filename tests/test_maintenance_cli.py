import pytest
from rich.console import Console

from tabular_ingest.domain.imports.models import ImportMetadata, ImportStatus
from tabular_ingest.domain.imports.persistence import build_row_document
from tabular_ingest.maintenance import build_parser, run


async def _seed(store):
    for import_id in ("kept", "hanging"):
        metadata = ImportMetadata(
            import_id=import_id,
            file_name=f"{import_id}.csv",
            file_type="text/csv",
            status=ImportStatus.COMPLETED,
            processed_by="user-1",
        )
        await store.upsert(metadata.to_document())
    for row_number in (1, 2):
        await store.upsert(build_row_document({"_import_id": "kept", "_row_number": row_number}))
        await store.upsert(build_row_document({"_import_id": "gone", "_row_number": row_number}))


async def _run(store, *argv):
    console = Console(record=True, width=120)
    code = await run(build_parser().parse_args(list(argv)), store=store, console=console)
    return code, console.export_text()


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


@pytest.mark.asyncio
async def test_find_commands_report_without_deleting(store):
    await _seed(store)

    code, hanging_output = await _run(store, "find-hanging")
    _, orphan_output = await _run(store, "find-orphaned")

    assert code == 0
    assert "hanging" in hanging_output
    assert "gone" in orphan_output
    assert len(store) == 6


@pytest.mark.asyncio
async def test_cleanup_commands_with_yes(store):
    await _seed(store)

    assert (await _run(store, "--yes", "cleanup-hanging"))[0] == 0
    assert (await _run(store, "--yes", "cleanup-orphaned"))[0] == 0

    assert await store.get("import_hanging", "imports") is None
    assert await store.get("row_gone_1", "import_gone") is None
    assert await store.get("row_kept_1", "import_kept") is not None

    _, output = await _run(store, "find-orphaned")
    assert "No orphaned data found" in output


@pytest.mark.asyncio
async def test_delete_import_command(store):
    await _seed(store)

    code, output = await _run(store, "-y", "delete-import", "import_kept")

    assert code == 0
    assert "Deleted import kept" in output
    assert await store.get("row_kept_2", "import_kept") is None


@pytest.mark.asyncio
async def test_delete_unknown_import_fails(store):
    code, output = await _run(store, "-y", "delete-import", "missing")

    assert code == 1
    assert "not found" in output


@pytest.mark.asyncio
async def test_clean_store_reports_nothing_to_do(store):
    code, output = await _run(store, "cleanup-hanging")

    assert code == 0
    assert "No hanging imports found" in output
