"""
Import endpoints: upload a spreadsheet or CSV, inspect, list and delete imports.
"""
import logging
import os
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile

from tabular_ingest.api.dependencies import get_orchestrator, get_queue
from tabular_ingest.api.schemas.imports import (
    DeleteImportResponse,
    ImportListResponse,
    ImportResponse,
    ImportRowsResponse,
    QueueItemResponse,
    QueueListResponse,
    UploadAcceptedResponse,
)
from tabular_ingest.core.config import settings
from tabular_ingest.core.errors import ImportNotFoundError, MetadataPersistenceError, UnsupportedFileTypeError
from tabular_ingest.domain.imports.models import ImportStatus
from tabular_ingest.domain.imports.orchestrator import IngestionOrchestrator
from tabular_ingest.domain.imports.processors.file_parser import resolve_file_format

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


async def _save_upload(file: UploadFile, file_name: str) -> str:
    """Stream the upload into the temp directory, enforcing the size limit."""
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    os.makedirs(settings.temp_upload_dir, exist_ok=True)
    extension = os.path.splitext(file_name)[1].lower()
    file_path = os.path.join(settings.temp_upload_dir, f"{uuid.uuid4().hex}{extension}")

    size = 0
    try:
        with open(file_path, "wb") as handle:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=(
                            f"{file_name} is too large. "
                            f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
                        ),
                    )
                handle.write(chunk)
    except Exception:
        _discard(file_path)
        raise

    logger.info("Saved upload '%s' (%d bytes) to %s", file_name, size, file_path)
    return file_path


@router.post("/imports", response_model=UploadAcceptedResponse, status_code=202)
async def upload_import_endpoint(
    request: Request,
    file: UploadFile = File(...),
    user_id: str = Form("anonymous"),
    user_name: Optional[str] = Form(None),
    user_email: Optional[str] = Form(None),
):
    """
    Accept a spreadsheet or CSV upload and start importing it.

    With the processing queue enabled the upload is queued and the queue
    item is returned; otherwise the import starts immediately and its
    ``processing`` metadata is returned.
    """
    file_name = os.path.basename(file.filename or "")
    if not file_name:
        raise HTTPException(status_code=400, detail="File name is required")

    content_type = file.content_type or "application/octet-stream"
    try:
        resolve_file_format(content_type, file_name)
    except UnsupportedFileTypeError as e:
        raise HTTPException(
            status_code=400,
            detail=f"{e}. Only Excel (.xlsx, .xls, .xlsm) and CSV files are allowed.",
        )

    if settings.use_processing_queue:
        queue = get_queue(request)
        file_path = await _save_upload(file, file_name)
        item = queue.enqueue(file_path, file_name, content_type, user_id, user_name, user_email)
        return UploadAcceptedResponse(success=True, queued=True, queue_item=item)

    orchestrator = get_orchestrator(request)
    file_path = await _save_upload(file, file_name)
    try:
        metadata = await orchestrator.start_import(
            file_path, file_name, content_type, user_id, user_name, user_email
        )
    except MetadataPersistenceError as e:
        logger.error("Could not register import for %s: %s", file_name, e)
        raise HTTPException(status_code=503, detail="Could not register the import, please retry")

    return UploadAcceptedResponse(success=True, queued=False, import_metadata=metadata)


@router.get("/imports/queue", response_model=QueueListResponse)
async def list_queue_items_endpoint(request: Request):
    queue = get_queue(request)
    return QueueListResponse(
        success=True,
        items=queue.get_all_items(),
        pending_count=queue.pending_count,
        processing_count=queue.processing_count,
    )


@router.get("/imports/queue/{item_id}", response_model=QueueItemResponse)
async def get_queue_item_endpoint(item_id: str, request: Request):
    item = get_queue(request).get_status(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return QueueItemResponse(success=True, item=item)


@router.get("/imports", response_model=ImportListResponse)
async def list_imports_endpoint(
    limit: int = 50,
    offset: int = 0,
    status: Optional[ImportStatus] = None,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    page = await orchestrator.list_imports(
        limit=limit, offset=offset, status=status.value if status else None
    )
    return ImportListResponse(
        success=True,
        imports=page.items,
        total_count=page.total,
        limit=limit,
        offset=offset,
    )


@router.get("/imports/{import_id}", response_model=ImportResponse)
async def get_import_endpoint(
    import_id: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    try:
        metadata = await orchestrator.get_import(import_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid import id")
    if not metadata:
        raise HTTPException(status_code=404, detail="Import not found")
    return ImportResponse(success=True, import_metadata=metadata)


@router.get("/imports/{import_id}/rows", response_model=ImportRowsResponse)
async def list_import_rows_endpoint(
    import_id: str,
    limit: int = 50,
    offset: int = 0,
    fields: Optional[str] = None,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """
    Page through the rows of one import in file order.

    ``fields`` is a comma-separated list of columns to return.
    """
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    selected = [name.strip() for name in fields.split(",") if name.strip()] if fields else None
    try:
        page = await orchestrator.list_rows(import_id, limit=limit, offset=offset, fields=selected)
    except ImportNotFoundError:
        raise HTTPException(status_code=404, detail="Import not found")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid import id")

    return ImportRowsResponse(
        success=True,
        import_id=page.import_id,
        rows=page.items,
        total_count=page.total,
        limit=limit,
        offset=offset,
    )


@router.delete("/imports/{import_id}", response_model=DeleteImportResponse)
async def delete_import_endpoint(
    import_id: str,
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Delete an import together with its row and content documents."""
    try:
        result = await orchestrator.delete_import(import_id)
    except ImportNotFoundError:
        raise HTTPException(status_code=404, detail="Import not found")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid import id")

    return DeleteImportResponse(
        success=True,
        import_id=result.import_id,
        deleted_rows=result.deleted_rows,
        deleted_content=result.deleted_content,
        failed_deletions=result.failed_deletions,
        message=f"Deleted import {result.import_id} and {result.deleted_rows} rows",
    )
