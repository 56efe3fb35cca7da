from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from tabular_ingest.domain.imports.models import ImportMetadata, QueueItem


class ImportResponse(BaseModel):
    success: bool
    import_metadata: ImportMetadata


class ImportListResponse(BaseModel):
    success: bool
    imports: List[ImportMetadata]
    total_count: int
    limit: int
    offset: int


class DeleteImportResponse(BaseModel):
    success: bool
    import_id: str
    deleted_rows: int
    deleted_content: int = 0
    failed_deletions: int = 0
    message: Optional[str] = None


class UploadAcceptedResponse(BaseModel):
    success: bool
    queued: bool
    import_metadata: Optional[ImportMetadata] = None
    queue_item: Optional[QueueItem] = None


class QueueItemResponse(BaseModel):
    success: bool
    item: QueueItem


class QueueListResponse(BaseModel):
    success: bool
    items: List[QueueItem]
    pending_count: int
    processing_count: int


class ImportRowsResponse(BaseModel):
    success: bool
    import_id: str
    rows: List[Dict[str, Any]]
    total_count: int
    limit: int
    offset: int
