"""
Domain models shared by the ingestion pipeline, the queue and the API.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tabular_ingest.domain.imports.keys import (
    IMPORT_DOCUMENT_TYPE,
    METADATA_PARTITION_KEY,
    metadata_document_id,
    normalize_import_id,
)

# System fields stamped onto every persisted row
ROW_IMPORT_ID_FIELD = "_import_id"
ROW_NUMBER_FIELD = "_row_number"
ROW_IMPORTED_AT_FIELD = "_imported_at"
ROW_IMPORTED_BY_FIELD = "_imported_by"
SYSTEM_FIELDS = frozenset(
    (ROW_IMPORT_ID_FIELD, ROW_NUMBER_FIELD, ROW_IMPORTED_AT_FIELD, ROW_IMPORTED_BY_FIELD)
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportErrorEntry(BaseModel):
    """A row-level (or, with ``row == 0``, import-level) failure."""
    row: int
    error: str
    raw_data: Optional[Any] = None


class ImportMetadata(BaseModel):
    import_id: str
    file_name: str
    file_type: str
    file_size: int = 0
    status: ImportStatus = ImportStatus.PROCESSING
    total_rows: int = 0
    valid_rows: int = 0
    error_rows: int = 0
    skipped_rows: int = 0
    headers: List[str] = Field(default_factory=list)
    field_types: Dict[str, str] = Field(default_factory=dict)
    errors: List[ImportErrorEntry] = Field(default_factory=list)
    blob_url: Optional[str] = None
    processed_by: str
    processed_by_name: Optional[str] = None
    processed_by_email: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    @property
    def document_id(self) -> str:
        return metadata_document_id(self.import_id)

    def add_error(self, row: int, error: str, raw_data: Optional[Any] = None) -> None:
        self.errors.append(ImportErrorEntry(row=row, error=error, raw_data=raw_data))

    def to_document(self) -> Dict[str, Any]:
        document = self.model_dump(mode="json")
        document.update(
            {
                "id": self.document_id,
                "partition_key": METADATA_PARTITION_KEY,
                "document_type": IMPORT_DOCUMENT_TYPE,
            }
        )
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ImportMetadata":
        data = dict(document)
        # Older documents only carry the storage key
        raw_id = data.get("import_id") or data.get("id")
        data["import_id"] = normalize_import_id(raw_id)
        return cls.model_validate(data)


class QueueItem(BaseModel):
    id: str
    file_path: str
    file_name: str
    file_type: str
    user_id: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    import_id: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.FAILED)
