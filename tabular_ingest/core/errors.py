"""
Exception hierarchy for the ingestion pipeline.

Row-level problems never surface as exceptions outside the parser; the
classes here describe failures that stop a stage or an entire import.
"""
from typing import Optional


class IngestError(Exception):
    """Base exception for ingestion failures."""
    pass


class ImportNotFoundError(IngestError):
    """Raised when no metadata exists for the requested import."""

    def __init__(self, import_id: str):
        self.import_id = import_id
        super().__init__("Import not found")


class UnsupportedFileTypeError(IngestError):
    """Raised before parsing when the file is neither CSV nor a spreadsheet."""

    def __init__(self, mime_type: Optional[str], file_name: Optional[str] = None):
        self.mime_type = mime_type
        self.file_name = file_name
        super().__init__(f"Unsupported file type: {mime_type or 'unknown'}")


class FileParseError(IngestError):
    """Raised when the file as a whole cannot be opened or read."""
    pass


class RowTransformError(IngestError):
    """Raised for a single bad row; always recorded and never propagated."""
    pass


class BlobUploadError(IngestError):
    """Raised when the original file could not be archived to blob storage."""
    pass


class MetadataPersistenceError(IngestError):
    """Raised when the metadata document could not be written after retries."""
    pass


class CatastrophicFailureRateError(IngestError):
    """Raised when too many rows of an import failed to persist."""

    def __init__(self, result, threshold: float):
        self.result = result
        self.threshold = threshold
        super().__init__(
            f"{len(result.failures)} of {result.total} rows failed to persist "
            f"(threshold {threshold:.0%})"
        )
