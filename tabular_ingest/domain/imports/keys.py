"""
Storage key conventions for import documents.

Metadata and row documents are linked only by naming: the metadata document
of import ``abc`` is ``import_abc`` in the shared ``imports`` partition, and
its rows live in partition ``import_abc`` as ``row_abc_<n>``. Every key is
built from a bare import id produced by :func:`normalize_import_id`, both
when writing and when looking documents up.
"""
import logging

logger = logging.getLogger(__name__)

IMPORT_ID_PREFIX = "import_"
METADATA_PARTITION_KEY = "imports"
IMPORT_DOCUMENT_TYPE = "excel-import"
ROW_DOCUMENT_TYPE = "excel-row"


def normalize_import_id(raw_id: str) -> str:
    """
    Return the bare import id, stripping any number of ``import_`` prefixes.

    Ids arrive from URLs, CLI arguments and stored documents, and historical
    data contains doubly prefixed ids. A repeated prefix is logged so it can
    be traced back to its writer.
    """
    if raw_id is None:
        raise ValueError("Import id is required")

    candidate = str(raw_id).strip()
    stripped = 0
    while candidate.startswith(IMPORT_ID_PREFIX):
        candidate = candidate[len(IMPORT_ID_PREFIX):]
        stripped += 1

    if not candidate:
        raise ValueError(f"Invalid import id: {raw_id!r}")

    if stripped > 1:
        logger.warning(
            "Import id %r carried %d '%s' prefixes; normalized to %r",
            raw_id,
            stripped,
            IMPORT_ID_PREFIX,
            candidate,
        )
    return candidate


def metadata_document_id(import_id: str) -> str:
    return f"{IMPORT_ID_PREFIX}{normalize_import_id(import_id)}"


def row_partition_key(import_id: str) -> str:
    return f"{IMPORT_ID_PREFIX}{normalize_import_id(import_id)}"


def row_document_id(import_id: str, row_number: int) -> str:
    return f"row_{normalize_import_id(import_id)}_{row_number}"


def import_id_from_partition_key(partition_key: str) -> str:
    """Recover the import id from a row/content partition key."""
    return normalize_import_id(partition_key)
