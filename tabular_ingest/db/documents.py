"""
Document store used for import metadata and row documents.

The pipeline talks to a small async port (:class:`DocumentStore`): upsert,
point read, filtered query, count and delete, all addressed by
``(id, partition_key)``. Two adapters are provided:

- :class:`SqlDocumentStore` keeps every document as a JSON body in a single
  ``ingest_documents`` table, with the fields used for filtering copied into
  indexed columns. It runs on PostgreSQL and SQLite.
- :class:`InMemoryDocumentStore` keeps documents in a dict, for local
  development and tests.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from tabular_ingest.db.session import get_engine
from tabular_ingest.domain.imports.keys import IMPORT_DOCUMENT_TYPE
from tabular_ingest.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

DOCUMENTS_TABLE = "ingest_documents"

# Orderable document fields and the table columns that mirror them
_ORDERABLE_FIELDS = {"processed_at": "processed_at", "_row_number": "row_number"}


@dataclass
class DocumentQuery:
    """
    Filter expression understood by every store adapter.

    All populated criteria are combined with AND. ``import_id`` matches the
    ``import_id`` field of metadata documents and the ``_import_id`` field of
    every other document. ``order_by`` accepts ``"processed_at"`` or
    ``"_row_number"``, optionally prefixed with ``-`` for descending order.
    """
    partition_key: Optional[str] = None
    partition_prefix: Optional[str] = None
    document_type: Optional[str] = None
    untyped_only: bool = False
    import_id: Optional[str] = None
    status: Optional[str] = None
    order_by: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, document: Dict[str, Any]) -> bool:
        if self.partition_key is not None and document.get("partition_key") != self.partition_key:
            return False
        if self.partition_prefix is not None and not str(document.get("partition_key", "")).startswith(
            self.partition_prefix
        ):
            return False
        if self.untyped_only and document.get("document_type"):
            return False
        if self.document_type is not None and document.get("document_type") != self.document_type:
            return False
        if self.import_id is not None and _document_import_id(document) != self.import_id:
            return False
        if self.status is not None and _metadata_field(document, "status") != self.status:
            return False
        return True

    def order_field(self) -> Tuple[Optional[str], bool]:
        if not self.order_by:
            return None, False
        descending = self.order_by.startswith("-")
        field = self.order_by.lstrip("-")
        if field not in _ORDERABLE_FIELDS:
            raise ValueError(f"Unsupported order field: {self.order_by}")
        return field, descending


# Row bodies are open-schema, so indexed values are read by document type: a
# user column named import_id or status never stands in for a system field.
def _document_import_id(document: Dict[str, Any]) -> Optional[str]:
    if document.get("document_type") == IMPORT_DOCUMENT_TYPE:
        return document.get("import_id")
    return document.get("_import_id")


def _metadata_field(document: Dict[str, Any], name: str) -> Any:
    if document.get("document_type") != IMPORT_DOCUMENT_TYPE:
        return None
    return document.get(name)


def _sort_value(document: Dict[str, Any], field: str) -> Any:
    return _row_number(document) if field == "_row_number" else _metadata_field(document, field)


def _row_number(document: Dict[str, Any]) -> Optional[int]:
    if document.get("document_type") == IMPORT_DOCUMENT_TYPE:
        return None
    value = document.get("_row_number")
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _require_key(document: Dict[str, Any]) -> Tuple[str, str]:
    document_id = document.get("id")
    partition_key = document.get("partition_key")
    if not document_id or not partition_key:
        raise ValueError("Documents require both 'id' and 'partition_key'")
    return str(document_id), str(partition_key)


class DocumentStore(ABC):
    """Async port over a partitioned JSON document store."""

    @abstractmethod
    async def upsert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or fully replace the document with the same id and partition."""

    @abstractmethod
    async def get(self, document_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        """Return the document or None when it does not exist."""

    @abstractmethod
    async def query(self, query: DocumentQuery) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def count(self, query: DocumentQuery) -> int:
        ...

    @abstractmethod
    async def delete(self, document_id: str, partition_key: str) -> bool:
        """Delete the document; returns False when it did not exist."""


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed store for development and tests."""

    def __init__(self) -> None:
        self._documents: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def upsert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        document_id, partition_key = _require_key(document)
        stored = _make_json_safe(document)
        with self._lock:
            self._documents[(partition_key, document_id)] = stored
        return copy.deepcopy(stored)

    async def get(self, document_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            stored = self._documents.get((partition_key, document_id))
        return copy.deepcopy(stored) if stored is not None else None

    async def query(self, query: DocumentQuery) -> List[Dict[str, Any]]:
        with self._lock:
            matched = [copy.deepcopy(doc) for doc in self._documents.values() if query.matches(doc)]

        field, descending = query.order_field()
        if field:
            # Documents without the field sort after those that have it
            present = [doc for doc in matched if _sort_value(doc, field) is not None]
            missing = [doc for doc in matched if _sort_value(doc, field) is None]
            present.sort(key=lambda doc: _sort_value(doc, field), reverse=descending)
            matched = present + missing

        end = query.offset + query.limit if query.limit is not None else None
        return matched[query.offset:end]

    async def count(self, query: DocumentQuery) -> int:
        with self._lock:
            return sum(1 for doc in self._documents.values() if query.matches(doc))

    async def delete(self, document_id: str, partition_key: str) -> bool:
        with self._lock:
            return self._documents.pop((partition_key, document_id), None) is not None

    def __len__(self) -> int:
        return len(self._documents)


class SqlDocumentStore(DocumentStore):
    """
    SQLAlchemy-backed document store.

    Calls are synchronous under the hood and are moved off the event loop
    with ``asyncio.to_thread``.
    """

    def __init__(self, engine: Optional[Engine] = None, table_name: str = DOCUMENTS_TABLE):
        self._engine = engine
        self.table_name = table_name
        self._table_initialized = False
        self._table_init_lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def ensure_table(self) -> None:
        """Create the documents table on-demand."""
        if self._table_initialized:
            return

        with self._table_init_lock:
            if self._table_initialized:
                return
            self._create_table()
            self._table_initialized = True

    def _create_table(self) -> None:
        table = self.table_name
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {table} (
                partition_key VARCHAR(255) NOT NULL,
                id VARCHAR(255) NOT NULL,
                document_type VARCHAR(50),
                import_id VARCHAR(255),
                status VARCHAR(50),
                processed_at VARCHAR(64),
                row_number INTEGER,
                body TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (partition_key, id)
            )
            """,
            f"CREATE INDEX IF NOT EXISTS idx_{table}_type ON {table}(document_type)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_import ON {table}(import_id)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table}(status)",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_row ON {table}(partition_key, row_number)",
        ]
        # SQLite drivers refuse multi-statement strings
        with self.engine.begin() as conn:
            for statement in statements:
                conn.execute(text(statement))
        logger.info("Document table '%s' ready", table)

    # -- sync implementations -------------------------------------------------

    def _upsert_sync(self, document: Dict[str, Any]) -> Dict[str, Any]:
        document_id, partition_key = _require_key(document)
        stored = _make_json_safe(document)
        self.ensure_table()

        upsert_sql = f"""
        INSERT INTO {self.table_name} (
            partition_key, id, document_type, import_id, status, processed_at, row_number, body, updated_at
        )
        VALUES (
            :partition_key, :id, :document_type, :import_id, :status, :processed_at, :row_number, :body,
            CURRENT_TIMESTAMP
        )
        ON CONFLICT (partition_key, id) DO UPDATE SET
            document_type = excluded.document_type,
            import_id = excluded.import_id,
            status = excluded.status,
            processed_at = excluded.processed_at,
            row_number = excluded.row_number,
            body = excluded.body,
            updated_at = CURRENT_TIMESTAMP
        """
        params = {
            "partition_key": partition_key,
            "id": document_id,
            "document_type": stored.get("document_type"),
            "import_id": _document_import_id(stored),
            "status": _metadata_field(stored, "status"),
            "processed_at": _metadata_field(stored, "processed_at"),
            "row_number": _row_number(stored),
            "body": json.dumps(stored),
        }
        with self.engine.begin() as conn:
            conn.execute(text(upsert_sql), params)
        return stored

    def _get_sync(self, document_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        self.ensure_table()
        select_sql = f"""
        SELECT body FROM {self.table_name}
        WHERE partition_key = :partition_key AND id = :id
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                text(select_sql), {"partition_key": partition_key, "id": document_id}
            ).mappings().first()
        return json.loads(row["body"]) if row else None

    def _where_clause(self, query: DocumentQuery) -> Tuple[str, Dict[str, Any]]:
        conditions: List[str] = []
        params: Dict[str, Any] = {}

        if query.partition_key is not None:
            conditions.append("partition_key = :partition_key")
            params["partition_key"] = query.partition_key
        if query.partition_prefix is not None:
            conditions.append("partition_key LIKE :partition_prefix ESCAPE '\\'")
            escaped = (
                query.partition_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            )
            params["partition_prefix"] = f"{escaped}%"
        if query.untyped_only:
            conditions.append("(document_type IS NULL OR document_type = '')")
        if query.document_type is not None:
            conditions.append("document_type = :document_type")
            params["document_type"] = query.document_type
        if query.import_id is not None:
            conditions.append("import_id = :import_id")
            params["import_id"] = query.import_id
        if query.status is not None:
            conditions.append("status = :status")
            params["status"] = query.status

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    def _query_sync(self, query: DocumentQuery) -> List[Dict[str, Any]]:
        self.ensure_table()
        where, params = self._where_clause(query)

        order = ""
        field, descending = query.order_field()
        if field:
            column = _ORDERABLE_FIELDS[field]
            order = f"ORDER BY {column} IS NULL, {column} {'DESC' if descending else 'ASC'}, id"

        paging = ""
        if query.limit is not None:
            paging = "LIMIT :limit OFFSET :offset"
            params["limit"] = query.limit
            params["offset"] = query.offset

        select_sql = f"SELECT body FROM {self.table_name} {where} {order} {paging}"
        with self.engine.connect() as conn:
            rows = conn.execute(text(select_sql), params).mappings().all()

        documents = [json.loads(row["body"]) for row in rows]
        if query.limit is None and query.offset:
            documents = documents[query.offset:]
        return documents

    def _count_sync(self, query: DocumentQuery) -> int:
        self.ensure_table()
        where, params = self._where_clause(query)
        count_sql = f"SELECT COUNT(*) FROM {self.table_name} {where}"
        with self.engine.connect() as conn:
            return int(conn.execute(text(count_sql), params).scalar() or 0)

    def _delete_sync(self, document_id: str, partition_key: str) -> bool:
        self.ensure_table()
        delete_sql = f"""
        DELETE FROM {self.table_name}
        WHERE partition_key = :partition_key AND id = :id
        """
        with self.engine.begin() as conn:
            result = conn.execute(text(delete_sql), {"partition_key": partition_key, "id": document_id})
        return (result.rowcount or 0) > 0

    # -- async port -----------------------------------------------------------

    async def upsert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._upsert_sync, document)

    async def get(self, document_id: str, partition_key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._get_sync, document_id, partition_key)

    async def query(self, query: DocumentQuery) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._query_sync, query)

    async def count(self, query: DocumentQuery) -> int:
        return await asyncio.to_thread(self._count_sync, query)

    async def delete(self, document_id: str, partition_key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, document_id, partition_key)


def build_document_store(backend: str) -> DocumentStore:
    """Return the store adapter named by the ``document_store_backend`` setting."""
    normalized = (backend or "").strip().lower()
    if normalized == "memory":
        logger.warning("Using the in-memory document store; data is lost on restart")
        return InMemoryDocumentStore()
    if normalized in ("sql", "postgres", "postgresql", "sqlite"):
        return SqlDocumentStore()
    raise ValueError(f"Unknown document store backend: {backend!r}")
