"""
Pytest configuration and fixtures for the ingestion tests.

Tests run against the in-memory document store and a fake blob store, so no
database or object storage is required.
"""

import os

# Keep the settings module off the real database during tests.
os.environ.setdefault("SKIP_DB_INIT", "1")
os.environ.setdefault("DOCUMENT_STORE_BACKEND", "memory")
os.environ.setdefault("STORAGE_PROVIDER", "local")

from typing import Dict, List, Optional

import pytest

from tabular_ingest.core.config import Settings
from tabular_ingest.db.documents import InMemoryDocumentStore
from tabular_ingest.domain.imports.orchestrator import IngestionOrchestrator
from tabular_ingest.domain.imports.persistence import BatchPersistenceEngine, RetryPolicy
from tabular_ingest.integrations.storage import BlobStore, StorageUploadError


class FakeBlobStore(BlobStore):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads: Dict[str, bytes] = {}

    async def upload(self, data: bytes, blob_name: str, content_type: Optional[str] = None) -> str:
        if self.fail:
            raise StorageUploadError("Upload failed: storage unavailable")
        self.uploads[blob_name] = data
        return f"https://blobs.example.test/{blob_name}"


async def _no_sleep(_delay: float) -> None:
    return None


def make_retry_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=0,
        max_jitter_seconds=0,
        timeout_seconds=5,
        sleep=_no_sleep,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        document_store_backend="memory",
        temp_upload_dir=str(tmp_path / "uploads"),
        local_storage_dir=str(tmp_path / "blobs"),
        ingest_batch_size=2,
        ingest_backoff_base_seconds=0,
        ingest_backoff_jitter_seconds=0,
        use_processing_queue=False,
    )


@pytest.fixture
def persistence(store) -> BatchPersistenceEngine:
    return BatchPersistenceEngine(store, make_retry_policy(), batch_size=2, max_failure_rate=0.5)


@pytest.fixture
def orchestrator(store, blob_store, persistence, test_settings) -> IngestionOrchestrator:
    return IngestionOrchestrator(store, blob_store, persistence, config=test_settings)


@pytest.fixture
def write_file(tmp_path):
    """Write text content to a file under tmp_path and return its path."""

    def _write(name: str, content: str) -> str:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def write_workbook(tmp_path):
    """Write rows (first row = headers) to an .xlsx file and return its path."""
    from openpyxl import Workbook

    def _write(name: str, rows: List[list]) -> str:
        workbook = Workbook()
        sheet = workbook.active
        for row in rows:
            sheet.append(row)
        path = tmp_path / name
        workbook.save(path)
        return str(path)

    return _write
