import asyncio
import random
from typing import Any, Dict, Set

import pytest

from conftest import make_retry_policy
from tabular_ingest.core.errors import CatastrophicFailureRateError, MetadataPersistenceError
from tabular_ingest.db.documents import DocumentQuery, InMemoryDocumentStore
from tabular_ingest.domain.imports.models import ImportMetadata
from tabular_ingest.domain.imports.persistence import BatchPersistenceEngine, RetryPolicy, build_row_document


class FlakyStore(InMemoryDocumentStore):
    """Fails upserts for chosen document ids a configurable number of times."""

    def __init__(self, failures: Dict[str, int] = None, always_fail: Set[str] = None):
        super().__init__()
        self.failures = dict(failures or {})
        self.always_fail = set(always_fail or ())
        self.calls: Dict[str, int] = {}

    async def upsert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = document["id"]
        self.calls[doc_id] = self.calls.get(doc_id, 0) + 1
        if doc_id in self.always_fail:
            raise ConnectionError("store throttled")
        if self.failures.get(doc_id, 0) > 0:
            self.failures[doc_id] -= 1
            raise ConnectionError("store throttled")
        return await super().upsert(document)


def _rows(import_id: str, count: int):
    return [{"_import_id": import_id, "_row_number": n, "value": n * 10} for n in range(1, count + 1)]


def test_build_row_document_sets_keys():
    document = build_row_document({"_import_id": "abc", "_row_number": 7, "x": 1})

    assert document["id"] == "row_abc_7"
    assert document["partition_key"] == "import_abc"
    assert document["document_type"] == "excel-row"
    assert document["x"] == 1


def test_build_row_document_requires_system_fields():
    with pytest.raises(ValueError):
        build_row_document({"x": 1})


def test_backoff_grows_exponentially_with_bounded_jitter():
    policy = RetryPolicy(base_delay_seconds=1.0, max_jitter_seconds=0.5, rng=random.Random(7))

    delays = [policy.backoff_seconds(attempt) for attempt in (1, 2, 3)]

    assert 1.0 <= delays[0] <= 1.5
    assert 2.0 <= delays[1] <= 2.5
    assert 4.0 <= delays[2] <= 4.5


@pytest.mark.asyncio
async def test_retry_policy_reports_attempts_without_raising():
    sleeps = []

    async def record_sleep(delay):
        sleeps.append(delay)

    policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.1, max_jitter_seconds=0, sleep=record_sleep)

    async def always_fails():
        raise ConnectionError("down")

    outcome = await policy.run(always_fails)

    assert not outcome.ok
    assert outcome.attempts == 3
    assert isinstance(outcome.error, ConnectionError)
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_retry_policy_treats_timeouts_as_retryable():
    calls = {"count": 0}

    async def slow_then_fast():
        calls["count"] += 1
        if calls["count"] == 1:
            await asyncio.sleep(1)
        return "ok"

    policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, max_jitter_seconds=0, timeout_seconds=0.05)

    outcome = await policy.run(slow_then_fast)

    assert outcome.ok
    assert outcome.value == "ok"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_persist_rows_writes_every_row(store):
    engine = BatchPersistenceEngine(store, make_retry_policy(), batch_size=2)

    result = await engine.persist_rows(_rows("abc", 5))

    assert result.total == 5
    assert result.succeeded == 5
    assert result.failures == []
    assert await store.count(DocumentQuery(import_id="abc")) == 5


@pytest.mark.asyncio
async def test_rewriting_rows_is_idempotent(store):
    engine = BatchPersistenceEngine(store, make_retry_policy(), batch_size=2)
    rows = _rows("abc", 3)

    await engine.persist_rows(rows)
    await engine.persist_rows(rows)

    assert len(store) == 3
    assert (await store.get("row_abc_2", "import_abc"))["value"] == 20


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    store = FlakyStore(failures={"row_abc_2": 2})
    engine = BatchPersistenceEngine(store, make_retry_policy(max_attempts=3), batch_size=10)

    result = await engine.persist_rows(_rows("abc", 3))

    assert result.succeeded == 3
    assert store.calls["row_abc_2"] == 3


@pytest.mark.asyncio
async def test_failed_row_does_not_block_other_rows():
    store = FlakyStore(always_fail={"row_abc_2"})
    engine = BatchPersistenceEngine(store, make_retry_policy(), batch_size=2, max_failure_rate=0.5)

    result = await engine.persist_rows(_rows("abc", 4))

    assert result.succeeded == 3
    assert [failure.row_number for failure in result.failures] == [2]
    assert result.failures[0].attempts == 3
    assert await store.get("row_abc_3", "import_abc") is not None


@pytest.mark.asyncio
async def test_catastrophic_failure_rate_aborts_after_all_batches():
    store = FlakyStore(always_fail={"row_abc_1", "row_abc_2", "row_abc_3"})
    engine = BatchPersistenceEngine(store, make_retry_policy(), batch_size=2, max_failure_rate=0.5)

    with pytest.raises(CatastrophicFailureRateError) as excinfo:
        await engine.persist_rows(_rows("abc", 4))

    assert excinfo.value.result.failed == 3
    assert excinfo.value.result.succeeded == 1
    # The last batch was still attempted
    assert await store.get("row_abc_4", "import_abc") is not None


@pytest.mark.asyncio
async def test_failure_rate_at_threshold_is_tolerated():
    store = FlakyStore(always_fail={"row_abc_1", "row_abc_2"})
    engine = BatchPersistenceEngine(store, make_retry_policy(), batch_size=2, max_failure_rate=0.5)

    result = await engine.persist_rows(_rows("abc", 4))

    assert result.failed == 2


@pytest.mark.asyncio
async def test_empty_input_is_a_no_op(store):
    engine = BatchPersistenceEngine(store, make_retry_policy())

    result = await engine.persist_rows([])

    assert result.total == 0
    assert len(store) == 0


@pytest.mark.asyncio
async def test_persist_metadata_raises_after_retries():
    store = FlakyStore(always_fail={"import_abc"})
    engine = BatchPersistenceEngine(store, make_retry_policy())
    metadata = ImportMetadata(import_id="abc", file_name="a.csv", file_type="text/csv", processed_by="u1")

    with pytest.raises(MetadataPersistenceError):
        await engine.persist_metadata(metadata)

    assert store.calls["import_abc"] == 3
