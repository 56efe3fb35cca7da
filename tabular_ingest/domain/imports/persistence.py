"""
Batched, retrying persistence of import rows and metadata.

Rows are written in fixed-size batches, one batch after another. Inside a
batch every row is upserted concurrently with its own retry loop, so a row
that keeps failing only costs its own attempts. Failed rows are collected
rather than raised; the import is only aborted when the overall failure
rate crosses the configured threshold.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from tabular_ingest.core.config import Settings
from tabular_ingest.core.errors import CatastrophicFailureRateError, MetadataPersistenceError
from tabular_ingest.db.documents import DocumentStore
from tabular_ingest.domain.imports.keys import (
    ROW_DOCUMENT_TYPE,
    row_document_id,
    row_partition_key,
)
from tabular_ingest.domain.imports.models import (
    ROW_IMPORT_ID_FIELD,
    ROW_NUMBER_FIELD,
    ImportMetadata,
)

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryPolicy:
    """
    Exponential backoff with jitter around a single async operation.

    ``run`` never raises for operation failures; it reports the final error
    and the number of attempts in an :class:`OperationResult`. Each attempt
    is bounded by ``timeout_seconds`` and a timeout counts as a retryable
    failure.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.2,
        max_jitter_seconds: float = 0.1,
        max_delay_seconds: float = 10.0,
        timeout_seconds: Optional[float] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_jitter_seconds = max_jitter_seconds
        self.max_delay_seconds = max_delay_seconds
        self.timeout_seconds = timeout_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Settings, **overrides: Any) -> "RetryPolicy":
        options = {
            "max_attempts": config.ingest_retry_attempts,
            "base_delay_seconds": config.ingest_backoff_base_seconds,
            "max_jitter_seconds": config.ingest_backoff_jitter_seconds,
            "timeout_seconds": config.store_timeout_seconds or None,
        }
        options.update(overrides)
        return cls(**options)

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        # Malformed documents fail the same way every time
        return not isinstance(error, (ValueError, TypeError))

    def backoff_seconds(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        exp = self.base_delay_seconds * (2 ** (attempt - 1))
        jitter = self._rng.uniform(0, self.max_jitter_seconds) if self.max_jitter_seconds > 0 else 0.0
        return min(self.max_delay_seconds, exp + jitter)

    async def _attempt(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        if self.timeout_seconds:
            return await asyncio.wait_for(operation(), timeout=self.timeout_seconds)
        return await operation()

    async def run(self, operation: Callable[[], Awaitable[Any]], description: str = "operation") -> OperationResult:
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await self._attempt(operation)
                return OperationResult(value=value, attempts=attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= self.max_attempts or not self.is_retryable(e):
                    logger.debug("%s failed after %d attempt(s): %s", description, attempt, e)
                    return OperationResult(error=e, attempts=attempt)

                delay = self.backoff_seconds(attempt)
                logger.debug(
                    "%s failed on attempt %d/%d (%s); retrying in %.2fs",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)

        # Unreachable: the loop always returns
        raise RuntimeError("retry loop exited without a result")


@dataclass
class RowFailure:
    row_number: Optional[int]
    document_id: Optional[str]
    error: str
    attempts: int = 0


@dataclass
class PersistenceResult:
    total: int = 0
    succeeded: int = 0
    failures: List[RowFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failure_rate(self) -> float:
        return self.failed / self.total if self.total else 0.0


def build_row_document(row: Dict[str, Any]) -> Dict[str, Any]:
    """Attach id, partition key and document type to a stamped row."""
    import_id = row.get(ROW_IMPORT_ID_FIELD)
    row_number = row.get(ROW_NUMBER_FIELD)
    if not import_id or row_number is None:
        raise ValueError(f"Row is missing {ROW_IMPORT_ID_FIELD} or {ROW_NUMBER_FIELD}")

    document = dict(row)
    document.update(
        {
            "id": row_document_id(import_id, row_number),
            "partition_key": row_partition_key(import_id),
            "document_type": ROW_DOCUMENT_TYPE,
        }
    )
    return document


class BatchPersistenceEngine:
    def __init__(
        self,
        store: DocumentStore,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        batch_size: int = 100,
        max_failure_rate: float = 0.5,
        max_concurrency: Optional[int] = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.max_failure_rate = max_failure_rate
        self.max_concurrency = max_concurrency or batch_size

    @classmethod
    def from_settings(cls, store: DocumentStore, config: Settings) -> "BatchPersistenceEngine":
        return cls(
            store,
            RetryPolicy.from_settings(config),
            batch_size=config.ingest_batch_size,
            max_failure_rate=config.ingest_max_failure_rate,
        )

    async def _persist_row(self, row: Dict[str, Any], semaphore: asyncio.Semaphore) -> Optional[RowFailure]:
        row_number = row.get(ROW_NUMBER_FIELD)
        try:
            document = build_row_document(row)
        except ValueError as e:
            return RowFailure(row_number=row_number, document_id=None, error=str(e))

        async with semaphore:
            outcome = await self.retry_policy.run(
                lambda: self.store.upsert(document),
                description=f"Upsert of {document['id']}",
            )

        if outcome.ok:
            return None
        return RowFailure(
            row_number=row_number,
            document_id=document["id"],
            error=str(outcome.error) or type(outcome.error).__name__,
            attempts=outcome.attempts,
        )

    async def persist_rows(self, rows: Sequence[Dict[str, Any]]) -> PersistenceResult:
        """
        Upsert every row, batch by batch.

        Returns:
            PersistenceResult with the per-row failures

        Raises:
            CatastrophicFailureRateError: If the share of failed rows exceeds
                ``max_failure_rate`` once every batch has been attempted
        """
        result = PersistenceResult(total=len(rows))
        if not rows:
            return result

        semaphore = asyncio.Semaphore(self.max_concurrency)
        batch_count = (len(rows) + self.batch_size - 1) // self.batch_size

        for batch_index, start in enumerate(range(0, len(rows), self.batch_size), start=1):
            batch = rows[start:start + self.batch_size]
            outcomes = await asyncio.gather(*(self._persist_row(row, semaphore) for row in batch))
            batch_failures = [failure for failure in outcomes if failure is not None]

            result.succeeded += len(batch) - len(batch_failures)
            result.failures.extend(batch_failures)

            if batch_failures:
                logger.warning(
                    "Batch %d/%d: %d of %d rows failed to persist (first error: %s)",
                    batch_index,
                    batch_count,
                    len(batch_failures),
                    len(batch),
                    batch_failures[0].error,
                )
            else:
                logger.debug("Batch %d/%d persisted (%d rows)", batch_index, batch_count, len(batch))

        if result.failure_rate > self.max_failure_rate:
            logger.error(
                "Row persistence failure rate %.1f%% exceeds threshold %.1f%%",
                result.failure_rate * 100,
                self.max_failure_rate * 100,
            )
            raise CatastrophicFailureRateError(result, self.max_failure_rate)

        return result

    async def persist_metadata(self, metadata: ImportMetadata) -> Dict[str, Any]:
        document = metadata.to_document()
        outcome = await self.retry_policy.run(
            lambda: self.store.upsert(document),
            description=f"Metadata upsert for {document['id']}",
        )
        if not outcome.ok:
            raise MetadataPersistenceError(
                f"Failed to persist metadata for import {metadata.import_id} "
                f"after {outcome.attempts} attempt(s): {outcome.error}"
            ) from outcome.error
        return outcome.value
