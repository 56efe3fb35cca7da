"""
In-memory queue that caps how many imports run at the same time.

Uploads are enqueued as ``pending`` items. A dispatcher task polls the queue
and starts pending items, oldest first, while fewer than
``max_concurrent`` are processing. Items live only in memory and are lost
on restart.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Set

from tabular_ingest.domain.imports.models import QueueItem, QueueItemStatus, utcnow

logger = logging.getLogger(__name__)

QueueProcessor = Callable[[QueueItem], Awaitable[Optional[str]]]


class ProcessingQueue:
    def __init__(
        self,
        processor: Optional[QueueProcessor] = None,
        *,
        max_concurrent: int = 3,
        poll_interval_seconds: float = 1.0,
        max_retained_items: int = 1000,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.processor = processor
        self.max_concurrent = max_concurrent
        self.poll_interval_seconds = poll_interval_seconds
        self.max_retained_items = max_retained_items

        self._items: "OrderedDict[str, QueueItem]" = OrderedDict()
        self._active: Set[asyncio.Task] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None

    # -- public API -----------------------------------------------------------

    def enqueue(
        self,
        file_path: str,
        file_name: str,
        file_type: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> QueueItem:
        item = QueueItem(
            id=uuid.uuid4().hex,
            file_path=file_path,
            file_name=file_name,
            file_type=file_type,
            user_id=user_id,
            user_name=user_name,
            user_email=user_email,
        )
        self._items[item.id] = item
        self._prune()
        logger.info("Queued %s as item %s (%d pending)", file_name, item.id, self.pending_count)

        if self._wakeup is not None:
            self._wakeup.set()
        return item.model_copy()

    def get_status(self, item_id: str) -> Optional[QueueItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    def get_all_items(self) -> List[QueueItem]:
        return [item.model_copy() for item in self._items.values()]

    @property
    def pending_count(self) -> int:
        return sum(1 for item in self._items.values() if item.status == QueueItemStatus.PENDING)

    @property
    def processing_count(self) -> int:
        return sum(1 for item in self._items.values() if item.status == QueueItemStatus.PROCESSING)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def start(self) -> None:
        """Start the dispatcher on the running event loop."""
        if self.is_running:
            return
        self._wakeup = asyncio.Event()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="import-queue-dispatcher")
        logger.info(
            "Processing queue started (max %d concurrent, polling every %.1fs)",
            self.max_concurrent,
            self.poll_interval_seconds,
        )

    async def stop(self, wait_for_active: bool = True) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        if wait_for_active and self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)
        logger.info("Processing queue stopped")

    async def join(self) -> None:
        """
        Wait until no item is pending or processing.

        Raises:
            RuntimeError: If items are still pending while the dispatcher is not running
        """
        while self.pending_count or self.processing_count or self._active:
            if not self.is_running and not self._active:
                raise RuntimeError(
                    f"Processing queue is not running; {self.pending_count} items are still pending"
                )
            if self._wakeup is not None:
                self._wakeup.set()
            await asyncio.sleep(min(self.poll_interval_seconds, 0.05))

    # -- dispatching ----------------------------------------------------------

    def _dispatch_pending(self) -> None:
        for item in list(self._items.values()):
            if len(self._active) >= self.max_concurrent:
                break
            if item.status != QueueItemStatus.PENDING:
                continue

            item.status = QueueItemStatus.PROCESSING
            item.started_at = utcnow()
            task = asyncio.create_task(self._run_item(item), name=f"queue-item-{item.id}")
            self._active.add(task)
            task.add_done_callback(self._on_item_done)

    def _on_item_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        if self._wakeup is not None:
            self._wakeup.set()

    async def _dispatch_loop(self) -> None:
        while True:
            self._dispatch_pending()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def _run_item(self, item: QueueItem) -> None:
        logger.info("Processing queue item %s (%s)", item.id, item.file_name)
        try:
            if self.processor is None:
                raise RuntimeError("No processor registered for the import queue")
            item.import_id = await self.processor(item)
            item.status = QueueItemStatus.COMPLETED
        except Exception as e:
            item.status = QueueItemStatus.FAILED
            item.error = str(e) or type(e).__name__
            logger.error("Queue item %s failed: %s", item.id, item.error)
        finally:
            item.completed_at = utcnow()
            self._prune()

    def _prune(self) -> None:
        excess = len(self._items) - self.max_retained_items
        if excess <= 0:
            return
        for item_id in [key for key, item in self._items.items() if item.is_finished][:excess]:
            del self._items[item_id]


def build_queue_processor(orchestrator) -> QueueProcessor:
    """Adapt an orchestrator so each queue item runs one import to completion."""

    async def process(item: QueueItem) -> Optional[str]:
        metadata = await orchestrator.run_import(
            item.file_path,
            item.file_name,
            item.file_type,
            item.user_id,
            item.user_name,
            item.user_email,
        )
        return metadata.import_id

    return process
