"""
Ingestion Worker Pool

In-process task queue in front of the IngestionPipeline. Tasks are plain
records: attempts, max_attempts, cancelled and status are fields on the
task, not framework state.

- enqueue() returns the task immediately; workers pick tasks in FIFO order
- Several documents are ingested concurrently (``workers`` consumers)
- Tasks for the same content unit never run at the same time. A unit's
  lock exists only while some task for that unit is waiting or running
- Finished tasks leave the live table; the most recent ``history_size``
  stay readable through get()
- A task whose unit ends with failed chunks is re-queued until
  max_attempts; the pipeline then re-embeds only the failed subset
- Errors that cannot succeed on retry (immutable content, provider
  authentication, dimension mismatch, configuration) fail the task at once

For distributed processing the same pipeline is driven by the Celery
tasks in ragcore.tasks.ingestion_tasks.
"""

import asyncio
import enum
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ragcore.core.config import settings
from ragcore.core.exceptions import (
    AuthenticationFailedError,
    ConfigurationError,
    ContentUnitImmutableError,
    DimensionMismatchError,
    RagCoreError,
)
from ragcore.core.logging import get_logger
from ragcore.schemas.content import ContentType, IngestResult, utcnow
from ragcore.services.ingestion.pipeline import IngestionPipeline


logger = get_logger(__name__)

_NON_RETRYABLE = (
    ContentUnitImmutableError,
    AuthenticationFailedError,
    DimensionMismatchError,
    ConfigurationError,
)


class TaskStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IngestionTask(BaseModel):
    """One unit of ingestion work."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    document_id: str
    content_unit_id: str
    text: str
    content_type: ContentType = ContentType.TEXT
    payload: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    attempts: int = 0
    max_attempts: int = Field(default_factory=lambda: settings.INGESTION_MAX_ATTEMPTS)
    cancelled: bool = False
    status: TaskStatus = TaskStatus.QUEUED
    result: Optional[IngestResult] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def done(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class IngestionWorkerPool:
    """
    Async worker pool consuming IngestionTasks.

    Usage:
    ------
    pool = IngestionWorkerPool(pipeline, workers=4)
    await pool.start()
    task = pool.enqueue(IngestionTask(document_id="doc-1", content_unit_id="doc-1:0", text=text))
    await pool.join()
    print(task.status, task.result)
    await pool.stop()
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        workers: Optional[int] = None,
        retry_delay: float = 0.0,
        history_size: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.workers = workers or settings.INGESTION_WORKERS
        self.retry_delay = retry_delay
        self.history_size = settings.INGESTION_TASK_HISTORY if history_size is None else history_size
        self._queue: asyncio.Queue = asyncio.Queue()
        # unfinished tasks only
        self._tasks: Dict[str, IngestionTask] = {}
        self._history: "OrderedDict[str, IngestionTask]" = OrderedDict()
        self._unit_locks: Dict[str, asyncio.Lock] = {}
        self._unit_lock_users: Dict[str, int] = {}
        self._consumers: List[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def enqueue(self, task: IngestionTask) -> IngestionTask:
        """Queue a task. Returns the same task object, updated in place as it runs."""
        self._history.pop(task.id, None)
        self._tasks[task.id] = task
        task.status = TaskStatus.QUEUED
        self._queue.put_nowait(task.id)
        logger.info(
            "ingestion_task_enqueued",
            task_id=task.id,
            document_id=task.document_id,
            content_unit_id=task.content_unit_id,
        )
        return task

    def get(self, task_id: str) -> Optional[IngestionTask]:
        task = self._tasks.get(task_id)
        return task if task is not None else self._history.get(task_id)

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a queued task.

        A task that is already running finishes its current attempt but is
        not retried. Returns False for unknown or finished tasks.
        """
        task = self._tasks.get(task_id)
        if task is None or task.done:
            return False
        task.cancelled = True
        if task.status == TaskStatus.QUEUED:
            task.status = TaskStatus.CANCELLED
            self._retire(task)
        logger.info("ingestion_task_cancelled", task_id=task_id)
        return True

    async def start(self) -> None:
        """Start the worker coroutines on the running loop."""
        if self._running:
            logger.warning("ingestion_pool_already_running")
            return
        self._running = True
        self._consumers = [
            asyncio.create_task(self._worker(i), name=f"ingestion-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("ingestion_pool_started", workers=self.workers)

    async def join(self) -> None:
        """Wait until every queued task (including retries) is done."""
        await self._queue.join()

    async def stop(self) -> None:
        """Stop the workers. Queued tasks stay queued."""
        if not self._running:
            return
        self._running = False
        for consumer in self._consumers:
            consumer.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers = []
        logger.info("ingestion_pool_stopped", pending=self._queue.qsize())

    async def _worker(self, worker_id: int) -> None:
        while True:
            task_id = await self._queue.get()
            try:
                task = self._tasks.get(task_id)
                if task is not None:
                    await self._run(task, worker_id)
                    if task.done:
                        self._retire(task)
            finally:
                self._queue.task_done()

    def _retire(self, task: IngestionTask) -> None:
        """Move a finished task from the live table into the bounded history."""
        self._tasks.pop(task.id, None)
        if self.history_size <= 0:
            return
        self._history[task.id] = task
        self._history.move_to_end(task.id)
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

    async def _run(self, task: IngestionTask, worker_id: int) -> None:
        if task.cancelled:
            task.status = TaskStatus.CANCELLED
            return

        unit_id = task.content_unit_id
        lock = self._unit_locks.setdefault(unit_id, asyncio.Lock())
        self._unit_lock_users[unit_id] = self._unit_lock_users.get(unit_id, 0) + 1
        try:
            async with lock:
                await self._attempt(task, worker_id)
        finally:
            self._unit_lock_users[unit_id] -= 1
            if not self._unit_lock_users[unit_id]:
                del self._unit_lock_users[unit_id]
                del self._unit_locks[unit_id]

    async def _attempt(self, task: IngestionTask, worker_id: int) -> None:
        task.status = TaskStatus.RUNNING
        task.attempts += 1
        try:
            result = await self.pipeline.ingest(
                task.document_id,
                task.content_unit_id,
                task.text,
                content_type=task.content_type,
                payload=task.payload,
                title=task.title,
                metadata=task.metadata,
            )
        except _NON_RETRYABLE as e:
            task.status = TaskStatus.FAILED
            task.error = e.message
            logger.error("ingestion_task_failed", task_id=task.id, attempts=task.attempts, **e.to_dict())
            return
        except Exception as e:
            task.error = e.message if isinstance(e, RagCoreError) else str(e)
            logger.warning(
                "ingestion_task_error",
                task_id=task.id,
                worker=worker_id,
                attempts=task.attempts,
                error=task.error,
                error_type=type(e).__name__,
            )
            await self._retry_or_fail(task)
            return

        task.result = result
        if result.failed_chunk_indices:
            task.error = result.error
            await self._retry_or_fail(task)
            return

        task.status = TaskStatus.SUCCEEDED
        task.error = None
        logger.info(
            "ingestion_task_succeeded",
            task_id=task.id,
            attempts=task.attempts,
            chunks=result.chunk_count,
            skipped=result.skipped,
        )

    async def _retry_or_fail(self, task: IngestionTask) -> None:
        if task.cancelled:
            task.status = TaskStatus.CANCELLED
            return
        if task.attempts >= task.max_attempts:
            task.status = TaskStatus.FAILED
            logger.error("ingestion_task_exhausted", task_id=task.id, attempts=task.attempts, error=task.error)
            return
        if self.retry_delay > 0:
            # Still holding the current queue item, so join() keeps waiting
            await asyncio.sleep(self.retry_delay * task.attempts)
        task.status = TaskStatus.QUEUED
        self._queue.put_nowait(task.id)
