"""
Task publishers — hand a pipeline run to the worker substrate.

  CeleryTaskPublisher  process_document.apply_async on documents.ingest
  LocalTaskPublisher   asyncio task in the current process (single-process
                       deployments and the test suite)

Publishers only schedule. Whether a run actually proceeds is decided by the
compare-and-set in the pipeline, so publishing the same document twice is
harmless.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from coursedocs.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

PipelineRunner = Callable[[uuid.UUID, Optional[uuid.UUID]], Awaitable[Any]]


class TaskPublisher(ABC):
    """Injected into IngestionService so it can be mocked in tests."""

    @abstractmethod
    async def publish_processing_task(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID | None = None,
    ) -> None:
        """
        Schedule one pipeline run. run_id is None for a first run (the
        worker claims the PENDING document itself) and set for a reprocess
        run that was already claimed by the caller.
        """


class CeleryTaskPublisher(TaskPublisher):
    """
    Sends the document processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_processing_task(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID | None = None,
    ) -> None:
        from coursedocs.workers.celery_app import INGEST_QUEUE
        from coursedocs.workers.tasks import process_document

        kwargs = {
            "document_id": str(document_id),
            "run_id":      str(run_id) if run_id else None,
        }
        # apply_async blocks on the broker connection; keep it off the event loop
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_document.apply_async(kwargs=kwargs, queue=INGEST_QUEUE),
        )
        logger.info("Processing task published | doc=%s run=%s", document_id, run_id)


class LocalTaskPublisher(TaskPublisher):
    """
    Runs the pipeline as a background asyncio task on the running loop.

    The publisher keeps a strong reference to every task until it finishes
    (the event loop only holds weak ones). join() waits for all scheduled
    runs, including runs scheduled while waiting.
    """

    def __init__(self, runner: PipelineRunner) -> None:
        self._runner = runner
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def publish_processing_task(
        self,
        document_id: uuid.UUID,
        run_id: uuid.UUID | None = None,
    ) -> None:
        task = asyncio.create_task(
            self._runner(document_id, run_id),
            name=f"process-document-{document_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        logger.info("Processing task scheduled locally | doc=%s run=%s", document_id, run_id)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Local processing task crashed | task=%s error=%s",
                task.get_name(), task.exception(),
            )

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_publisher(
    runner: PipelineRunner | None = None,
    settings: Settings | None = None,
) -> TaskPublisher:
    settings = settings or get_settings()
    if settings.dispatch_backend == "local":
        if runner is None:
            raise ValueError("dispatch_backend='local' needs a pipeline runner")
        return LocalTaskPublisher(runner)
    return CeleryTaskPublisher()
