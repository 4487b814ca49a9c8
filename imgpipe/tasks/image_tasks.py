"""Worker tier: turn task messages into thumbnails and completion messages."""

from __future__ import annotations

import time
from typing import Any, Callable

from imgpipe.broker.client import record_key
from imgpipe.core.errors import MessageDecodeError
from imgpipe.core.logging import get_logger
from imgpipe.models.messages import CompletionMessage, TaskMessage
from imgpipe.services.ingestion import epoch_ms
from imgpipe.services.object_store import S3ObjectStore
from imgpipe.services.producer import CompletionPublisher
from imgpipe.services.thumbnailer import Thumbnailer

logger = get_logger(__name__)


class ImageTaskWorker:
    """Process one task per delivery and always report its outcome.

    Failures while fetching, decoding, rendering or storing are reported as a
    failed completion; they never escape ``handle``. Only a completion that
    cannot be published raises, which leaves redelivery to the consumer loop.
    """

    def __init__(
        self,
        object_store: S3ObjectStore,
        thumbnailer: Thumbnailer,
        completions: CompletionPublisher,
        staging_bucket: str,
        results_bucket: str,
        clock_ms: Callable[[], int] = epoch_ms,
    ) -> None:
        self._store = object_store
        self._thumbnailer = thumbnailer
        self._completions = completions
        self._staging_bucket = staging_bucket
        self._results_bucket = results_bucket
        self._clock_ms = clock_ms

    def handle(self, record: Any) -> None:
        """Message handler for the task topic."""

        try:
            task = TaskMessage.from_bytes(record.value)
        except MessageDecodeError as exc:
            image_id = record_key(record)
            if image_id is None:
                logger.error("image_task_undecodable", offset=record.offset, error=str(exc))
                return
            logger.error("image_task_invalid", image_id=image_id, error=str(exc))
            self._completions.publish(CompletionMessage.failed(image_id, 0, str(exc)))
            return

        logger.info("image_task_received", image_id=task.id, queue_delay_ms=self._clock_ms() - task.start_time)
        self._completions.publish(self.process(task))

    def process(self, task: TaskMessage) -> CompletionMessage:
        """Render the thumbnail for ``task`` and describe the outcome."""

        started = time.monotonic()
        try:
            source = self._store.get(self._staging_bucket, task.id)
            thumbnail = self._thumbnailer.render(source)
            self._store.put(
                self._results_bucket,
                task.id,
                thumbnail,
                content_type=self._thumbnailer.content_type,
            )
        except Exception as exc:
            logger.exception("image_task_failed", image_id=task.id, error=str(exc))
            return CompletionMessage.failed(task.id, self._clock_ms() - task.start_time, str(exc))

        logger.info(
            "image_task_completed",
            image_id=task.id,
            source_bytes=len(source),
            result_bytes=len(thumbnail),
            worker_ms=int((time.monotonic() - started) * 1000),
        )
        return CompletionMessage.succeeded(task.id, self._clock_ms() - task.start_time)
