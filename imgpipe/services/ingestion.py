"""Entry points that put new images into the pipeline."""

from __future__ import annotations

import time
import uuid
from typing import Callable, Optional

from imgpipe.core.errors import ObjectNotFoundError, PublishError
from imgpipe.core.logging import get_logger
from imgpipe.models.image import ImageRecord
from imgpipe.models.messages import TaskMessage
from imgpipe.services.object_store import S3ObjectStore
from imgpipe.services.producer import TaskProducer
from imgpipe.services.record_store import RecordStore

logger = get_logger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


class IngestionService:
    """Store raw bytes, create the pending record, then enqueue the task.

    The record always exists before its task is published. If publishing
    fails for good the record stays ``pending`` with no task in flight; that
    orphan is logged here and surfaces later through the stale-record check.
    """

    def __init__(
        self,
        object_store: S3ObjectStore,
        records: RecordStore,
        producer: TaskProducer,
        staging_bucket: str,
        clock_ms: Callable[[], int] = epoch_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = object_store
        self._records = records
        self._producer = producer
        self._staging_bucket = staging_bucket
        self._clock_ms = clock_ms
        self._id_factory = id_factory

    def upload_and_process(
        self,
        data: bytes,
        filename: str,
        description: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> ImageRecord:
        """Accept raw image bytes and start processing them."""

        image_id = self._id_factory()
        logger.info("image_upload_started", image_id=image_id, bytes=len(data), filename=filename)
        self._store.put(self._staging_bucket, image_id, data, content_type=content_type)
        return self._create_and_submit(image_id, filename, description)

    def create_processing_task(self, image_id: str, filename: str, description: Optional[str] = None) -> ImageRecord:
        """Start processing bytes a client already uploaded under ``image_id``."""

        if not self._store.exists(self._staging_bucket, image_id):
            raise ObjectNotFoundError(self._staging_bucket, image_id)
        return self._create_and_submit(image_id, filename, description)

    def _create_and_submit(self, image_id: str, filename: str, description: Optional[str]) -> ImageRecord:
        record = self._records.create(image_id, filename, description=description)
        task = TaskMessage(id=image_id, start_time=self._clock_ms())
        try:
            self._producer.submit(task)
        except PublishError as exc:
            logger.error("orphaned_pending_image", image_id=image_id, attempts=exc.attempts, error=str(exc))
            raise
        logger.info("image_task_submitted", image_id=image_id)
        return record
