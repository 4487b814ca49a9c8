"""Completion tier: reconcile records and storage with task outcomes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from imgpipe.core.errors import MessageDecodeError, ObjectStoreError
from imgpipe.core.logging import get_logger
from imgpipe.models.image import ImageStatus
from imgpipe.models.messages import CompletionMessage
from imgpipe.services.object_store import S3ObjectStore
from imgpipe.services.record_store import RecordStore, TransitionOutcome, TransitionResult, utcnow

logger = get_logger(__name__)


class CompletionReconciler:
    """Apply a completion to the record store and clean up storage.

    Safe to apply any number of times: the record only ever leaves
    ``pending`` once and deleting an absent object is harmless.
    Record-store errors propagate so the message is redelivered.
    """

    def __init__(
        self,
        records: RecordStore,
        object_store: S3ObjectStore,
        staging_bucket: str,
        results_bucket: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._records = records
        self._store = object_store
        self._staging_bucket = staging_bucket
        self._results_bucket = results_bucket
        self._clock = clock

    def apply(self, completion: CompletionMessage) -> TransitionResult:
        log = logger.bind(image_id=completion.id, success=completion.success)
        log.info("completion_received", processing_time_ms=completion.processing_time, error=completion.error)

        result = self._records.apply_completion(completion.id, completion.success, now=self._clock())
        if result.outcome is TransitionOutcome.applied:
            log.info("image_record_updated", status=result.status.value)
        elif result.outcome is TransitionOutcome.duplicate:
            log.info("completion_already_applied", status=result.status.value)
        elif result.outcome is TransitionOutcome.rejected:
            log.warning("completion_conflicts_with_terminal_status", status=result.status.value)
        elif result.outcome is TransitionOutcome.missing:
            log.warning("completion_for_unknown_image")
        else:
            raise ValueError(f"Unhandled transition outcome: {result.outcome!r}")

        self._discard(self._staging_bucket, completion.id)
        if result.status is not ImageStatus.succeeded:
            self._discard(self._results_bucket, completion.id)
        return result

    def _discard(self, bucket: str, key: str) -> None:
        try:
            self._store.delete(bucket, key)
        except ObjectStoreError as exc:
            logger.warning("object_cleanup_failed", bucket=bucket, image_id=key, error=str(exc))


class CompletionConsumer:
    """Message handler for the completion topic."""

    def __init__(self, reconciler: CompletionReconciler) -> None:
        self.reconciler = reconciler

    def handle(self, record: Any) -> None:
        try:
            completion = CompletionMessage.from_bytes(record.value)
        except MessageDecodeError as exc:
            logger.error("completion_undecodable", offset=record.offset, error=str(exc))
            return
        self.reconciler.apply(completion)
