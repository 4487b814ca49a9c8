"""Poll loop with explicit offset-commit and redelivery policy."""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Tuple

from imgpipe.broker.client import KafkaConsumerClient
from imgpipe.core.errors import BrokerError
from imgpipe.core.logging import get_logger
from imgpipe.models.delivery import OffsetCommitPolicy

logger = get_logger(__name__)

RecordHandler = Callable[[Any], None]


class MessageLoop:
    """Feed records from one consumer client to a handler, one at a time.

    With ``OffsetCommitPolicy.after_handling`` the offset is committed only
    once the handler returns. A handler that raises causes the partition to be
    rewound to the failed record so it is fetched again; after
    ``max_redeliveries`` consecutive failures of the same record it is
    committed anyway and reported as abandoned. Failure counts are dropped
    once their partition is revoked from this member.

    With ``OffsetCommitPolicy.before_handling`` the offset is committed as soon
    as the record is received and a handler failure loses the record.
    """

    def __init__(
        self,
        client: KafkaConsumerClient,
        handler: RecordHandler,
        commit_policy: OffsetCommitPolicy = OffsetCommitPolicy.after_handling,
        max_redeliveries: int = 5,
        poll_timeout_ms: int = 1000,
    ) -> None:
        self.client = client
        self._handler = handler
        self.commit_policy = commit_policy
        self.max_redeliveries = max_redeliveries
        self.poll_timeout_ms = poll_timeout_ms
        self._failures: Dict[Tuple[str, int, int], int] = {}

    def run(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set."""

        logger.info(
            "message_loop_started",
            client=self.client.name,
            topic=self.client.topic,
            commit_policy=self.commit_policy.value,
        )
        while not stop_event.is_set():
            try:
                self.run_once()
            except BrokerError as exc:
                logger.error("message_loop_broker_error", client=self.client.name, error=str(exc))
                stop_event.wait(self.poll_timeout_ms / 1000.0)
        logger.info("message_loop_stopped", client=self.client.name)

    def run_once(self) -> int:
        """Connect if needed, poll once and dispatch what arrived."""

        self.client.connect()
        records = self.client.poll(self.poll_timeout_ms)
        if self._failures:
            self._forget_revoked()
        for record in records:
            self._dispatch(record)
        return len(records)

    def _dispatch(self, record: Any) -> None:
        position = (record.topic, record.partition, record.offset)
        log = logger.bind(topic=record.topic, partition=record.partition, offset=record.offset)

        if self.commit_policy is OffsetCommitPolicy.before_handling:
            self.client.commit()
            try:
                self._handler(record)
            except Exception as exc:
                log.exception("message_lost_after_commit", error=str(exc))
            return

        try:
            self._handler(record)
        except Exception as exc:
            failures = self._failures.get(position, 0) + 1
            if failures <= self.max_redeliveries:
                self._failures[position] = failures
                log.warning("message_redelivery_scheduled", failures=failures, error=str(exc))
                if not self.client.rewind(record):
                    self._failures.pop(position, None)
                return
            self._failures.pop(position, None)
            log.exception("message_redelivery_limit_reached", failures=failures, error=str(exc))
            self.client.commit()
            return

        self._failures.pop(position, None)
        self.client.commit()

    def _forget_revoked(self) -> None:
        """Drop failure counts for partitions this member no longer owns."""

        assigned = self.client.assignment()
        for position in list(self._failures):
            if position[:2] not in assigned:
                del self._failures[position]
