"""Publishing with bounded exponential backoff."""

from __future__ import annotations

import time
from typing import Callable, Optional

from imgpipe.broker.client import KafkaProducerClient
from imgpipe.core.errors import BrokerError, PublishError
from imgpipe.core.logging import get_logger
from imgpipe.models.delivery import RetryPolicy
from imgpipe.models.messages import CompletionMessage, TaskMessage

logger = get_logger(__name__)


class ResilientPublisher:
    """Publish keyed messages to one topic, retrying transient broker failures."""

    def __init__(
        self,
        client: KafkaProducerClient,
        topic: str,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.topic = topic
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def publish(self, key: str, payload: bytes) -> int:
        """Publish ``payload`` and return the number of attempts it took.

        Raises ``PublishError`` once ``policy.max_attempts`` attempts failed.
        """

        started = time.monotonic()
        last_error: Optional[BrokerError] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                self.client.connect()
                self.client.send(self.topic, key, payload)
            except BrokerError as exc:
                last_error = exc
                logger.warning(
                    "publish_attempt_failed",
                    topic=self.topic,
                    key=key,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    error=str(exc),
                )
                if attempt < self.policy.max_attempts:
                    self._sleep(self.policy.delay_for(attempt))
                continue

            logger.info(
                "message_published",
                topic=self.topic,
                key=key,
                attempt=attempt,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            return attempt

        logger.error("publish_retries_exhausted", topic=self.topic, key=key, attempts=self.policy.max_attempts)
        raise PublishError(key, self.topic, self.policy.max_attempts) from last_error


class TaskProducer:
    """Submit transformation tasks to the task topic."""

    def __init__(self, publisher: ResilientPublisher) -> None:
        self.publisher = publisher

    def submit(self, task: TaskMessage) -> None:
        self.publisher.publish(task.key, task.to_bytes())


class CompletionPublisher:
    """Report task outcomes on the completion topic."""

    def __init__(self, publisher: ResilientPublisher) -> None:
        self.publisher = publisher

    def publish(self, completion: CompletionMessage) -> None:
        self.publisher.publish(completion.key, completion.to_bytes())
