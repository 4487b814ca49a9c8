"""Exception hierarchy shared by the pipeline tiers."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by imgpipe."""


class BrokerError(PipelineError):
    """The message broker could not be reached or refused an operation."""


class BrokerConnectionError(BrokerError):
    """Connecting (or reconnecting) a broker client failed."""


class BrokerPublishError(BrokerError):
    """A single send to the broker failed."""


class PublishError(BrokerError):
    """A message could not be published after every retry attempt."""

    def __init__(self, key: str, topic: str, attempts: int) -> None:
        super().__init__(f"Failed to publish message {key} to {topic} after {attempts} attempts")
        self.key = key
        self.topic = topic
        self.attempts = attempts


class ObjectStoreError(PipelineError):
    """An object store operation failed."""


class ObjectNotFoundError(ObjectStoreError):
    """The requested object does not exist."""

    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"Object {key} not found in bucket {bucket}")
        self.bucket = bucket
        self.key = key


class RecordStoreError(PipelineError):
    """The image record store is unavailable or rejected a statement."""


class ImageDecodeError(PipelineError):
    """Source bytes are not a decodable image."""


class MessageDecodeError(PipelineError):
    """A broker message does not match its schema."""
