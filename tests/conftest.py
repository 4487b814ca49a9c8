"""Shared fixtures: in-memory broker, object store and record store."""

from __future__ import annotations

import io
from collections import defaultdict
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from kafka import TopicPartition
from kafka.errors import KafkaConnectionError, KafkaTimeoutError, NoBrokersAvailable
from PIL import Image
from sqlalchemy.pool import StaticPool

from imgpipe.broker.client import KafkaConsumerClient, KafkaProducerClient
from imgpipe.core.errors import ObjectNotFoundError, ObjectStoreError
from imgpipe.models.delivery import RetryPolicy
from imgpipe.services.producer import CompletionPublisher, ResilientPublisher, TaskProducer
from imgpipe.services.record_store import RecordStore

STAGING = "uploads"
RESULTS = "completed"
TASK_TOPIC = "image-tasks"
COMPLETION_TOPIC = "image-completed"


@dataclass
class FakeRecord:
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: Optional[bytes]


class _FailedFuture:
    def __init__(self, error: Exception) -> None:
        self._error = error

    def get(self, timeout=None):
        raise self._error


class _DoneFuture:
    def get(self, timeout=None):
        return None


class FakeBroker:
    """Single-partition topics shared by fake producers and consumers."""

    def __init__(self) -> None:
        self.topics: Dict[str, List[FakeRecord]] = defaultdict(list)
        self.committed: Dict[Tuple[str, str], int] = {}
        self.available = True
        self.producers: List["FakeKafkaProducer"] = []
        self.consumers: List["FakeKafkaConsumer"] = []

    def producer_factory(self, **config):
        if not self.available:
            raise NoBrokersAvailable()
        producer = FakeKafkaProducer(self, config)
        self.producers.append(producer)
        return producer

    def consumer_factory(self, topic, **config):
        if not self.available:
            raise NoBrokersAvailable()
        consumer = FakeKafkaConsumer(self, topic, config)
        self.consumers.append(consumer)
        return consumer

    def append(self, topic: str, key: Optional[bytes], value: Optional[bytes]) -> FakeRecord:
        record = FakeRecord(topic, 0, len(self.topics[topic]), key, value)
        self.topics[topic].append(record)
        return record

    def values(self, topic: str) -> List[bytes]:
        return [record.value for record in self.topics[topic]]


class FakeCluster:
    def __init__(self) -> None:
        self.nodes = [0]

    def brokers(self):
        return set(self.nodes)


class FakeNetworkClient:
    """Node bookkeeping the client liveness check reads."""

    def __init__(self, broker: FakeBroker) -> None:
        self.broker = broker
        self.cluster = FakeCluster()
        self.reachable = True

    def least_loaded_node(self):
        if self.broker.available and self.reachable:
            return 0
        return None


class FakeKafkaProducer:
    def __init__(self, broker: FakeBroker, config: dict) -> None:
        self.broker = broker
        self.config = config
        self.closed = False
        self._sender = SimpleNamespace(_client=FakeNetworkClient(broker))

    @property
    def network(self) -> FakeNetworkClient:
        return self._sender._client

    def send(self, topic, key=None, value=None):
        if not self.broker.available:
            return _FailedFuture(KafkaTimeoutError("broker unavailable"))
        self.broker.append(topic, key, value)
        return _DoneFuture()

    def bootstrap_connected(self) -> bool:
        # kafka-python drops the bootstrap connection once a node is connected.
        return False

    def close(self, timeout=None) -> None:
        self.closed = True


class FakeKafkaConsumer:
    def __init__(self, broker: FakeBroker, topic: str, config: dict) -> None:
        self.broker = broker
        self.topic = topic
        self.config = config
        self.group = config["group_id"]
        self.position = broker.committed.get((self.group, topic), 0)
        self.assigned: Set[TopicPartition] = set()
        self.joined = False
        self.closed = False
        self._client = FakeNetworkClient(broker)

    @property
    def network(self) -> FakeNetworkClient:
        return self._client

    def poll(self, timeout_ms=0):
        if not self.broker.available:
            raise KafkaConnectionError("broker unavailable")
        # The group assigns the single partition on the first poll.
        if not self.joined:
            self.joined = True
            self.assigned = {TopicPartition(self.topic, 0)}
        if not self.assigned:
            return {}
        records = self.broker.topics[self.topic]
        if self.position >= len(records):
            return {}
        batch = records[self.position:self.position + self.config.get("max_poll_records", 500)]
        self.position += len(batch)
        return {TopicPartition(self.topic, 0): batch}

    def commit(self) -> None:
        self.broker.committed[(self.group, self.topic)] = self.position

    def assignment(self) -> Set[TopicPartition]:
        return set(self.assigned)

    def seek(self, partition, offset) -> None:
        if partition not in self.assigned:
            raise AssertionError("Unassigned partition")
        self.position = offset

    def bootstrap_connected(self) -> bool:
        return False

    def close(self, timeout=None) -> None:
        self.closed = True


class FakeObjectStore:
    """Dictionary-backed stand-in for S3ObjectStore."""

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.content_types: Dict[Tuple[str, str], Optional[str]] = {}
        self.fail_puts = False
        self.fail_deletes = False
        self.deletes: List[Tuple[str, str]] = []

    def get(self, bucket: str, key: str) -> bytes:
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise ObjectNotFoundError(bucket, key) from None

    def put(self, bucket: str, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        if self.fail_puts:
            raise ObjectStoreError(f"Failed to write {bucket}/{key}: storage offline")
        self.objects[(bucket, key)] = data
        self.content_types[(bucket, key)] = content_type

    def delete(self, bucket: str, key: str) -> None:
        self.deletes.append((bucket, key))
        if self.fail_deletes:
            raise ObjectStoreError(f"Failed to delete {bucket}/{key}: access denied")
        self.objects.pop((bucket, key), None)

    def exists(self, bucket: str, key: str) -> bool:
        return (bucket, key) in self.objects


def make_image_bytes(size=(10, 10), fmt="PNG", color=(200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class Sleeps(list):
    def __call__(self, seconds: float) -> None:
        self.append(seconds)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def records() -> RecordStore:
    store = RecordStore.from_url(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store.create_schema()
    return store


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def sleeps() -> Sleeps:
    return Sleeps()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=0.2, max_delay=3.0)


@pytest.fixture
def producer_client(broker: FakeBroker) -> KafkaProducerClient:
    return KafkaProducerClient(["fake:9092"], client_id="test", factory=broker.producer_factory)


@pytest.fixture
def task_producer(producer_client, retry_policy, sleeps) -> TaskProducer:
    return TaskProducer(ResilientPublisher(producer_client, TASK_TOPIC, retry_policy, sleep=sleeps))


@pytest.fixture
def completion_publisher(producer_client, retry_policy, sleeps) -> CompletionPublisher:
    return CompletionPublisher(ResilientPublisher(producer_client, COMPLETION_TOPIC, retry_policy, sleep=sleeps))


@pytest.fixture
def make_consumer_client(broker: FakeBroker):
    def _make(topic: str, group_id: str) -> KafkaConsumerClient:
        return KafkaConsumerClient(
            ["fake:9092"],
            topic=topic,
            group_id=group_id,
            client_id="test",
            factory=broker.consumer_factory,
        )

    return _make


@pytest.fixture
def fake_record():
    def _make(value: Any, key: Optional[str] = None, topic: str = TASK_TOPIC, offset: int = 0) -> FakeRecord:
        if isinstance(value, str):
            value = value.encode("utf-8")
        return FakeRecord(topic, 0, offset, key.encode("utf-8") if key else None, value)

    return _make
