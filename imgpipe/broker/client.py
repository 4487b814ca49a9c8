"""Explicitly managed Kafka client connections.

Each client wraps one kafka-python handle and owns its lifecycle: nothing is
connected at import time, ``connect()`` is idempotent and ``reconnect()``
replaces the handle. The current ``state`` is observable so the connection
supervisor and operators can tell a healthy client from a dropped one.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from kafka import KafkaConsumer, KafkaProducer, TopicPartition
from kafka.errors import KafkaError

from imgpipe.core.errors import BrokerConnectionError, BrokerPublishError
from imgpipe.core.logging import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Observable connection state of a broker client."""

    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    reconnecting = "reconnecting"


class BrokerClient:
    """Base class holding a kafka-python handle behind a lock."""

    def __init__(self, name: str, factory: Callable[..., Any]) -> None:
        self.name = name
        self._factory = factory
        self._handle: Any = None
        self._state = ConnectionState.disconnected
        self._failed = False
        self._lock = threading.RLock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def connect(self) -> None:
        """Open the connection unless it is already open."""

        with self._lock:
            if self._handle is not None and self._state is ConnectionState.connected:
                return
            if self._state is not ConnectionState.reconnecting:
                self._state = ConnectionState.connecting
            try:
                self._handle = self._open()
            except KafkaError as exc:
                self._handle = None
                self._state = ConnectionState.disconnected
                logger.warning("broker_connect_failed", client=self.name, error=str(exc))
                raise BrokerConnectionError(f"{self.name}: unable to connect to broker: {exc}") from exc
            self._failed = False
            self._state = ConnectionState.connected
            logger.info("broker_connected", client=self.name)

    def reconnect(self) -> None:
        """Drop the current handle and open a fresh one."""

        with self._lock:
            self._state = ConnectionState.reconnecting
            self._release()
            self.connect()

    def mark_disconnected(self) -> None:
        with self._lock:
            self._state = ConnectionState.disconnected

    def close(self) -> None:
        with self._lock:
            self._release()
            self._state = ConnectionState.disconnected
            logger.info("broker_disconnected", client=self.name)

    def is_alive(self) -> bool:
        """Whether the current handle can still reach the cluster.

        A handle is considered dead once a send, poll or commit through it has
        failed, or when every known broker node is in reconnect backoff. The
        bootstrap connection is not consulted: kafka-python closes it as soon
        as a real broker node is connected.
        """

        with self._lock:
            if self._handle is None or self._failed:
                return False
            network = self._network_client(self._handle)
            if network is None:
                return True
            try:
                if not network.cluster.brokers():
                    # Metadata not loaded yet, still bootstrapping.
                    return True
                return network.least_loaded_node() is not None
            except KafkaError:
                return False

    def _network_client(self, handle: Any) -> Any:
        return None

    def _require(self) -> Any:
        if self._handle is None:
            raise BrokerConnectionError(f"{self.name}: client is not connected")
        return self._handle

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.close()
        except KafkaError as exc:
            logger.warning("broker_close_failed", client=self.name, error=str(exc))

    def _open(self) -> Any:
        raise NotImplementedError


class KafkaProducerClient(BrokerClient):
    """Producer connection publishing UTF-8 keyed messages."""

    def __init__(
        self,
        bootstrap_servers: Sequence[str],
        client_id: str,
        request_timeout_ms: int = 30000,
        connection_timeout_ms: int = 10000,
        factory: Callable[..., Any] = KafkaProducer,
    ) -> None:
        super().__init__(name=f"{client_id}-producer", factory=factory)
        self._config = {
            "bootstrap_servers": list(bootstrap_servers),
            "client_id": client_id,
            "acks": "all",
            # Publish retries are owned by ResilientPublisher.
            "retries": 0,
            "request_timeout_ms": request_timeout_ms,
            "max_block_ms": connection_timeout_ms,
        }
        self._send_timeout = (request_timeout_ms + connection_timeout_ms) / 1000.0

    def _open(self) -> Any:
        return self._factory(**self._config)

    def _network_client(self, handle: Any) -> Any:
        return getattr(getattr(handle, "_sender", None), "_client", None)

    def send(self, topic: str, key: str, value: bytes) -> None:
        """Send one message and wait for the broker acknowledgement."""

        with self._lock:
            producer = self._require()
            try:
                future = producer.send(topic, key=key.encode("utf-8"), value=value)
                future.get(timeout=self._send_timeout)
            except KafkaError as exc:
                self._failed = True
                raise BrokerPublishError(f"{self.name}: send to {topic} failed: {exc}") from exc
            self._failed = False


class KafkaConsumerClient(BrokerClient):
    """Consumer-group connection that hands out one record per poll."""

    def __init__(
        self,
        bootstrap_servers: Sequence[str],
        topic: str,
        group_id: str,
        client_id: str,
        session_timeout_ms: int = 45000,
        heartbeat_interval_ms: int = 15000,
        auto_offset_reset: str = "earliest",
        factory: Callable[..., Any] = KafkaConsumer,
    ) -> None:
        super().__init__(name=f"{client_id}-{group_id}", factory=factory)
        self.topic = topic
        self.group_id = group_id
        self._config = {
            "bootstrap_servers": list(bootstrap_servers),
            "group_id": group_id,
            "client_id": client_id,
            "enable_auto_commit": False,
            "auto_offset_reset": auto_offset_reset,
            # One in-flight record per partition.
            "max_poll_records": 1,
            "session_timeout_ms": session_timeout_ms,
            "heartbeat_interval_ms": heartbeat_interval_ms,
        }

    def _open(self) -> Any:
        return self._factory(self.topic, **self._config)

    def _network_client(self, handle: Any) -> Any:
        return getattr(handle, "_client", None)

    def poll(self, timeout_ms: int) -> List[Any]:
        """Return the records fetched by one poll, flattened across partitions."""

        with self._lock:
            consumer = self._require()
            try:
                batches = consumer.poll(timeout_ms=timeout_ms)
            except KafkaError as exc:
                self._failed = True
                raise BrokerConnectionError(f"{self.name}: poll failed: {exc}") from exc
            self._failed = False
        records: List[Any] = []
        for partition_records in batches.values():
            records.extend(partition_records)
        return records

    def commit(self) -> None:
        """Commit the positions of every record returned so far."""

        with self._lock:
            consumer = self._require()
            try:
                consumer.commit()
            except KafkaError as exc:
                self._failed = True
                raise BrokerConnectionError(f"{self.name}: commit failed: {exc}") from exc

    def assignment(self) -> Set[Tuple[str, int]]:
        """``(topic, partition)`` pairs currently assigned to this member."""

        with self._lock:
            if self._handle is None:
                return set()
            return {(tp.topic, tp.partition) for tp in self._handle.assignment()}

    def rewind(self, record: Any) -> bool:
        """Move the partition position back so ``record`` is fetched again.

        Returns False without seeking when the partition is no longer assigned
        to the current handle. The record was never committed, so whichever
        member now owns the partition fetches it from the committed offset.
        """

        partition = TopicPartition(record.topic, record.partition)
        with self._lock:
            consumer = self._require()
            if partition not in consumer.assignment():
                logger.info(
                    "rewind_skipped_unassigned",
                    client=self.name,
                    topic=record.topic,
                    partition=record.partition,
                    offset=record.offset,
                )
                return False
            try:
                consumer.seek(partition, record.offset)
            except (AssertionError, KafkaError) as exc:
                # kafka-python asserts on partitions revoked mid-call.
                raise BrokerConnectionError(
                    f"{self.name}: rewind of {record.topic}[{record.partition}] failed: {exc!r}"
                ) from exc
        return True


def record_key(record: Any) -> Optional[str]:
    """Decode a consumer record key, if it has one."""

    if record.key is None:
        return None
    if isinstance(record.key, bytes):
        return record.key.decode("utf-8", errors="replace")
    return str(record.key)
