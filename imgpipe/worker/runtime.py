"""Process assembly: build clients once at start-up and wire the tiers."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, List

from imgpipe.broker.client import BrokerClient, KafkaConsumerClient, KafkaProducerClient
from imgpipe.broker.consumer import MessageLoop
from imgpipe.broker.supervisor import ConnectionSupervisor
from imgpipe.core.config import Settings
from imgpipe.core.logging import get_logger
from imgpipe.services.ingestion import IngestionService
from imgpipe.services.object_store import S3ObjectStore
from imgpipe.services.producer import CompletionPublisher, ResilientPublisher, TaskProducer
from imgpipe.services.record_store import RecordStore
from imgpipe.services.thumbnailer import Thumbnailer
from imgpipe.tasks.completion_tasks import CompletionConsumer, CompletionReconciler
from imgpipe.tasks.image_tasks import ImageTaskWorker

logger = get_logger(__name__)


def build_producer_client(settings: Settings, role: str) -> KafkaProducerClient:
    return KafkaProducerClient(
        bootstrap_servers=settings.kafka_brokers,
        client_id=f"{settings.kafka_client_id}-{role}",
        request_timeout_ms=settings.kafka_request_timeout_ms,
        connection_timeout_ms=settings.kafka_connection_timeout_ms,
    )


def build_consumer_client(settings: Settings, topic: str, group_id: str, role: str) -> KafkaConsumerClient:
    return KafkaConsumerClient(
        bootstrap_servers=settings.kafka_brokers,
        topic=topic,
        group_id=group_id,
        client_id=f"{settings.kafka_client_id}-{role}",
        session_timeout_ms=settings.kafka_session_timeout_ms,
        heartbeat_interval_ms=settings.kafka_heartbeat_interval_ms,
        auto_offset_reset=settings.auto_offset_reset,
    )


def build_message_loop(settings: Settings, client: KafkaConsumerClient, handler) -> MessageLoop:
    return MessageLoop(
        client,
        handler,
        commit_policy=settings.offset_commit_policy,
        max_redeliveries=settings.max_redeliveries,
        poll_timeout_ms=settings.consumer_poll_timeout_ms,
    )


@contextmanager
def supervised(settings: Settings, clients: List[BrokerClient]) -> Iterator[ConnectionSupervisor]:
    """Connect ``clients``, supervise them, and close them on exit."""

    supervisor = ConnectionSupervisor(clients, interval=settings.supervisor_interval_seconds)
    try:
        for client in clients:
            client.connect()
        supervisor.start()
        yield supervisor
    finally:
        supervisor.stop()
        for client in clients:
            client.close()


def run_worker(settings: Settings, stop_event: threading.Event) -> None:
    """Consume the task topic until stopped."""

    object_store = S3ObjectStore.from_settings(settings)
    producer_client = build_producer_client(settings, "worker")
    consumer_client = build_consumer_client(settings, settings.task_topic, settings.worker_group_id, "worker")

    completions = CompletionPublisher(
        ResilientPublisher(producer_client, settings.completion_topic, settings.retry_policy)
    )
    worker = ImageTaskWorker(
        object_store,
        Thumbnailer.from_settings(settings),
        completions,
        staging_bucket=settings.staging_bucket,
        results_bucket=settings.results_bucket,
    )
    loop = build_message_loop(settings, consumer_client, worker.handle)

    logger.info("worker_starting", topic=settings.task_topic, group_id=settings.worker_group_id)
    with supervised(settings, [consumer_client, producer_client]):
        loop.run(stop_event)


def run_completions(settings: Settings, stop_event: threading.Event) -> None:
    """Consume the completion topic until stopped."""

    records = RecordStore.from_url(settings.database_url)
    reconciler = CompletionReconciler(
        records,
        S3ObjectStore.from_settings(settings),
        staging_bucket=settings.staging_bucket,
        results_bucket=settings.results_bucket,
    )
    consumer_client = build_consumer_client(
        settings, settings.completion_topic, settings.completion_group_id, "completions"
    )
    loop = build_message_loop(settings, consumer_client, CompletionConsumer(reconciler).handle)

    logger.info("completions_starting", topic=settings.completion_topic, group_id=settings.completion_group_id)
    with supervised(settings, [consumer_client]):
        loop.run(stop_event)


def build_ingestion(settings: Settings) -> tuple[IngestionService, KafkaProducerClient]:
    """Ingestion service plus the producer client the caller must close."""

    producer_client = build_producer_client(settings, "ingest")
    producer = TaskProducer(ResilientPublisher(producer_client, settings.task_topic, settings.retry_policy))
    service = IngestionService(
        S3ObjectStore.from_settings(settings),
        RecordStore.from_url(settings.database_url),
        producer,
        staging_bucket=settings.staging_bucket,
    )
    return service, producer_client
