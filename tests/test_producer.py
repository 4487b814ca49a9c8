import json

import pytest

from imgpipe.broker.client import ConnectionState
from imgpipe.core.errors import BrokerConnectionError, PublishError
from imgpipe.models.messages import TaskMessage

from conftest import TASK_TOPIC


def test_submit_publishes_task_keyed_by_id(broker, task_producer, producer_client):
    task_producer.submit(TaskMessage(id="t1", start_time=1000))

    [record] = broker.topics[TASK_TOPIC]
    assert record.key == b"t1"
    assert json.loads(record.value) == {"id": "t1", "startTime": 1000}
    assert producer_client.state is ConnectionState.connected


def test_connect_is_a_noop_when_already_connected(broker, task_producer, producer_client):
    producer_client.connect()
    task_producer.submit(TaskMessage(id="a", start_time=1))
    task_producer.submit(TaskMessage(id="b", start_time=2))

    assert len(broker.producers) == 1
    assert [r.key for r in broker.topics[TASK_TOPIC]] == [b"a", b"b"]


def test_submit_fails_after_exhausting_retries(broker, task_producer, sleeps):
    broker.available = False

    with pytest.raises(PublishError) as excinfo:
        task_producer.submit(TaskMessage(id="t3", start_time=3000))

    assert excinfo.value.attempts == 5
    assert excinfo.value.key == "t3"
    assert isinstance(excinfo.value.__cause__, BrokerConnectionError)
    assert broker.topics[TASK_TOPIC] == []
    assert sleeps == pytest.approx([0.2, 0.4, 0.8, 1.6])


def test_submit_recovers_from_transient_outage(broker, task_producer, producer_client, sleeps):
    producer_client.connect()
    broker.available = False

    def come_back(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 2:
            broker.available = True

    task_producer.publisher._sleep = come_back
    task_producer.submit(TaskMessage(id="t4", start_time=4000))

    assert len(broker.topics[TASK_TOPIC]) == 1
    assert sleeps == pytest.approx([0.2, 0.4])


def test_publish_returns_attempt_count(task_producer):
    assert task_producer.publisher.publish("k", b"{}") == 1
