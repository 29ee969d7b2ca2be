"""Tests for the worker runtime."""

import threading
import time
from unittest.mock import Mock, patch

import pytest

from rmq_backoff.consumer import Consumer, ConsumerRegistry
from rmq_backoff.exceptions import ConfigurationError, RegistrationError
from rmq_backoff.retry import RetryPolicy
from rmq_backoff.worker import Worker


class SlowConsumer(Consumer):
    events = []

    def process(self, message):
        time.sleep(0.1)
        SlowConsumer.events.append("handled")


class PlainConsumer(Consumer):
    def process(self, message):
        pass


@pytest.fixture
def consuming_broker(broker):
    """Broker whose start_consuming blocks until stop_consuming is called."""
    stopped = threading.Event()
    broker.start_consuming.side_effect = lambda: stopped.wait(5)
    broker.stop_consuming.side_effect = stopped.set
    broker.subscribe.side_effect = lambda queue, callback, tag: tag
    return broker


@pytest.fixture
def worker_registry():
    registry = ConsumerRegistry()
    registry.register(PlainConsumer, "order.created", queue_name="orders", retry=True)
    return registry


def _amqp_message(tag):
    message = Mock()
    message.method = {"routing_key": "order.created", "delivery_tag": tag}
    message.properties = {}
    message.body = b"{}"
    return message


def test_threads_must_be_positive(broker):
    with pytest.raises(ConfigurationError):
        Worker(broker, ConsumerRegistry(), threads=0)


def test_setup_freezes_registry_and_declares_queues(broker, worker_registry):
    worker = Worker(broker, worker_registry)

    worker.setup()

    assert worker_registry.frozen
    broker.declare_queue.assert_any_call("orders", durable=True, arguments={})
    broker.declare_exchange.assert_called_once_with(
        "orders.retry", exchange_type="headers", durable=True
    )
    with pytest.raises(RegistrationError):
        worker_registry.register(SlowConsumer, "late")
    worker.stop()


def test_start_and_stop(consuming_broker, worker_registry):
    worker = Worker(consuming_broker, worker_registry)

    worker.start()
    worker.stop()

    consuming_broker.start_consuming.assert_called_once()
    consuming_broker.cancel.assert_called_once()
    consuming_broker.stop_consuming.assert_called_once()
    consuming_broker.close.assert_called_once()


def test_stop_is_idempotent(consuming_broker, worker_registry):
    worker = Worker(consuming_broker, worker_registry)
    worker.start()

    worker.stop()
    worker.stop()

    consuming_broker.close.assert_called_once()


def test_stop_waits_for_in_flight_handlers(consuming_broker):
    SlowConsumer.events = []
    registry = ConsumerRegistry()
    registry.register(SlowConsumer, "order.created", queue_name="slow")
    consuming_broker.close.side_effect = lambda: SlowConsumer.events.append("closed")
    worker = Worker(consuming_broker, registry, threads=2)
    worker.start()
    callback = consuming_broker.subscribe.call_args.args[1]

    callback(_amqp_message(1))
    worker.stop()

    assert SlowConsumer.events == ["handled", "closed"]
    consuming_broker.ack.assert_called_once_with(1)


@patch("rmq_backoff.worker.signal.signal")
def test_consumer_loop_error_stops_run(mock_signal, consuming_broker, worker_registry):
    consuming_broker.start_consuming.side_effect = RuntimeError("connection lost")
    worker = Worker(consuming_broker, worker_registry)

    worker.run()

    consuming_broker.close.assert_called_once()


def test_retry_policy_reaches_dispatcher(broker):
    registry = ConsumerRegistry()
    registry.register(
        PlainConsumer,
        "order.created",
        queue_name="orders",
        retry=RetryPolicy.builder().max_retries(2),
    )
    worker = Worker(broker, registry)

    worker.setup()

    assert broker.bind_queue.call_count == 2
    worker.stop()
