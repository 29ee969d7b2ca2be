"""Tests for MessageDispatcher."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from rmq_backoff.config import QueueConfig
from rmq_backoff.consumer import Consumer, ConsumerSpec
from rmq_backoff.dispatcher import MessageDispatcher
from rmq_backoff.error_handlers import RequeueFirstFailure
from rmq_backoff.exceptions import ConsumerTagError, RetryPublishError, WorkerShutdownError
from rmq_backoff.interface import ErrorAcknowledgementInterface, FailureObserverInterface
from rmq_backoff.retry import RetryDecision, RetryPolicy
from rmq_backoff.serializers import IdentitySerializer


class KindX(Exception):
    pass


class RecordingConsumer(Consumer):
    calls = []

    def process(self, message):
        RecordingConsumer.calls.append(message)


class FailingConsumer(Consumer):
    error = KindX("boom")

    def process(self, message):
        raise FailingConsumer.error


def _spec(consumer_cls, retry_policy=None, serializer=None):
    return ConsumerSpec(
        consumer_cls=consumer_cls,
        routing_keys=("test",),
        queue=QueueConfig(name="orders"),
        serializer=serializer,
        retry_policy=retry_policy.bind("orders") if retry_policy else None,
    )


@pytest.fixture(autouse=True)
def reset_calls():
    RecordingConsumer.calls = []


@pytest.fixture
def observer():
    return Mock(spec=FailureObserverInterface)


@pytest.fixture
def router():
    return Mock()


@pytest.fixture
def topology():
    return Mock()


@pytest.fixture
def dispatcher(broker, topology, router, observer):
    return MessageDispatcher(
        broker,
        topology=topology,
        router=router,
        failure_observers=[observer],
    )


class TestHandleMessage:
    """Test the per-delivery terminal action."""

    def test_success_acks_once(self, dispatcher, broker, observer, make_delivery):
        dispatcher.handle_message(_spec(RecordingConsumer), make_delivery(payload=b'{"id": 1}'))

        assert len(RecordingConsumer.calls) == 1
        message = RecordingConsumer.calls[0]
        assert message.body == {"id": 1}
        assert message["id"] == 1
        broker.ack.assert_called_once_with(7)
        broker.nack.assert_not_called()
        observer.notify.assert_not_called()

    def test_success_on_retry_capable_consumer(self, dispatcher, broker, router, make_delivery):
        dispatcher.handle_message(_spec(RecordingConsumer, RetryPolicy()), make_delivery())

        broker.ack.assert_called_once_with(7)
        router.handle_retry.assert_not_called()

    def test_failure_without_retry_nacks(self, dispatcher, broker, router, observer, make_delivery):
        delivery = make_delivery()

        dispatcher.handle_message(_spec(FailingConsumer), delivery)

        broker.nack.assert_called_once_with(7)
        broker.ack.assert_not_called()
        router.handle_retry.assert_not_called()
        observer.notify.assert_called_once_with(delivery, FailingConsumer.error)

    def test_decode_failure_is_a_handler_failure(self, dispatcher, broker, observer, make_delivery):
        dispatcher.handle_message(_spec(RecordingConsumer), make_delivery(payload=b"not json"))

        assert RecordingConsumer.calls == []
        broker.nack.assert_called_once_with(7)
        observer.notify.assert_called_once()

    def test_serializer_override(self, dispatcher, broker, make_delivery):
        spec = _spec(RecordingConsumer, serializer=IdentitySerializer())

        dispatcher.handle_message(spec, make_delivery(payload=b"\x00\x01raw"))

        assert RecordingConsumer.calls[0].body == b"\x00\x01raw"
        broker.ack.assert_called_once_with(7)

    def test_failure_with_retry_delegates_to_router(
        self, dispatcher, broker, router, observer, make_delivery
    ):
        router.handle_retry.return_value = RetryDecision.SCHEDULED
        spec = _spec(FailingConsumer, RetryPolicy())
        delivery = make_delivery()

        dispatcher.handle_message(spec, delivery)

        router.handle_retry.assert_called_once_with(spec, delivery, FailingConsumer.error)
        broker.nack.assert_not_called()
        # scheduled retries are still reported
        observer.notify.assert_called_once_with(delivery, FailingConsumer.error)

    @pytest.mark.parametrize(
        "decision", [RetryDecision.EXHAUSTED, RetryDecision.NON_RETRYABLE]
    )
    def test_terminal_decision_nacks(self, dispatcher, broker, router, observer, decision, make_delivery):
        router.handle_retry.return_value = decision

        dispatcher.handle_message(_spec(FailingConsumer, RetryPolicy()), make_delivery())

        broker.nack.assert_called_once_with(7)
        observer.notify.assert_called_once()

    def test_republish_failure_propagates_after_notifying(
        self, dispatcher, broker, router, observer, make_delivery
    ):
        router.handle_retry.side_effect = RetryPublishError("uuid", "orders.retry", OSError())

        with pytest.raises(RetryPublishError):
            dispatcher.handle_message(_spec(FailingConsumer, RetryPolicy()), make_delivery())

        broker.nack.assert_not_called()
        observer.notify.assert_called_once()

    def test_observer_errors_do_not_stop_other_observers(self, broker, make_delivery):
        broken = Mock(spec=FailureObserverInterface)
        broken.notify.side_effect = RuntimeError("observer down")
        healthy = Mock(spec=FailureObserverInterface)
        dispatcher = MessageDispatcher(broker, failure_observers=[broken, healthy])

        dispatcher.handle_message(_spec(FailingConsumer), make_delivery())

        healthy.notify.assert_called_once()
        broker.nack.assert_called_once_with(7)


class TestErrorAcknowledgements:
    """Test the error acknowledgement chain."""

    def test_requeue_first_failure(self, broker, observer, make_delivery):
        dispatcher = MessageDispatcher(
            broker,
            failure_observers=[observer],
            error_acknowledgements=[RequeueFirstFailure()],
        )

        dispatcher.handle_message(_spec(FailingConsumer), make_delivery())

        broker.requeue.assert_called_once_with(7)
        broker.nack.assert_not_called()

    def test_redelivered_falls_back_to_nack(self, broker, observer, make_delivery):
        dispatcher = MessageDispatcher(
            broker,
            failure_observers=[observer],
            error_acknowledgements=[RequeueFirstFailure()],
        )

        dispatcher.handle_message(_spec(FailingConsumer), make_delivery(redelivered=True))

        broker.requeue.assert_not_called()
        broker.nack.assert_called_once_with(7)


class TestSetupQueue:
    """Test queue setup and subscription."""

    def test_setup_without_retry(self, dispatcher, broker, topology):
        broker.subscribe.side_effect = lambda queue, callback, tag: tag

        tag = dispatcher.setup_queue(_spec(RecordingConsumer))

        broker.declare_queue.assert_called_once_with("orders", durable=True, arguments={})
        broker.bind_routing_keys.assert_called_once_with("orders", ("test",))
        topology.declare_topology.assert_not_called()
        assert tag.startswith("rmq-backoff-")
        assert dispatcher.consumer_tags == [tag]

    def test_setup_with_retry_declares_topology_before_subscribing(self, dispatcher, broker, topology):
        order = []
        topology.declare_topology.side_effect = lambda *args: order.append("topology")
        broker.subscribe.side_effect = lambda *args: order.append("subscribe") or "tag"
        spec = _spec(RecordingConsumer, RetryPolicy())

        dispatcher.setup_queue(spec)

        topology.declare_topology.assert_called_once_with(spec.retry_policy, "main")
        assert order == ["topology", "subscribe"]

    def test_subscription_callback_dispatches(self, dispatcher, broker):
        dispatcher.setup_queue(_spec(RecordingConsumer))
        callback = broker.subscribe.call_args.args[1]
        amqp_message = Mock()
        amqp_message.method = {"routing_key": "test", "delivery_tag": 3, "exchange": "main"}
        amqp_message.properties = {"message_id": "abc", "headers": {}}
        amqp_message.body = b'{"ok": true}'

        callback(amqp_message)

        assert RecordingConsumer.calls[0].body == {"ok": True}
        broker.ack.assert_called_once_with(3)

    def test_executor_runs_handler(self, broker, observer):
        with ThreadPoolExecutor(max_workers=1) as executor:
            dispatcher = MessageDispatcher(broker, failure_observers=[observer], executor=executor)
            dispatcher.setup_queue(_spec(RecordingConsumer))
            callback = broker.subscribe.call_args.args[1]
            amqp_message = Mock()
            amqp_message.method = {"routing_key": "test", "delivery_tag": 4}
            amqp_message.properties = {}
            amqp_message.body = b"{}"
            callback(amqp_message)

        broker.ack.assert_called_once_with(4)

    def test_custom_tag_prefix(self, broker):
        dispatcher = MessageDispatcher(broker, consumer_tag_prefix="billing")
        assert dispatcher.unique_consumer_tag().startswith("billing-")

    def test_tag_too_long(self, broker):
        dispatcher = MessageDispatcher(broker, consumer_tag_prefix="a" * 250)

        with pytest.raises(ConsumerTagError, match="255 bytes"):
            dispatcher.unique_consumer_tag()

    def test_closing_refuses_subscription(self, dispatcher, broker):
        dispatcher.shutdown()

        with pytest.raises(WorkerShutdownError):
            dispatcher.setup_queue(_spec(RecordingConsumer))
        broker.subscribe.assert_not_called()


class TestShutdown:
    def test_shutdown_cancels_consumers(self, dispatcher, broker):
        broker.subscribe.side_effect = lambda queue, callback, tag: tag
        tag = dispatcher.setup_queue(_spec(RecordingConsumer))

        dispatcher.shutdown()

        assert dispatcher.closing
        broker.cancel.assert_called_once_with(tag)

    def test_deliveries_ignored_while_closing(self, dispatcher, broker):
        dispatcher.setup_queue(_spec(RecordingConsumer))
        callback = broker.subscribe.call_args.args[1]
        dispatcher.shutdown()
        amqp_message = Mock()
        amqp_message.method = {"routing_key": "test", "delivery_tag": 5}
        amqp_message.properties = {}
        amqp_message.body = b"{}"

        callback(amqp_message)

        assert RecordingConsumer.calls == []
        broker.ack.assert_not_called()
        broker.nack.assert_not_called()


class TestRoutingFailures:
    """A failing router or acknowledgement strategy still finalizes the delivery."""

    def test_raising_classifier_nacks(self, broker, observer, make_delivery):
        def classifier(error):
            raise KeyError("classifier bug")

        policy = RetryPolicy.builder().retry_on(classifier).build()
        dispatcher = MessageDispatcher(broker, failure_observers=[observer])

        dispatcher.handle_message(_spec(FailingConsumer, policy), make_delivery())

        broker.nack.assert_called_once_with(7)
        broker.ack.assert_not_called()
        broker.publish.assert_not_called()
        observer.notify.assert_called_once()

    def test_raising_backoff_nacks(self, broker, observer, make_delivery):
        def backoff(attempt):
            raise ZeroDivisionError()

        policy = RetryPolicy.builder().backoff(backoff).build()
        dispatcher = MessageDispatcher(broker, failure_observers=[observer])

        dispatcher.handle_message(_spec(FailingConsumer, policy), make_delivery())

        broker.nack.assert_called_once_with(7)
        broker.ack.assert_not_called()

    def test_raising_acknowledgement_falls_back_to_nack(self, broker, observer, make_delivery):
        broken = Mock(spec=ErrorAcknowledgementInterface)
        broken.handle.side_effect = RuntimeError("strategy bug")
        dispatcher = MessageDispatcher(
            broker, failure_observers=[observer], error_acknowledgements=[broken]
        )

        dispatcher.handle_message(_spec(FailingConsumer), make_delivery())

        broken.handle.assert_called_once()
        broker.nack.assert_called_once_with(7)


class TestRetryScenarios:
    """handle_message with a real router and topology, max_retries=1, retrying KindX only."""

    @pytest.fixture
    def retry_spec(self):
        policy = RetryPolicy.builder().max_retries(1).retry_on([KindX]).build()
        return _spec(FailingConsumer, policy)

    @pytest.fixture
    def real_dispatcher(self, broker, observer):
        return MessageDispatcher(broker, failure_observers=[observer])

    def test_first_failure_acks_and_republishes(
        self, real_dispatcher, broker, retry_spec, make_delivery
    ):
        real_dispatcher.handle_message(retry_spec, make_delivery(headers={}))

        broker.ack.assert_called_once_with(7)
        broker.nack.assert_not_called()
        broker.publish.assert_called_once()
        assert broker.publish.call_args.args[0] == "orders.retry"
        assert broker.publish.call_args.kwargs["headers"] == {
            "backoff-delay": 33,
            "backoff-delay-count": 1,
        }

    def test_exhausted_nacks_only(self, real_dispatcher, broker, retry_spec, make_delivery):
        real_dispatcher.handle_message(
            retry_spec, make_delivery(headers={"backoff-delay-count": 1})
        )

        broker.nack.assert_called_once_with(7)
        broker.ack.assert_not_called()
        broker.publish.assert_not_called()

    def test_unlisted_error_nacks_only(self, real_dispatcher, broker, retry_spec, make_delivery):
        class ValueErrorConsumer(Consumer):
            def process(self, message):
                raise ValueError("not retried")

        spec = _spec(ValueErrorConsumer, retry_spec.retry_policy)

        real_dispatcher.handle_message(spec, make_delivery(headers={"backoff-delay-count": 0}))

        broker.nack.assert_called_once_with(7)
        broker.ack.assert_not_called()
        broker.publish.assert_not_called()
