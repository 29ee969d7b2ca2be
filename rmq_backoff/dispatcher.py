"""
Per-delivery dispatch.

The dispatcher sets up consumer queues and turns every delivery into exactly
one terminal broker action: ack on success, ack plus republish when a retry is
scheduled, or an error acknowledgement (nack by default) otherwise.
"""

import logging
import threading
import uuid
from concurrent.futures import Executor
from typing import Iterable, List, Optional

from amqpstorm import Message as AmqpMessage

from rmq_backoff.config import MAX_CONSUMER_TAG_LENGTH
from rmq_backoff.consumer import ConsumerSpec
from rmq_backoff.error_handlers import LoggingObserver, NackOnAllFailures
from rmq_backoff.exceptions import ConsumerTagError, RetryPublishError, WorkerShutdownError
from rmq_backoff.interface import (
    BrokerInterface,
    ErrorAcknowledgementInterface,
    FailureObserverInterface,
    SerializerInterface,
)
from rmq_backoff.message import Delivery, HandlerContext, Message
from rmq_backoff.retry.router import RetryDecision, RetryRouter
from rmq_backoff.retry.topology import RetryTopologyManager
from rmq_backoff.serializers import JSONSerializer

logger = logging.getLogger(__name__)

DEFAULT_CONSUMER_TAG_PREFIX = "rmq-backoff"


class MessageDispatcher:
    """Routes deliveries to consumers and failures to the retry machinery."""

    def __init__(
        self,
        broker: BrokerInterface,
        topology: Optional[RetryTopologyManager] = None,
        router: Optional[RetryRouter] = None,
        serializer: Optional[SerializerInterface] = None,
        failure_observers: Optional[Iterable[FailureObserverInterface]] = None,
        error_acknowledgements: Iterable[ErrorAcknowledgementInterface] = (),
        consumer_tag_prefix: str = DEFAULT_CONSUMER_TAG_PREFIX,
        executor: Optional[Executor] = None,
    ):
        """
        Args:
            broker: Broker shared by all consumers of this worker
            topology: Retry topology manager, created from the broker if omitted
            router: Retry router, created from broker and topology if omitted
            serializer: Default serializer for consumers without their own
            failure_observers: Notified on every failure; defaults to LoggingObserver
            error_acknowledgements: Strategies tried in order before the default nack
            consumer_tag_prefix: Prefix of generated consumer tags
            executor: Runs handle_message for each delivery; None runs inline
        """
        self._broker = broker
        self._topology = topology or RetryTopologyManager(broker)
        self._router = router or RetryRouter(broker, self._topology)
        self._serializer = serializer or JSONSerializer()
        if failure_observers is None:
            failure_observers = [LoggingObserver()]
        self._failure_observers: List[FailureObserverInterface] = list(failure_observers)
        self._error_acknowledgements = list(error_acknowledgements)
        self._fallback_acknowledgement = NackOnAllFailures()
        self._consumer_tag_prefix = consumer_tag_prefix
        self._executor = executor
        self._consumer_tags: List[str] = []
        self._closing = threading.Event()

    @property
    def consumer_tags(self) -> List[str]:
        return list(self._consumer_tags)

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    def unique_consumer_tag(self) -> str:
        """
        Build a consumer tag "<prefix>-<uuid4>".

        Raises:
            ConsumerTagError: If the tag is longer than 255 bytes
        """
        tag = f"{self._consumer_tag_prefix}-{uuid.uuid4()}"
        if len(tag.encode("utf-8")) > MAX_CONSUMER_TAG_LENGTH:
            raise ConsumerTagError(
                f"Tag must be {MAX_CONSUMER_TAG_LENGTH} bytes long at most, "
                f"current size: {len(tag.encode('utf-8'))}. "
                "Please change consumer_tag_prefix."
            )
        return tag

    def setup_queue(self, spec: ConsumerSpec) -> str:
        """
        Declare, bind and subscribe a consumer's main queue.

        The retry topology is declared before subscribing, and only for
        retry-capable consumers.

        Returns:
            The consumer tag

        Raises:
            WorkerShutdownError: If shutdown already began
            TopologyError: If the retry topology cannot be declared
        """
        if self.closing:
            raise WorkerShutdownError(f"not subscribing {spec}: worker is shutting down")

        logger.info("Setting up queue: %s", spec.queue_name)
        queue = self._broker.declare_queue(
            spec.queue_name,
            durable=spec.queue.durable,
            arguments=spec.queue.arguments,
        )
        self._broker.bind_routing_keys(queue, spec.routing_keys)

        if spec.is_retry_capable:
            self._topology.declare_topology(spec.retry_policy, self._broker.exchange_name)

        consumer_tag = self.unique_consumer_tag()

        def on_message(message: AmqpMessage) -> None:
            self._on_delivery(spec, Delivery.from_amqp(message))

        tag = self._broker.subscribe(queue, on_message, consumer_tag)
        self._consumer_tags.append(tag)
        return tag

    def _on_delivery(self, spec: ConsumerSpec, delivery: Delivery) -> None:
        if self.closing:
            # left unacked; the broker redelivers it once the channel closes
            logger.debug(
                "Shutting down, not handling message %s", delivery.message_id or "-"
            )
            return
        if self._executor is None:
            self.handle_message(spec, delivery)
        else:
            future = self._executor.submit(self.handle_message, spec, delivery)
            future.add_done_callback(self._log_dispatch_error)

    @staticmethod
    def _log_dispatch_error(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Broker action failed while dispatching: %s",
                error,
                exc_info=(type(error), error, error.__traceback__),
            )

    def handle_message(self, spec: ConsumerSpec, delivery: Delivery) -> None:
        """
        Handle one delivery.

        Handler and decoding errors never propagate. Broker errors raised while
        acknowledging do.
        """
        serializer = spec.serializer or self._serializer
        if logger.isEnabledFor(logging.DEBUG):
            payload = (
                f"{len(delivery.payload)} bytes" if serializer.binary else delivery.payload
            )
            logger.debug(
                "message(%s): routing key: %s, consumer: %s, payload: %s",
                delivery.message_id or "-",
                delivery.routing_key,
                spec,
                payload,
            )

        try:
            message = Message(delivery=delivery, body=serializer.decode(delivery.payload))
            consumer = spec.consumer_cls(HandlerContext(broker=self._broker, delivery=delivery))
            consumer.process(message)
        except Exception as e:
            self._handle_failure(spec, delivery, e)
            return

        self._broker.ack(delivery.delivery_tag)

    def _handle_failure(self, spec: ConsumerSpec, delivery: Delivery, error: Exception) -> None:
        try:
            if spec.is_retry_capable:
                decision = self._route_failure(spec, delivery, error)
                if decision.is_terminal:
                    self.acknowledge_error(delivery, error)
            else:
                self.acknowledge_error(delivery, error)
        finally:
            self._notify_failure(delivery, error)

    def _route_failure(self, spec: ConsumerSpec, delivery: Delivery, error: Exception) -> RetryDecision:
        try:
            return self._router.handle_retry(spec, delivery, error)
        except RetryPublishError:
            # original already acked
            raise
        except Exception as routing_error:
            logger.error(
                "Retry routing failed for message %s, finalizing it: %s",
                delivery.message_id or "-",
                routing_error,
                exc_info=True,
            )
            return RetryDecision.NON_RETRYABLE

    def acknowledge_error(self, delivery: Delivery, error: BaseException) -> None:
        """Run the error acknowledgement strategies; nack if none handles the delivery."""
        for acknowledgement in self._error_acknowledgements:
            try:
                if acknowledgement.handle(delivery, self._broker, error):
                    return
            except Exception as ack_error:
                logger.error(
                    "Error acknowledgement %s failed: %s",
                    type(acknowledgement).__name__,
                    ack_error,
                )
        self._fallback_acknowledgement.handle(delivery, self._broker, error)

    def _notify_failure(self, delivery: Delivery, error: BaseException) -> None:
        for observer in self._failure_observers:
            try:
                observer.notify(delivery, error)
            except Exception as observer_error:
                logger.error(
                    "Error in failure observer %s: %s",
                    type(observer).__name__,
                    observer_error,
                )

    def shutdown(self) -> None:
        """Stop accepting subscriptions and deliveries, cancel consumers."""
        self._closing.set()
        for tag in self._consumer_tags:
            try:
                self._broker.cancel(tag)
            except Exception as e:
                logger.exception("Error cancelling consumer %s: %s", tag, e)
