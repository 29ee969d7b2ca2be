"""
RabbitMQ broker implementation.

This module wraps a single amqpstorm channel with the operations the worker
and the retry machinery need: declarations, publishing, acknowledgement and
subscriptions.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from amqpstorm import Channel, Connection

from rmq_backoff.config import ExchangeType
from rmq_backoff.interface import BrokerInterface

logger = logging.getLogger(__name__)

PERSISTENT_DELIVERY_MODE = 2


class RabbitBroker(BrokerInterface):
    """
    Broker backed by an amqpstorm channel.

    On construction the channel is opened, QoS is applied and the main topic
    exchange is declared.
    """

    def __init__(
        self,
        connection: Connection,
        exchange_name: str,
        prefetch_count: int = 10,
    ) -> None:
        """
        Initialize the broker.

        Args:
            connection: Active RabbitMQ connection
            exchange_name: Main topic exchange consumer queues are bound to
            prefetch_count: Unacknowledged deliveries the broker may push at once
        """
        self._connection = connection
        self._exchange_name = exchange_name
        self._prefetch_count = prefetch_count
        self._channel_lock = threading.Lock()
        self._channel: Channel = self._open_channel()

        self.declare_exchange(exchange_name, exchange_type=ExchangeType.TOPIC, durable=True)
        logger.info("RabbitBroker initialized with channel %s", self._channel)

    @property
    def exchange_name(self) -> str:
        return self._exchange_name

    def _open_channel(self) -> Channel:
        channel = self._connection.channel()
        # Set QoS to bound in-flight deliveries per worker
        channel.basic.qos(prefetch_count=self._prefetch_count)
        return channel

    def _ensure_channel(self) -> Channel:
        """
        Ensure channel is open, recreating if necessary.

        Returns:
            Open channel
        """
        with self._channel_lock:
            if not self._channel or not self._channel.is_open:
                logger.warning("Channel is closed, recreating from connection")
                self._channel = self._open_channel()
            return self._channel

    def declare_exchange(
        self, name: str, exchange_type: str = ExchangeType.HEADERS, durable: bool = True
    ) -> None:
        self._ensure_channel().exchange.declare(
            exchange=name,
            exchange_type=str(exchange_type),
            durable=durable,
        )
        logger.debug("Exchange declared: %s (%s)", name, exchange_type)

    def declare_queue(
        self, name: str, durable: bool = True, arguments: Optional[dict] = None
    ) -> str:
        result = self._ensure_channel().queue.declare(
            queue=name,
            durable=durable,
            arguments=arguments or None,
        )
        queue_name = result.get("queue", name) if result else name
        logger.info("Queue declared: %s", queue_name)
        return queue_name

    def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Optional[dict] = None,
    ) -> None:
        self._ensure_channel().queue.bind(
            queue=queue,
            exchange=exchange,
            routing_key=routing_key,
            arguments=arguments or None,
        )
        logger.debug(
            "Queue %s bound to exchange %s (routing key '%s', arguments %s)",
            queue,
            exchange,
            routing_key,
            arguments,
        )

    def bind_routing_keys(self, queue: str, routing_keys: Iterable[str]) -> None:
        for routing_key in routing_keys:
            self.bind_queue(queue, self._exchange_name, routing_key=str(routing_key))
            logger.info(
                "Queue %s bound to exchange %s with routing key '%s'",
                queue,
                self._exchange_name,
                routing_key,
            )

    def publish(
        self,
        exchange: str,
        body: bytes,
        routing_key: str,
        message_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        headers: Optional[Mapping[str, Any]] = None,
        content_type: Optional[str] = None,
    ) -> None:
        properties = {"delivery_mode": PERSISTENT_DELIVERY_MODE}
        if message_id is not None:
            properties["message_id"] = message_id
        if timestamp is not None:
            properties["timestamp"] = timestamp
        if headers:
            properties["headers"] = dict(headers)
        if content_type:
            properties["content_type"] = content_type

        self._ensure_channel().basic.publish(
            body=body,
            routing_key=routing_key,
            exchange=exchange,
            properties=properties,
        )
        logger.debug(
            "Message %s published to exchange %s with routing key %s",
            message_id or "-",
            exchange,
            routing_key,
        )

    def ack(self, delivery_tag: int) -> None:
        self._channel.basic.ack(delivery_tag=delivery_tag)

    def nack(self, delivery_tag: int) -> None:
        self._channel.basic.nack(delivery_tag=delivery_tag, requeue=False)

    def requeue(self, delivery_tag: int) -> None:
        self._channel.basic.reject(delivery_tag=delivery_tag, requeue=True)

    def subscribe(
        self, queue: str, callback: Callable[[Any], None], consumer_tag: str
    ) -> str:
        tag = self._ensure_channel().basic.consume(
            callback=callback,
            queue=queue,
            consumer_tag=consumer_tag,
            no_ack=False,
        )
        logger.info("Subscribed to %s with consumer tag %s", queue, tag)
        return tag

    def cancel(self, consumer_tag: str) -> None:
        if self._channel.is_open:
            self._channel.basic.cancel(consumer_tag)
            logger.info("Consumer %s cancelled.", consumer_tag)

    def start_consuming(self) -> None:
        # bodies stay bytes; Delivery.from_amqp decodes metadata itself
        self._channel.start_consuming(auto_decode=False)

    def stop_consuming(self) -> None:
        if self._channel.is_open:
            self._channel.stop_consuming()
            logger.info("Stopped consuming.")

    def close(self) -> None:
        """
        Close the channel.
        """
        logger.info("Shutting down RabbitBroker...")
        try:
            if self._channel.is_open:
                self._channel.close()
                logger.info("Channel closed.")
        except Exception as e:
            logger.exception("Error closing channel: %s", e)
