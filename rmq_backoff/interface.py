"""Abstract interfaces for the broker, serializers and failure handling."""

import abc
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional


class BrokerInterface(abc.ABC):
    """
    Broker operations the retry machinery needs from its transport.

    Implementations are shared across concurrent dispatches and must tolerate
    ack/nack/publish calls from several threads.
    """

    @property
    @abc.abstractmethod
    def exchange_name(self) -> str:
        """Name of the main exchange consumer queues are bound to."""
        pass

    @abc.abstractmethod
    def declare_exchange(
        self, name: str, exchange_type: str = "headers", durable: bool = True
    ) -> None:
        pass

    @abc.abstractmethod
    def declare_queue(
        self, name: str, durable: bool = True, arguments: Optional[dict] = None
    ) -> str:
        """
        Declare a queue.

        Returns:
            The declared queue name
        """
        pass

    @abc.abstractmethod
    def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Optional[dict] = None,
    ) -> None:
        pass

    @abc.abstractmethod
    def bind_routing_keys(self, queue: str, routing_keys: Iterable[str]) -> None:
        """Bind a queue to the main exchange once per routing key."""
        pass

    @abc.abstractmethod
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
        pass

    @abc.abstractmethod
    def ack(self, delivery_tag: int) -> None:
        pass

    @abc.abstractmethod
    def nack(self, delivery_tag: int) -> None:
        """Reject a delivery without requeueing it."""
        pass

    @abc.abstractmethod
    def requeue(self, delivery_tag: int) -> None:
        """Reject a delivery and put it back on its queue."""
        pass

    @abc.abstractmethod
    def subscribe(
        self, queue: str, callback: Callable[[Any], None], consumer_tag: str
    ) -> str:
        """
        Start consuming from a queue with manual acknowledgement.

        Returns:
            The consumer tag
        """
        pass

    @abc.abstractmethod
    def cancel(self, consumer_tag: str) -> None:
        pass

    @abc.abstractmethod
    def start_consuming(self) -> None:
        """Block and deliver messages to subscribed callbacks."""
        pass

    @abc.abstractmethod
    def stop_consuming(self) -> None:
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Close the channel and cleanup resources."""
        pass


class SerializerInterface(abc.ABC):
    """Turns payload bytes into message bodies and back."""

    content_type: Optional[str] = None

    @property
    def binary(self) -> bool:
        """Whether payloads are opaque bytes (only affects logging)."""
        return False

    @abc.abstractmethod
    def decode(self, payload: bytes) -> Any:
        pass

    @abc.abstractmethod
    def encode(self, body: Any) -> bytes:
        pass


class FailureObserverInterface(abc.ABC):
    """Notified about every failed delivery, retried or not."""

    @abc.abstractmethod
    def notify(self, delivery, error: BaseException) -> None:
        """
        Report a failure.

        Args:
            delivery: The failed Delivery
            error: Error raised by decoding or by the consumer
        """
        pass


class ErrorAcknowledgementInterface(abc.ABC):
    """
    Strategy deciding how a finally failed delivery is acknowledged.

    Strategies are consulted in order; the first one returning True has
    performed the terminal broker action. If none does, the delivery is nacked.
    """

    @abc.abstractmethod
    def handle(
        self, delivery, broker: BrokerInterface, error: BaseException
    ) -> bool:
        pass
