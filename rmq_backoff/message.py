"""
Delivery and message containers handed to consumers.

A Delivery is the raw broker view of one received message. A Message pairs a
Delivery with its decoded body. Both live only for the duration of one
dispatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional

from amqpstorm import Message as AmqpMessage

from rmq_backoff.interface import BrokerInterface


def _to_str(value: Any) -> Any:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value
    return value


@dataclass(frozen=True)
class Delivery:
    """
    One message received from the broker.

    Attributes:
        routing_key: Routing key the message was published with
        delivery_tag: Broker handle used to ack/nack this delivery
        message_id: Publisher supplied message id, if any
        timestamp: Publisher supplied timestamp, if any
        headers: Read-only message headers
        payload: Raw message body
        exchange: Exchange the message was routed through
        redelivered: Whether the broker has delivered this message before
        content_type: Publisher supplied content type, if any
    """
    routing_key: str
    delivery_tag: int
    message_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    headers: Mapping[str, Any] = field(default_factory=dict)
    payload: bytes = b""
    exchange: str = ""
    redelivered: bool = False
    content_type: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers or {})))

    @classmethod
    def from_amqp(cls, message: AmqpMessage) -> "Delivery":
        """Build a Delivery from an amqpstorm message consumed with auto_decode=False."""
        method = message.method or {}
        properties = message.properties or {}
        headers = {
            _to_str(key): _to_str(value)
            for key, value in (properties.get("headers") or {}).items()
        }
        body = message.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        return cls(
            routing_key=_to_str(method.get("routing_key", "")),
            delivery_tag=method.get("delivery_tag"),
            message_id=_to_str(properties.get("message_id")) or None,
            timestamp=properties.get("timestamp"),
            headers=headers,
            payload=body or b"",
            exchange=_to_str(method.get("exchange", "")),
            redelivered=bool(method.get("redelivered", False)),
            content_type=_to_str(properties.get("content_type")) or None,
        )


@dataclass(frozen=True)
class Message:
    """A decoded message passed to Consumer.process."""
    delivery: Delivery
    body: Any

    @property
    def routing_key(self) -> str:
        return self.delivery.routing_key

    @property
    def message_id(self) -> Optional[str]:
        return self.delivery.message_id

    @property
    def headers(self) -> Mapping[str, Any]:
        return self.delivery.headers

    def __getitem__(self, key):
        return self.body[key]


@dataclass(frozen=True)
class HandlerContext:
    """Broker handle and delivery metadata bound to one consumer invocation."""
    broker: BrokerInterface
    delivery: Delivery
