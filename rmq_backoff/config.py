"""
RabbitMQ configuration dataclasses.

This module provides configuration objects for routing keys, queues, retry
exchanges and the message headers that carry retry state.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional, Union

BACKOFF_DELAY_HEADER = "backoff-delay"
"""Seconds the message is expected to sit in its current delay queue."""

BACKOFF_DELAY_COUNT_HEADER = "backoff-delay-count"
"""Number of retry attempts already scheduled for the message."""

DEAD_LETTER_EXCHANGE_ARGUMENT = "x-dead-letter-exchange"
MESSAGE_TTL_ARGUMENT = "x-message-ttl"
HEADERS_MATCH_ARGUMENT = "x-match"

# AMQP shortstr limit
MAX_CONSUMER_TAG_LENGTH = 255


class ExchangeType(StrEnum):
    """AMQP exchange types used by the worker."""
    TOPIC = "topic"
    HEADERS = "headers"
    DIRECT = "direct"
    FANOUT = "fanout"


class HeadersMatch(StrEnum):
    """Match modes for headers exchange bindings."""
    ALL = "all"
    ANY = "any"


class TopicWildcard(StrEnum):
    """RabbitMQ topic wildcards for routing key patterns."""
    ALL = "#"  # Matches zero or more words
    ANY = "*"  # Matches exactly one word


@dataclass(frozen=True)
class RoutingKeyConfig:
    """
    Configuration for RabbitMQ routing keys.

    Routing keys follow the pattern: entity.identifier.type[.subtype]
    """
    entity: Union[str, TopicWildcard]
    identifier: Union[str, TopicWildcard]
    type: Union[str, TopicWildcard]
    subtype: Union[str, TopicWildcard, None] = None

    def build_key(self) -> str:
        """Build the routing key string from components."""
        subtype_str = "" if self.subtype is None else f".{self.subtype}"
        return f"{self.entity}.{self.identifier}.{self.type}{subtype_str}"

    def __str__(self) -> str:
        return self.build_key()


@dataclass(frozen=True)
class QueueConfig:
    """
    Configuration for a consumer's main queue.

    Attributes:
        name: Queue name
        durable: Queue survives broker restart
        arguments: Extra queue arguments (x-queue-type, x-dead-letter-exchange, ...)
    """
    name: str
    durable: bool = True
    arguments: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RetryExchangeOptions:
    """
    Naming and durability of a consumer's retry exchange.

    Attributes:
        name: Exchange name. None means "<queue name>.retry".
        durable: Whether the exchange and its delay queues survive a broker restart
    """
    name: Optional[str] = None
    durable: bool = True
