"""
Exponential backoff retries for RabbitMQ consumers.

This package provides:
- Consumer registration with per-consumer retry policies
- Retry topology: a headers exchange and one TTL delay queue per attempt
- Message dispatch that acks, reschedules or rejects every delivery exactly once
- An amqpstorm broker, worker runtime and command line
"""

from rmq_backoff.config import (
    BACKOFF_DELAY_COUNT_HEADER,
    BACKOFF_DELAY_HEADER,
    QueueConfig,
    RetryExchangeOptions,
    RoutingKeyConfig,
    TopicWildcard,
)
from rmq_backoff.consumer import Consumer, ConsumerRegistry, ConsumerSpec, registry
from rmq_backoff.dispatcher import MessageDispatcher
from rmq_backoff.error_handlers import (
    LoggingObserver,
    NackOnAllFailures,
    RequeueFirstFailure,
)
from rmq_backoff.exceptions import (
    ConfigurationError,
    ConsumerTagError,
    RegistrationError,
    RetryPublishError,
    RmqBackoffError,
    TopologyError,
    WorkerShutdownError,
)
from rmq_backoff.interface import (
    BrokerInterface,
    ErrorAcknowledgementInterface,
    FailureObserverInterface,
    SerializerInterface,
)
from rmq_backoff.message import Delivery, HandlerContext, Message
from rmq_backoff.retry import (
    RetryDecision,
    RetryPolicy,
    RetryPolicyBuilder,
    RetryRouter,
    RetryTopologyManager,
    exp_backoff,
)
from rmq_backoff.serializers import IdentitySerializer, JSONSerializer

__all__ = [
    # Config
    "BACKOFF_DELAY_COUNT_HEADER",
    "BACKOFF_DELAY_HEADER",
    "QueueConfig",
    "RetryExchangeOptions",
    "RoutingKeyConfig",
    "TopicWildcard",
    # Consumers
    "Consumer",
    "ConsumerRegistry",
    "ConsumerSpec",
    "registry",
    # Dispatch
    "MessageDispatcher",
    "Delivery",
    "HandlerContext",
    "Message",
    # Retry
    "RetryDecision",
    "RetryPolicy",
    "RetryPolicyBuilder",
    "RetryRouter",
    "RetryTopologyManager",
    "exp_backoff",
    # Failure handling
    "LoggingObserver",
    "NackOnAllFailures",
    "RequeueFirstFailure",
    # Interfaces
    "BrokerInterface",
    "ErrorAcknowledgementInterface",
    "FailureObserverInterface",
    "SerializerInterface",
    # Serializers
    "IdentitySerializer",
    "JSONSerializer",
    # Exceptions
    "ConfigurationError",
    "ConsumerTagError",
    "RegistrationError",
    "RetryPublishError",
    "RmqBackoffError",
    "TopologyError",
    "WorkerShutdownError",
]
