"""
Consumer base class and registration.

Consumers are registered once, at import time, and the registry is frozen when
the worker starts. From then on every ConsumerSpec, including its RetryPolicy,
is read-only.

Example:
    ```python
    from rmq_backoff import Consumer, RetryPolicy, registry

    @registry.consumer(
        "orders.created",
        queue_name="orders",
        retry=RetryPolicy.builder().max_retries(3).retry_on([TimeoutError]),
    )
    class OrderConsumer(Consumer):
        def process(self, message):
            ...
    ```
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple, Type, Union

from rmq_backoff.config import QueueConfig, RoutingKeyConfig
from rmq_backoff.exceptions import RegistrationError
from rmq_backoff.interface import SerializerInterface
from rmq_backoff.message import HandlerContext, Message
from rmq_backoff.retry.policy import RetryPolicy, RetryPolicyBuilder

logger = logging.getLogger(__name__)


class Consumer:
    """
    Base class for message consumers.

    A new instance is created for every delivery, bound to a HandlerContext.
    Subclasses implement process(); any exception it raises is a failure.
    """

    def __init__(self, context: HandlerContext):
        self.context = context

    @property
    def broker(self):
        return self.context.broker

    @property
    def delivery(self):
        return self.context.delivery

    def process(self, message: Message) -> None:
        raise NotImplementedError(f"{type(self).__name__} must implement process()")


def default_queue_name(consumer_cls: type) -> str:
    """
    Derive a queue name from a consumer class name.

    Examples:
        >>> default_queue_name(type("OrderCreatedConsumer", (), {}))
        'order_created_consumer'
    """
    return re.sub(r"(?<!^)(?=[A-Z])", "_", consumer_cls.__name__).lower()


@dataclass(frozen=True)
class ConsumerSpec:
    """
    Registration-time description of a consumer type.

    Attributes:
        consumer_cls: Consumer subclass instantiated per delivery
        routing_keys: Keys the main queue is bound with on the main exchange
        queue: Main queue configuration
        serializer: Serializer override, None for the worker default
        retry_policy: Retry policy, None if the consumer is not retry-capable
    """
    consumer_cls: Type[Consumer]
    routing_keys: Tuple[str, ...]
    queue: QueueConfig
    serializer: Optional[SerializerInterface] = None
    retry_policy: Optional[RetryPolicy] = field(default=None)

    @property
    def queue_name(self) -> str:
        return self.queue.name

    @property
    def is_retry_capable(self) -> bool:
        return self.retry_policy is not None

    def __str__(self) -> str:
        return self.consumer_cls.__name__


class ConsumerRegistry:
    """Consumer specs keyed by consumer type."""

    def __init__(self):
        self._specs: Dict[Type[Consumer], ConsumerSpec] = {}
        self._lock = threading.Lock()
        self._frozen = False

    def register(
        self,
        consumer_cls: Type[Consumer],
        routing_keys,
        queue_name: Optional[str] = None,
        queue_durable: bool = True,
        queue_arguments: Optional[dict] = None,
        serializer: Optional[SerializerInterface] = None,
        retry: Union[RetryPolicy, RetryPolicyBuilder, bool, None] = None,
    ) -> ConsumerSpec:
        """
        Register a consumer type.

        Args:
            consumer_cls: Consumer subclass
            routing_keys: Routing key or keys (str or RoutingKeyConfig)
            queue_name: Main queue name, derived from the class name if omitted
            queue_durable: Main queue survives broker restart
            queue_arguments: Extra main queue arguments
            serializer: Serializer override
            retry: Retry policy or builder; True for the default policy

        Returns:
            The frozen ConsumerSpec

        Raises:
            RegistrationError: If the registry is frozen or the type is
                already registered
        """
        if not (isinstance(consumer_cls, type) and issubclass(consumer_cls, Consumer)):
            raise RegistrationError(f"{consumer_cls!r} is not a Consumer subclass")

        if isinstance(routing_keys, (str, RoutingKeyConfig)):
            routing_keys = [routing_keys]
        keys = tuple(str(key) for key in routing_keys)
        if not keys:
            raise RegistrationError(f"{consumer_cls.__name__} has no routing keys")

        queue = QueueConfig(
            name=queue_name or default_queue_name(consumer_cls),
            durable=queue_durable,
            arguments=dict(queue_arguments or {}),
        )

        if retry is True:
            retry = RetryPolicy()
        if isinstance(retry, RetryPolicyBuilder):
            retry = retry.build()
        policy = retry.bind(queue.name) if retry else None

        spec = ConsumerSpec(
            consumer_cls=consumer_cls,
            routing_keys=keys,
            queue=queue,
            serializer=serializer,
            retry_policy=policy,
        )

        with self._lock:
            if self._frozen:
                raise RegistrationError(
                    f"cannot register {consumer_cls.__name__}: registry is frozen"
                )
            if consumer_cls in self._specs:
                raise RegistrationError(f"{consumer_cls.__name__} is already registered")
            self._specs[consumer_cls] = spec

        logger.debug(
            "Registered consumer %s on queue %s (retry=%s)",
            consumer_cls.__name__,
            queue.name,
            spec.is_retry_capable,
        )
        return spec

    def consumer(self, *routing_keys, **options):
        """Class decorator form of register()."""
        def decorator(consumer_cls):
            self.register(consumer_cls, routing_keys, **options)
            return consumer_cls
        return decorator

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, consumer_cls: Type[Consumer]) -> ConsumerSpec:
        try:
            return self._specs[consumer_cls]
        except KeyError:
            raise RegistrationError(f"{consumer_cls.__name__} is not registered") from None

    def __iter__(self) -> Iterator[ConsumerSpec]:
        return iter(list(self._specs.values()))

    def __len__(self) -> int:
        return len(self._specs)


# Default registry used by the CLI worker
registry = ConsumerRegistry()
