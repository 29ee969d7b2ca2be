"""
Delay queue topology for retried messages.

Each retry-capable consumer gets a headers exchange and one queue per attempt:

    <queue>.retry            headers exchange
    <queue>.retry.33         ttl 33s,  bound with backoff-delay=33
    <queue>.retry.49         ttl 49s,  bound with backoff-delay=49
    ...

A retried message is published to the exchange with a ``backoff-delay`` header,
lands in the matching queue, expires after its TTL and is dead-lettered back to
the main exchange with its original routing key.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List

from rmq_backoff.config import (
    BACKOFF_DELAY_HEADER,
    DEAD_LETTER_EXCHANGE_ARGUMENT,
    HEADERS_MATCH_ARGUMENT,
    MESSAGE_TTL_ARGUMENT,
    ExchangeType,
    HeadersMatch,
)
from rmq_backoff.exceptions import ConfigurationError, TopologyError
from rmq_backoff.interface import BrokerInterface
from rmq_backoff.retry.policy import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryExchange:
    """A declared retry exchange."""
    name: str
    durable: bool


@dataclass(frozen=True)
class RetryQueue:
    """One rung of the backoff ladder."""
    attempt: int
    delay: int
    queue_name: str

    @property
    def ttl_millis(self) -> int:
        return self.delay * 1000


def build_ladder(policy: RetryPolicy) -> List[RetryQueue]:
    """
    Compute the delay queues for a policy without touching the broker.

    Returns:
        One RetryQueue per attempt in [0, max_retries)
    """
    exchange_name = policy.retry_exchange_name()
    ladder = []
    for attempt in range(policy.max_retries):
        delay = policy.delay_for(attempt)
        ladder.append(RetryQueue(attempt, delay, f"{exchange_name}.{delay}"))
    return ladder


class RetryTopologyManager:
    """
    Declares retry exchanges and delay queues on a broker.

    Retry exchanges are declared at most once per name for the lifetime of the
    manager, even under concurrent first use.
    """

    def __init__(self, broker: BrokerInterface):
        self._broker = broker
        self._exchanges: Dict[str, RetryExchange] = {}
        self._exchange_lock = threading.Lock()
        self._queue_lock = threading.Lock()

    def retry_exchange(self, policy: RetryPolicy) -> RetryExchange:
        """
        Get the retry exchange for a policy, declaring it on first use.

        Raises:
            TopologyError: If the exchange declaration fails
            ConfigurationError: If the exchange was already declared with a
                different durability
        """
        name = policy.retry_exchange_name()
        durable = policy.retry_exchange_durable()
        exchange = self._exchanges.get(name)
        if exchange is not None:
            return self._check_durability(exchange, durable)

        with self._exchange_lock:
            exchange = self._exchanges.get(name)
            if exchange is None:
                try:
                    self._broker.declare_exchange(
                        name, exchange_type=ExchangeType.HEADERS, durable=durable
                    )
                except Exception as e:
                    logger.error("Failed to declare retry exchange %s: %s", name, e)
                    raise TopologyError(f"cannot declare retry exchange {name}: {e}") from e
                exchange = RetryExchange(name=name, durable=durable)
                self._exchanges[name] = exchange
                logger.info("Retry exchange declared: %s (durable=%s)", name, durable)
            return self._check_durability(exchange, durable)

    @staticmethod
    def _check_durability(exchange: RetryExchange, durable: bool) -> RetryExchange:
        if exchange.durable != durable:
            raise ConfigurationError(
                f"retry exchange {exchange.name} is declared with durable={exchange.durable}, "
                f"policy requires durable={durable}"
            )
        return exchange

    def declare_topology(self, policy: RetryPolicy, main_exchange: str) -> List[RetryQueue]:
        """
        Declare the full backoff ladder for a policy.

        Args:
            policy: Retry policy bound to its consumer queue
            main_exchange: Exchange expired messages are dead-lettered to

        Returns:
            The ladder, one entry per attempt

        Raises:
            TopologyError: If any declaration fails
        """
        exchange = self.retry_exchange(policy)
        logger.info("Setting up retry queues for %s exchange", exchange.name)

        ladder = build_ladder(policy)
        declared = set()
        for rung in ladder:
            if rung.queue_name in declared:
                logger.warning(
                    "Backoff for attempt %d repeats delay %ds, reusing queue %s",
                    rung.attempt,
                    rung.delay,
                    rung.queue_name,
                )
                continue
            self.create_retry_queue(policy, rung.delay, main_exchange)
            declared.add(rung.queue_name)
        return ladder

    def create_retry_queue(self, policy: RetryPolicy, delay: int, main_exchange: str) -> str:
        """
        Declare one delay queue and bind it to the retry exchange.

        Returns:
            The delay queue name
        """
        exchange = self.retry_exchange(policy)
        queue_name = f"{exchange.name}.{delay}"
        arguments = {
            DEAD_LETTER_EXCHANGE_ARGUMENT: main_exchange,
            MESSAGE_TTL_ARGUMENT: delay * 1000,
        }
        match = {
            BACKOFF_DELAY_HEADER: delay,
            HEADERS_MATCH_ARGUMENT: str(HeadersMatch.ALL),
        }

        # declare and bind must not interleave with another delay for the same name
        with self._queue_lock:
            try:
                self._broker.declare_queue(
                    queue_name,
                    durable=policy.retry_exchange_durable(),
                    arguments=arguments,
                )
                self._broker.bind_queue(queue_name, exchange.name, arguments=match)
            except Exception as e:
                logger.error("Failed to declare retry queue %s: %s", queue_name, e)
                raise TopologyError(f"cannot declare retry queue {queue_name}: {e}") from e

        logger.debug(
            "Retry queue %s declared (ttl=%dms, dlx=%s)",
            queue_name,
            delay * 1000,
            main_exchange,
        )
        return queue_name
